import asyncio
import logging
import shlex
from typing import Optional

from slicing.schemas.jobs import Job

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 500


class SlicerError(RuntimeError):
    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class SlicerEngine:
    """Runs the external slicer through the shell, one process per job."""

    def __init__(self, command_template: str, timeout_seconds: Optional[float] = None):
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds or None

    def build_command(self, stl: str, config: str, gcode: str) -> str:
        return self.command_template.format(
            stl=shlex.quote(stl),
            config=shlex.quote(config),
            gcode=shlex.quote(gcode),
        )

    async def run(self, job: Job) -> str:
        cmd = self.build_command(job.stl.local_path, job.config.local_path, job.gcode.local_path)
        logger.debug("%s: starting slicer; %s", job.job_id, cmd)

        try:
            proc = await asyncio.create_subprocess_shell(
                cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SlicerError(f"Unable to start slicer: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SlicerError(f"Slicer did not finish within {self.timeout_seconds:g}s")
        except asyncio.CancelledError:
            logger.info("%s: job task cancelled; killing slicer pid %s", job.job_id, proc.pid)
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise

        out = stdout.decode(errors="replace")
        if proc.returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-STDERR_TAIL_CHARS:]
            raise SlicerError(
                f"Slicer exited with status {proc.returncode}; {tail}".rstrip("; "),
                proc.returncode,
            )

        logger.debug('%s: slicer finished; stdout = "%s"', job.job_id, out.strip())
        return out
