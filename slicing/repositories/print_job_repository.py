import time
from typing import Optional
from sqlalchemy import update
from slicing.models.enums import STATUS_TEXT, SlicingStatus
from slicing.models.print_job import PrintJob
from slicing.repositories.base_repository import BaseRepository


class JobCanceledError(RuntimeError):
    """The print job record no longer exists; it was removed upstream."""

    def __init__(self, job_oid: str):
        super().__init__(f"Print job {job_oid} no longer exists")
        self.job_oid = job_oid


def slicing_update(job_id: str, status: SlicingStatus, error: Optional[str] = None,
                   gcode_file: Optional[str] = None) -> dict:
    """Column values for a state transition; CLEARED wipes the slicing info."""
    if status == SlicingStatus.CLEARED:
        return {"slicing": None, "gcode_file": None}

    progress, detail = STATUS_TEXT[status]
    values = {
        "slicing": {
            "status": int(status),
            "jobID": job_id,
            "progress": progress,
            "progressDetail": detail.format(error=error or "unknown error"),
        }
    }
    if status == SlicingStatus.DONE:
        values["gcode_file"] = gcode_file
    return values


class PrintJobRepository(BaseRepository):
    def get(self, job_oid: str) -> Optional[PrintJob]:
        with self.session() as session:
            return session.get(PrintJob, job_oid)

    def create(self, job_oid: str, job_id: str, **fields) -> PrintJob:
        """Insert a print job. Records are owned upstream; this seeds local and test databases."""
        job = PrintJob(id=job_oid, job_id=job_id, **fields)
        with self.session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        return job

    def delete(self, job_oid: str) -> bool:
        """Remove a print job, as an upstream cancellation does. Used when seeding and in tests."""
        with self.session() as session:
            job = session.get(PrintJob, job_oid)
            if not job:
                return False
            session.delete(job)
            session.commit()
            return True

    def update_state(self, job_oid: str, job_id: str, status: SlicingStatus,
                     error: Optional[str] = None, gcode_file: Optional[str] = None) -> int:
        """
        Write a slicing state transition onto the print job.

        Raises:
            JobCanceledError: no record matched job_oid
            SQLAlchemyError: the write itself failed
        """
        values = slicing_update(job_id, status, error, gcode_file)
        values["last_modified"] = time.time()
        stmt = update(PrintJob).where(PrintJob.id == job_oid).values(**values)

        with self.session() as session:
            result = session.exec(stmt)
            session.commit()
            matched = result.rowcount

        if matched == 0:
            raise JobCanceledError(job_oid)
        return matched
