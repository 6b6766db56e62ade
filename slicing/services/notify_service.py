import logging
from typing import Tuple

from slicing.repositories.printer_socket_repository import PrinterSocketRepository
from slicing.schemas.jobs import Job
from slicing.schemas.messages import PrintFileCommand
from slicing.services.queue_service import QueueService, QueueServiceError

logger = logging.getLogger(__name__)


class NotifyError(RuntimeError):
    pass


class NotifyService:
    """Tells the status server a printer is connected to that its gcode is ready."""

    def __init__(self, sockets: PrinterSocketRepository, queues: QueueService, queue_url_prefix: str):
        self.sockets = sockets
        self.queues = queues
        self.queue_url_prefix = queue_url_prefix

    def build_command(self, job: Job) -> Tuple[str, PrintFileCommand]:
        serial = job.printer_serial()
        socket = self.sockets.latest_for_serial(serial)
        if not socket or not socket.socket:
            logger.info("%s: printer %s no longer has an active socket", job.job_id, serial)
            raise NotifyError("Printer no longer connected to the cloud")

        # "<socket-id>|<queue-name>"
        info = socket.socket.split("|")
        if len(info) != 2:
            logger.info("%s: printer %s has an invalid socket record, socket=%s",
                        job.job_id, serial, socket.socket)
            raise NotifyError("Printer has invalid socket record; cannot send gcode to printer")

        command = PrintFileCommand(
            socket_id=info[0],
            job_stl=job.stl.url,
            config_file=job.config.url,
            gcode_file=job.gcode.url,
            job_id=job.job_id,
        )
        return self.queue_url_prefix + info[1], command

    def notify(self, job: Job) -> None:
        queue_url, command = self.build_command(job)
        logger.debug("%s: sending print request to %s; data = %s",
                     job.job_id, queue_url, command.model_dump())
        try:
            self.queues.send(queue_url, command.model_dump())
        except QueueServiceError as e:
            logger.warning("%s: error creating print request via SQS; err = %s", job.job_id, e)
            raise NotifyError(f"Unable to send print request: {e}") from e
