import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Set

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from slicing.models.enums import JobOutcome, JobStage, RequestType, SlicingStatus
from slicing.repositories.print_job_repository import JobCanceledError, PrintJobRepository
from slicing.schemas.jobs import Job
from slicing.schemas.messages import ReceivedMessage
from slicing.services.message_validation import MalformedMessageError, build_job
from slicing.services.notify_service import NotifyService
from slicing.services.scheduler_service import PriorityScheduler
from slicing.services.slicer_engine import SlicerEngine
from slicing.services.storage_service import StorageService

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    rejected: int = 0

    def as_dict(self) -> dict:
        return {
            "jobsSucceeded": self.succeeded,
            "jobsFailed": self.failed,
            "jobsCanceled": self.canceled,
            "jobsRejected": self.rejected,
        }


class JobPipeline:
    """
    Drives one slicing request from download through notification.

    Stages run strictly in order and each writes its state to the print job
    before doing its work. Whatever happens, local files are removed and the
    message is either deleted (success, cancellation) or requeued (failure).
    """

    def __init__(
        self,
        scheduler: PriorityScheduler,
        jobs: PrintJobRepository,
        storage: StorageService,
        engine: SlicerEngine,
        notifier: NotifyService,
        work_dir: str,
        endpoint_url: Optional[str] = None,
    ):
        self.scheduler = scheduler
        self.jobs = jobs
        self.storage = storage
        self.engine = engine
        self.notifier = notifier
        self.work_dir = work_dir
        self.endpoint_url = endpoint_url

        self.stats = PipelineStats()
        self._in_flight: Set[str] = set()
        self.stages = [self.prepare, self.download, self.slice, self.upload, self.finalize]

    async def process(self, message: ReceivedMessage) -> JobOutcome:
        logger.debug("process: msg = %s", message.fields())
        try:
            job = build_job(message, self.work_dir, self.endpoint_url)
        except MalformedMessageError as e:
            await self.reject(message, e)
            return JobOutcome.REJECTED

        # Another copy of this job is already being sliced here
        if job.job_oid in self._in_flight or not self.scheduler.admit(message):
            logger.warning("%s: print job %s already in progress; leaving duplicate message for redelivery",
                           job.job_id, job.job_oid)
            return JobOutcome.DUPLICATE

        self._in_flight.add(job.job_oid)
        try:
            return await self.run(job, message)
        finally:
            self._in_flight.discard(job.job_oid)

    async def run(self, job: Job, message: ReceivedMessage) -> JobOutcome:
        error: Optional[Exception] = None
        try:
            for stage in self.stages:
                await stage(job)
            outcome = JobOutcome.SUCCEEDED
        except JobCanceledError:
            outcome = JobOutcome.CANCELED
        except Exception as e:
            outcome = JobOutcome.FAILED
            error = e
        finally:
            self.cleanup(job)

        if outcome == JobOutcome.SUCCEEDED:
            self.stats.succeeded += 1
            logger.info("%s: Sliced!", job.job_id)
            await self.scheduler.remove_message(message, job.job_id)
        elif outcome == JobOutcome.CANCELED:
            job.stage = JobStage.CANCELED
            self.stats.canceled += 1
            logger.info("%s: Slicing canceled; job appears to have been canceled", job.job_id)
            await self.scheduler.remove_message(message, job.job_id)
        else:
            job.stage = JobStage.ERROR
            self.stats.failed += 1
            logger.warning("%s: Slicing failed; %s: %s", job.job_id, type(error).__name__, error)
            await self.mark_error(job.job_oid, job.job_id, str(error))
            await self.scheduler.requeue_message(message, job.job_id)
        return outcome

    # ---- stages ------------------------------------------------------------

    async def prepare(self, job: Job):
        await self.transition(job, SlicingStatus.PREPARING)

    async def download(self, job: Job):
        logger.debug("%s: downloading %s to %s; %s to %s", job.job_id,
                     job.stl.key, job.stl.local_path, job.config.key, job.config.local_path)
        results = await asyncio.gather(
            run_in_threadpool(self.storage.download, job.job_id, job.stl.bucket, job.stl.key, job.stl.local_path),
            run_in_threadpool(self.storage.download, job.job_id, job.config.bucket, job.config.key,
                              job.config.local_path),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def slice(self, job: Job):
        await self.transition(job, SlicingStatus.SLICING)
        await self.engine.run(job)

    async def upload(self, job: Job):
        await self.transition(job, SlicingStatus.UPLOADING)
        await run_in_threadpool(self.storage.upload, job.job_id, job.gcode.local_path,
                                job.gcode.bucket, job.gcode.key)

    async def finalize(self, job: Job):
        await self.transition(job, SlicingStatus.DONE, gcode_file=job.gcode.url)
        if job.request_type == RequestType.PRINT:
            await run_in_threadpool(self.notifier.notify, job)

    def cleanup(self, job: Job):
        for path in job.local_files():
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("%s: unable to remove %s; %s", job.job_id, path, e)

    # ---- state writes ------------------------------------------------------

    async def transition(self, job: Job, status: SlicingStatus, gcode_file: Optional[str] = None):
        """
        Persist a state change. A failed write is logged and ignored; a write
        that matches no record means the job was removed upstream.
        """
        logger.debug("%s: changing state to %s", job.job_id, status.name)
        try:
            await run_in_threadpool(self.jobs.update_state, job.job_oid, job.job_id, status,
                                    None, gcode_file)
        except JobCanceledError:
            logger.info("%s: print job %s no longer exists; likely removed from the queue",
                        job.job_id, job.job_oid)
            raise
        except SQLAlchemyError as e:
            logger.warning("%s: unable to update the print job record; err = %s", job.job_id, e)
        job.stage = JobStage[status.name]

    async def mark_error(self, job_oid: str, job_id: str, error: str):
        try:
            await run_in_threadpool(self.jobs.update_state, job_oid, job_id, SlicingStatus.ERROR, error)
        except Exception as e:
            logger.warning("%s: unable to record the error on print job %s; %s", job_id, job_oid, e)

    async def reject(self, message: ReceivedMessage, error: MalformedMessageError):
        body = message.body
        job_id = str(body.get("job_id", ""))
        job_oid = body.get("job_oid")
        logger.warning("%s: rejecting slicing request; %s; msg = %s", job_id, error, body)

        self.stats.rejected += 1
        if job_oid:
            await self.mark_error(str(job_oid), job_id, f"Programming error; {error}")
        await self.scheduler.requeue_message(message, job_id)
