import asyncio
import logging
from typing import Optional, Set

from sqlalchemy.engine import Engine
from sqlmodel import create_engine

from slicing import config
from slicing.models.enums import QueuePriority
from slicing.repositories.print_job_repository import PrintJobRepository
from slicing.repositories.printer_socket_repository import PrinterSocketRepository
from slicing.schemas.jobs import QueueDescriptor
from slicing.schemas.messages import ReceivedMessage
from slicing.services.notify_service import NotifyService
from slicing.services.pipeline_service import JobPipeline
from slicing.services.queue_service import QueueService
from slicing.services.scheduler_service import PriorityScheduler
from slicing.services.slicer_engine import SlicerEngine
from slicing.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class SlicingWorker:
    """Runs the poll loop, the lease renewal loop and one task per admitted job."""

    def __init__(self, scheduler: PriorityScheduler, pipeline: JobPipeline,
                 poll_interval: float = 0.5, renew_interval: float = 30.0):
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self.renew_interval = renew_interval

        self._loops: Set[asyncio.Task] = set()
        self._jobs: Set[asyncio.Task] = set()
        self._running = False
        scheduler.set_dispatcher(self.dispatch)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loops.add(asyncio.create_task(self._poll_loop(), name="slicing-poll"))
        self._loops.add(asyncio.create_task(self._renew_loop(), name="slicing-renew"))
        logger.info("Slicing worker started; max_concurrent = %d; max_successive_high = %d",
                    self.scheduler.max_concurrent, self.scheduler.max_successive_high)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling, then let in-flight jobs settle."""
        self._running = False
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._jobs:
            logger.info("Waiting for %d in-flight jobs", len(self._jobs))
            _, pending = await asyncio.wait(set(self._jobs), timeout=timeout)
            for task in pending:
                task.cancel()
        logger.info("Slicing worker stopped")

    def dispatch(self, message: ReceivedMessage) -> asyncio.Task:
        task = asyncio.create_task(self.pipeline.process(message))
        self._jobs.add(task)
        task.add_done_callback(self._job_finished)
        return task

    def _job_finished(self, task: asyncio.Task):
        self._jobs.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Job task ended with an unhandled error", exc_info=task.exception())

    async def _poll_loop(self):
        while self._running:
            try:
                await self.scheduler.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error while checking queues")
            await asyncio.sleep(self.poll_interval)

    async def _renew_loop(self):
        while self._running:
            try:
                await self.scheduler.renew_leases()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error while renewing message visibility")
            await asyncio.sleep(self.renew_interval)

    def stats(self) -> dict:
        return {**self.pipeline.stats.as_dict(), **self.scheduler.stats()}


def build_queues() -> dict:
    prefix = config.SQS_QUEUE_URL_PREFIX
    return {
        QueuePriority.HIGH: QueueDescriptor(
            url=prefix + config.SQS_QUEUE_HIGH if prefix else "",
            priority=QueuePriority.HIGH,
            max_batch=config.SQS_MAX_REQUESTS,
            wait_seconds=config.SQS_WAIT_SECONDS_HIGH,
            visibility_timeout=config.SQS_VISIBILITY_TIMEOUT,
        ),
        QueuePriority.LOW: QueueDescriptor(
            url=prefix + config.SQS_QUEUE_LOW if prefix else "",
            priority=QueuePriority.LOW,
            max_batch=config.SQS_MAX_REQUESTS,
            wait_seconds=config.SQS_WAIT_SECONDS_LOW,
            visibility_timeout=config.SQS_VISIBILITY_TIMEOUT,
        ),
    }


def build_worker(engine: Optional[Engine] = None) -> SlicingWorker:
    if engine is None:
        # State writes run on threadpool threads
        connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
        engine = create_engine(config.DATABASE_URL, connect_args=connect_args)
    queue_service = QueueService(region=config.AWS_REGION)

    scheduler = PriorityScheduler(
        queue_service=queue_service,
        queues=build_queues(),
        max_concurrent=config.MAX_CONCURRENT_JOBS,
        max_successive_high=config.MAX_SUCCESSIVE_HIGH,
        renew_visibility_seconds=config.RENEW_VISIBILITY_SECONDS,
    )
    pipeline = JobPipeline(
        scheduler=scheduler,
        jobs=PrintJobRepository(engine),
        storage=StorageService(region=config.AWS_REGION, endpoint_url=config.STORAGE_ENDPOINT_URL),
        engine=SlicerEngine(config.SLICER_COMMAND, config.SLICER_TIMEOUT_SECONDS),
        notifier=NotifyService(PrinterSocketRepository(engine), queue_service, config.SQS_QUEUE_URL_PREFIX),
        work_dir=config.WORK_DIR,
        endpoint_url=config.STORAGE_ENDPOINT_URL,
    )
    return SlicingWorker(scheduler, pipeline,
                         poll_interval=config.POLL_INTERVAL_SECONDS,
                         renew_interval=config.RENEW_INTERVAL_SECONDS)
