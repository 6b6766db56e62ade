import json
import logging
from typing import Callable, Dict, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from slicing.models.enums import QueuePriority
from slicing.schemas.jobs import QueueDescriptor
from slicing.schemas.messages import ReceivedMessage
from slicing.services.lease_tracker import LeaseTracker
from slicing.services.queue_service import QueueService, QueueServiceError

logger = logging.getLogger(__name__)

Dispatcher = Callable[[ReceivedMessage], None]


class PriorityScheduler:
    """
    Polls the HIGH and LOW slicing queues within a global concurrency cap.

    Strict priority would starve LOW under sustained HIGH load, so after
    max_successive_high HIGH receipts in a row one LOW message is let through
    ahead of HIGH on the next tick. Capacity left after HIGH always goes to LOW.
    """

    def __init__(
        self,
        queue_service: QueueService,
        queues: Dict[QueuePriority, QueueDescriptor],
        max_concurrent: int,
        max_successive_high: int,
        renew_visibility_seconds: int = 60,
        leases: Optional[LeaseTracker] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.queue_service = queue_service
        self.queues = queues
        self.max_concurrent = max_concurrent
        self.max_successive_high = max_successive_high
        self.renew_visibility_seconds = renew_visibility_seconds
        self.leases = leases or LeaseTracker()
        self.dispatcher = dispatcher

        self.running = 0
        self.successive_high = 0

    def set_dispatcher(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    # ---- admission ---------------------------------------------------------

    def admit(self, message: ReceivedMessage) -> bool:
        """Count the message as running and keep its lease alive until released."""
        if not self.leases.track(message.handle, message.priority):
            return False
        self.running += 1
        return True

    def _release(self, message: ReceivedMessage) -> bool:
        if self.leases.untrack(message.handle) is None:
            return False
        self.running = max(0, self.running - 1)
        return True

    async def remove_message(self, message: ReceivedMessage, job_id: str = "") -> None:
        """Stop renewing the message and delete it from its queue."""
        self._release(message)
        queue = self.queues.get(message.priority)
        if not queue or not message.handle:
            return
        try:
            await run_in_threadpool(self.queue_service.delete, queue.url, message.handle)
        except QueueServiceError as e:
            logger.warning("%s: error removing %s from the SQS queue %s; err = %s",
                           job_id, message.handle, queue.url, e)

    async def requeue_message(self, message: ReceivedMessage, job_id: str = "") -> None:
        """Stop renewing the message and make it visible again immediately."""
        self._release(message)
        queue = self.queues.get(message.priority)
        if not queue or not message.handle:
            return
        try:
            await run_in_threadpool(self.queue_service.requeue, queue.url, message.handle)
        except QueueServiceError as e:
            # It will still reappear once its visibility window lapses
            logger.warning("%s: error requeueing %s on %s; err = %s",
                           job_id, message.handle, queue.url, e)

    # ---- polling -----------------------------------------------------------

    async def tick(self) -> int:
        """One polling pass. Returns the admission slots still unused."""
        logger.debug("tick: running = %d; max_concurrent = %d", self.running, self.max_concurrent)

        permitted = self.max_concurrent - self.running
        if permitted <= 0:
            logger.debug("tick: at maximum running jobs; not checking queues")
            return 0

        permitted = await self.check_low(permitted, starvation_guard=True)
        permitted = await self.check_high(permitted)
        permitted = await self.check_low(permitted)
        return permitted

    async def check_high(self, permitted: int) -> int:
        remaining, _ = await self.check_queue(QueuePriority.HIGH, permitted)
        return remaining

    async def check_low(self, permitted: int, starvation_guard: bool = False) -> int:
        ask_for = permitted
        if starvation_guard:
            if self.successive_high < self.max_successive_high:
                return permitted
            logger.debug("check_low: %d successive high priority jobs; allowing one low priority job",
                          self.successive_high)
            ask_for = 1

        remaining, received = await self.check_queue(QueuePriority.LOW, permitted, ask_for)
        if starvation_guard and received:
            self.successive_high = 0
        return remaining

    async def check_queue(self, priority: QueuePriority, permitted: int,
                          ask_for: Optional[int] = None) -> Tuple[int, int]:
        """
        Receive up to ask_for messages and hand each to the dispatcher.

        Returns (remaining permitted, messages dispatched). A failed receive
        counts as zero messages.
        """
        queue = self.queues.get(priority)
        if queue is None or not queue.url:
            return permitted, 0
        if permitted <= 0:
            return 0, 0

        if ask_for is None:
            ask_for = permitted
        ask_for = min(ask_for, permitted, queue.max_batch)

        logger.debug("check_queue: %s; permitted = %d; ask_for = %d", priority.name, permitted, ask_for)
        try:
            raw_messages = await run_in_threadpool(self.queue_service.receive, queue, ask_for)
        except QueueServiceError as e:
            logger.warning("SQS error receiving from %s: %s", queue.url, e)
            return permitted, 0

        used = 0
        for raw in raw_messages:
            try:
                body = json.loads(raw.body)
            except (ValueError, RecursionError):
                body = None
            if not isinstance(body, dict):
                await self._drop(queue, raw.handle)
                continue

            message = ReceivedMessage(handle=raw.handle, priority=priority, body=body)
            used += 1
            if priority == QueuePriority.HIGH:
                self.successive_high += 1
            self._dispatch(message)

        return max(0, permitted - used), used

    def _dispatch(self, message: ReceivedMessage):
        if self.dispatcher is None:
            logger.error("No dispatcher set; leaving message %s for redelivery", message.handle)
            return
        try:
            self.dispatcher(message)
        except Exception:
            logger.exception("Dispatcher failed for message %s", message.handle)

    async def _drop(self, queue: QueueDescriptor, handle: str):
        logger.warning("Dropping unparsable message %s from %s", handle, queue.url)
        try:
            await run_in_threadpool(self.queue_service.delete, queue.url, handle)
        except QueueServiceError as e:
            logger.warning("Unable to delete unparsable message %s: %s", handle, e)

    # ---- lease renewal -----------------------------------------------------

    async def renew_leases(self) -> int:
        """Extend the visibility of every tracked message. Returns how many were renewed."""
        grouped = self.leases.snapshot()
        if not grouped:
            logger.debug("renew_leases: no messages to renew")
            return 0

        renewed = 0
        for priority, handles in grouped.items():
            queue = self.queues.get(priority)
            if queue is None or not queue.url:
                continue
            try:
                failed = await run_in_threadpool(
                    self.queue_service.extend_visibility, queue.url, handles, self.renew_visibility_seconds
                )
            except QueueServiceError as e:
                logger.warning("SQS error renewing visibility on %s; %s", queue.url, e)
                continue
            renewed += len(handles) - failed

        logger.debug("renew_leases: %d messages renewed", renewed)
        return renewed

    def stats(self) -> dict:
        return {
            "runningJobs": self.running,
            "successiveHigh": self.successive_high,
            "maxConcurrentJobs": self.max_concurrent,
            "maxSuccessiveHigh": self.max_successive_high,
            "trackedMessages": len(self.leases),
            "queues": [
                {"priority": q.priority.name, **q.model_dump(exclude={"priority"})}
                for q in self.queues.values()
            ],
        }
