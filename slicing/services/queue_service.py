import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from slicing.schemas.jobs import QueueDescriptor

logger = logging.getLogger(__name__)

MAX_SQS_BATCH = 10


class QueueServiceError(RuntimeError):
    def __init__(self, message: str, queue_url: Optional[str] = None):
        super().__init__(message)
        self.queue_url = queue_url


class RawMessage(BaseModel):
    handle: str
    body: str


class QueueService:
    """Thin wrapper over the SQS calls the worker needs."""

    def __init__(self, region: str, client=None):
        self._sqs = client or boto3.client("sqs", region_name=region)

    def receive(self, queue: QueueDescriptor, max_messages: int) -> List[RawMessage]:
        ask_for = min(max_messages, queue.max_batch, MAX_SQS_BATCH)
        if ask_for <= 0 or not queue.url:
            return []
        try:
            resp = self._sqs.receive_message(
                QueueUrl=queue.url,
                MaxNumberOfMessages=ask_for,
                WaitTimeSeconds=queue.wait_seconds,
                VisibilityTimeout=queue.visibility_timeout,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueServiceError(f"receive_message failed: {e}", queue.url) from e

        return [
            RawMessage(handle=m["ReceiptHandle"], body=m.get("Body", ""))
            for m in resp.get("Messages", [])
        ]

    def delete(self, queue_url: str, handle: str) -> None:
        try:
            self._sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=handle)
        except (ClientError, BotoCoreError) as e:
            raise QueueServiceError(f"delete_message failed: {e}", queue_url) from e

    def requeue(self, queue_url: str, handle: str) -> None:
        """Make the message visible to consumers again right away."""
        try:
            self._sqs.change_message_visibility(
                QueueUrl=queue_url, ReceiptHandle=handle, VisibilityTimeout=0
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueServiceError(f"change_message_visibility failed: {e}", queue_url) from e

    def extend_visibility(self, queue_url: str, handles: List[str], timeout: int) -> int:
        """Extend invisibility for every handle. Returns the number of failed entries."""
        failed = 0
        for start in range(0, len(handles), MAX_SQS_BATCH):
            chunk = handles[start:start + MAX_SQS_BATCH]
            entries = [
                {"Id": str(i), "ReceiptHandle": h, "VisibilityTimeout": timeout}
                for i, h in enumerate(chunk)
            ]
            try:
                resp = self._sqs.change_message_visibility_batch(QueueUrl=queue_url, Entries=entries)
            except (ClientError, BotoCoreError) as e:
                raise QueueServiceError(f"change_message_visibility_batch failed: {e}", queue_url) from e
            for f in resp.get("Failed", []):
                logger.warning("Visibility renewal refused for entry %s on %s: %s",
                               f.get("Id"), queue_url, f.get("Message", f.get("Code")))
            failed += len(resp.get("Failed", []))
        return failed

    def send(self, queue_url: str, payload: Dict[str, Any]) -> str:
        try:
            resp = self._sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(payload))
        except (ClientError, BotoCoreError) as e:
            raise QueueServiceError(f"send_message failed: {e}", queue_url) from e
        return resp.get("MessageId", "")
