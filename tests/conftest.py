import json
import os
from typing import Dict, List

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from slicing.models.enums import QueuePriority
from slicing.models.print_job import PrintJob  # noqa: F401  (registers the table)
from slicing.models.printer_socket import PrinterSocket  # noqa: F401
from slicing.repositories.print_job_repository import PrintJobRepository
from slicing.repositories.printer_socket_repository import PrinterSocketRepository
from slicing.schemas.jobs import QueueDescriptor
from slicing.services.queue_service import QueueServiceError, RawMessage
from slicing.services.scheduler_service import PriorityScheduler
from slicing.services.storage_service import StorageError

HIGH_URL = "https://sqs.us-west-2.amazonaws.com/123/slicing-high"
LOW_URL = "https://sqs.us-west-2.amazonaws.com/123/slicing-low"
STORE = "https://store/host"


class FakeQueueService:
    """In-memory stand-in for QueueService, keyed by queue URL."""

    def __init__(self):
        self.inbox: Dict[str, List[RawMessage]] = {}
        self.receive_calls = []
        self.deleted = []
        self.requeued = []
        self.extended = []
        self.sent = []
        self.fail_receive = set()
        self.fail_extend = set()
        self._next = 0

    def put(self, url: str, body, handle: str = None) -> str:
        self._next += 1
        handle = handle or f"handle-{self._next}"
        text = body if isinstance(body, str) else json.dumps(body)
        self.inbox.setdefault(url, []).append(RawMessage(handle=handle, body=text))
        return handle

    def receive(self, queue, max_messages):
        self.receive_calls.append((queue.priority, max_messages))
        if queue.url in self.fail_receive:
            raise QueueServiceError("receive failed", queue.url)
        pending = self.inbox.get(queue.url, [])
        taken, self.inbox[queue.url] = pending[:max_messages], pending[max_messages:]
        return taken

    def delete(self, queue_url, handle):
        self.deleted.append((queue_url, handle))

    def requeue(self, queue_url, handle):
        self.requeued.append((queue_url, handle))

    def extend_visibility(self, queue_url, handles, timeout):
        if queue_url in self.fail_extend:
            raise QueueServiceError("renew failed", queue_url)
        self.extended.append((queue_url, list(handles), timeout))
        return 0

    def send(self, queue_url, payload):
        self.sent.append((queue_url, payload))
        return "msg-1"


class FakeStorage:
    def __init__(self):
        self.downloads = []
        self.uploads = []
        self.fail_download = False
        self.fail_upload = False

    def download(self, job_id, bucket, key, path):
        self.downloads.append((bucket, key, path))
        if self.fail_download:
            raise StorageError("download failed", bucket, key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write(f"{bucket}/{key}")
        return path

    def upload(self, job_id, path, bucket, key):
        if self.fail_upload:
            raise StorageError("upload failed", bucket, key)
        with open(path) as f:
            self.uploads.append((bucket, key, f.read()))


def slicing_message(**overrides) -> dict:
    body = {
        "job_id": "P3D001-1",
        "job_oid": "abc",
        "stl_file": f"{STORE}/bucket1/objects/a.stl",
        "config_file": f"{STORE}/bucket1/cfg/b.ini",
        "gcode_file": f"{STORE}/bucket1/out/c.gcode",
    }
    body.update(overrides)
    return {k: v for k, v in body.items() if v is not None}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def jobs_repo(engine):
    return PrintJobRepository(engine)


@pytest.fixture
def sockets_repo(engine):
    return PrinterSocketRepository(engine)


@pytest.fixture
def queue_service():
    return FakeQueueService()


@pytest.fixture
def queues():
    return {
        QueuePriority.HIGH: QueueDescriptor(url=HIGH_URL, priority=QueuePriority.HIGH),
        QueuePriority.LOW: QueueDescriptor(url=LOW_URL, priority=QueuePriority.LOW),
    }


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def scheduler(queue_service, queues, dispatched):
    return PriorityScheduler(
        queue_service=queue_service,
        queues=queues,
        max_concurrent=4,
        max_successive_high=3,
        dispatcher=dispatched.append,
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def message_body():
    return slicing_message
