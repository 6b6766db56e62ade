import os

import pytest
from sqlalchemy.exc import OperationalError

from slicing.models.enums import JobOutcome, QueuePriority, SlicingStatus
from slicing.schemas.messages import ReceivedMessage
from slicing.services.notify_service import NotifyService
from slicing.services.pipeline_service import JobPipeline
from slicing.services.slicer_engine import SlicerEngine

STORE = "https://store/host"
NOTIFY_PREFIX = "https://sqs.us-west-2.amazonaws.com/123/"


@pytest.fixture
def make_pipeline(scheduler, jobs_repo, sockets_repo, storage, queue_service, tmp_path):
    def _make(command="cp {stl} {gcode}"):
        return JobPipeline(
            scheduler=scheduler,
            jobs=jobs_repo,
            storage=storage,
            engine=SlicerEngine(command),
            notifier=NotifyService(sockets_repo, queue_service, NOTIFY_PREFIX),
            work_dir=str(tmp_path),
            endpoint_url=STORE,
        )
    return _make


@pytest.fixture
def message(message_body):
    return ReceivedMessage(handle="h1", priority=QueuePriority.HIGH, body=message_body())


@pytest.fixture
def print_job(jobs_repo):
    return jobs_repo.create("abc", "P3D001-1")


def patch_update_state(jobs_repo, on_status, action):
    real = jobs_repo.update_state

    def update_state(job_oid, job_id, status, error=None, gcode_file=None):
        if status == on_status:
            action(job_oid)
        return real(job_oid, job_id, status, error, gcode_file)

    jobs_repo.update_state = update_state


@pytest.mark.asyncio
async def test_job_slices_and_stores_gcode(make_pipeline, message, print_job, jobs_repo,
                                           storage, queue_service, queues, scheduler, tmp_path):
    pipeline = make_pipeline()

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.SUCCEEDED
    assert [(b, k) for b, k, _ in storage.downloads] == [("bucket1", "objects/a.stl"), ("bucket1", "cfg/b.ini")]
    assert storage.uploads == [("bucket1", "out/c.gcode", "bucket1/objects/a.stl")]

    record = jobs_repo.get("abc")
    assert record.slicing["status"] == int(SlicingStatus.DONE)
    assert record.gcode_file == f"{STORE}/bucket1/out/c.gcode"

    assert queue_service.deleted == [(queues[QueuePriority.HIGH].url, "h1")]
    assert queue_service.requeued == []
    assert queue_service.sent == []
    assert pipeline.stats.succeeded == 1
    assert scheduler.running == 0
    assert not scheduler.leases.is_tracked("h1")
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_print_request_notifies_printer(make_pipeline, message_body, print_job,
                                              sockets_repo, queue_service):
    sockets_repo.add("P3D001", "sock-1|printer-status")
    message = ReceivedMessage(handle="h1", priority=QueuePriority.LOW, body=message_body(request_type=1))

    outcome = await make_pipeline().process(message)

    assert outcome == JobOutcome.SUCCEEDED
    [(url, payload)] = queue_service.sent
    assert url == NOTIFY_PREFIX + "printer-status"
    assert payload["socket_id"] == "sock-1"
    assert payload["job_id"] == "P3D001-1"


@pytest.mark.asyncio
async def test_notify_failure_requeues(make_pipeline, message_body, print_job, jobs_repo, queue_service, queues):
    message = ReceivedMessage(handle="h1", priority=QueuePriority.LOW, body=message_body(request_type=1))
    pipeline = make_pipeline()

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.FAILED
    assert queue_service.requeued == [(queues[QueuePriority.LOW].url, "h1")]
    assert queue_service.deleted == []
    assert "no longer connected" in jobs_repo.get("abc").slicing["progressDetail"]


@pytest.mark.asyncio
async def test_removed_job_is_canceled(make_pipeline, message, print_job, jobs_repo,
                                       queue_service, queues, scheduler, tmp_path):
    patch_update_state(jobs_repo, SlicingStatus.SLICING, jobs_repo.delete)
    pipeline = make_pipeline()

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.CANCELED
    assert pipeline.stats.canceled == 1
    assert pipeline.stats.failed == 0
    assert queue_service.deleted == [(queues[QueuePriority.HIGH].url, "h1")]
    assert queue_service.requeued == []
    assert jobs_repo.get("abc") is None
    assert scheduler.running == 0
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_slicer_failure_marks_error_and_requeues(make_pipeline, message, print_job, jobs_repo,
                                                      storage, queue_service, queues, scheduler, tmp_path):
    pipeline = make_pipeline("exit 3")

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.FAILED
    assert pipeline.stats.failed == 1
    record = jobs_repo.get("abc")
    assert record.slicing["status"] == int(SlicingStatus.ERROR)
    assert "status 3" in record.slicing["progressDetail"]
    assert record.gcode_file is None
    assert storage.uploads == []
    assert queue_service.requeued == [(queues[QueuePriority.HIGH].url, "h1")]
    assert queue_service.deleted == []
    assert scheduler.running == 0
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_download_failure_requeues(make_pipeline, message, print_job, storage, queue_service):
    storage.fail_download = True

    outcome = await make_pipeline().process(message)

    assert outcome == JobOutcome.FAILED
    assert len(queue_service.requeued) == 1


@pytest.mark.asyncio
async def test_missing_field_is_rejected_without_download(make_pipeline, message_body, print_job, jobs_repo,
                                                          storage, queue_service, queues, scheduler):
    message = ReceivedMessage(handle="h9", priority=QueuePriority.LOW, body=message_body(stl_file=None))
    pipeline = make_pipeline()

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.REJECTED
    assert storage.downloads == []
    assert queue_service.requeued == [(queues[QueuePriority.LOW].url, "h9")]
    assert pipeline.stats.rejected == 1
    assert scheduler.running == 0
    detail = jobs_repo.get("abc").slicing["progressDetail"]
    assert "Programming error" in detail
    assert "stl_file" in detail


@pytest.mark.asyncio
async def test_duplicate_handle_is_not_admitted(make_pipeline, message, print_job, storage, scheduler):
    assert scheduler.admit(message)

    outcome = await make_pipeline().process(message)

    assert outcome == JobOutcome.DUPLICATE
    assert storage.downloads == []
    assert scheduler.running == 1


@pytest.mark.asyncio
async def test_duplicate_job_is_left_for_redelivery(make_pipeline, message_body, print_job, storage,
                                                    queue_service, scheduler):
    pipeline = make_pipeline()
    pipeline._in_flight.add("abc")
    message = ReceivedMessage(handle="h2", priority=QueuePriority.HIGH, body=message_body())

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.DUPLICATE
    assert storage.downloads == []
    assert queue_service.deleted == []
    assert queue_service.requeued == []
    assert scheduler.running == 0


@pytest.mark.asyncio
async def test_state_write_error_does_not_abort(make_pipeline, message, print_job, jobs_repo):
    def fail(_job_oid):
        raise OperationalError("UPDATE print_jobs", {}, Exception("database is locked"))

    patch_update_state(jobs_repo, SlicingStatus.PREPARING, fail)

    outcome = await make_pipeline().process(message)

    assert outcome == JobOutcome.SUCCEEDED
    assert jobs_repo.get("abc").slicing["status"] == int(SlicingStatus.DONE)


@pytest.mark.asyncio
async def test_cleanup_errors_do_not_change_outcome(make_pipeline, message, print_job, queue_service, mocker):
    remove = mocker.patch("slicing.services.pipeline_service.os.remove", side_effect=PermissionError("denied"))

    outcome = await make_pipeline().process(message)

    assert outcome == JobOutcome.SUCCEEDED
    assert remove.call_count == 3
    assert len(queue_service.deleted) == 1


@pytest.mark.asyncio
async def test_upload_failure_requeues_without_gcode(make_pipeline, message, print_job, jobs_repo,
                                                     storage, queue_service, queues, scheduler, tmp_path):
    storage.fail_upload = True
    pipeline = make_pipeline()

    outcome = await pipeline.process(message)

    assert outcome == JobOutcome.FAILED
    assert pipeline.stats.failed == 1
    record = jobs_repo.get("abc")
    assert record.slicing["status"] == int(SlicingStatus.ERROR)
    assert "upload failed" in record.slicing["progressDetail"]
    assert record.gcode_file is None
    assert queue_service.requeued == [(queues[QueuePriority.HIGH].url, "h1")]
    assert queue_service.deleted == []
    assert scheduler.running == 0
    assert os.listdir(tmp_path) == []
