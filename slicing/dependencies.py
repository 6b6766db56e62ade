from fastapi import Request
from worker.runner import SlicingWorker


def get_worker(request: Request) -> SlicingWorker:
    return request.app.state.worker
