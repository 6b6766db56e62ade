from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from slicing.dependencies import get_worker
from slicing.schemas.messages import utc_timestamp
from worker.runner import SlicingWorker

router = APIRouter()


@router.get("/info", response_class=PlainTextResponse)
def info():
    """For pinging from monitoring stations and load balancers."""
    return utc_timestamp()


@router.get("/stats")
def stats(worker: SlicingWorker = Depends(get_worker)):
    return worker.stats()
