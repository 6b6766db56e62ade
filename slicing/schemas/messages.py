from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from slicing.models.enums import QueuePriority, RequestType

# Fields every slicing request must carry; "handle" is added from the SQS receipt
REQUIRED_FIELDS = (
    "config_file",  # download URL for the slicing configuration
    "gcode_file",   # upload URL for the resulting gcode
    "handle",       # SQS receipt handle; needed to delete or requeue
    "job_id",       # <serial-number>-<job-number>, used for logging
    "job_oid",      # print_jobs record key
    "stl_file",     # download URL for the model to slice
)


class ReceivedMessage(BaseModel):
    """A parsed SQS message together with its out-of-band receipt data."""
    model_config = ConfigDict(frozen=True)

    handle: str
    priority: QueuePriority
    body: Dict[str, Any] = Field(default_factory=dict)

    def fields(self) -> Dict[str, Any]:
        return {**self.body, "handle": self.handle}


class SlicingRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_id: str
    job_oid: str
    stl_file: str
    config_file: str
    gcode_file: str
    handle: str
    request_type: Optional[RequestType] = None
    serial_number: Optional[str] = None


def utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d %H:%M:%S")


class PrintFileCommand(BaseModel):
    printer_command: str = "printFile"
    socket_id: str
    job_stl: str
    config_file: str
    gcode_file: str
    job_id: str
    request_dt_tm: str = Field(default_factory=utc_timestamp)
