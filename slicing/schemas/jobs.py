from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from slicing.models.enums import JobStage, QueuePriority, RequestType


class QueueDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    priority: QueuePriority
    max_batch: int = 10
    wait_seconds: int = 0
    visibility_timeout: int = 60


class AssetLocation(BaseModel):
    url: str
    bucket: str
    key: str
    local_path: str


class Job(BaseModel):
    """One slicing request in flight. Mutated only by its own pipeline."""

    job_id: str
    job_oid: str
    handle: str
    priority: QueuePriority
    request_type: RequestType = RequestType.STORE_ONLY
    serial_number: Optional[str] = None

    stl: AssetLocation
    config: AssetLocation
    gcode: AssetLocation

    stage: JobStage = JobStage.RECEIVED

    def local_files(self) -> List[str]:
        return [self.stl.local_path, self.config.local_path, self.gcode.local_path]

    def printer_serial(self) -> str:
        if self.serial_number:
            return self.serial_number
        return self.job_id.rsplit("-", 1)[0]
