import time
from typing import Dict, Optional
from sqlmodel import SQLModel, Field, JSON


class PrintJob(SQLModel, table=True):
    __tablename__ = "print_jobs"

    id: str = Field(primary_key=True)  # job_oid on the wire
    job_id: Optional[str] = Field(default=None, index=True)
    serial_number: Optional[str] = Field(default=None, index=True)

    stl_file: Optional[str] = None
    config_file: Optional[str] = None
    gcode_file: Optional[str] = None

    # {status, jobID, progress, progressDetail}
    slicing: Optional[Dict] = Field(default=None, sa_type=JSON)

    created_at: float = Field(default_factory=time.time)
    last_modified: float = Field(default_factory=time.time)
