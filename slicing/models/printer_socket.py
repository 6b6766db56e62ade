import time
from typing import Optional
from sqlmodel import SQLModel, Field


class PrinterSocket(SQLModel, table=True):
    __tablename__ = "printer_sockets"

    id: Optional[int] = Field(default=None, primary_key=True)
    serial_number: str = Field(index=True)
    # "<socket.io id>|<sqs queue name>"
    socket: Optional[str] = None
    delete_flag: bool = Field(default=False)
    last_modified: float = Field(default_factory=time.time, index=True)
