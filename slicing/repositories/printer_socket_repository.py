from typing import Optional
from sqlmodel import select
from slicing.models.printer_socket import PrinterSocket
from slicing.repositories.base_repository import BaseRepository


class PrinterSocketRepository(BaseRepository):
    def latest_for_serial(self, serial_number: str) -> Optional[PrinterSocket]:
        """Most recently modified live socket for a printer, if any."""
        statement = (
            select(PrinterSocket)
            .where(PrinterSocket.serial_number == serial_number.upper())
            .where(PrinterSocket.delete_flag == False)  # noqa: E712
            .order_by(PrinterSocket.last_modified.desc())
            .limit(1)
        )
        with self.session() as session:
            return session.exec(statement).first()

    def add(self, serial_number: str, socket: str, delete_flag: bool = False, **fields) -> PrinterSocket:
        """Insert a socket row. The status server owns these; this seeds local and test databases."""
        row = PrinterSocket(serial_number=serial_number.upper(), socket=socket,
                            delete_flag=delete_flag, **fields)
        with self.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
        return row
