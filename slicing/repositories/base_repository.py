from sqlalchemy.engine import Engine
from sqlmodel import Session


class BaseRepository:
    """Opens a short-lived session per call so calls are safe from worker threads."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def session(self) -> Session:
        return Session(self.engine)
