import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from slicing import config
from slicing.logging_config import configure_logging
from slicing.routers import status
from worker.runner import build_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(config.LOG_LEVEL)
    os.makedirs(config.WORK_DIR, exist_ok=True)

    worker = build_worker()
    app.state.worker = worker
    await worker.start()
    yield
    await worker.stop()


app = FastAPI(title="Slicing Worker", lifespan=lifespan)

app.include_router(status.router)


def main():
    uvicorn.run("slicing.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
