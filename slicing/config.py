import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slicing.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))

AWS_REGION = os.getenv("AWS_REGION", "us-west-2")

# SQS queues; names are appended to the prefix to form the queue URL
SQS_QUEUE_URL_PREFIX = os.getenv("SQS_QUEUE_URL_PREFIX", "")
SQS_QUEUE_HIGH = os.getenv("SQS_QUEUE_HIGH", "us-west-slicing-high-prio")
SQS_QUEUE_LOW = os.getenv("SQS_QUEUE_LOW", "us-west-slicing-low-prio")

SQS_MAX_REQUESTS = int(os.getenv("SQS_MAX_REQUESTS", "10"))  # SQS hard limit is 10
SQS_WAIT_SECONDS_HIGH = int(os.getenv("SQS_WAIT_SECONDS_HIGH", "0"))
SQS_WAIT_SECONDS_LOW = int(os.getenv("SQS_WAIT_SECONDS_LOW", "0"))
SQS_VISIBILITY_TIMEOUT = int(os.getenv("SQS_VISIBILITY_TIMEOUT", "60"))

# Admission
MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))
MAX_SUCCESSIVE_HIGH = int(os.getenv("MAX_SUCCESSIVE_HIGH", "5"))

POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "0.5"))
RENEW_INTERVAL_SECONDS = float(os.getenv("RENEW_INTERVAL_SECONDS", "30"))
RENEW_VISIBILITY_SECONDS = int(os.getenv("RENEW_VISIBILITY_SECONDS", "60"))

# Object storage
STORAGE_ENDPOINT_URL = os.getenv("STORAGE_ENDPOINT_URL", "") or None

# Not /tmp, to keep large models off swap-backed tmpfs
WORK_DIR = os.getenv("WORK_DIR", os.path.abspath("./working"))

# Slicing engine
SLICER_COMMAND = os.getenv(
    "SLICER_COMMAND",
    "scripts/cura.sh {stl} {config} {gcode}",
)
SLICER_TIMEOUT_SECONDS = float(os.getenv("SLICER_TIMEOUT_SECONDS", "0"))  # 0 = no limit
