from enum import Enum, IntEnum


class QueuePriority(IntEnum):
    HIGH = 0
    LOW = 1


class RequestType(IntEnum):
    STORE_ONLY = 0
    PRINT = 1


class SlicingStatus(IntEnum):
    """Status codes written to print_jobs.slicing.status."""
    CLEARED = -1
    ERROR = 12
    PREPARING = 114
    SLICING = 115
    UPLOADING = 116
    DONE = 117


class JobStage(str, Enum):
    RECEIVED = "RECEIVED"
    PREPARING = "PREPARING"
    SLICING = "SLICING"
    UPLOADING = "UPLOADING"
    DONE = "DONE"
    ERROR = "ERROR"
    CANCELED = "CANCELED"


class JobOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    DUPLICATE = "DUPLICATE"


# (progress, progressDetail) per status; ERROR detail is filled in per failure
STATUS_TEXT = {
    SlicingStatus.ERROR: ("Error", "Error; {error}"),
    SlicingStatus.PREPARING: (
        "Preparing Slicer",
        "Preparing to slice the model; downloading the STL file and slicing options",
    ),
    SlicingStatus.SLICING: ("Slicing", "Slicing the model"),
    SlicingStatus.UPLOADING: (
        "Saving sliced model",
        "Slicing completed; uploading the printing instructions for retrieval by the printer",
    ),
    SlicingStatus.DONE: (
        "Slicing completed",
        "Slicing process finished; model is ready to print",
    ),
}
