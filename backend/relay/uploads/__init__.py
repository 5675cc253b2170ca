"""Upload queue module: hashing, duplicate index, scheduler, progress."""

from .duplicates import DuplicateIndex
from .hashing import HashingError, compute_file_digest
from .notifier import NotificationError, UploadNotifier, deliver
from .progress import ProgressReporter, log_progress
from .queue import InvalidTransition, UploadItem, UploadQueue
from .schemas import (
    DuplicateRecord,
    ItemStatus,
    ProgressEvent,
    QueueStatus,
    SubmitOutcome,
    SubmitResult,
    UploadRequest,
    UserStatus,
)

__all__ = [
    "DuplicateIndex",
    "DuplicateRecord",
    "HashingError",
    "InvalidTransition",
    "ItemStatus",
    "NotificationError",
    "ProgressEvent",
    "ProgressReporter",
    "QueueStatus",
    "SubmitOutcome",
    "SubmitResult",
    "UploadItem",
    "UploadNotifier",
    "UploadQueue",
    "UploadRequest",
    "UserStatus",
    "compute_file_digest",
    "deliver",
    "log_progress",
]
