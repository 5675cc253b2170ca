"""Pydantic schemas for the upload queue.

This module defines the data exchanged between the upload queue and its
collaborators:
- UploadRequest: what the chat handler submits
- DuplicateRecord: a previously completed upload for a (user, digest) pair
- SubmitResult: the synchronous admission outcome of submit()
- ProgressEvent: synthetic progress of an in-flight upload
- QueueStatus / UserStatus: read-only snapshots for status commands and
  the HTTP status endpoints

The queue's internal working record (UploadItem) lives in queue.py.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    """Lifecycle of a queued upload.

    Attributes:
        QUEUED: Waiting in the backlog for a free worker slot.
        PROCESSING: Handed to a worker; the storage call is in flight.
        COMPLETED: Uploaded; a share link is available (terminal).
        FAILED: The storage call failed (terminal).
    """
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class SubmitOutcome(str, Enum):
    """Synchronous result of UploadQueue.submit().

    Attributes:
        QUEUED: Accepted into the backlog; the terminal outcome arrives later.
        DUPLICATE: Same content from the same user was already uploaded
            (or is being uploaded right now); nothing was enqueued.
        QUEUE_FULL: The backlog reached its configured bound.
    """
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    QUEUE_FULL = "queue_full"


class UploadRequest(BaseModel):
    """An upload submitted by the ingestion collaborator.

    The staged file stays owned by the submitter; the queue only reads it
    and later asks the submitter to discard it.
    """
    user_id: str = Field(..., min_length=1, description="Owning user identifier")
    file_path: str = Field(..., min_length=1, description="Locally staged file")
    mime_type: str = Field(..., description="MIME type of the staged file")
    filename: str = Field(..., min_length=1, description="Display filename")
    message_id: Optional[str] = Field(None, description="Originating chat message ID")
    origin: Any = Field(
        None,
        exclude=True,
        description="Opaque handle used only to deliver notifications back",
    )


class DuplicateRecord(BaseModel):
    """A completed upload remembered for duplicate suppression."""
    link: str = Field(..., description="Share link returned by storage")
    uploaded_at: float = Field(..., description="Completion timestamp (epoch seconds)")
    filename: str = Field(..., description="Filename of the original upload")


class SubmitResult(BaseModel):
    """Admission result returned by submit()."""
    outcome: SubmitOutcome
    item_id: Optional[str] = Field(None, description="Queue item ID (QUEUED only)")
    position: Optional[int] = Field(None, description="1-based backlog position (QUEUED only)")
    duplicate: Optional[DuplicateRecord] = Field(
        None, description="Existing upload when the duplicate has already completed"
    )
    pending_item_id: Optional[str] = Field(
        None, description="In-flight item holding the same content (DUPLICATE only)"
    )


class ProgressEvent(BaseModel):
    """Synthetic progress tick for a processing item."""
    item_id: str
    percent: int = Field(..., ge=0, le=100)
    filename: str


class QueueStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0


class QueuedItemView(BaseModel):
    id: str
    user_id: str
    filename: str
    status: ItemStatus
    progress: int
    added_at: float


class ActiveItemView(BaseModel):
    id: str
    user_id: str
    filename: str
    progress: int
    started_at: Optional[float]


class ItemView(BaseModel):
    """Full view of a single item, live or recently finished."""
    id: str
    user_id: str
    filename: str
    status: ItemStatus
    progress: int
    digest: Optional[str]
    added_at: float
    started_at: Optional[float]
    completed_at: Optional[float]
    link: Optional[str]
    error: Optional[str]


class QueueStatus(BaseModel):
    """Point-in-time snapshot of the whole queue."""
    queue_length: int
    active_uploads: int
    max_concurrent: int
    max_queue_size: Optional[int]
    stats: QueueStats
    queue: List[QueuedItemView] = Field(default_factory=list)
    active: List[ActiveItemView] = Field(default_factory=list)


class UserStatus(BaseModel):
    """Per-user view used by the .status command."""
    queued: int = 0
    active: int = 0
    completed: int = 0
    total: int = 0
