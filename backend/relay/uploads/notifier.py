"""Result notification interface for the upload queue.

The queue reports every admission and terminal outcome back to whoever
submitted the request (normally the chat handler). Delivery is best effort:
the queue commits its own state first and then calls the notifier through
deliver(), which logs and swallows any failure so a broken notification
channel can never stall or corrupt the queue.

Usage:
    class MyNotifier(UploadNotifier):
        async def queued(self, request, position): ...
        ...

    await deliver(notifier.queued, request, 1)
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from .schemas import DuplicateRecord, UploadRequest

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Delivering a status message to the submitter failed."""


class UploadNotifier(ABC):
    """Callbacks invoked by UploadQueue for a request's outcomes.

    Methods:
        queued: The request entered the backlog at *position* (1-based).
        duplicate: The content was already uploaded by the same user.
        queue_full: The backlog was full; nothing was enqueued.
        completed: The upload finished with a share *link*.
        failed: The upload failed with a human-readable *error*.
        discard: The staged file is no longer needed and may be deleted.
    """

    @abstractmethod
    async def queued(self, request: UploadRequest, position: int) -> None:
        pass

    @abstractmethod
    async def duplicate(
        self,
        request: UploadRequest,
        record: Optional[DuplicateRecord],
    ) -> None:
        """Report a duplicate.

        Args:
            request: The suppressed request.
            record: The earlier completed upload, or None when the identical
                content is still queued or uploading.
        """
        pass

    @abstractmethod
    async def queue_full(self, request: UploadRequest, limit: int) -> None:
        pass

    @abstractmethod
    async def completed(self, request: UploadRequest, link: str, duration: float) -> None:
        pass

    @abstractmethod
    async def failed(self, request: UploadRequest, error: str) -> None:
        pass

    @abstractmethod
    async def discard(self, request: UploadRequest) -> None:
        pass


async def deliver(callback: Callable[..., Awaitable[Any]], *args: Any) -> bool:
    """Invoke a notifier callback, logging and swallowing any failure.

    Returns:
        True if the callback completed, False if it raised.
    """
    try:
        await callback(*args)
        return True
    except Exception as exc:  # pylint: disable=broad-except
        name = getattr(callback, "__name__", repr(callback))
        error = NotificationError(f"{name} notification failed: {exc}")
        logger.warning("%s", error, exc_info=exc)
        return False
