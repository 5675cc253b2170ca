"""StorageClient abstract interface for remote object storage.

Every storage backend (Google Drive, the local development store) implements
this interface. The upload queue calls upload() concurrently from several
workers, so implementations must be safe for concurrent use.

Usage:
    from relay.storage import build_storage_client

    storage = build_storage_client(settings)
    link = await storage.upload("/app/temp/photo.jpg", "image/jpeg", "photo.jpg")
"""
from abc import ABC, abstractmethod


class UploadError(Exception):
    """The storage backend could not store a file (network, quota, auth...)."""


class StorageClient(ABC):
    """Abstract base class for storage backends.

    Methods:
        upload: Store a local file and return a shareable link.
        ensure_ready: Verify credentials / reachability at startup.
        close: Release network resources.
    """

    @abstractmethod
    async def upload(self, file_path: str, mime_type: str, filename: str) -> str:
        """Upload a staged file.

        Args:
            file_path: Path of the staged file on local disk.
            mime_type: MIME type sent to the backend.
            filename: Name the file should carry remotely.

        Returns:
            str: A shareable link to the stored file.

        Raises:
            UploadError: If the backend rejects or fails the upload.
        """
        pass

    async def ensure_ready(self) -> bool:
        """Check the backend is usable. Never raises."""
        return True

    async def close(self) -> None:
        pass
