"""Storage backends for uploaded files.

Backends:
    - GoogleDriveStorage: Google Drive v3 (production).
    - LocalStorage: local directory served by the relay (development).
"""
from relay.config import AppSettings
from .base import StorageClient, UploadError
from .google_drive import GoogleDriveStorage
from .local import LocalStorage


def build_storage_client(settings: AppSettings) -> StorageClient:
    """Create the backend selected by ``storage.provider``."""
    storage = settings.storage
    if storage.provider == "google_drive":
        google = settings.secrets.google
        return GoogleDriveStorage(
            client_id=google.client_id,
            client_secret=google.client_secret,
            refresh_token=google.refresh_token,
            access_token=google.access_token,
            folder_id=storage.google_drive.folder_id,
            make_public=storage.google_drive.make_public,
            timeout=storage.google_drive.timeout_seconds,
        )
    return LocalStorage(
        base_dir=storage.local.base_dir,
        public_base_url=storage.local.public_base_url,
    )


__all__ = [
    "GoogleDriveStorage",
    "LocalStorage",
    "StorageClient",
    "UploadError",
    "build_storage_client",
]
