"""
Local filesystem storage backend for development.
Copies staged files into a local directory instead of Google Drive and
returns links served by the relay itself (see storage/router.py).
"""
import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from .base import StorageClient, UploadError

logger = logging.getLogger(__name__)


class LocalStorage(StorageClient):
    """Store uploads under ``base_dir/<uuid>/<filename>``."""

    def __init__(self, base_dir: str = "var/storage", public_base_url: str = "http://localhost:3000"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _safe_name(self, filename: str) -> str:
        name = Path(filename.replace("\\", "/")).name
        return name or "unnamed"

    def resolve(self, key: str) -> Optional[Path]:
        """Map a public key back to a stored file, refusing paths outside base_dir."""
        base = self.base_dir.resolve()
        path = (base / key.lstrip("/")).resolve()
        if base not in path.parents or not path.is_file():
            return None
        return path

    async def upload(self, file_path: str, mime_type: str, filename: str) -> str:
        key = f"{uuid.uuid4().hex}/{self._safe_name(filename)}"
        target = self.base_dir / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.get_event_loop().run_in_executor(None, shutil.copyfile, file_path, target)
        except OSError as exc:
            raise UploadError(f"Local storage failed for {filename}: {exc}") from exc
        logger.info("Stored %s (%s) at %s", filename, mime_type, target)
        return f"{self.public_base_url}/files/{quote(key)}"

    async def ensure_ready(self) -> bool:
        ready = self.base_dir.is_dir()
        if not ready:
            logger.warning("Local storage directory missing: %s", self.base_dir)
        return ready
