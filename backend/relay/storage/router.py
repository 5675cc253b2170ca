"""Serve files stored by the local development backend."""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from .local import LocalStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{key:path}")
async def download_file(request: Request, key: str):
    """Download a file uploaded through LocalStorage.

    Raises:
        HTTPException 404: If local storage is not in use or the key is unknown.
    """
    storage = getattr(request.app.state, "storage", None)
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Local file serving is disabled")

    path = storage.resolve(key)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=path, filename=path.name)
