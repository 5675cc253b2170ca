"""Google Drive v3 storage backend.

Uploads a staged file to Drive, makes it readable by anyone with the link,
and returns the web link.

Credentials come from relay.secrets.yaml:
  * refresh_token + client_id + client_secret: exchanged for short-lived
    access tokens at the Google token endpoint whenever needed
  * access_token: used as-is until Drive answers 401 (useful for short
    runs and tests); a rejected token is dropped and, when refresh
    credentials exist, replaced once before the call is retried

Obtaining the refresh token (the OAuth consent step) happens outside the
relay.

Upload flow (resumable upload, so large files are streamed from disk):
1. POST upload/drive/v3/files?uploadType=resumable with the metadata
2. PUT the file bytes to the session URL from the Location header
3. POST drive/v3/files/{id}/permissions (reader / anyone)
4. GET drive/v3/files/{id}?fields=webViewLink,webContentLink
"""
import asyncio
import logging
import os
import time
from typing import AsyncIterator, Optional

import httpx

from .base import StorageClient, UploadError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
# Refresh this many seconds before Google says the token expires.
TOKEN_EXPIRY_MARGIN = 60


async def _iter_file(path: str) -> AsyncIterator[bytes]:
    loop = asyncio.get_event_loop()
    with open(path, "rb") as fh:
        while True:
            chunk = await loop.run_in_executor(None, fh.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


class GoogleDriveStorage(StorageClient):
    """Drive backend over httpx.AsyncClient."""

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
    FILES_URL = "https://www.googleapis.com/drive/v3/files"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        folder_id: Optional[str] = None,
        make_public: bool = True,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.folder_id = folder_id
        self.make_public = make_public
        self._access_token = access_token
        # A static access token has no known expiry; use it until Google rejects it.
        self._token_expires_at = float("inf") if access_token else 0.0
        self._token_lock = asyncio.Lock()
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token
            if not (self.refresh_token and self.client_id and self.client_secret):
                raise UploadError(
                    "Google Drive credentials missing: set google.refresh_token, "
                    "google.client_id and google.client_secret in relay.secrets.yaml"
                )
            resp = await self._client.post(
                self.TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            try:
                data = resp.json()
            except ValueError:
                data = {}
            if "access_token" not in data:
                error_desc = data.get("error_description", data.get("error", resp.status_code))
                raise UploadError(f"Google token error: {error_desc}")

            self._access_token = data["access_token"]
            expires_in = float(data.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            logger.info("Google Drive access token refreshed (expires in %ss)", int(expires_in))
            return self._access_token

    async def _invalidate_token(self, rejected: str) -> None:
        async with self._token_lock:
            if self._access_token == rejected:
                self._access_token = None
                self._token_expires_at = 0.0

    async def _authorized(
        self, method: str, url: str, headers: Optional[dict] = None, **kwargs
    ) -> httpx.Response:
        """Send an authenticated request, refreshing the token once on a 401."""
        headers = dict(headers or {})
        token = await self._get_access_token()
        headers["Authorization"] = f"Bearer {token}"
        resp = await self._client.request(method, url, headers=headers, **kwargs)
        if resp.status_code != 401:
            return resp

        logger.warning("Google Drive rejected the access token; refreshing and retrying once")
        await self._invalidate_token(token)
        headers["Authorization"] = f"Bearer {await self._get_access_token()}"
        return await self._client.request(method, url, headers=headers, **kwargs)

    # ------------------------------------------------------------------
    # StorageClient
    # ------------------------------------------------------------------

    async def upload(self, file_path: str, mime_type: str, filename: str) -> str:
        try:
            size = os.path.getsize(file_path)
            file_id = await self._create_file(file_path, mime_type, filename, size)
            if self.make_public:
                await self._make_public(file_id)
            return await self._get_share_link(file_id)
        except httpx.HTTPStatusError as exc:
            raise UploadError(
                f"Google Drive returned {exc.response.status_code} for {filename}: "
                f"{exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, OSError) as exc:
            raise UploadError(f"Google Drive upload failed for {filename}: {exc}") from exc

    async def ensure_ready(self) -> bool:
        try:
            await self._get_access_token()
        except (UploadError, httpx.HTTPError) as exc:
            logger.warning("Google Drive auth not ready yet: %s", exc)
            return False
        logger.info("Google Drive auth is ready.")
        return True

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Drive calls
    # ------------------------------------------------------------------

    async def _create_file(self, file_path: str, mime_type: str, filename: str, size: int) -> str:
        metadata = {"name": filename}
        if self.folder_id:
            metadata["parents"] = [self.folder_id]

        start = await self._authorized(
            "POST",
            self.UPLOAD_URL,
            params={"uploadType": "resumable", "fields": "id,name"},
            headers={
                "X-Upload-Content-Type": mime_type,
                "X-Upload-Content-Length": str(size),
            },
            json=metadata,
        )
        start.raise_for_status()
        session_url = start.headers.get("Location")
        if not session_url:
            raise UploadError("Drive did not return a resumable upload session.")

        resp = await self._client.put(
            session_url,
            headers={"Content-Type": mime_type, "Content-Length": str(size)},
            content=_iter_file(file_path),
        )
        resp.raise_for_status()
        file_id = resp.json().get("id")
        if not file_id:
            raise UploadError("Drive did not return a file ID.")
        logger.info("Uploaded %s to Drive as %s (%d bytes)", filename, file_id, size)
        return file_id

    async def _make_public(self, file_id: str) -> None:
        resp = await self._authorized(
            "POST",
            f"{self.FILES_URL}/{file_id}/permissions",
            json={"role": "reader", "type": "anyone"},
        )
        resp.raise_for_status()

    async def _get_share_link(self, file_id: str) -> str:
        resp = await self._authorized(
            "GET",
            f"{self.FILES_URL}/{file_id}",
            params={"fields": "webViewLink,webContentLink"},
        )
        resp.raise_for_status()
        data = resp.json()
        link = data.get("webViewLink") or data.get("webContentLink")
        if not link:
            raise UploadError("Failed to retrieve shareable link from Drive.")
        return link
