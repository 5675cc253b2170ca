"""Shared test fixtures and fakes for backend tests."""
import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from relay.storage.base import StorageClient, UploadError
from relay.uploads.notifier import UploadNotifier
from relay.uploads.queue import UploadQueue
from relay.uploads.schemas import DuplicateRecord, UploadRequest


class FakeStorage(StorageClient):
    """Scriptable storage backend.

    Args:
        hold: When True every upload blocks until release(filename).
        fail: When True every upload raises UploadError(error).
        fail_times: Fail only the first N calls.
    """

    def __init__(
        self,
        hold: bool = False,
        fail: bool = False,
        fail_times: int = 0,
        error: str = "Drive quota exceeded",
    ) -> None:
        self.hold = hold
        self.fail = fail
        self.fail_times = fail_times
        self.error = error
        self.calls: List[str] = []
        self.finished: List[str] = []
        self.active = 0
        self.max_active = 0
        self._gates: Dict[str, asyncio.Event] = {}

    def _gate(self, filename: str) -> asyncio.Event:
        if filename not in self._gates:
            self._gates[filename] = asyncio.Event()
        return self._gates[filename]

    def release(self, filename: str) -> None:
        self._gate(filename).set()

    async def upload(self, file_path: str, mime_type: str, filename: str) -> str:
        self.calls.append(filename)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hold:
                await self._gate(filename).wait()
            else:
                await asyncio.sleep(0.001)
            if self.fail or len(self.calls) <= self.fail_times:
                raise UploadError(self.error)
            self.finished.append(filename)
            return f"https://drive.example/{filename}"
        finally:
            self.active -= 1


class RecordingNotifier(UploadNotifier):
    """Collects every notification as (kind, filename, payload)."""

    def __init__(self, raise_errors: bool = False) -> None:
        self.raise_errors = raise_errors
        self.events: List[Tuple[str, str, object]] = []

    def _record(self, kind: str, request: UploadRequest, payload: object) -> None:
        self.events.append((kind, request.filename, payload))
        if self.raise_errors:
            raise ConnectionError("chat transport is down")

    def of_kind(self, kind: str) -> List[Tuple[str, str, object]]:
        return [e for e in self.events if e[0] == kind]

    async def queued(self, request: UploadRequest, position: int) -> None:
        self._record("queued", request, position)

    async def duplicate(self, request: UploadRequest, record: Optional[DuplicateRecord]) -> None:
        self._record("duplicate", request, record)

    async def queue_full(self, request: UploadRequest, limit: int) -> None:
        self._record("queue_full", request, limit)

    async def completed(self, request: UploadRequest, link: str, duration: float) -> None:
        self._record("completed", request, link)

    async def failed(self, request: UploadRequest, error: str) -> None:
        self._record("failed", request, error)

    async def discard(self, request: UploadRequest) -> None:
        self._record("discard", request, request.file_path)


def make_request(path, user_id: str = "alice", filename: Optional[str] = None) -> UploadRequest:
    path = str(path)
    return UploadRequest(
        user_id=user_id,
        file_path=path,
        mime_type="image/png",
        filename=filename or Path(path).name,
    )


def assert_counters_consistent(queue: UploadQueue) -> None:
    status = queue.get_status()
    stats = status.stats
    assert stats.total == stats.completed + stats.failed + stats.in_progress + status.queue_length
    assert stats.in_progress == status.active_uploads
    assert status.active_uploads <= status.max_concurrent


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it holds."""
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def staged_file(tmp_path):
    """Factory writing a staged file and returning its path as str."""
    def _make(name: str, content: bytes = b"payload") -> str:
        path = tmp_path / name
        path.write_bytes(content)
        return str(path)
    return _make


@pytest.fixture
def notifier():
    return RecordingNotifier()
