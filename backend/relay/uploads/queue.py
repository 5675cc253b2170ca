"""Bounded-concurrency upload queue with per-user duplicate suppression.

This module is the heart of the relay. Requests submitted by the chat handler
are hashed, checked against the duplicate index, appended to a FIFO backlog,
and handed to at most ``max_concurrent`` worker tasks that call the storage
backend.

Item lifecycle:
    queued -> processing -> completed | failed

    Terminal states never change again; UploadItem raises InvalidTransition
    on any attempt.

Critical section:
    Admission (duplicate check + enqueue), scheduling (backlog pop +
    active-set insert) and terminal bookkeeping (counters, duplicate record)
    all run under one asyncio.Lock and contain no awaits. Hashing, the
    storage call, progress ticks and notifications all happen outside it.
    Because every mutation is await-free, the synchronous snapshot methods
    (get_status, get_user_status) always observe a consistent state.

Scheduling invariant:
    Every terminal transition frees its slot and runs the scheduler in the
    same critical section, before any notification is delivered. A
    ``finally`` block re-runs it as well, so the backlog keeps draining
    even if uploads or notifications fail.

Usage:
    queue = UploadQueue(storage, notifier, max_concurrent=3)
    await queue.start()
    result = await queue.submit(request)
    status = queue.get_status()
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter, OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Set, Tuple

from relay.config import UploadSettings
from relay.storage.base import StorageClient, UploadError
from .duplicates import DuplicateIndex, DuplicateKey, duplicate_key
from .hashing import HashingError, compute_file_digest_async
from .notifier import UploadNotifier, deliver
from .progress import ProgressReporter
from .schemas import (
    ActiveItemView,
    ItemStatus,
    ItemView,
    QueuedItemView,
    QueueStats,
    QueueStatus,
    SubmitOutcome,
    SubmitResult,
    UploadRequest,
    UserStatus,
)

logger = logging.getLogger(__name__)

# Finished items kept for get_item() lookups.
RECENT_ITEMS_LIMIT = 200


class InvalidTransition(RuntimeError):
    """An UploadItem was asked to make a transition its state forbids."""


def _new_item_id(user_id: str, now: float) -> str:
    return f"{user_id}_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"


def _describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


@dataclass
class UploadItem:
    """The queue's working record for one UploadRequest."""
    request:      UploadRequest
    id:           str
    digest:       Optional[str]   = None
    status:       ItemStatus      = ItemStatus.QUEUED
    progress:     float           = 0.0
    added_at:     float           = 0.0
    started_at:   Optional[float] = None
    completed_at: Optional[float] = None
    link:         Optional[str]   = None
    error:        Optional[str]   = None
    # Set once the submitter has been told the item is queued; terminal
    # notifications wait on it so replies arrive in order.
    announced:    asyncio.Event   = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def filename(self) -> str:
        return self.request.filename

    @property
    def duplicate_key(self) -> Optional[DuplicateKey]:
        if self.digest is None:
            return None
        return duplicate_key(self.user_id, self.digest)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def _require(self, expected: ItemStatus, target: ItemStatus) -> None:
        if self.status is not expected:
            raise InvalidTransition(
                f"Item {self.id}: cannot move from {self.status.value} to {target.value}"
            )

    def start(self, now: float) -> None:
        self._require(ItemStatus.QUEUED, ItemStatus.PROCESSING)
        self.status = ItemStatus.PROCESSING
        self.started_at = now

    def complete(self, link: str, now: float) -> None:
        self._require(ItemStatus.PROCESSING, ItemStatus.COMPLETED)
        self.status = ItemStatus.COMPLETED
        self.progress = 100.0
        self.link = link
        self.completed_at = now

    def fail(self, error: str, now: float) -> None:
        self._require(ItemStatus.PROCESSING, ItemStatus.FAILED)
        self.status = ItemStatus.FAILED
        self.error = error
        self.completed_at = now

    def advance_progress(self, step: float, ceiling: float) -> None:
        """Raise progress by *step* without passing *ceiling*; never lowers it."""
        if self.status is not ItemStatus.PROCESSING:
            return
        if self.progress < ceiling:
            self.progress = min(self.progress + step, ceiling)

    def to_view(self) -> ItemView:
        return ItemView(
            id=self.id,
            user_id=self.user_id,
            filename=self.filename,
            status=self.status,
            progress=round(self.progress),
            digest=self.digest,
            added_at=self.added_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            link=self.link,
            error=self.error,
        )


class UploadQueue:
    """FIFO upload scheduler with a fixed concurrency limit.

    Attributes:
        max_concurrent: Maximum simultaneous storage calls.
        max_queue_size: Backlog bound; None means unbounded.
        duplicates: The per-user DuplicateIndex.
    """

    def __init__(
        self,
        storage: StorageClient,
        notifier: UploadNotifier,
        max_concurrent: int = 3,
        max_queue_size: Optional[int] = None,
        duplicate_detection: bool = True,
        duplicate_max_age: float = 24 * 60 * 60,
        housekeeping_interval: float = 60 * 60,
        progress: Optional[ProgressReporter] = None,
        upload_timeout: Optional[float] = None,
        retry_attempts: int = 0,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._storage = storage
        self._notifier = notifier
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self._duplicate_detection = duplicate_detection
        self._duplicate_max_age = duplicate_max_age
        self._housekeeping_interval = housekeeping_interval
        self._progress = progress
        self._upload_timeout = upload_timeout
        self._retry_attempts = retry_attempts
        self._retry_initial_delay = retry_initial_delay
        self._retry_max_delay = retry_max_delay
        self._clock = clock

        self._lock = asyncio.Lock()
        self._backlog: Deque[UploadItem] = deque()
        self._active: Dict[str, UploadItem] = {}
        # duplicate key -> id of the queued/processing item holding it
        self._pending_keys: Dict[DuplicateKey, str] = {}
        self._recent: "OrderedDict[str, UploadItem]" = OrderedDict()
        self.duplicates = DuplicateIndex()

        self._total = 0
        self._completed = 0
        self._failed = 0
        self._completed_by_user: Counter = Counter()  # type: ignore[type-arg]

        self._workers: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._housekeeping_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: UploadSettings,
        storage: StorageClient,
        notifier: UploadNotifier,
        progress: Optional[ProgressReporter] = None,
    ) -> "UploadQueue":
        return cls(
            storage,
            notifier,
            max_concurrent=settings.max_concurrent,
            max_queue_size=settings.max_queue_size,
            duplicate_detection=settings.duplicate_detection,
            duplicate_max_age=settings.duplicate_max_age_hours * 60 * 60,
            housekeeping_interval=settings.housekeeping_interval_seconds,
            progress=progress,
            upload_timeout=settings.upload_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_initial_delay=settings.retry_initial_delay,
            retry_max_delay=settings.retry_max_delay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the duplicate-index housekeeping task."""
        self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        logger.info(
            "Upload queue started (max_concurrent=%d, max_queue_size=%s)",
            self.max_concurrent,
            self.max_queue_size,
        )

    async def stop(self) -> None:
        """Stop housekeeping and abandon any uploads still running."""
        self._closed = True
        tasks = list(self._workers)
        if self._housekeeping_task:
            tasks.append(self._housekeeping_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._housekeeping_task = None
        if self._backlog or self._active:
            logger.warning(
                "Upload queue stopped with %d queued and %d active items",
                len(self._backlog),
                len(self._active),
            )
        logger.info("Upload queue stopped")

    async def join(self) -> None:
        """Wait until every dispatched worker (and those it admits) has finished."""
        while True:
            pending = [t for t in self._workers if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def submit(self, request: UploadRequest) -> SubmitResult:
        """Admit an upload request.

        The file is hashed first; a hashing failure only disables the
        duplicate check for this request. Duplicate lookup and enqueue are
        atomic, so two concurrent submissions of the same content by the
        same user can never both be queued.

        Returns:
            SubmitResult with outcome QUEUED, DUPLICATE or QUEUE_FULL.
            Terminal outcomes are reported later through the notifier.
        """
        digest: Optional[str] = None
        if self._duplicate_detection:
            try:
                digest = await compute_file_digest_async(request.file_path)
            except HashingError as exc:
                logger.warning("Duplicate check skipped for %s: %s", request.filename, exc)

        async with self._lock:
            result, item = self._admit_locked(request, digest)

        if result.outcome is SubmitOutcome.DUPLICATE:
            await deliver(self._notifier.duplicate, request, result.duplicate)
            await deliver(self._notifier.discard, request)
        elif result.outcome is SubmitOutcome.QUEUE_FULL:
            await deliver(self._notifier.queue_full, request, self.max_queue_size)
            await deliver(self._notifier.discard, request)
        else:
            # Dispatch first: a slow reply must not keep a free slot idle.
            await self._schedule()
            try:
                await deliver(self._notifier.queued, request, result.position)
            finally:
                item.announced.set()
        return result

    def _admit_locked(
        self,
        request: UploadRequest,
        digest: Optional[str],
    ) -> Tuple[SubmitResult, Optional[UploadItem]]:
        if digest is not None:
            key = duplicate_key(request.user_id, digest)
            record = self.duplicates.lookup(*key)
            if record is not None:
                logger.info(
                    "Duplicate upload from %s: %s matches %s",
                    request.user_id, request.filename, record.link,
                )
                return SubmitResult(outcome=SubmitOutcome.DUPLICATE, duplicate=record), None
            pending_id = self._pending_keys.get(key)
            if pending_id is not None:
                logger.info(
                    "Duplicate upload from %s: %s is already in flight as %s",
                    request.user_id, request.filename, pending_id,
                )
                return SubmitResult(outcome=SubmitOutcome.DUPLICATE, pending_item_id=pending_id), None

        if self.max_queue_size is not None and len(self._backlog) >= self.max_queue_size:
            logger.warning(
                "Upload queue full (%d items); rejecting %s from %s",
                len(self._backlog), request.filename, request.user_id,
            )
            return SubmitResult(outcome=SubmitOutcome.QUEUE_FULL), None

        now = self._clock()
        item = UploadItem(
            request=request,
            id=_new_item_id(request.user_id, now),
            digest=digest,
            added_at=now,
        )
        self._backlog.append(item)
        if item.duplicate_key is not None:
            self._pending_keys[item.duplicate_key] = item.id
        self._total += 1
        position = len(self._backlog)
        logger.info("Queued %s (%s) at position %d", item.id, item.filename, position)
        return SubmitResult(outcome=SubmitOutcome.QUEUED, item_id=item.id, position=position), item

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule(self) -> None:
        async with self._lock:
            self._dispatch_locked()

    def _dispatch_locked(self) -> None:
        """Move backlog heads into free worker slots, strictly FIFO."""
        if self._closed:
            return
        while len(self._active) < self.max_concurrent and self._backlog:
            item = self._backlog.popleft()
            item.start(self._clock())
            self._active[item.id] = item
            task = asyncio.create_task(self._run(item), name=f"upload-{item.id}")
            self._workers.add(task)
            task.add_done_callback(self._workers.discard)
            logger.info("Processing %s (%s)", item.id, item.filename)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _run(self, item: UploadItem) -> None:
        ticker = self._progress.track(item) if self._progress is not None else None
        try:
            link: Optional[str] = None
            error: Optional[str] = None
            try:
                link = await self._upload(item)
            except Exception as exc:  # pylint: disable=broad-except
                error = _describe_error(exc)
                logger.error("Upload failed for %s (%s): %s", item.id, item.filename, error)

            async with self._lock:
                self._finish_locked(item, link, error)
                self._dispatch_locked()
            if ticker is not None:
                ticker.cancel()

            await item.announced.wait()
            if error is None:
                logger.info(
                    "Upload completed for %s (%s) in %.1fs",
                    item.id, item.filename, item.duration or 0.0,
                )
                await deliver(self._notifier.completed, item.request, link, item.duration or 0.0)
            else:
                await deliver(self._notifier.failed, item.request, error)
            await deliver(self._notifier.discard, item.request)
        finally:
            if ticker is not None and not ticker.done():
                ticker.cancel()
            await self._schedule()

    async def _upload(self, item: UploadItem) -> str:
        """Call storage, retrying with exponential backoff when configured."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call_storage(item)
            except Exception as exc:  # pylint: disable=broad-except
                if attempt > self._retry_attempts:
                    raise
                delay = min(
                    self._retry_initial_delay * (2 ** (attempt - 1)),
                    self._retry_max_delay,
                )
                logger.warning(
                    "Upload attempt %d for %s failed (%s); retrying in %.1fs",
                    attempt, item.id, _describe_error(exc), delay,
                )
                await asyncio.sleep(delay)

    async def _call_storage(self, item: UploadItem) -> str:
        call = self._storage.upload(
            item.request.file_path,
            item.request.mime_type,
            item.filename,
        )
        if self._upload_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._upload_timeout)
        except asyncio.TimeoutError as exc:
            raise UploadError(f"Upload timed out after {self._upload_timeout:g}s") from exc

    def _finish_locked(self, item: UploadItem, link: Optional[str], error: Optional[str]) -> None:
        now = self._clock()
        if error is None:
            item.complete(link or "", now)
            if item.digest is not None:
                self.duplicates.record(item.user_id, item.digest, item.link, item.filename, now)
            self._completed += 1
            self._completed_by_user[item.user_id] += 1
        else:
            item.fail(error, now)
            self._failed += 1

        self._active.pop(item.id, None)
        key = item.duplicate_key
        if key is not None and self._pending_keys.get(key) == item.id:
            del self._pending_keys[key]

        self._recent[item.id] = item
        while len(self._recent) > RECENT_ITEMS_LIMIT:
            self._recent.popitem(last=False)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_status(self) -> QueueStatus:
        """Return a consistent snapshot of backlog, active items and counters."""
        return QueueStatus(
            queue_length=len(self._backlog),
            active_uploads=len(self._active),
            max_concurrent=self.max_concurrent,
            max_queue_size=self.max_queue_size,
            stats=QueueStats(
                total=self._total,
                completed=self._completed,
                failed=self._failed,
                in_progress=len(self._active),
            ),
            queue=[
                QueuedItemView(
                    id=item.id,
                    user_id=item.user_id,
                    filename=item.filename,
                    status=item.status,
                    progress=round(item.progress),
                    added_at=item.added_at,
                )
                for item in self._backlog
            ],
            active=[
                ActiveItemView(
                    id=item.id,
                    user_id=item.user_id,
                    filename=item.filename,
                    progress=round(item.progress),
                    started_at=item.started_at,
                )
                for item in self._active.values()
            ],
        )

    def get_user_status(self, user_id: str) -> UserStatus:
        queued = sum(1 for item in self._backlog if item.user_id == user_id)
        active = sum(1 for item in self._active.values() if item.user_id == user_id)
        completed = self._completed_by_user[user_id]
        return UserStatus(
            queued=queued,
            active=active,
            completed=completed,
            total=queued + active + completed,
        )

    def get_item(self, item_id: str) -> Optional[UploadItem]:
        """Find a queued, processing or recently finished item."""
        item = self._active.get(item_id) or self._recent.get(item_id)
        if item is not None:
            return item
        for queued in self._backlog:
            if queued.id == item_id:
                return queued
        return None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def prune_duplicates(self, max_age: Optional[float] = None) -> int:
        """Evict duplicate records older than *max_age* seconds."""
        age = self._duplicate_max_age if max_age is None else max_age
        async with self._lock:
            return self.duplicates.prune(age, now=self._clock())

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self._housekeeping_interval)
            try:
                await self.prune_duplicates()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("Duplicate index housekeeping failed: %s", exc)
