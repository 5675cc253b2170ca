"""Synthetic progress reporting for in-flight uploads.

The storage API offers no progress callback, so each processing item gets a
ticker that nudges its progress up by a random step every interval until a
high-water mark below 100. The real completion sets 100.

Ticks are published onto a bounded asyncio.Queue with put_nowait(); when the
channel is full the event is dropped, so a slow subscriber can never block a
worker. A dispatcher task drains the channel and hands each event to the
registered subscribers.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from .schemas import ItemStatus, ProgressEvent

if TYPE_CHECKING:
    from .queue import UploadItem

logger = logging.getLogger(__name__)

ProgressSubscriber = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Publishes ProgressEvent ticks for processing items."""

    def __init__(
        self,
        interval: float = 1.0,
        high_water: float = 90.0,
        buffer_size: int = 100,
        min_step: float = 5.0,
        max_step: float = 20.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._interval = interval
        self._high_water = high_water
        self._min_step = min_step
        self._max_step = max_step
        self._rng = rng or random.Random()
        self._events: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)  # type: ignore[type-arg]
        self._subscribers: List[ProgressSubscriber] = []
        self._tickers: Set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._dispatch_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self.dropped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatcher that feeds subscribers."""
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("Progress reporter started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Cancel the dispatcher and every running ticker."""
        tasks = list(self._tickers)
        if self._dispatch_task:
            tasks.append(self._dispatch_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tickers.clear()
        self._dispatch_task = None
        logger.info("Progress reporter stopped")

    def subscribe(self, callback: ProgressSubscriber) -> None:
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Tickers
    # ------------------------------------------------------------------

    def track(self, item: "UploadItem") -> asyncio.Task:  # type: ignore[type-arg]
        """Start ticking *item*; the returned task ends once it leaves processing."""
        task = asyncio.create_task(self._tick_loop(item), name=f"progress-{item.id}")
        self._tickers.add(task)
        task.add_done_callback(self._tickers.discard)
        return task

    async def _tick_loop(self, item: "UploadItem") -> None:
        while item.status is ItemStatus.PROCESSING:
            await asyncio.sleep(self._interval)
            if item.status is not ItemStatus.PROCESSING:
                return
            item.advance_progress(
                self._rng.uniform(self._min_step, self._max_step),
                self._high_water,
            )
            self.publish(ProgressEvent(
                item_id=item.id,
                percent=round(item.progress),
                filename=item.filename,
            ))

    def publish(self, event: ProgressEvent) -> None:
        """Queue *event* for subscribers; drop it if the channel is full."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Progress channel full; dropped event for %s", event.item_id)

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            for subscriber in list(self._subscribers):
                try:
                    subscriber(event)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.warning("Progress subscriber %r failed: %s", subscriber, exc)
            self._events.task_done()


def log_progress(event: ProgressEvent) -> None:
    """Default subscriber: log each tick at DEBUG."""
    logger.debug("Upload %s (%s): %d%%", event.item_id, event.filename, event.percent)
