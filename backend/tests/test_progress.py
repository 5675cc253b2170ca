"""Tests for synthetic upload progress."""
import asyncio
import random

import pytest

from conftest import FakeStorage, make_request, wait_until
from relay.uploads.progress import ProgressReporter, log_progress
from relay.uploads.queue import UploadQueue
from relay.uploads.schemas import ItemStatus, ProgressEvent


class TestProgressReporter:
    """Ticker and dispatcher behaviour."""

    @pytest.mark.asyncio
    async def test_ticks_are_monotonic_and_capped(self, staged_file, notifier):
        reporter = ProgressReporter(interval=0.002, high_water=90, rng=random.Random(7))
        events = []
        reporter.subscribe(events.append)
        await reporter.start()
        storage = FakeStorage(hold=True)
        queue = UploadQueue(storage, notifier, progress=reporter)
        try:
            result = await queue.submit(make_request(staged_file("big.mp4")))
            await wait_until(lambda: len(events) >= 8)
            percents = [e.percent for e in events]
            assert percents == sorted(percents)
            assert max(percents) <= 90
            assert all(e.item_id == result.item_id for e in events)

            storage.release("big.mp4")
            await queue.join()
            assert queue.get_item(result.item_id).progress == 100
        finally:
            await reporter.stop()

    @pytest.mark.asyncio
    async def test_ticker_stops_after_terminal_state(self, staged_file, notifier):
        reporter = ProgressReporter(interval=0.002)
        events = []
        reporter.subscribe(events.append)
        await reporter.start()
        queue = UploadQueue(FakeStorage(), notifier, progress=reporter)
        try:
            result = await queue.submit(make_request(staged_file("a.png")))
            await queue.join()
            await asyncio.sleep(0.02)
            settled = len(events)
            await asyncio.sleep(0.02)

            assert len(events) == settled
            assert queue.get_item(result.item_id).status is ItemStatus.COMPLETED
        finally:
            await reporter.stop()

    @pytest.mark.asyncio
    async def test_full_channel_drops_events(self):
        reporter = ProgressReporter(buffer_size=1)
        event = ProgressEvent(item_id="x", percent=10, filename="a.png")

        reporter.publish(event)
        reporter.publish(event)
        reporter.publish(event)

        assert reporter.dropped == 2

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        reporter = ProgressReporter()
        received = []

        def broken(event):
            raise RuntimeError("subscriber crashed")

        reporter.subscribe(broken)
        reporter.subscribe(received.append)
        reporter.subscribe(log_progress)
        await reporter.start()
        try:
            reporter.publish(ProgressEvent(item_id="x", percent=10, filename="a.png"))
            reporter.publish(ProgressEvent(item_id="x", percent=20, filename="a.png"))
            await wait_until(lambda: len(received) == 2)
        finally:
            await reporter.stop()

        assert [e.percent for e in received] == [10, 20]
