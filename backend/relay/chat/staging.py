"""Temporary on-disk staging of downloaded media.

Media is written here before it is submitted to the upload queue. The
staging area owns these files: the queue only reads them and asks for them
to be discarded once an outcome is known. A background sweep removes files
left behind by crashes or lost notifications.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class StagingArea:
    """Writes media to ``temp_dir`` under collision-free names."""

    def __init__(self, temp_dir: Union[str, Path], max_age: float = 3600.0) -> None:
        self.temp_dir = Path(temp_dir)
        self.max_age = max_age
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background sweep task."""
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Staging sweep started (dir=%s, max_age=%ss)", self.temp_dir, self.max_age)

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def stage(self, data: bytes, filename: str) -> Path:
        """Write *data* to a new staged file and return its path."""
        path = self.temp_dir / f"{uuid.uuid4().hex[:12]}_{filename}"
        await asyncio.get_event_loop().run_in_executor(None, path.write_bytes, data)
        logger.debug("Staged %s (%d bytes)", path, len(data))
        return path

    async def discard(self, path: Union[str, Path]) -> bool:
        """Delete a staged file. Returns False if it was already gone."""
        target = Path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info("Temporary file deleted: %s", target)
        return True

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove staged files older than max_age; returns how many were removed."""
        now = time.time() if now is None else now
        removed = 0
        for path in self.temp_dir.iterdir():
            if not path.is_file():
                continue
            try:
                if now - path.stat().st_mtime > self.max_age:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Staging sweep: removed %d stale files", removed)
        return removed

    async def sweep_async(self, now: Optional[float] = None) -> int:
        """Run sweep() in the default executor so the event loop stays free."""
        return await asyncio.get_event_loop().run_in_executor(None, self.sweep, now)

    async def _sweep_loop(self) -> None:
        sweep_interval = max(60.0, self.max_age / 4)
        while True:
            await asyncio.sleep(sweep_interval)
            try:
                await self.sweep_async()
            except OSError as exc:
                logger.error("Staging sweep failed: %s", exc)
