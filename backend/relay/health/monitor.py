"""Periodic health monitoring for the relay process.

Every check interval the monitor samples uptime, memory, load average and
the upload queue's counters, then grades the process:

    healthy:  nothing to report
    warning:  elevated memory, low upload success rate, long backlog
              or a very long uptime
    critical: memory above the critical threshold

Check history older than a day is pruned and at most the last 100 errors
are kept, so the monitor itself stays bounded.
"""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, List, Optional

from relay.config import HealthSettings
from relay.chat.messages import format_duration
from .schemas import (
    CpuUsage,
    HealthCheck,
    HealthError,
    HealthMetrics,
    HealthReport,
    HealthState,
    MemoryUsage,
    PerformanceSummary,
    UploadMetrics,
)

if TYPE_CHECKING:
    from relay.uploads.queue import UploadQueue

logger = logging.getLogger(__name__)

HISTORY_MAX_AGE = 24 * 60 * 60
CLEANUP_INTERVAL = 60 * 60
MAX_ERRORS = 100


def read_memory_usage() -> Optional[MemoryUsage]:
    """System memory from sysconf; None where the platform lacks it."""
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page
        free = os.sysconf("SC_AVPHYS_PAGES") * page
    except (ValueError, OSError, AttributeError):
        return None
    if total <= 0:
        return None
    used = total - free
    return MemoryUsage(
        total_bytes=total,
        used_bytes=used,
        free_bytes=free,
        percentage=round(used / total * 100, 2),
    )


def read_cpu_usage() -> CpuUsage:
    try:
        load = list(os.getloadavg())
    except (OSError, AttributeError):
        load = []
    return CpuUsage(cores=os.cpu_count() or 1, load_average=load)


def format_uptime(seconds: float) -> str:
    total = int(max(seconds, 0))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return format_duration(total)


class HealthMonitor:
    """Samples process and queue health on a fixed interval."""

    def __init__(
        self,
        queue: Optional["UploadQueue"],
        settings: Optional[HealthSettings] = None,
    ) -> None:
        self.queue = queue
        self.settings = settings or HealthSettings()
        self.start_time = time.time()
        self.metrics = HealthMetrics()
        self.history: "OrderedDict[float, HealthCheck]" = OrderedDict()
        self._last_cleanup = self.start_time
        self._task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Health monitoring started (interval=%ss)", self.settings.check_interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.check_interval_seconds)
            self.perform_health_check()
            if time.time() - self._last_cleanup >= CLEANUP_INTERVAL:
                self.cleanup_old_data()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def perform_health_check(self) -> Optional[HealthCheck]:
        """Sample metrics, assess them and record the result."""
        try:
            now = time.time()
            self.metrics.uptime_seconds = now - self.start_time
            self.metrics.memory = read_memory_usage()
            self.metrics.cpu = read_cpu_usage()
            if self.queue is not None:
                self.metrics.uploads = self._upload_metrics()
            self.metrics.last_check = now

            check = self.assess_health()
            self.history[check.timestamp] = check

            if check.status is HealthState.CRITICAL:
                logger.warning("CRITICAL HEALTH ISSUE: %s", check.issues)
            elif check.status is HealthState.WARNING:
                logger.warning("Health warning: %s", check.issues)
            return check
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Health check failed: %s", exc)
            self.metrics.errors.append(HealthError(error=str(exc)))
            return None

    def _upload_metrics(self) -> UploadMetrics:
        status = self.queue.get_status()
        stats = status.stats
        finished = stats.completed + stats.failed
        success_rate = round(stats.completed / finished * 100, 2) if finished else 100.0
        return UploadMetrics(
            queue_length=status.queue_length,
            active_uploads=status.active_uploads,
            total_uploads=stats.total,
            completed_uploads=stats.completed,
            failed_uploads=stats.failed,
            success_rate=success_rate,
        )

    def assess_health(self) -> HealthCheck:
        issues: List[str] = []
        status = HealthState.HEALTHY
        cfg = self.settings

        def warn(message: str) -> None:
            nonlocal status
            issues.append(message)
            if status is HealthState.HEALTHY:
                status = HealthState.WARNING

        memory = self.metrics.memory
        if memory is not None:
            if memory.percentage > cfg.memory_critical_percent:
                issues.append(f"High memory usage: {memory.percentage}%")
                status = HealthState.CRITICAL
            elif memory.percentage > cfg.memory_warning_percent:
                warn(f"Elevated memory usage: {memory.percentage}%")

        uploads = self.metrics.uploads
        if uploads.success_rate < cfg.success_rate_threshold:
            warn(f"Low upload success rate: {uploads.success_rate}%")
        if uploads.queue_length > cfg.max_queue_threshold:
            warn(f"Large upload queue: {uploads.queue_length} items")

        uptime_hours = self.metrics.uptime_seconds / 3600
        if uptime_hours > cfg.max_uptime_hours:
            warn(f"Long uptime: {uptime_hours:.1f} hours")

        return HealthCheck(status=status, issues=issues)

    def cleanup_old_data(self, now: Optional[float] = None) -> None:
        """Drop checks older than a day and keep only the latest errors."""
        now = time.time() if now is None else now
        cutoff = now - HISTORY_MAX_AGE
        for timestamp in [t for t in self.history if t < cutoff]:
            del self.history[timestamp]
        if len(self.metrics.errors) > MAX_ERRORS:
            self.metrics.errors = self.metrics.errors[-MAX_ERRORS:]
        self._last_cleanup = now

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def latest_check(self) -> HealthCheck:
        if not self.history:
            return HealthCheck(status=HealthState.UNKNOWN, issues=[])
        return next(reversed(self.history.values()))

    def get_health_status(self) -> HealthReport:
        return HealthReport(
            current=self.latest_check(),
            metrics=self.metrics,
            uptime=format_uptime(time.time() - self.start_time),
            platform=f"{platform.system()} {platform.machine()}",
            python_version=platform.python_version(),
        )

    def get_performance_summary(self) -> PerformanceSummary:
        memory = self.metrics.memory
        last_check = self.metrics.last_check
        return PerformanceSummary(
            status=self.latest_check().status,
            uptime=format_uptime(time.time() - self.start_time),
            memory=f"{memory.percentage}% used" if memory else "unknown",
            uploads=self.metrics.uploads,
            last_check=(
                time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(last_check))
                if last_check else "Never"
            ),
        )
