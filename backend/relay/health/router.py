"""Health endpoints.

Endpoints:
    GET /health: Liveness plus the latest assessment
    GET /health/report: Full metrics report
    GET /health/summary: Compact performance summary
"""
from fastapi import APIRouter, Depends, HTTPException, Request

from .monitor import HealthMonitor
from .schemas import HealthReport, PerformanceSummary

router = APIRouter(prefix="/health", tags=["health"])


def get_health_monitor(request: Request) -> HealthMonitor:
    monitor = getattr(request.app.state, "health_monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Health monitoring is not running")
    return monitor


@router.get("")
async def health(request: Request) -> dict:
    """Health check endpoint.

    Returns:
        dict: ``status`` is always "ok" while the server answers;
        ``health`` carries the latest assessment when monitoring runs.
    """
    monitor = getattr(request.app.state, "health_monitor", None)
    current = monitor.latest_check().status.value if monitor is not None else "unknown"
    return {"status": "ok", "health": current}


@router.get("/report", response_model=HealthReport)
async def health_report(monitor: HealthMonitor = Depends(get_health_monitor)) -> HealthReport:
    return monitor.get_health_status()


@router.get("/summary", response_model=PerformanceSummary)
async def health_summary(monitor: HealthMonitor = Depends(get_health_monitor)) -> PerformanceSummary:
    return monitor.get_performance_summary()
