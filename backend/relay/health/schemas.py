"""Pydantic schemas for health monitoring."""
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class HealthState(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class HealthCheck(BaseModel):
    """Outcome of one assessment."""
    status: HealthState
    issues: List[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class MemoryUsage(BaseModel):
    total_bytes: int
    used_bytes: int
    free_bytes: int
    percentage: float


class CpuUsage(BaseModel):
    cores: int
    load_average: List[float] = Field(default_factory=list)


class UploadMetrics(BaseModel):
    queue_length: int = 0
    active_uploads: int = 0
    total_uploads: int = 0
    completed_uploads: int = 0
    failed_uploads: int = 0
    success_rate: float = 100.0


class HealthError(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    error: str


class HealthMetrics(BaseModel):
    uptime_seconds: float = 0.0
    memory: Optional[MemoryUsage] = None
    cpu: Optional[CpuUsage] = None
    uploads: UploadMetrics = Field(default_factory=UploadMetrics)
    errors: List[HealthError] = Field(default_factory=list)
    last_check: Optional[float] = None


class HealthReport(BaseModel):
    """Full report served by GET /health/report."""
    current: HealthCheck
    metrics: HealthMetrics
    uptime: str
    platform: str
    python_version: str


class PerformanceSummary(BaseModel):
    """Compact summary used by the .health chat command."""
    status: HealthState
    uptime: str
    memory: str
    uploads: UploadMetrics
    last_check: str
