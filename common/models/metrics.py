"""Metrics and performance data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from common.models.job import JobState
from common.utils import utcnow


class MetricKind(str, Enum):
    """I/O direction a sample or statistic describes."""
    READ = "read"
    WRITE = "write"
    TRIM = "trim"


class LatencyStats(BaseModel):
    """Latency statistics in microseconds."""
    avg: float = Field(default=0, description="Average latency")
    min: float = Field(default=0, description="Minimum latency")
    max: float = Field(default=0, description="Maximum latency")
    p50: float = Field(default=0, description="50th percentile")
    p90: float = Field(default=0, description="90th percentile")
    p95: float = Field(default=0, description="95th percentile")
    p99: float = Field(default=0, description="99th percentile")
    p999: float = Field(default=0, description="99.9th percentile")


class DirectionStats(BaseModel):
    """Aggregate statistics for one I/O direction."""
    io_bytes: int = Field(default=0, description="Bytes transferred")
    total_ios: int = Field(default=0, description="Completed I/Os")
    bandwidth_bps: int = Field(default=0, description="Bytes per second")
    iops: float = Field(default=0, description="I/O operations per second")
    runtime_ms: int = Field(default=0)
    latency_us: LatencyStats = Field(default_factory=LatencyStats)

    @property
    def is_empty(self) -> bool:
        return self.total_ios == 0 and self.io_bytes == 0


class MetricSample(BaseModel):
    """One periodic observation from a running job."""
    job_id: str = Field(..., description="Job identifier")
    run_id: str = Field(..., description="Run identifier")
    kind: MetricKind = Field(..., description="I/O direction")
    offset_ms: int = Field(..., ge=0, description="Milliseconds since job start")
    bandwidth_bps: int = Field(default=0, ge=0)
    iops: float = Field(default=0, ge=0)
    latency_us: Optional[LatencyStats] = Field(default=None)


class AggregateSummary(BaseModel):
    """Totals decoded from the exerciser's end-of-job report."""
    read: DirectionStats = Field(default_factory=DirectionStats)
    write: DirectionStats = Field(default_factory=DirectionStats)
    trim: DirectionStats = Field(default_factory=DirectionStats)
    total_errors: int = Field(default=0)
    fio_version: Optional[str] = Field(default=None)
    job_count: int = Field(default=0, description="Entries in the report's jobs list")


class BenchmarkResult(BaseModel):
    """Terminal summary of one job. Written once, never mutated."""
    job_id: str
    run_id: str
    target_name: str
    profile_name: str
    block_size: str

    status: JobState = Field(..., description="Terminal job state")
    exit_code: Optional[int] = Field(default=None)
    duration_seconds: float = Field(default=0, ge=0)
    started_at: Optional[datetime] = None
    finished_at: datetime = Field(default_factory=utcnow)

    read: DirectionStats = Field(default_factory=DirectionStats)
    write: DirectionStats = Field(default_factory=DirectionStats)
    trim: DirectionStats = Field(default_factory=DirectionStats)

    total_errors: int = Field(default=0, description="Errors reported by the exerciser")
    parse_warnings: int = Field(default=0, description="Malformed output lines skipped")
    sample_count: int = Field(default=0, description="Periodic samples delivered")
    fio_version: Optional[str] = None
    error_message: Optional[str] = None
    stderr_tail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.COMPLETED

    @property
    def total_iops(self) -> float:
        return self.read.iops + self.write.iops + self.trim.iops

    @property
    def total_bandwidth_bps(self) -> int:
        return self.read.bandwidth_bps + self.write.bandwidth_bps + self.trim.bandwidth_bps

    @property
    def mean_latency_us(self) -> float:
        """I/O-weighted mean latency across directions."""
        directions = [d for d in (self.read, self.write, self.trim) if d.total_ios > 0]
        total = sum(d.total_ios for d in directions)
        if total == 0:
            return 0
        return sum(d.latency_us.avg * d.total_ios for d in directions) / total

    def direction(self, kind: MetricKind) -> DirectionStats:
        return getattr(self, kind.value)

    @classmethod
    def from_summary(cls, summary: AggregateSummary, **kwargs) -> "BenchmarkResult":
        """Build a result from a parsed aggregate report."""
        return cls(
            read=summary.read,
            write=summary.write,
            trim=summary.trim,
            total_errors=summary.total_errors,
            fio_version=summary.fio_version,
            **kwargs,
        )
