"""Common data models for the benchmark pipeline."""

from common.models.target import StorageTarget, TargetKind
from common.models.profile import JobProfile, FioDefaults
from common.models.job import BenchmarkJob, JobParameters, JobState
from common.models.metrics import (
    MetricSample,
    MetricKind,
    LatencyStats,
    DirectionStats,
    AggregateSummary,
    BenchmarkResult,
)
from common.models.run import BenchmarkRun, JobRequest, RunResult, RunStatus
from common.models.host import HostInfo

__all__ = [
    "StorageTarget",
    "TargetKind",
    "JobProfile",
    "FioDefaults",
    "BenchmarkJob",
    "JobParameters",
    "JobState",
    "MetricSample",
    "MetricKind",
    "LatencyStats",
    "DirectionStats",
    "AggregateSummary",
    "BenchmarkResult",
    "BenchmarkRun",
    "JobRequest",
    "RunResult",
    "RunStatus",
    "HostInfo",
]
