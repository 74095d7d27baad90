"""Models, errors and utilities shared by the runner and the orchestrator."""

from common.models.target import StorageTarget, TargetKind
from common.models.profile import JobProfile
from common.models.job import BenchmarkJob, JobState
from common.models.metrics import MetricSample, BenchmarkResult
from common.models.run import BenchmarkRun, RunStatus

__all__ = [
    "StorageTarget",
    "TargetKind",
    "JobProfile",
    "BenchmarkJob",
    "JobState",
    "MetricSample",
    "BenchmarkResult",
    "BenchmarkRun",
    "RunStatus",
]
