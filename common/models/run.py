"""Benchmark run models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from common.models.host import HostInfo
from common.models.job import JobState
from common.models.metrics import BenchmarkResult
from common.utils import generate_run_id, utcnow


class RunStatus(str, Enum):
    """Overall run status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.PARTIALLY_FAILED, RunStatus.CANCELLED)


class JobRequest(BaseModel):
    """A (target, profile) pair in a run spec."""
    target: str = Field(..., min_length=1, description="Target name")
    profile: str = Field(..., min_length=1, description="Profile name")


def derive_run_status(states: Iterable[JobState], cancel_requested: bool) -> RunStatus:
    """Overall status from member job states.

    Completed only if every job completed; a cancelled run is never
    completed; any other mix is a partial failure.
    """
    states = list(states)
    if cancel_requested:
        return RunStatus.CANCELLED
    if states and all(state == JobState.COMPLETED for state in states):
        return RunStatus.COMPLETED
    return RunStatus.PARTIALLY_FAILED


class BenchmarkRun(BaseModel):
    """A batch of jobs submitted together."""
    id: str = Field(default_factory=generate_run_id)
    name: Optional[str] = None
    requests: list[JobRequest] = Field(default_factory=list)
    job_ids: list[str] = Field(default_factory=list)
    host: Optional[HostInfo] = Field(default=None, description="Host snapshot at submission")

    status: RunStatus = Field(default=RunStatus.PENDING)
    submitted_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    cancel_requested: bool = Field(default=False)
    degraded: bool = Field(default=False, description="A store write was lost")
    store_errors: list[str] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.status.is_final

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0
        return (self.finished_at - self.submitted_at).total_seconds()


class RunResult(BaseModel):
    """A finished run together with one result per member job."""
    run: BenchmarkRun
    results: dict[str, BenchmarkResult] = Field(default_factory=dict)

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def succeeded(self) -> bool:
        return self.run.status == RunStatus.COMPLETED and not self.run.degraded

    @property
    def failed_jobs(self) -> list[str]:
        return [job_id for job_id, result in self.results.items() if not result.succeeded]
