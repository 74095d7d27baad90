"""Benchmark job models and lifecycle."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from common.models.profile import FioDefaults, JobProfile
from common.models.target import StorageTarget
from common.utils import generate_job_id, sanitize_filename, utcnow


class JobState(str, Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
})

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.ADMITTED, JobState.CANCELLED}),
    JobState.ADMITTED: frozenset({JobState.RUNNING, JobState.FAILED, JobState.CANCELLED}),
    JobState.RUNNING: TERMINAL_STATES,
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.TIMED_OUT: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def can_transition(current: JobState, requested: JobState) -> bool:
    """Check whether the lifecycle allows current -> requested."""
    return requested in ALLOWED_TRANSITIONS[current]


class JobParameters(BaseModel):
    """One fully expanded fio parameter set (single block size, defaults merged)."""
    ioengine: str
    rw: str
    rwmixread: Optional[int] = None
    bs: str
    size: str
    numjobs: int = 1
    iodepth: int = 1
    direct: bool = False
    buffered: Optional[bool] = None
    verify: Optional[str] = None
    runtime: Optional[int] = None
    time_based: bool = True
    group_reporting: bool = True
    randrepeat: Optional[int] = None
    write_bw_log: bool = False
    write_lat_log: bool = False
    write_iops_log: bool = False
    log_avg_msec: int = 1000
    status_interval: Optional[int] = None
    extra_options: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_profile(
        cls,
        profile: JobProfile,
        block_size: str,
        defaults: Optional[FioDefaults] = None,
    ) -> "JobParameters":
        """Merge a profile and the global defaults for one block size."""
        defaults = defaults or FioDefaults()
        return cls(
            ioengine=profile.ioengine,
            rw=profile.rw,
            rwmixread=profile.rwmixread,
            bs=block_size,
            size=profile.size,
            numjobs=profile.numjobs,
            iodepth=profile.iodepth,
            direct=profile.direct,
            buffered=profile.buffered,
            verify=profile.verify,
            runtime=profile.runtime if profile.runtime is not None else defaults.runtime,
            time_based=profile.time_based if profile.time_based is not None else defaults.time_based,
            group_reporting=(
                profile.group_reporting if profile.group_reporting is not None
                else defaults.group_reporting
            ),
            randrepeat=defaults.randomize,
            write_bw_log=defaults.write_bw_log,
            write_lat_log=defaults.write_lat_log,
            write_iops_log=defaults.write_iops_log,
            log_avg_msec=defaults.log_avg_msec,
            status_interval=defaults.status_interval,
            extra_options=dict(profile.extra_options),
        )


class BenchmarkJob(BaseModel):
    """One concrete unit of work: a target, a profile and one parameter set."""
    id: str = Field(default_factory=generate_job_id)
    run_id: str = Field(..., description="Owning run identifier")
    target: StorageTarget
    profile_name: str
    params: JobParameters
    timeout: float = Field(..., gt=0, description="Effective timeout in seconds")

    state: JobState = Field(default=JobState.QUEUED)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def target_name(self) -> str:
        return self.target.name

    @property
    def block_size(self) -> str:
        return self.params.bs

    @property
    def fio_name(self) -> str:
        """Job name passed to fio; fio derives scratch file names from it."""
        return sanitize_filename(f"{self.profile_name}_{self.target.name}_{self.params.bs}_{self.id}")

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal
