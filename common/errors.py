"""Error taxonomy shared by the runner, orchestrator and store."""

from __future__ import annotations

from typing import Iterable, Optional


class SysperfError(Exception):
    """Base class for all pipeline errors."""


class ConfigValidationError(SysperfError):
    """Invalid targets, profiles, settings or run specs.

    Raised before any process is spawned. Carries every problem found so a
    caller can report them all at once.
    """

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: list[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


class UnknownReferenceError(ConfigValidationError, KeyError):
    """A target or profile name that is not in the registry."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"Unknown {kind}: {name}")

    def __str__(self) -> str:
        return f"Unknown {self.kind}: {self.name}"


class ProcessLaunchError(SysperfError):
    """The benchmark binary could not be started."""


class ProcessTimeout(SysperfError):
    """A benchmark process exceeded its effective timeout."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} exceeded timeout of {timeout:.1f}s")


class OutputParseError(SysperfError):
    """Benchmark output could not be decoded."""

    def __init__(self, message: str, line: Optional[str] = None):
        self.line = line
        super().__init__(message)


class StoreWriteError(SysperfError):
    """A write to the metrics store failed."""


class InvalidStateTransition(SysperfError):
    """A job state change that the lifecycle does not allow."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: illegal transition {current} -> {requested}")
