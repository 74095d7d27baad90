"""Interfaces the orchestrator depends on."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from common.models.job import BenchmarkJob
from common.models.metrics import BenchmarkResult, MetricSample
from common.models.run import BenchmarkRun

SampleCallback = Callable[[MetricSample], Awaitable[None]]


@runtime_checkable
class BenchmarkExecutor(Protocol):
    """Runs one job to completion and reports its result."""

    async def execute(
        self,
        job: BenchmarkJob,
        on_sample: SampleCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BenchmarkResult:
        ...


@runtime_checkable
class MetricsSink(Protocol):
    """Receives periodic samples as they are parsed."""

    async def stream(self, sample: MetricSample) -> None:
        ...


@runtime_checkable
class ResultStore(MetricsSink, Protocol):
    """Durable home of runs, results and samples."""

    async def create_run(self, run: BenchmarkRun, jobs: list[BenchmarkJob]) -> None:
        ...

    async def record(self, result: BenchmarkResult) -> bool:
        ...

    async def finalize_run(self, run: BenchmarkRun) -> None:
        ...

    async def latest(self, target_name: Optional[str] = None, limit: int = 20) -> list[BenchmarkResult]:
        ...

    async def range(
        self,
        job_id: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> list[MetricSample]:
        ...

    async def prune(self, older_than: datetime) -> dict[str, int]:
        ...
