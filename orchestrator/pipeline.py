"""Pipeline facade: submit benchmark suites and query their results."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from common.log import configure_logging
from common.models.metrics import BenchmarkResult, MetricSample
from common.models.profile import WORKLOAD_MIXES
from common.models.run import RunResult
from common.utils import ensure_dir, utcnow
from orchestrator.config import Settings
from orchestrator.core.ports import BenchmarkExecutor
from orchestrator.core.scheduler import Orchestrator, RunHandle, RunSpec
from orchestrator.registry import Registry
from orchestrator.storage.metrics_store import MetricsStore
from runner.core.fio import FioExecutor, check_installation
from runner.core.hostinfo import collect_host_info
from runner.core.process import ProcessRunner

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything a pipeline needs, built once at startup and passed explicitly."""
    settings: Settings
    registry: Registry
    store: MetricsStore
    executor: BenchmarkExecutor
    runner: ProcessRunner

    @classmethod
    def from_settings(cls, settings: Settings, setup_logging: bool = False) -> "PipelineContext":
        """Validate the registry and open the store described by settings."""
        if setup_logging:
            configure_logging(
                settings.general.log_level,
                settings.general.log_format,
                settings.general.log_directory,
            )

        registry = Registry.from_settings(settings)
        store = MetricsStore(settings.general.database_path)
        runner = ProcessRunner(kill_grace_period=settings.storage.kill_grace_period)
        executor = FioExecutor(
            runner,
            test_directory=settings.storage.test_directory,
            log_directory=settings.general.log_directory,
            binary=settings.storage.fio.binary,
        )
        return cls(settings=settings, registry=registry, store=store, executor=executor, runner=runner)


class BenchmarkPipeline:
    """Single entry point for running suites and reading stored metrics."""

    def __init__(self, context: PipelineContext):
        self.context = context
        self.orchestrator = Orchestrator(
            context.registry,
            context.executor,
            context.store,
            context.settings,
            host_info=collect_host_info,
        )

    @property
    def store(self) -> MetricsStore:
        return self.context.store

    async def preflight(self) -> str:
        """Check that fio runs and create working directories. Returns fio's version."""
        settings = self.context.settings
        ensure_dir(settings.storage.test_directory)
        ensure_dir(settings.general.log_directory)
        return await check_installation(self.context.runner, settings.storage.fio.binary)

    async def submit_run(self, spec: RunSpec, name: Optional[str] = None) -> RunHandle:
        return await self.orchestrator.submit(spec, name=name)

    async def run_suite(
        self,
        spec: RunSpec,
        name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """Submit a run and wait for it; the run is cancelled if the wait times out."""
        handle = await self.submit_run(spec, name=name)
        try:
            return await handle.wait(timeout)
        except TimeoutError:
            logger.warning(f"Run {handle.run_id} did not finish within {timeout}s; cancelling")
            await handle.cancel()
            return await handle.wait()

    async def run_workload_mixes(
        self,
        targets: Iterable[str],
        name: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """Run every built-in workload mix against each target in one run."""
        spec = [(target, mix) for target in targets for mix in WORKLOAD_MIXES]
        return await self.run_suite(spec, name=name or "workload_mixes", timeout=timeout)

    async def get_latest(self, target_name: Optional[str] = None, limit: int = 20) -> list[BenchmarkResult]:
        return await self.store.latest(target_name, limit)

    async def export_range(
        self,
        job_id: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> list[MetricSample]:
        return await self.store.range(job_id, start_ms, end_ms)

    async def prune_expired(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Delete records older than the configured retention window."""
        retention = timedelta(days=self.context.settings.storage.retention_days)
        cutoff = (now or utcnow()) - retention
        return await self.store.prune(cutoff)

    async def close(self) -> None:
        await self.orchestrator.shutdown()

    async def __aenter__(self) -> "BenchmarkPipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
