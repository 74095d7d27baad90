"""Job scheduler and run orchestration."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from common.errors import (
    ConfigValidationError,
    InvalidStateTransition,
    StoreWriteError,
    UnknownReferenceError,
)
from common.messaging.events import (
    Event,
    EventType,
    create_job_finished_event,
    create_job_started_event,
    create_run_cancel_event,
    create_store_error_event,
)
from common.models.host import HostInfo
from common.models.job import BenchmarkJob, JobParameters, JobState, can_transition
from common.models.metrics import BenchmarkResult, MetricSample
from common.models.profile import FioDefaults, JobProfile
from common.models.run import BenchmarkRun, JobRequest, RunResult, RunStatus, derive_run_status
from common.utils import format_duration, utcnow
from orchestrator.config import Settings, StorageSettings
from orchestrator.core.ports import BenchmarkExecutor, ResultStore
from orchestrator.registry import Registry

logger = logging.getLogger(__name__)

RunSpec = Iterable[Union[JobRequest, dict, tuple]]

ORCHESTRATOR_SOURCE = "orchestrator"


def effective_timeout(profile: JobProfile, default_timeout: float, grace_margin: float) -> float:
    """Per-job timeout: the default, or the larger of the default and the
    profile's own runtime plus a grace margin for fio's shutdown."""
    if profile.runtime is None:
        return default_timeout
    return max(default_timeout, profile.runtime) + grace_margin


class JobStateTable:
    """Current state of every job, changed only through legal transitions."""

    def __init__(self):
        self._states: dict[str, JobState] = {}
        self._lock = asyncio.Lock()

    async def add(self, job_id: str) -> None:
        async with self._lock:
            if job_id in self._states:
                raise ValueError(f"Job {job_id} already registered")
            self._states[job_id] = JobState.QUEUED

    async def transition(self, job_id: str, requested: JobState) -> JobState:
        """Move a job to a new state and return the previous one.

        Raises InvalidStateTransition for anything the lifecycle forbids,
        including a second terminal state.
        """
        async with self._lock:
            current = self._states[job_id]
            if not can_transition(current, requested):
                raise InvalidStateTransition(job_id, current.value, requested.value)
            self._states[job_id] = requested
            return current

    async def transition_from(
        self,
        job_id: str,
        expected: Iterable[JobState],
        requested: JobState,
    ) -> bool:
        """Transition only if the job is currently in one of the expected states."""
        async with self._lock:
            current = self._states[job_id]
            if current not in set(expected) or not can_transition(current, requested):
                return False
            self._states[job_id] = requested
            return True

    def get(self, job_id: str) -> JobState:
        return self._states[job_id]

    def snapshot(self, job_ids: Optional[Iterable[str]] = None) -> dict[str, JobState]:
        if job_ids is None:
            return dict(self._states)
        return {job_id: self._states[job_id] for job_id in job_ids}

    def count(self, state: JobState) -> int:
        return sum(1 for s in self._states.values() if s == state)


class SlotCounter:
    """Running-job counter bounded by the concurrency limit."""

    def __init__(self, limit: int):
        self.limit = limit
        self.running = 0
        self.peak = 0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            if self.running >= self.limit:
                raise RuntimeError(f"Concurrency limit of {self.limit} exceeded")
            self.running += 1
            self.peak = max(self.peak, self.running)

    async def release(self) -> None:
        async with self._lock:
            self.running -= 1


@dataclass
class _RunState:
    """Orchestrator-side bookkeeping for one run."""
    run: BenchmarkRun
    job_ids: list[str]
    stop_admission: bool = False
    kill_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished: set[str] = field(default_factory=set)
    results: dict[str, BenchmarkResult] = field(default_factory=dict)
    latest_samples: dict[str, MetricSample] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: Optional[RunResult] = None


class RunHandle:
    """Caller's view of a submitted run."""

    def __init__(self, orchestrator: "Orchestrator", run_id: str, job_ids: list[str]):
        self._orchestrator = orchestrator
        self.run_id = run_id
        self.job_ids = list(job_ids)

    def snapshot(self) -> dict[str, JobState]:
        """Current state of every member job."""
        return self._orchestrator.job_states(self.run_id)

    def jobs(self) -> list[BenchmarkJob]:
        return self._orchestrator.run_jobs(self.run_id)

    def progress(self) -> dict[str, MetricSample]:
        """Latest sample per job, for live progress."""
        return self._orchestrator.progress(self.run_id)

    @property
    def status(self) -> RunStatus:
        return self._orchestrator.run_status(self.run_id)

    @property
    def done(self) -> bool:
        return self.status.is_final

    async def wait(self, timeout: Optional[float] = None) -> RunResult:
        """Wait until every member job is terminal. Raises asyncio.TimeoutError."""
        return await self._orchestrator.wait_run(self.run_id, timeout)

    async def cancel(self, graceful: bool = False) -> None:
        await self._orchestrator.cancel(self.run_id, graceful=graceful)

    def __repr__(self) -> str:
        return f"RunHandle({self.run_id}, jobs={len(self.job_ids)})"


class Orchestrator:
    """Admit jobs from a FIFO queue onto a fixed worker pool.

    Workers report job progress as events on a queue; a single collector
    task owns run-level state and finalizes each run once all of its jobs
    are terminal.
    """

    def __init__(
        self,
        registry: Registry,
        executor: BenchmarkExecutor,
        store: ResultStore,
        settings: Union[Settings, StorageSettings, None] = None,
        defaults: Optional[FioDefaults] = None,
        host_info: Optional[Callable[[], HostInfo]] = None,
    ):
        if isinstance(settings, Settings):
            defaults = defaults or settings.storage.fio.defaults
            settings = settings.storage
        self.settings = settings or StorageSettings()
        self.registry = registry
        self.executor = executor
        self.store = store
        self.defaults = defaults or self.settings.fio.defaults
        self.host_info = host_info

        self._queue: asyncio.Queue = asyncio.Queue()
        self._events: asyncio.Queue = asyncio.Queue()
        self._states = JobStateTable()
        self._slots = SlotCounter(self.settings.max_concurrent_tests)

        self._jobs: dict[str, BenchmarkJob] = {}
        self._runs: dict[str, _RunState] = {}

        self._workers: list[asyncio.Task] = []
        self._collector: Optional[asyncio.Task] = None

    # ==================== Pool lifecycle ====================

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def running_count(self) -> int:
        return self._slots.running

    @property
    def peak_running(self) -> int:
        """Highest number of simultaneously running jobs seen so far."""
        return self._slots.peak

    def start(self) -> None:
        """Start the worker pool and the event collector."""
        if self._workers:
            return
        count = self.settings.max_concurrent_tests
        self._workers = [
            asyncio.create_task(self._worker(f"worker-{i}"), name=f"sysperf-worker-{i}")
            for i in range(count)
        ]
        self._collector = asyncio.create_task(self._collect(), name="sysperf-collector")
        logger.info(f"Started {count} workers")

    async def shutdown(self, cancel_running: bool = True) -> None:
        """Cancel unfinished runs and stop the worker pool."""
        if not self._workers:
            return

        for run_id, state in list(self._runs.items()):
            if not state.done.is_set():
                await self.cancel(run_id, graceful=not cancel_running)

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        self._events.put_nowait(None)
        if self._collector is not None:
            await self._collector
            self._collector = None

        logger.info("Orchestrator shut down")

    # ==================== Submission ====================

    def expand(self, run_id: str, request: JobRequest) -> list[BenchmarkJob]:
        """One job per block size of the requested profile."""
        target = self.registry.target(request.target)
        profile = self.registry.profile(request.profile)
        timeout = effective_timeout(
            profile, self.settings.default_timeout, self.settings.grace_margin
        )
        return [
            BenchmarkJob(
                run_id=run_id,
                target=target,
                profile_name=profile.name,
                params=JobParameters.from_profile(profile, block_size, self.defaults),
                timeout=timeout,
            )
            for block_size in profile.bs
        ]

    def _parse_spec(self, run_spec: RunSpec) -> list[JobRequest]:
        requests: list[JobRequest] = []
        errors: list[str] = []
        for index, item in enumerate(run_spec or []):
            try:
                if isinstance(item, JobRequest):
                    requests.append(item)
                elif isinstance(item, dict):
                    requests.append(JobRequest(**item))
                elif isinstance(item, str):
                    raise TypeError(f"expected a target/profile pair, got {item!r}")
                else:
                    target, profile = item
                    requests.append(JobRequest(target=target, profile=profile))
            except (ValidationError, TypeError, ValueError) as e:
                errors.append(f"run spec entry {index}: {e}")

        for request in requests:
            for kind, lookup, name in (
                ("target", self.registry.target, request.target),
                ("profile", self.registry.profile, request.profile),
            ):
                try:
                    lookup(name)
                except UnknownReferenceError as e:
                    errors.append(str(e))

        if errors:
            raise ConfigValidationError(errors)
        if not requests:
            raise ConfigValidationError("Run spec is empty")
        return requests

    async def submit(self, run_spec: RunSpec, name: Optional[str] = None) -> RunHandle:
        """Validate, expand, persist and enqueue a run.

        Every reference is checked before anything is persisted or spawned.
        """
        requests = self._parse_spec(run_spec)

        host = self.host_info() if self.host_info is not None else None
        run = BenchmarkRun(name=name, requests=requests, host=host)
        jobs = [job for request in requests for job in self.expand(run.id, request)]
        run.job_ids = [job.id for job in jobs]

        await self.store.create_run(run, jobs)

        for job in jobs:
            await self._states.add(job.id)
            self._jobs[job.id] = job
        run.status = RunStatus.RUNNING
        self._runs[run.id] = _RunState(run=run, job_ids=list(run.job_ids))

        self.start()
        for job in jobs:
            self._queue.put_nowait(job)

        logger.info(f"Submitted run {run.id}: {len(requests)} requests expanded to {len(jobs)} jobs")
        return RunHandle(self, run.id, run.job_ids)

    # ==================== Queries ====================

    def _run_state(self, run_id: str) -> _RunState:
        try:
            return self._runs[run_id]
        except KeyError:
            raise UnknownReferenceError("run", run_id) from None

    def job_states(self, run_id: str) -> dict[str, JobState]:
        return self._states.snapshot(self._run_state(run_id).job_ids)

    def run_jobs(self, run_id: str) -> list[BenchmarkJob]:
        return [self._jobs[job_id] for job_id in self._run_state(run_id).job_ids]

    def progress(self, run_id: str) -> dict[str, MetricSample]:
        return dict(self._run_state(run_id).latest_samples)

    def run_status(self, run_id: str) -> RunStatus:
        return self._run_state(run_id).run.status

    async def wait_run(self, run_id: str, timeout: Optional[float] = None) -> RunResult:
        state = self._run_state(run_id)
        await asyncio.wait_for(state.done.wait(), timeout=timeout)
        assert state.outcome is not None
        return state.outcome

    # ==================== Cancellation ====================

    async def cancel(self, run_id: str, graceful: bool = False) -> None:
        """Stop admitting the run's jobs; unless graceful, terminate running ones."""
        state = self._run_state(run_id)
        if state.done.is_set():
            logger.info(f"Run {run_id} already finished; nothing to cancel")
            return

        if not graceful:
            state.kill_event.set()
        if state.stop_admission:
            return
        state.stop_admission = True

        logger.info(f"Cancelling run {run_id} ({'graceful' if graceful else 'terminating running jobs'})")
        await self._post(create_run_cancel_event(run_id, graceful))

        for job_id in state.job_ids:
            if await self._states.transition_from(
                job_id, (JobState.QUEUED, JobState.ADMITTED), JobState.CANCELLED
            ):
                job = self._jobs[job_id]
                result = self._unstarted_result(job, JobState.CANCELLED, "Cancelled before start")
                await self._complete(job, result, ORCHESTRATOR_SOURCE)

    # ==================== Workers ====================

    async def _worker(self, name: str) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._process(job, name)
            finally:
                self._queue.task_done()

    async def _process(self, job: BenchmarkJob, worker: str) -> None:
        try:
            await self._run_job(job, worker)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error running job {job.id}: {e}", exc_info=True)
            await self._fail(job, worker, f"{type(e).__name__}: {e}")

    async def _run_job(self, job: BenchmarkJob, worker: str) -> None:
        state = self._runs[job.run_id]
        # Queued jobs of a cancelled run are finished by cancel()
        if state.stop_admission:
            return
        if not await self._states.transition_from(job.id, (JobState.QUEUED,), JobState.ADMITTED):
            return
        job.state = JobState.ADMITTED

        await self._slots.acquire()
        try:
            if not await self._states.transition_from(job.id, (JobState.ADMITTED,), JobState.RUNNING):
                return
            job.state = JobState.RUNNING
            job.started_at = utcnow()
            await self._post(create_job_started_event(worker, job.run_id, job.id))

            result = await self._execute(job, state)
        finally:
            await self._slots.release()

        await self._complete(job, result, worker)

    async def _execute(self, job: BenchmarkJob, state: _RunState) -> BenchmarkResult:
        async def on_sample(sample: MetricSample) -> None:
            state.latest_samples[sample.job_id] = sample
            await self._store_write(
                job.run_id, job.id, f"sample of job {job.id}", lambda: self.store.stream(sample)
            )

        try:
            result = await self.executor.execute(job, on_sample, state.kill_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Executor failed for job {job.id}: {e}", exc_info=True)
            return self._unstarted_result(job, JobState.FAILED, f"{type(e).__name__}: {e}")

        if not result.status.is_terminal:
            logger.error(f"Executor returned non-terminal status {result.status.value} for job {job.id}")
            result = result.model_copy(update={
                "status": JobState.FAILED,
                "error_message": f"Executor returned non-terminal status {result.status.value}",
            })
        return result

    async def _fail(self, job: BenchmarkJob, worker: str, message: str) -> None:
        current = self._states.get(job.id)
        if current.is_terminal:
            return
        if current == JobState.QUEUED:
            status = JobState.CANCELLED
        else:
            status = JobState.FAILED
        await self._complete(job, self._unstarted_result(job, status, message), worker)

    async def _complete(self, job: BenchmarkJob, result: BenchmarkResult, source: str) -> None:
        """Assign the terminal state, persist the result and report completion."""
        if self._states.get(job.id) != result.status:
            try:
                await self._states.transition(job.id, result.status)
            except InvalidStateTransition as e:
                logger.error(str(e))
                return
        job.state = result.status
        job.finished_at = result.finished_at
        job.error_message = result.error_message

        self._runs[job.run_id].results[job.id] = result
        await self._store_write(
            job.run_id, job.id, f"result of job {job.id}", lambda: self.store.record(result)
        )
        await self._post(create_job_finished_event(
            source, job.run_id, job.id, result.status, result.error_message
        ))

    def _unstarted_result(self, job: BenchmarkJob, status: JobState, message: str) -> BenchmarkResult:
        return BenchmarkResult(
            job_id=job.id,
            run_id=job.run_id,
            target_name=job.target.name,
            profile_name=job.profile_name,
            block_size=job.block_size,
            status=status,
            started_at=job.started_at,
            error_message=message,
        )

    async def _store_write(
        self,
        run_id: str,
        job_id: Optional[str],
        what: str,
        write: Callable[[], Awaitable[Any]],
    ) -> bool:
        """Write with one retry; report a lost write instead of raising."""
        error = await self._write_with_retry(what, write)
        if error is None:
            return True
        await self._post(create_store_error_event(ORCHESTRATOR_SOURCE, run_id, error, job_id))
        return False

    async def _write_with_retry(self, what: str, write: Callable[[], Awaitable[Any]]) -> Optional[str]:
        try:
            await write()
            return None
        except StoreWriteError as e:
            backoff = self.settings.store_retry_backoff
            logger.warning(f"Store write failed ({what}), retrying in {backoff}s: {e}")

        await asyncio.sleep(backoff)
        try:
            await write()
            return None
        except StoreWriteError as e:
            logger.error(f"Store write failed again ({what}); marking run degraded: {e}")
            return f"{what}: {e}"

    # ==================== Event collection ====================

    async def _post(self, event: Event) -> None:
        await self._events.put(event)

    async def _collect(self) -> None:
        while True:
            event = await self._events.get()
            if event is None:
                return
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Error handling {event.type.value} event: {e}", exc_info=True)

    async def _handle_event(self, event: Event) -> None:
        state = self._runs.get(event.run_id)
        if state is None:
            logger.warning(f"Event {event.type.value} for unknown run {event.run_id}")
            return
        run = state.run

        if event.type == EventType.JOB_STARTED:
            logger.debug(f"Job {event.job_id} started on {event.source}")

        elif event.type == EventType.STORE_ERROR:
            run.degraded = True
            run.store_errors.append(event.payload.get("message", "unknown store error"))

        elif event.type == EventType.RUN_CANCEL:
            run.cancel_requested = True

        elif event.type == EventType.JOB_FINISHED:
            logger.info(f"Job {event.job_id} finished: {event.payload.get('state')}")
            state.finished.add(event.job_id)
            if len(state.finished) == len(state.job_ids) and not state.done.is_set():
                await self._finalize(state)

    async def _finalize(self, state: _RunState) -> None:
        run = state.run
        run.status = derive_run_status(
            (self._states.get(job_id) for job_id in state.job_ids), run.cancel_requested
        )
        run.finished_at = utcnow()

        error = await self._write_with_retry(f"finalize run {run.id}", lambda: self.store.finalize_run(run))
        if error is not None:
            run.degraded = True
            run.store_errors.append(error)

        state.outcome = RunResult(run=run.model_copy(deep=True), results=dict(state.results))
        state.done.set()

        log = logger.warning if run.degraded else logger.info
        log(
            f"Run {run.id} finished in {format_duration(run.duration_seconds)}: {run.status.value}"
            + (f" (degraded: {len(run.store_errors)} lost writes)" if run.degraded else "")
        )
