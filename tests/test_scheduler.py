"""Tests for the orchestrator: admission, isolation, cancellation and store errors."""

import asyncio

import pytest

from common.errors import (
    ConfigValidationError,
    InvalidStateTransition,
    StoreWriteError,
    UnknownReferenceError,
)
from common.models.host import HostInfo
from common.models.job import JobState
from common.models.profile import JobProfile
from common.models.run import JobRequest, RunStatus
from fakes import FakeExecutor, InMemoryStore
from orchestrator.core.scheduler import (
    JobStateTable,
    Orchestrator,
    SlotCounter,
    effective_timeout,
)
from runner.core.fio import build_fio_args

# 3 targets x 2 block sizes
SIX_JOBS = [
    ("nvme_direct", "block_device_test"),
    ("dm_volume", "block_device_test"),
    ("xfs_mount", "block_device_test"),
]


async def wait_for_started(executor: FakeExecutor, count: int, timeout: float = 5.0) -> None:
    async def poll():
        while len(executor.started) < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


class TestEffectiveTimeout:
    """Tests for the per-job timeout policy."""

    def test_no_runtime_uses_default(self):
        assert effective_timeout(JobProfile(name="p"), 30, 5) == 30

    def test_short_runtime(self):
        assert effective_timeout(JobProfile(name="p", runtime=5), 30, 5) == 35

    def test_long_runtime(self):
        assert effective_timeout(JobProfile(name="p", runtime=100), 30, 5) == 105


@pytest.mark.asyncio
class TestJobStateTable:
    """Tests for lifecycle enforcement."""

    async def test_legal_path(self):
        table = JobStateTable()
        await table.add("job_1")

        for state in (JobState.ADMITTED, JobState.RUNNING, JobState.COMPLETED):
            await table.transition("job_1", state)

        assert table.get("job_1") == JobState.COMPLETED
        assert table.count(JobState.COMPLETED) == 1

    async def test_terminal_state_is_final(self):
        table = JobStateTable()
        await table.add("job_1")
        await table.transition("job_1", JobState.CANCELLED)

        with pytest.raises(InvalidStateTransition):
            await table.transition("job_1", JobState.RUNNING)
        with pytest.raises(InvalidStateTransition):
            await table.transition("job_1", JobState.FAILED)
        assert not await table.transition_from("job_1", (JobState.CANCELLED,), JobState.COMPLETED)

    async def test_queued_cannot_run_without_admission(self):
        table = JobStateTable()
        await table.add("job_1")

        with pytest.raises(InvalidStateTransition):
            await table.transition("job_1", JobState.RUNNING)

    async def test_transition_from_checks_current_state(self):
        table = JobStateTable()
        await table.add("job_1")

        assert not await table.transition_from("job_1", (JobState.ADMITTED,), JobState.RUNNING)
        assert await table.transition_from("job_1", (JobState.QUEUED,), JobState.ADMITTED)
        assert table.snapshot(["job_1"]) == {"job_1": JobState.ADMITTED}

    async def test_duplicate_add(self):
        table = JobStateTable()
        await table.add("job_1")

        with pytest.raises(ValueError):
            await table.add("job_1")

    async def test_slot_counter_limit(self):
        slots = SlotCounter(1)
        await slots.acquire()

        with pytest.raises(RuntimeError):
            await slots.acquire()

        await slots.release()
        assert slots.running == 0
        assert slots.peak == 1


@pytest.mark.asyncio
class TestOrchestrator:
    """Tests for run submission and execution."""

    @pytest.fixture
    def orchestrator(self, registry, fake_executor, memory_store, storage_settings):
        return Orchestrator(registry, fake_executor, memory_store, storage_settings)

    async def test_concurrency_limit(self, orchestrator, fake_executor, memory_store):
        handle = await orchestrator.submit(SIX_JOBS, name="limit")

        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert result.status == RunStatus.COMPLETED
        assert result.succeeded
        assert len(result.results) == 6
        assert fake_executor.max_active == 2
        assert orchestrator.peak_running == 2
        assert orchestrator.running_count == 0
        assert len(memory_store.samples) == 12
        assert len(memory_store.results) == 6
        assert memory_store.finalized == [handle.run_id]
        assert memory_store.runs[handle.run_id].status == RunStatus.COMPLETED

    async def test_jobs_start_in_submission_order(self, registry, fake_executor, memory_store, storage_settings):
        serial = storage_settings.model_copy(update={"max_concurrent_tests": 1})
        orchestrator = Orchestrator(registry, fake_executor, memory_store, serial)
        handle = await orchestrator.submit(SIX_JOBS)

        await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert fake_executor.started == handle.job_ids

    async def test_block_sizes_expand_to_jobs(self, orchestrator):
        handle = await orchestrator.submit([("nvme_direct", "block_device_test")])

        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert [job.block_size for job in handle.jobs()] == ["4k", "128k"]
        assert sorted(r.block_size for r in result.results.values()) == ["128k", "4k"]
        assert all(r.status == JobState.COMPLETED for r in result.results.values())

    async def test_spec_forms(self, orchestrator):
        handle = await orchestrator.submit([
            JobRequest(target="nvme_direct", profile="quick_read"),
            {"target": "dm_volume", "profile": "quick_read"},
            ("xfs_mount", "filesystem_test"),
        ])

        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert len(result.results) == 3

    async def test_identical_requests_use_separate_fio_files(self, orchestrator, fake_executor):
        request = [("xfs_mount", "filesystem_test"), ("xfs_mount", "filesystem_test")]
        first = await orchestrator.submit(request)
        second = await orchestrator.submit(request)

        await first.wait(timeout=10)
        await second.wait(timeout=10)
        await orchestrator.shutdown()

        jobs = first.jobs() + second.jobs()
        names = [build_fio_args(job)[0] for job in jobs]
        assert len(set(names)) == 4
        assert all("--directory=/mnt/data" in build_fio_args(job) for job in jobs)
        assert fake_executor.max_active == 2

    async def test_host_snapshot_is_taken_at_submission(self, registry, fake_executor, memory_store, storage_settings):
        calls = []

        def host_info():
            calls.append(1)
            return HostInfo(hostname="bench01", cpu_count=4)

        orchestrator = Orchestrator(registry, fake_executor, memory_store, storage_settings, host_info=host_info)
        handle = await orchestrator.submit([("nvme_direct", "quick_read")])
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert calls == [1]
        assert memory_store.runs[handle.run_id].host.hostname == "bench01"
        assert result.run.host.cpu_count == 4

    async def test_effective_timeout_on_jobs(self, orchestrator):
        handle = await orchestrator.submit([("nvme_direct", "quick_read"), ("nvme_direct", "broken_device")])

        quick, broken = handle.jobs()
        await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert quick.timeout == 35
        assert broken.timeout == 30

    async def test_failures_are_isolated(self, registry, memory_store, storage_settings):
        executor = FakeExecutor(fail_profiles=("broken_device",), timeout_profiles=("quick_read",))
        orchestrator = Orchestrator(registry, executor, memory_store, storage_settings)

        handle = await orchestrator.submit([
            ("nvme_direct", "block_device_test"),
            ("nvme_direct", "broken_device"),
            ("dm_volume", "quick_read"),
        ])
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        by_profile = {}
        for r in result.results.values():
            by_profile.setdefault(r.profile_name, []).append(r.status)
        assert by_profile["block_device_test"] == [JobState.COMPLETED, JobState.COMPLETED]
        assert by_profile["broken_device"] == [JobState.FAILED]
        assert by_profile["quick_read"] == [JobState.TIMED_OUT]
        assert result.status == RunStatus.PARTIALLY_FAILED
        assert len(result.failed_jobs) == 2

    async def test_executor_exception_fails_only_that_job(self, registry, memory_store, storage_settings):
        executor = FakeExecutor(raise_profiles=("broken_device",))
        orchestrator = Orchestrator(registry, executor, memory_store, storage_settings)

        handle = await orchestrator.submit([("nvme_direct", "broken_device"), ("nvme_direct", "quick_read")])
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        broken_id, quick_id = handle.job_ids
        assert result.results[broken_id].status == JobState.FAILED
        assert "executor blew up" in result.results[broken_id].error_message
        assert result.results[quick_id].status == JobState.COMPLETED
        assert result.status == RunStatus.PARTIALLY_FAILED
        assert executor.active == 0

    async def test_graceful_cancel(self, registry, memory_store, storage_settings):
        hold = asyncio.Event()
        executor = FakeExecutor(hold=hold)
        orchestrator = Orchestrator(registry, executor, memory_store, storage_settings)

        handle = await orchestrator.submit(SIX_JOBS)
        await wait_for_started(executor, 2)
        await handle.cancel(graceful=True)
        hold.set()
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        states = [result.results[job_id].status for job_id in handle.job_ids]
        assert states[:2] == [JobState.COMPLETED, JobState.COMPLETED]
        assert states[2:] == [JobState.CANCELLED] * 4
        assert all(
            result.results[job_id].error_message == "Cancelled before start"
            for job_id in handle.job_ids[2:]
        )
        assert len(executor.started) == 2
        assert result.status == RunStatus.CANCELLED
        assert result.run.cancel_requested

    async def test_cancel_terminates_running_jobs(self, registry, memory_store, storage_settings):
        executor = FakeExecutor(hold=asyncio.Event())
        orchestrator = Orchestrator(registry, executor, memory_store, storage_settings)

        handle = await orchestrator.submit(SIX_JOBS)
        await wait_for_started(executor, 2)
        await handle.cancel()
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert all(r.status == JobState.CANCELLED for r in result.results.values())
        assert len(result.results) == 6
        assert len(executor.started) == 2
        assert result.status == RunStatus.CANCELLED
        assert handle.done

    async def test_cancel_finished_run_is_noop(self, orchestrator):
        handle = await orchestrator.submit([("nvme_direct", "quick_read")])
        await handle.wait(timeout=10)

        await handle.cancel()
        await orchestrator.shutdown()

        assert handle.status == RunStatus.COMPLETED

    async def test_unknown_run(self, orchestrator):
        with pytest.raises(UnknownReferenceError):
            await orchestrator.cancel("run_missing")

    async def test_shutdown_cancels_unfinished_runs(self, registry, memory_store, storage_settings):
        executor = FakeExecutor(hold=asyncio.Event())
        orchestrator = Orchestrator(registry, executor, memory_store, storage_settings)

        handle = await orchestrator.submit(SIX_JOBS)
        await wait_for_started(executor, 2)
        await orchestrator.shutdown()

        assert not orchestrator.is_running
        assert handle.status == RunStatus.CANCELLED
        assert all(state == JobState.CANCELLED for state in handle.snapshot().values())

    async def test_progress_keeps_latest_sample(self, orchestrator):
        handle = await orchestrator.submit([("nvme_direct", "quick_read")])

        await handle.wait(timeout=10)
        await orchestrator.shutdown()

        progress = handle.progress()
        assert list(progress) == handle.job_ids
        assert progress[handle.job_ids[0]].offset_ms == 2000

    async def test_unknown_references_are_rejected_before_persisting(self, orchestrator, memory_store):
        with pytest.raises(ConfigValidationError) as exc_info:
            await orchestrator.submit([("sda", "quick_read"), ("nvme_direct", "missing")])

        assert exc_info.value.errors == ["Unknown target: sda", "Unknown profile: missing"]
        assert memory_store.runs == {}
        assert not orchestrator.is_running

    async def test_empty_spec(self, orchestrator):
        with pytest.raises(ConfigValidationError, match="Run spec is empty"):
            await orchestrator.submit([])

    async def test_malformed_entries(self, orchestrator, memory_store):
        with pytest.raises(ConfigValidationError) as exc_info:
            await orchestrator.submit(["nvme_direct", ("nvme_direct",), {"target": "nvme_direct"}])

        assert len(exc_info.value.errors) == 3
        assert memory_store.runs == {}

    async def test_create_run_failure_spawns_nothing(self, registry, fake_executor, storage_settings):
        store = InMemoryStore(fail_create=1)
        orchestrator = Orchestrator(registry, fake_executor, store, storage_settings)

        with pytest.raises(StoreWriteError):
            await orchestrator.submit([("nvme_direct", "quick_read")])

        assert fake_executor.started == []
        assert not orchestrator.is_running


@pytest.mark.asyncio
class TestStoreErrors:
    """Tests for store write retries and degraded runs."""

    async def run_one(self, registry, store, storage_settings):
        orchestrator = Orchestrator(registry, FakeExecutor(), store, storage_settings)
        handle = await orchestrator.submit([("nvme_direct", "quick_read")])
        result = await handle.wait(timeout=10)
        await orchestrator.shutdown()
        return result

    async def test_single_failure_is_retried(self, registry, storage_settings):
        store = InMemoryStore(fail_record=1)

        result = await self.run_one(registry, store, storage_settings)

        assert result.status == RunStatus.COMPLETED
        assert not result.run.degraded
        assert len(store.results) == 1

    async def test_lost_result_marks_run_degraded(self, registry, storage_settings):
        store = InMemoryStore(fail_record=2)

        result = await self.run_one(registry, store, storage_settings)

        assert result.status == RunStatus.COMPLETED
        assert result.run.degraded
        assert len(result.run.store_errors) == 1
        assert "disk full" in result.run.store_errors[0]
        assert not result.succeeded
        assert store.results == {}
        assert store.runs[result.run.id].degraded

    async def test_lost_sample_marks_run_degraded(self, registry, storage_settings):
        store = InMemoryStore(fail_stream=2)

        result = await self.run_one(registry, store, storage_settings)

        assert result.run.degraded
        assert len(store.samples) == 1
        assert len(store.results) == 1

    async def test_full_settings_are_accepted(self, registry, settings, memory_store):
        orchestrator = Orchestrator(registry, FakeExecutor(), memory_store, settings)

        handle = await orchestrator.submit([("nvme_direct", "block_device_test")])
        await handle.wait(timeout=10)
        await orchestrator.shutdown()

        assert orchestrator.settings.max_concurrent_tests == 2
        assert all(job.params.runtime == 1 for job in handle.jobs())
