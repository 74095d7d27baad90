"""In-memory doubles for the orchestrator's ports, plus canned fio output."""

from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime
from typing import Optional

from common.errors import StoreWriteError
from common.models.job import BenchmarkJob, JobState
from common.models.metrics import BenchmarkResult, DirectionStats, LatencyStats, MetricKind, MetricSample
from common.models.run import BenchmarkRun
from common.utils import utcnow

# Shape of fio's --output-format=json report (trimmed to the fields we read)
FIO_REPORT = {
    "fio version": "fio-3.36",
    "timestamp": 1700000010,
    "timestamp_ms": 1700000010000,
    "jobs": [
        {
            "jobname": "block_device_test_nvme_direct_4k",
            "groupid": 0,
            "error": 0,
            "read": {
                "io_bytes": 1048576000,
                "io_kbytes": 1024000,
                "bw_bytes": 104857600,
                "bw": 102400,
                "iops": 25600.0,
                "runtime": 10000,
                "total_ios": 256000,
                "clat_ns": {
                    "min": 1000,
                    "max": 900000,
                    "mean": 38000.0,
                    "percentile": {
                        "50.000000": 36000,
                        "90.000000": 50000,
                        "95.000000": 60000,
                        "99.000000": 90000,
                        "99.900000": 200000,
                    },
                },
                "lat_ns": {"min": 1200, "max": 1000000, "mean": 40000.0},
            },
            "write": {
                "io_bytes": 524288000,
                "io_kbytes": 512000,
                "bw_bytes": 52428800,
                "bw": 51200,
                "iops": 12800.0,
                "runtime": 10000,
                "total_ios": 128000,
                "clat_ns": {
                    "min": 1500,
                    "max": 1900000,
                    "mean": 78000.0,
                    "percentile": {
                        "50.000000": 70000,
                        "99.000000": 120000,
                    },
                },
                "lat_ns": {"min": 2000, "max": 2000000, "mean": 80000.0},
            },
            "trim": {
                "io_bytes": 0,
                "bw_bytes": 0,
                "bw": 0,
                "iops": 0.0,
                "runtime": 0,
                "total_ios": 0,
                "lat_ns": {"min": 0, "max": 0, "mean": 0.0},
            },
        }
    ],
}


def status_report(runtime_ms: int) -> dict:
    """Interim report as printed by --status-interval, counters scaled to runtime_ms."""
    report = copy.deepcopy(FIO_REPORT)
    full_runtime = report["jobs"][0]["read"]["runtime"]
    report["timestamp_ms"] = FIO_REPORT["timestamp_ms"] - full_runtime + runtime_ms
    report["timestamp"] = report["timestamp_ms"] // 1000
    for ddir in ("read", "write"):
        stats = report["jobs"][0][ddir]
        for key in ("io_bytes", "io_kbytes", "total_ios"):
            stats[key] = stats[key] * runtime_ms // full_runtime
        stats["runtime"] = runtime_ms
    return report


# Two interim reports one second apart; each interval moves 100 MiB read, 50 MiB written
STATUS_REPORTS = [status_report(1000), status_report(2000)]

MALFORMED_LINES = [
    '{"jobs": [{"jobname": "block_device_test", "read": ',
    '{"fio version": "fio-3.36"}',
    "{oops}",
]

# fio log lines: msec, value, ddir, bs, offset. bw in KiB/s, lat in ns
BW_LOG_LINES = [
    "1000, 102400, 0, 4096, 0",
    "1000, 51200, 1, 4096, 0",
    "2001, 204800, 0, 4096, 0",
    "2001, 51200, 1, 4096, 0",
]
IOPS_LOG_LINES = [
    "1000, 25600, 0, 4096, 0",
    "1000, 12800, 1, 4096, 0",
    "2001, 51200, 0, 4096, 0",
    "2001, 12800, 1, 4096, 0",
]
LAT_LOG_LINES = [
    "1000, 40000, 0, 4096, 0",
    "1000, 80000, 1, 4096, 0",
    "2001, 38000, 0, 4096, 0",
    "2001, 79000, 1, 4096, 0",
]


def fio_report_lines(report: Optional[dict] = None) -> list[str]:
    """The report as fio prints it: pretty-printed over many lines."""
    return json.dumps(report or FIO_REPORT, indent=2).splitlines()


def status_output_lines() -> list[str]:
    """stdout of a job run with --status-interval: interim reports, then the final one."""
    lines = []
    for report in STATUS_REPORTS:
        lines += fio_report_lines(report)
    return lines + fio_report_lines()


FAKE_FIO_SCRIPT = """#!/bin/sh
# Stand-in for fio; FAKE_FIO_MODE selects the behaviour.
if [ "$1" = "--version" ]; then
    echo "fio-3.36"
    exit 0
fi
status=0
for arg in "$@"; do
    case "$arg" in
        --status-interval=*) status=1 ;;
    esac
done
case "${{FAKE_FIO_MODE:-ok}}" in
    fail)
        echo "fio: pid=1, err=2/file:filesetup.c:123, func=open, error=No such file or directory" >&2
        exit 1
        ;;
    hang)
        cat <<'REPORT'
{status_first}
REPORT
        cat <<'REPORT'
{status_second}
REPORT
        exec sleep 30
        ;;
    garbage)
        echo "fio: this is not a report"
        exit 0
        ;;
esac
echo "fio: starting jobs"
echo '{malformed}'
if [ "$status" = 1 ]; then
    cat <<'REPORT'
{status_first}
REPORT
    cat <<'REPORT'
{status_second}
REPORT
fi
cat <<'REPORT'
{report}
REPORT
for arg in "$@"; do
    case "$arg" in
        --write_bw_log=*) printf '%s\\n' {bw_log} > "${{arg#*=}}_bw.1.log" ;;
        --write_iops_log=*) printf '%s\\n' {iops_log} > "${{arg#*=}}_iops.1.log" ;;
        --write_lat_log=*) printf '%s\\n' {lat_log} > "${{arg#*=}}_lat.1.log" ;;
    esac
done
exit 0
"""


def _shell_words(lines: list[str]) -> str:
    return " ".join(f"'{line}'" for line in lines)


def fake_fio_script() -> str:
    return FAKE_FIO_SCRIPT.format(
        status_first="\n".join(fio_report_lines(STATUS_REPORTS[0])),
        status_second="\n".join(fio_report_lines(STATUS_REPORTS[1])),
        malformed=MALFORMED_LINES[0],
        report="\n".join(fio_report_lines()),
        bw_log=_shell_words(BW_LOG_LINES),
        iops_log=_shell_words(IOPS_LOG_LINES),
        lat_log=_shell_words(LAT_LOG_LINES),
    )


class FakeExecutor:
    """BenchmarkExecutor double with scripted per-profile behaviour.

    Jobs run for ``duration`` seconds, or until ``hold`` is set when one is
    given, and stop early when the cancel event fires.
    """

    def __init__(
        self,
        duration: float = 0.05,
        samples: int = 2,
        fail_profiles: tuple[str, ...] = (),
        timeout_profiles: tuple[str, ...] = (),
        raise_profiles: tuple[str, ...] = (),
        hold: Optional[asyncio.Event] = None,
    ):
        self.duration = duration
        self.samples = samples
        self.fail_profiles = fail_profiles
        self.timeout_profiles = timeout_profiles
        self.raise_profiles = raise_profiles
        self.hold = hold

        self.started: list[str] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, job: BenchmarkJob, on_sample, cancel_event: Optional[asyncio.Event] = None) -> BenchmarkResult:
        self.started.append(job.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        started_at = utcnow()
        try:
            if job.profile_name in self.raise_profiles:
                raise RuntimeError("executor blew up")

            for i in range(self.samples):
                await on_sample(MetricSample(
                    job_id=job.id,
                    run_id=job.run_id,
                    kind=MetricKind.READ,
                    offset_ms=(i + 1) * 1000,
                    bandwidth_bps=1024 * (i + 1),
                    iops=10.0 * (i + 1),
                ))

            cancelled = await self._wait(cancel_event)
        finally:
            self.active -= 1

        if cancelled:
            status = JobState.CANCELLED
        elif job.profile_name in self.fail_profiles:
            status = JobState.FAILED
        elif job.profile_name in self.timeout_profiles:
            status = JobState.TIMED_OUT
        else:
            status = JobState.COMPLETED

        return BenchmarkResult(
            job_id=job.id,
            run_id=job.run_id,
            target_name=job.target.name,
            profile_name=job.profile_name,
            block_size=job.block_size,
            status=status,
            exit_code=0 if status == JobState.COMPLETED else 1,
            started_at=started_at,
            sample_count=self.samples,
            read=DirectionStats(
                io_bytes=4096 * 100,
                total_ios=100,
                bandwidth_bps=409600,
                iops=100.0,
                latency_us=LatencyStats(avg=50.0, p99=120.0),
            ),
            error_message=None if status == JobState.COMPLETED else f"{status.value} by fake",
        )

    async def _wait(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Return True if the job was cancelled while waiting."""
        waiters = []
        if self.hold is not None:
            waiters.append(asyncio.ensure_future(self.hold.wait()))
        else:
            waiters.append(asyncio.ensure_future(asyncio.sleep(self.duration)))
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.append(cancel_waiter)

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return cancel_waiter is not None and cancel_waiter in done


class InMemoryStore:
    """ResultStore double. ``fail_*`` counters make the next N writes fail."""

    def __init__(self, fail_stream: int = 0, fail_record: int = 0, fail_create: int = 0):
        self.fail_stream = fail_stream
        self.fail_record = fail_record
        self.fail_create = fail_create

        self.runs: dict[str, BenchmarkRun] = {}
        self.jobs: dict[str, BenchmarkJob] = {}
        self.results: dict[str, BenchmarkResult] = {}
        self.samples: list[MetricSample] = []
        self.finalized: list[str] = []

    async def create_run(self, run: BenchmarkRun, jobs: list[BenchmarkJob]) -> None:
        if self.fail_create > 0:
            self.fail_create -= 1
            raise StoreWriteError("create_run: database is locked")
        self.runs[run.id] = run.model_copy(deep=True)
        for job in jobs:
            self.jobs[job.id] = job

    async def record(self, result: BenchmarkResult) -> bool:
        if self.fail_record > 0:
            self.fail_record -= 1
            raise StoreWriteError("record: disk full")
        if result.job_id in self.results:
            return False
        self.results[result.job_id] = result
        return True

    async def stream(self, sample: MetricSample) -> None:
        if self.fail_stream > 0:
            self.fail_stream -= 1
            raise StoreWriteError("stream: disk full")
        self.samples.append(sample)

    async def finalize_run(self, run: BenchmarkRun) -> None:
        self.runs[run.id] = run.model_copy(deep=True)
        self.finalized.append(run.id)

    async def latest(self, target_name: Optional[str] = None, limit: int = 20) -> list[BenchmarkResult]:
        results = [r for r in self.results.values() if target_name is None or r.target_name == target_name]
        return sorted(results, key=lambda r: r.finished_at, reverse=True)[:limit]

    async def range(self, job_id: str, start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> list[MetricSample]:
        return [
            s for s in self.samples
            if s.job_id == job_id
            and (start_ms is None or s.offset_ms >= start_ms)
            and (end_ms is None or s.offset_ms <= end_ms)
        ]

    async def prune(self, older_than: datetime) -> dict[str, int]:
        expired = [job_id for job_id, r in self.results.items() if r.finished_at < older_than]
        for job_id in expired:
            del self.results[job_id]
        return {"results": len(expired)}
