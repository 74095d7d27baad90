"""fio command construction and job execution."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from common.errors import OutputParseError, ProcessLaunchError, ProcessTimeout
from common.models.job import BenchmarkJob, JobState
from common.models.metrics import BenchmarkResult, MetricSample
from common.utils import ensure_dir, format_size, sanitize_filename, utcnow
from runner.core.parser import LOG_TYPES, FioOutputParser
from runner.core.process import OutcomeKind, ProcessHandle, ProcessOutcome, ProcessRunner

logger = logging.getLogger(__name__)

SampleCallback = Callable[[MetricSample], Awaitable[None]]

# Characters of stderr kept on a result
STDERR_RESULT_CHARS = 2000


def build_fio_args(job: BenchmarkJob, output_dir: Optional[Path] = None) -> list[str]:
    """Build the fio argument list for one expanded job."""
    params = job.params
    target = job.target

    args = [f"--name={job.fio_name}"]
    if target.is_filesystem:
        args.append(f"--directory={target.path}")
        if "unlink" not in params.extra_options:
            args.append("--unlink=1")
    else:
        args.append(f"--filename={target.path}")

    args += [
        f"--ioengine={params.ioengine}",
        f"--rw={params.rw}",
    ]
    if params.rwmixread is not None:
        args.append(f"--rwmixread={params.rwmixread}")

    args += [
        f"--bs={params.bs}",
        f"--size={params.size}",
        f"--numjobs={params.numjobs}",
        f"--iodepth={params.iodepth}",
        f"--direct={1 if params.direct else 0}",
    ]
    if params.buffered is not None:
        args.append(f"--buffered={1 if params.buffered else 0}")
    if params.verify:
        args.append(f"--verify={params.verify}")
    if params.runtime:
        args.append(f"--runtime={params.runtime}")
    if params.time_based:
        args.append("--time_based")
    if params.group_reporting:
        args.append("--group_reporting")
    if params.randrepeat is not None:
        args.append(f"--randrepeat={params.randrepeat}")

    logs = {
        "write_bw_log": params.write_bw_log,
        "write_lat_log": params.write_lat_log,
        "write_iops_log": params.write_iops_log,
    }
    if any(logs.values()):
        prefix = (output_dir or Path(".")) / job.id
        for option, enabled in logs.items():
            if enabled:
                args.append(f"--{option}={prefix}")
        args.append(f"--log_avg_msec={params.log_avg_msec}")

    if params.status_interval:
        args.append(f"--status-interval={params.status_interval}")

    for key, value in sorted(params.extra_options.items()):
        if isinstance(value, bool):
            value = 1 if value else 0
        args.append(f"--{key}={value}")

    args.append("--output-format=json")
    return args


async def check_installation(
    runner: ProcessRunner,
    binary: str = "fio",
    timeout: float = 10.0,
) -> str:
    """Return fio's version string; raise ProcessLaunchError if fio is unusable."""
    logger.debug(f"Checking {binary} installation")

    handle = await runner.run(binary, ["--version"], timeout=timeout)
    lines = [line async for line in handle.lines()]
    outcome = await handle.wait()

    if outcome.kind == OutcomeKind.LAUNCH_FAILED:
        raise ProcessLaunchError(f"{binary} not found. Please install fio: {outcome.reason}")
    if not outcome.succeeded:
        raise ProcessLaunchError(
            f"{binary} --version failed ({outcome.kind.value}): {handle.stderr_text().strip()}"
        )

    version = "\n".join(lines).strip()
    logger.info(f"fio version: {version}")
    return version


class FioExecutor:
    """Run one benchmark job through fio and turn its output into a result."""

    def __init__(
        self,
        runner: ProcessRunner,
        test_directory: Union[str, Path],
        log_directory: Union[str, Path],
        binary: str = "fio",
    ):
        self.runner = runner
        self.test_directory = Path(test_directory)
        self.log_directory = Path(log_directory)
        self.binary = binary

    def job_log_dir(self, run_id: str) -> Path:
        return self.log_directory / "runs" / sanitize_filename(run_id)

    async def execute(
        self,
        job: BenchmarkJob,
        on_sample: SampleCallback,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BenchmarkResult:
        """Run fio for one job, streaming samples to on_sample in parse order."""
        started_at = utcnow()

        if cancel_event is not None and cancel_event.is_set():
            return self._result(job, JobState.CANCELLED, started_at, error_message="Cancelled before launch")

        log_dir = ensure_dir(self.job_log_dir(job.run_id))
        work_dir = ensure_dir(self.test_directory / sanitize_filename(job.target.name))
        args = build_fio_args(job, log_dir)

        logger.info(
            f"Running job {job.id}: {job.profile_name} bs={job.block_size} on {job.target.name} "
            f"(timeout {job.timeout:.0f}s)"
        )

        parser = FioOutputParser(job.id, job.run_id, log_bucket_ms=job.params.log_avg_msec)
        handle = await self.runner.run(self.binary, args, working_dir=work_dir, timeout=job.timeout)

        if handle.outcome is not None and handle.outcome.kind == OutcomeKind.LAUNCH_FAILED:
            error = ProcessLaunchError(f"Failed to launch {self.binary}: {handle.outcome.reason}")
            logger.error(f"Job {job.id}: {error}")
            return self._result(job, JobState.FAILED, started_at, error_message=str(error))

        watcher = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._watch_cancel(cancel_event, handle))

        sample_count = 0
        stdout_path = log_dir / f"{job.id}.stdout.log"
        try:
            with open(stdout_path, "w") as stdout_log:
                async for line in handle.lines():
                    stdout_log.write(line + "\n")
                    for sample in parser.feed(line):
                        # After cancellation remaining output is drained and discarded
                        if cancel_event is not None and cancel_event.is_set():
                            break
                        sample_count += 1
                        await on_sample(sample)
            outcome = await handle.wait()
        finally:
            if watcher is not None:
                watcher.cancel()
                await asyncio.gather(watcher, return_exceptions=True)
            await handle.close()

        stderr = handle.stderr_text()
        if stderr:
            (log_dir / f"{job.id}.stderr.log").write_text(stderr)

        if not (cancel_event is not None and cancel_event.is_set()):
            for sample in self._read_fio_logs(job, log_dir, parser):
                sample_count += 1
                await on_sample(sample)

        if parser.warnings:
            logger.warning(f"Job {job.id}: skipped {parser.warnings} malformed output lines")

        return self._result_from_outcome(job, outcome, parser, started_at, sample_count, stderr)

    def _read_fio_logs(self, job: BenchmarkJob, log_dir: Path, parser: FioOutputParser) -> list[MetricSample]:
        """Samples from the bw/iops/lat logs fio wrote for this job.

        Skipped when status reports already supplied the job's samples.
        """
        if job.params.status_interval:
            return []

        for log_type in LOG_TYPES:
            for path in sorted(log_dir.glob(f"{job.id}_{log_type}*.log")):
                with open(path) as log_file:
                    for line in log_file:
                        parser.feed_log(log_type, line)
        return parser.log_samples()

    async def _watch_cancel(self, cancel_event: asyncio.Event, handle: ProcessHandle) -> None:
        await cancel_event.wait()
        await handle.cancel()

    def _result_from_outcome(
        self,
        job: BenchmarkJob,
        outcome: ProcessOutcome,
        parser: FioOutputParser,
        started_at,
        sample_count: int,
        stderr: str,
    ) -> BenchmarkResult:
        common = dict(
            exit_code=outcome.exit_code,
            duration_seconds=outcome.duration_seconds,
            parse_warnings=parser.warnings,
            sample_count=sample_count,
            stderr_tail=stderr[-STDERR_RESULT_CHARS:] or None,
        )

        if outcome.kind == OutcomeKind.TIMED_OUT:
            error = ProcessTimeout(job.id, job.timeout)
            logger.warning(str(error))
            return self._result(job, JobState.TIMED_OUT, started_at, error_message=str(error), **common)

        if outcome.kind == OutcomeKind.KILLED:
            logger.info(f"Job {job.id} cancelled")
            return self._result(job, JobState.CANCELLED, started_at, error_message="Cancelled", **common)

        if outcome.exit_code != 0:
            last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
            message = f"{self.binary} exited with code {outcome.exit_code}: {last_line}"
            logger.error(f"Job {job.id} failed: {message}")
            return self._result(job, JobState.FAILED, started_at, error_message=message, **common)

        try:
            summary = parser.finish()
        except OutputParseError as e:
            logger.error(f"Job {job.id} failed: unparsable output: {e}")
            return self._result(
                job, JobState.FAILED, started_at, error_message=f"Unparsable output: {e}", **common
            )

        result = BenchmarkResult.from_summary(
            summary,
            job_id=job.id,
            run_id=job.run_id,
            target_name=job.target.name,
            profile_name=job.profile_name,
            block_size=job.block_size,
            status=JobState.COMPLETED,
            started_at=started_at,
            finished_at=utcnow(),
            **common,
        )
        logger.info(
            f"Job {job.id} completed - IOPS: {result.total_iops:.0f}, "
            f"BW: {format_size(result.total_bandwidth_bps)}/s, "
            f"Lat: {result.mean_latency_us:.2f} us"
        )
        return result

    def _result(
        self,
        job: BenchmarkJob,
        status: JobState,
        started_at,
        **kwargs,
    ) -> BenchmarkResult:
        return BenchmarkResult(
            job_id=job.id,
            run_id=job.run_id,
            target_name=job.target.name,
            profile_name=job.profile_name,
            block_size=job.block_size,
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            **kwargs,
        )
