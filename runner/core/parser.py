"""Incremental parser for fio output.

fio's stdout (``--output-format=json``) is treated as a mixed stream:

* JSON reports, either pretty printed (a line that is exactly ``{`` up to
  the line that balances it) or on one line. With ``--status-interval`` fio
  prints an interim report every interval and the final report last; the
  counters in each report are cumulative since the job started;
* anything else (fio notices, progress text), which is ignored.

A report only becomes an interim report once the next one has arrived, at
which point it is turned into one sample per active direction covering the
interval since the previous report. Whatever report is seen last is the
aggregate, decoded once by :meth:`FioOutputParser.finish`.

fio's own bandwidth, IOPS and latency logs (``--write_bw_log`` and
friends) are CSV, one ``msec, value, ddir, bs[, offset[, prio]]`` entry per
line. fio writes them when the job ends, so they are read back afterwards
through :meth:`FioOutputParser.feed_log` and :meth:`FioOutputParser.log_samples`.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, NamedTuple, Optional

from common.errors import OutputParseError
from common.models.metrics import (
    AggregateSummary,
    DirectionStats,
    LatencyStats,
    MetricKind,
    MetricSample,
)

logger = logging.getLogger(__name__)

MAX_WARNING_MESSAGES = 50

# Suffixes fio appends to the --write_*_log prefix
LOG_TYPES = ("bw", "iops", "lat")

# fio logs number directions 0/1/2
_LOG_DDIR = {
    "0": MetricKind.READ,
    "1": MetricKind.WRITE,
    "2": MetricKind.TRIM,
}

# fio percentile keys are formatted with six decimals
_PERCENTILE_KEYS = {
    "p50": "50.000000",
    "p90": "90.000000",
    "p95": "95.000000",
    "p99": "99.000000",
    "p999": "99.900000",
}


def _number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OutputParseError(f"{field} is not a number: {value!r}")
    if value < 0:
        raise OutputParseError(f"{field} is negative: {value!r}")
    return float(value)


def parse_latency(stats: dict) -> Optional[LatencyStats]:
    """Decode fio latency blocks into microseconds.

    Prefers total latency (``lat_ns``) for mean/min/max and completion
    latency (``clat_ns``) for percentiles, which is where fio reports them.
    Flat ``lat_us`` dicts are accepted as is.
    """
    if isinstance(stats.get("lat_us"), dict) and "lat_ns" not in stats:
        flat = stats["lat_us"]
        return LatencyStats(**{k: _number(v, f"lat_us.{k}") for k, v in flat.items() if k in LatencyStats.model_fields})

    lat = stats.get("lat_ns") if isinstance(stats.get("lat_ns"), dict) else None
    clat = stats.get("clat_ns") if isinstance(stats.get("clat_ns"), dict) else None
    if lat is None and clat is None:
        return None

    base = lat or clat
    latency = LatencyStats(
        avg=_number(base.get("mean", 0), "lat mean") / 1000,
        min=_number(base.get("min", 0), "lat min") / 1000,
        max=_number(base.get("max", 0), "lat max") / 1000,
    )

    percentiles = None
    for block in (clat, lat):
        if block and isinstance(block.get("percentile"), dict):
            percentiles = block["percentile"]
            break
    if percentiles:
        for field, key in _PERCENTILE_KEYS.items():
            if key in percentiles:
                setattr(latency, field, _number(percentiles[key], f"percentile {key}") / 1000)
    return latency


def parse_direction(stats: dict) -> DirectionStats:
    """Decode one direction block (``read``/``write``/``trim``) of a fio job."""
    if not isinstance(stats, dict):
        raise OutputParseError(f"direction block is not an object: {stats!r}")

    if "bw_bytes" in stats:
        bandwidth = _number(stats["bw_bytes"], "bw_bytes")
    else:
        # Older fio releases only report KiB/s
        bandwidth = _number(stats.get("bw", 0), "bw") * 1024

    if "io_bytes" in stats:
        io_bytes = _number(stats["io_bytes"], "io_bytes")
    else:
        io_bytes = _number(stats.get("io_kbytes", 0), "io_kbytes") * 1024

    return DirectionStats(
        io_bytes=int(io_bytes),
        total_ios=int(_number(stats.get("total_ios", 0), "total_ios")),
        bandwidth_bps=int(bandwidth),
        iops=_number(stats.get("iops", 0), "iops"),
        runtime_ms=int(_number(stats.get("runtime", 0), "runtime")),
        latency_us=parse_latency(stats) or LatencyStats(),
    )


def _merge_directions(parts: list[DirectionStats]) -> DirectionStats:
    """Combine per-job statistics of one direction."""
    active = [p for p in parts if not p.is_empty]
    if not active:
        return DirectionStats()
    if len(active) == 1:
        return active[0]

    total_ios = sum(p.total_ios for p in active)
    weights = [p.total_ios if total_ios else 1 for p in active]
    weight_sum = sum(weights)

    latency = LatencyStats(
        avg=sum(p.latency_us.avg * w for p, w in zip(active, weights)) / weight_sum,
        min=min(p.latency_us.min for p in active),
        max=max(p.latency_us.max for p in active),
        p50=max(p.latency_us.p50 for p in active),
        p90=max(p.latency_us.p90 for p in active),
        p95=max(p.latency_us.p95 for p in active),
        p99=max(p.latency_us.p99 for p in active),
        p999=max(p.latency_us.p999 for p in active),
    )
    return DirectionStats(
        io_bytes=sum(p.io_bytes for p in active),
        total_ios=total_ios,
        bandwidth_bps=sum(p.bandwidth_bps for p in active),
        iops=sum(p.iops for p in active),
        runtime_ms=max(p.runtime_ms for p in active),
        latency_us=latency,
    )


def parse_aggregate(document: dict) -> AggregateSummary:
    """Decode fio's JSON report into totals per direction."""
    jobs = document.get("jobs") if isinstance(document, dict) else None
    if not isinstance(jobs, list) or not jobs:
        raise OutputParseError("aggregate report has no jobs")

    parts: dict[MetricKind, list[DirectionStats]] = {kind: [] for kind in MetricKind}
    total_errors = 0
    for job in jobs:
        if not isinstance(job, dict):
            raise OutputParseError(f"job entry is not an object: {job!r}")
        for kind in MetricKind:
            if kind.value in job:
                parts[kind].append(parse_direction(job[kind.value]))
        total_errors += int(job.get("error", 0) or 0)

    return AggregateSummary(
        read=_merge_directions(parts[MetricKind.READ]),
        write=_merge_directions(parts[MetricKind.WRITE]),
        trim=_merge_directions(parts[MetricKind.TRIM]),
        total_errors=total_errors,
        fio_version=document.get("fio version"),
        job_count=len(jobs),
    )


class LogEntry(NamedTuple):
    """One line of a fio bandwidth, IOPS or latency log."""
    time_ms: int
    value: float
    kind: MetricKind


def parse_log_line(line: str) -> LogEntry:
    """Decode one fio log line. Raises OutputParseError when malformed."""
    fields = [field.strip() for field in line.split(",")]
    if len(fields) < 3:
        raise OutputParseError("log entry has fewer than 3 fields", line=line)

    kind = _LOG_DDIR.get(fields[2])
    if kind is None:
        raise OutputParseError(f"log entry has unknown direction: {fields[2]!r}", line=line)

    try:
        time_ms = int(fields[0])
        value = float(fields[1])
    except ValueError as e:
        raise OutputParseError(f"log entry is not numeric: {e}", line=line) from e
    if time_ms < 0 or value < 0:
        raise OutputParseError("log entry is negative", line=line)
    return LogEntry(time_ms, value, kind)


def interval_sample(
    kind: MetricKind,
    current: DirectionStats,
    previous: DirectionStats,
    offset_ms: int,
    job_id: str,
    run_id: str,
) -> Optional[MetricSample]:
    """Sample for the interval between two cumulative reports of one direction.

    Returns None when the direction made no progress. Latency is the mean
    over the interval's I/Os only.
    """
    elapsed = current.runtime_ms - previous.runtime_ms
    if elapsed <= 0:
        return None

    ios = current.total_ios - previous.total_ios
    io_bytes = current.io_bytes - previous.io_bytes
    if ios < 0 or io_bytes < 0:
        raise OutputParseError(f"{kind.value} counters went backwards at {offset_ms}ms")

    latency = None
    if ios > 0:
        total = current.latency_us.avg * current.total_ios - previous.latency_us.avg * previous.total_ios
        latency = LatencyStats(avg=max(total / ios, 0))

    return MetricSample(
        job_id=job_id,
        run_id=run_id,
        kind=kind,
        offset_ms=offset_ms,
        bandwidth_bps=io_bytes * 1000 // elapsed,
        iops=ios * 1000 / elapsed,
        latency_us=latency,
    )


class FioOutputParser:
    """Stateful line-by-line parser for one job's output."""

    def __init__(self, job_id: str, run_id: str, log_bucket_ms: int = 1000):
        self.job_id = job_id
        self.run_id = run_id
        self.warnings = 0
        self.warning_messages: list[str] = []
        self.samples_parsed = 0

        self._report_lines: list[str] = []
        self._report_depth = 0
        self._in_report = False
        self._report_text: Optional[str] = None
        self._previous: dict[MetricKind, DirectionStats] = {}
        self._last_offset = -1

        self._log_bucket_ms = max(log_bucket_ms, 1)
        self._log_points: dict[tuple[int, MetricKind], dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )

    def feed(self, line: str) -> list[MetricSample]:
        """Consume one stdout line; return the samples it completes, usually none."""
        if self._in_report:
            return self._collect_report(line)

        stripped = line.strip()
        if stripped == "{":
            self._in_report = True
            self._report_lines = []
            self._report_depth = 0
            return self._collect_report(line)

        if not stripped.startswith("{"):
            return []

        try:
            record = json.loads(stripped)
        except json.JSONDecodeError as e:
            self._warn(f"undecodable JSON line: {e.msg}")
            return []
        if not isinstance(record, dict) or "jobs" not in record:
            self._warn("JSON line is not a fio report")
            return []
        return self._report_complete(stripped)

    def feed_log(self, log_type: str, line: str) -> None:
        """Consume one line of a fio log file of the given type (bw, iops or lat)."""
        if log_type not in LOG_TYPES:
            raise ValueError(f"unknown fio log type: {log_type}")

        stripped = line.strip()
        if not stripped:
            return
        try:
            entry = parse_log_line(stripped)
        except OutputParseError as e:
            self._warn(str(e))
            return

        # Entries of several fio job instances land in the same window
        bucket = round(entry.time_ms / self._log_bucket_ms) * self._log_bucket_ms
        self._log_points[(bucket, entry.kind)][log_type].append(entry.value)

    def log_samples(self) -> list[MetricSample]:
        """Join the fed log entries into samples in offset order, then forget them.

        Bandwidth and IOPS of concurrent fio job instances are summed,
        latencies are averaged.
        """
        order = list(MetricKind)
        samples: list[MetricSample] = []
        for offset, kind in sorted(self._log_points, key=lambda key: (key[0], order.index(key[1]))):
            if offset < self._last_offset:
                self._warn(f"log entry at {offset}ms is older than the last sample ({self._last_offset}ms)")
                continue

            values = self._log_points[(offset, kind)]
            latency = None
            if values.get("lat"):
                latency = LatencyStats(avg=sum(values["lat"]) / len(values["lat"]) / 1000)

            samples.append(MetricSample(
                job_id=self.job_id,
                run_id=self.run_id,
                kind=kind,
                offset_ms=offset,
                bandwidth_bps=int(sum(values.get("bw", [])) * 1024),
                iops=sum(values.get("iops", [])),
                latency_us=latency,
            ))
            self._last_offset = offset

        self._log_points.clear()
        self.samples_parsed += len(samples)
        return samples

    def finish(self) -> AggregateSummary:
        """Decode the last report seen. Raises OutputParseError if absent or broken."""
        if self._in_report:
            raise OutputParseError("aggregate report is truncated")
        if self._report_text is None:
            raise OutputParseError("no aggregate report in output")

        try:
            document = json.loads(self._report_text)
        except json.JSONDecodeError as e:
            raise OutputParseError(f"aggregate report is not valid JSON: {e.msg}") from e

        return parse_aggregate(document)

    def _collect_report(self, line: str) -> list[MetricSample]:
        self._report_lines.append(line)
        self._report_depth += _brace_delta(line)
        if self._report_depth > 0:
            return []

        self._in_report = False
        text = "\n".join(self._report_lines)
        self._report_lines = []
        return self._report_complete(text)

    def _report_complete(self, text: str) -> list[MetricSample]:
        previous, self._report_text = self._report_text, text
        if previous is None:
            return []
        return self._interim_samples(previous)

    def _interim_samples(self, text: str) -> list[MetricSample]:
        try:
            summary = parse_aggregate(json.loads(text))
        except json.JSONDecodeError as e:
            self._warn(f"interim report is not valid JSON: {e.msg}")
            return []
        except OutputParseError as e:
            self._warn(f"interim report: {e}")
            return []

        directions = {kind: getattr(summary, kind.value) for kind in MetricKind}
        offset = max(stats.runtime_ms for stats in directions.values())
        if offset <= self._last_offset:
            self._warn(f"interim report at {offset}ms does not advance past {self._last_offset}ms")
            return []

        samples: list[MetricSample] = []
        for kind, stats in directions.items():
            previous = self._previous.get(kind, DirectionStats())
            try:
                sample = interval_sample(kind, stats, previous, offset, self.job_id, self.run_id)
            except OutputParseError as e:
                self._warn(str(e))
                continue
            if sample is not None:
                samples.append(sample)

        self._previous = directions
        self._last_offset = offset
        self.samples_parsed += len(samples)
        return samples

    def _warn(self, message: str) -> None:
        self.warnings += 1
        if len(self.warning_messages) < MAX_WARNING_MESSAGES:
            self.warning_messages.append(message)
        logger.debug(f"Job {self.job_id}: skipped output: {message}")


def _brace_delta(line: str) -> int:
    """Net change in JSON object/array nesting for one line, ignoring strings."""
    depth = 0
    in_string = False
    escaped = False
    for ch in line:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
    return depth
