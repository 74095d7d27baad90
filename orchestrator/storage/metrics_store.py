"""Embedded metrics store using SQLite and YAML run snapshots."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiosqlite

from common.errors import StoreWriteError
from common.models.job import BenchmarkJob, JobState, TERMINAL_STATES
from common.models.metrics import BenchmarkResult, LatencyStats, MetricSample
from common.models.run import BenchmarkRun, JobRequest, RunStatus
from common.utils import ensure_dir, save_yaml, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

# SQLite schema
SCHEMA_SQL = """
-- Benchmark runs
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    name TEXT,
    status TEXT DEFAULT 'pending',
    requests JSON,
    job_count INTEGER,
    degraded INTEGER DEFAULT 0,
    store_errors JSON,
    config_path TEXT,
    submitted_at TIMESTAMP NOT NULL,
    finished_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_runs_submitted ON runs(submitted_at);

-- Expanded jobs
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    target_name TEXT NOT NULL,
    profile_name TEXT NOT NULL,
    block_size TEXT NOT NULL,
    state TEXT DEFAULT 'queued',
    timeout REAL,
    params JSON,
    created_at TIMESTAMP NOT NULL,
    finished_at TIMESTAMP,
    FOREIGN KEY (run_id) REFERENCES runs(id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id);

-- Terminal job summaries, one per job
CREATE TABLE IF NOT EXISTS results (
    job_id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    target_name TEXT NOT NULL,
    profile_name TEXT NOT NULL,
    block_size TEXT NOT NULL,
    status TEXT NOT NULL,
    exit_code INTEGER,
    duration_seconds REAL,
    total_iops REAL,
    total_bandwidth_bps INTEGER,
    mean_latency_us REAL,
    parse_warnings INTEGER DEFAULT 0,
    error_message TEXT,
    started_at TIMESTAMP,
    finished_at TIMESTAMP NOT NULL,
    data JSON NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_results_target ON results(target_name, finished_at);
CREATE INDEX IF NOT EXISTS idx_results_finished ON results(finished_at);

-- Periodic samples
CREATE TABLE IF NOT EXISTS samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    offset_ms INTEGER NOT NULL,
    bandwidth_bps INTEGER,
    iops REAL,
    latency JSON,
    recorded_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_samples_job ON samples(job_id, offset_ms);
CREATE INDEX IF NOT EXISTS idx_samples_recorded ON samples(recorded_at);
"""

_FINAL_RUN_STATUSES = tuple(s.value for s in RunStatus if s.is_final)
_TERMINAL_JOB_STATES = tuple(s.value for s in TERMINAL_STATES)


class MetricsStore:
    """Runs, jobs, results and samples in one SQLite file.

    Writes go through one lock and one transaction each. Reads open their
    own connection and take no lock; the WAL journal keeps them from
    blocking writers.
    """

    def __init__(self, database_path: Union[str, Path]):
        self.db_path = Path(database_path)
        self.runs_path = self.db_path.parent / "runs"
        self._write_lock = asyncio.Lock()
        self._init_directories()
        self._init_database_sync()

    def _init_directories(self) -> None:
        ensure_dir(self.db_path.parent)
        ensure_dir(self.runs_path)

    def _init_database_sync(self) -> None:
        """Initialize SQLite database synchronously."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
            logger.info(f"Initialized SQLite database at {self.db_path}")
        finally:
            conn.close()

    @asynccontextmanager
    async def _transaction(self, what: str) -> AsyncIterator[aiosqlite.Connection]:
        """One serialized write transaction. Storage failures become StoreWriteError."""
        async with self._write_lock:
            try:
                async with aiosqlite.connect(self.db_path) as conn:
                    yield conn
                    await conn.commit()
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Store write failed ({what}): {e}")
                raise StoreWriteError(f"{what}: {e}") from e

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            yield conn

    def snapshot_path(self, run_id: str) -> Path:
        return self.runs_path / f"{run_id}.yaml"

    # ==================== Runs ====================

    async def create_run(self, run: BenchmarkRun, jobs: list[BenchmarkJob]) -> None:
        """Persist a submitted run, its queued jobs and a YAML config snapshot."""
        config_path = self.snapshot_path(run.id)
        snapshot = {
            "run": {
                "id": run.id,
                "name": run.name,
                "submitted_at": to_db_timestamp(run.submitted_at),
            },
            "requests": [r.model_dump() for r in run.requests],
            "jobs": [
                {
                    "id": job.id,
                    "target": job.target.model_dump(mode="json"),
                    "profile": job.profile_name,
                    "timeout": job.timeout,
                    "params": job.params.model_dump(mode="json", exclude_none=True),
                }
                for job in jobs
            ],
        }
        if run.host is not None:
            snapshot["host"] = run.host.model_dump(mode="json")

        try:
            async with self._transaction(f"create run {run.id}") as conn:
                await conn.execute("""
                    INSERT INTO runs (id, name, status, requests, job_count, config_path, submitted_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    run.id,
                    run.name,
                    run.status.value,
                    json.dumps([r.model_dump() for r in run.requests]),
                    len(jobs),
                    str(config_path),
                    to_db_timestamp(run.submitted_at),
                ))
                await conn.executemany("""
                    INSERT INTO jobs (
                        id, run_id, target_name, profile_name, block_size,
                        state, timeout, params, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        job.id,
                        run.id,
                        job.target.name,
                        job.profile_name,
                        job.block_size,
                        job.state.value,
                        job.timeout,
                        job.params.model_dump_json(),
                        to_db_timestamp(job.created_at),
                    )
                    for job in jobs
                ])
                save_yaml(config_path, snapshot)
        except StoreWriteError:
            config_path.unlink(missing_ok=True)
            raise

        logger.info(f"Created run {run.id} with {len(jobs)} jobs")

    async def finalize_run(self, run: BenchmarkRun) -> None:
        """Record a run's final status."""
        async with self._transaction(f"finalize run {run.id}") as conn:
            await conn.execute("""
                UPDATE runs SET
                    status = ?,
                    degraded = ?,
                    store_errors = ?,
                    finished_at = ?
                WHERE id = ?
            """, (
                run.status.value,
                1 if run.degraded else 0,
                json.dumps(run.store_errors),
                to_db_timestamp(run.finished_at or utcnow()),
                run.id,
            ))

        logger.info(f"Finalized run {run.id}: {run.status.value}")

    async def get_run(self, run_id: str) -> Optional[BenchmarkRun]:
        """Get run by ID."""
        async with self._read() as conn:
            cursor = await conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            cursor = await conn.execute(
                "SELECT id FROM jobs WHERE run_id = ? ORDER BY created_at, rowid", (run_id,)
            )
            job_ids = [r["id"] for r in await cursor.fetchall()]
        return self._row_to_run(row, job_ids)

    async def get_runs(self, limit: int = 50) -> list[BenchmarkRun]:
        """Get recent runs, newest first."""
        async with self._read() as conn:
            cursor = await conn.execute("""
                SELECT * FROM runs
                ORDER BY submitted_at DESC
                LIMIT ?
            """, (limit,))
            rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def get_job_states(self, run_id: str) -> dict[str, JobState]:
        """Persisted state of every job in a run."""
        async with self._read() as conn:
            cursor = await conn.execute(
                "SELECT id, state FROM jobs WHERE run_id = ? ORDER BY created_at, rowid", (run_id,)
            )
            rows = await cursor.fetchall()
        return {row["id"]: JobState(row["state"]) for row in rows}

    # ==================== Results ====================

    async def record(self, result: BenchmarkResult) -> bool:
        """Write a job's result once and set the job's terminal state.

        Returns False when a result for the job already exists; the stored
        result is left untouched.
        """
        async with self._transaction(f"record result of job {result.job_id}") as conn:
            cursor = await conn.execute("""
                INSERT OR IGNORE INTO results (
                    job_id, run_id, target_name, profile_name, block_size, status,
                    exit_code, duration_seconds, total_iops, total_bandwidth_bps,
                    mean_latency_us, parse_warnings, error_message, started_at,
                    finished_at, data
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.job_id,
                result.run_id,
                result.target_name,
                result.profile_name,
                result.block_size,
                result.status.value,
                result.exit_code,
                result.duration_seconds,
                result.total_iops,
                result.total_bandwidth_bps,
                result.mean_latency_us,
                result.parse_warnings,
                result.error_message,
                to_db_timestamp(result.started_at) if result.started_at else None,
                to_db_timestamp(result.finished_at),
                result.model_dump_json(),
            ))
            if cursor.rowcount == 0:
                logger.warning(f"Result for job {result.job_id} already recorded; ignoring duplicate")
                return False

            await conn.execute(
                "UPDATE jobs SET state = ?, finished_at = ? WHERE id = ?",
                (result.status.value, to_db_timestamp(result.finished_at), result.job_id),
            )

        logger.debug(f"Recorded result for job {result.job_id}: {result.status.value}")
        return True

    async def get_result(self, job_id: str) -> Optional[BenchmarkResult]:
        async with self._read() as conn:
            cursor = await conn.execute("SELECT data FROM results WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
        return BenchmarkResult.model_validate_json(row["data"]) if row else None

    async def get_results(self, run_id: str) -> list[BenchmarkResult]:
        """All results of one run."""
        async with self._read() as conn:
            cursor = await conn.execute(
                "SELECT data FROM results WHERE run_id = ? ORDER BY finished_at", (run_id,)
            )
            rows = await cursor.fetchall()
        return [BenchmarkResult.model_validate_json(row["data"]) for row in rows]

    async def latest(self, target_name: Optional[str] = None, limit: int = 20) -> list[BenchmarkResult]:
        """Most recent results, optionally for one target."""
        query = "SELECT data FROM results"
        params: list = []
        if target_name is not None:
            query += " WHERE target_name = ?"
            params.append(target_name)
        query += " ORDER BY finished_at DESC LIMIT ?"
        params.append(limit)

        async with self._read() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [BenchmarkResult.model_validate_json(row["data"]) for row in rows]

    # ==================== Samples ====================

    async def stream(self, sample: MetricSample) -> None:
        """Append one periodic sample."""
        async with self._transaction(f"stream sample of job {sample.job_id}") as conn:
            await conn.execute("""
                INSERT INTO samples (
                    job_id, run_id, kind, offset_ms, bandwidth_bps, iops, latency, recorded_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sample.job_id,
                sample.run_id,
                sample.kind.value,
                sample.offset_ms,
                sample.bandwidth_bps,
                sample.iops,
                sample.latency_us.model_dump_json() if sample.latency_us else None,
                to_db_timestamp(utcnow()),
            ))

    async def range(
        self,
        job_id: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> list[MetricSample]:
        """Samples of one job with start_ms <= offset <= end_ms, in delivery order."""
        query = "SELECT * FROM samples WHERE job_id = ?"
        params: list = [job_id]
        if start_ms is not None:
            query += " AND offset_ms >= ?"
            params.append(start_ms)
        if end_ms is not None:
            query += " AND offset_ms <= ?"
            params.append(end_ms)
        query += " ORDER BY offset_ms, id"

        async with self._read() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

        return [
            MetricSample(
                job_id=row["job_id"],
                run_id=row["run_id"],
                kind=row["kind"],
                offset_ms=row["offset_ms"],
                bandwidth_bps=row["bandwidth_bps"] or 0,
                iops=row["iops"] or 0,
                latency_us=LatencyStats.model_validate_json(row["latency"]) if row["latency"] else None,
            )
            for row in rows
        ]

    # ==================== Retention ====================

    async def prune(self, older_than: datetime) -> dict[str, int]:
        """Delete records strictly older than the cutoff.

        Results and samples go by their own timestamps. Runs and jobs go
        only once they are finished and nothing newer still refers to them.
        """
        cutoff = to_db_timestamp(older_than)
        run_marks = ",".join("?" * len(_FINAL_RUN_STATUSES))
        job_marks = ",".join("?" * len(_TERMINAL_JOB_STATES))
        expired_runs_where = f"""
            submitted_at < ? AND status IN ({run_marks})
            AND NOT EXISTS (SELECT 1 FROM jobs WHERE jobs.run_id = runs.id)
            AND NOT EXISTS (SELECT 1 FROM results WHERE results.run_id = runs.id)
            AND NOT EXISTS (SELECT 1 FROM samples WHERE samples.run_id = runs.id)
        """

        async with self._transaction("prune") as conn:
            counts = {}
            cursor = await conn.execute("DELETE FROM samples WHERE recorded_at < ?", (cutoff,))
            counts["samples"] = cursor.rowcount
            cursor = await conn.execute("DELETE FROM results WHERE finished_at < ?", (cutoff,))
            counts["results"] = cursor.rowcount
            cursor = await conn.execute(f"""
                DELETE FROM jobs WHERE created_at < ? AND state IN ({job_marks})
                AND NOT EXISTS (SELECT 1 FROM results WHERE results.job_id = jobs.id)
                AND NOT EXISTS (SELECT 1 FROM samples WHERE samples.job_id = jobs.id)
            """, (cutoff, *_TERMINAL_JOB_STATES))
            counts["jobs"] = cursor.rowcount

            cursor = await conn.execute(
                f"SELECT config_path FROM runs WHERE {expired_runs_where}",
                (cutoff, *_FINAL_RUN_STATUSES),
            )
            expired_snapshots = [row[0] for row in await cursor.fetchall() if row[0]]
            cursor = await conn.execute(
                f"DELETE FROM runs WHERE {expired_runs_where}",
                (cutoff, *_FINAL_RUN_STATUSES),
            )
            counts["runs"] = cursor.rowcount

            for config_path in expired_snapshots:
                Path(config_path).unlink(missing_ok=True)

        logger.info(
            f"Pruned records older than {cutoff}: "
            + ", ".join(f"{count} {table}" for table, count in counts.items())
        )
        return counts

    def _row_to_run(self, row: aiosqlite.Row, job_ids: Optional[list[str]] = None) -> BenchmarkRun:
        return BenchmarkRun(
            id=row["id"],
            name=row["name"],
            requests=[JobRequest(**r) for r in json.loads(row["requests"] or "[]")],
            job_ids=job_ids or [],
            status=RunStatus(row["status"]),
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            degraded=bool(row["degraded"]),
            store_errors=json.loads(row["store_errors"] or "[]"),
        )
