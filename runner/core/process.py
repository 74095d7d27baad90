"""Process runner for external benchmark invocations."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Maximum length of one stdout line
STREAM_LIMIT = 16 * 1024 * 1024
# Bytes of stderr kept for error reporting
STDERR_TAIL_BYTES = 64 * 1024

_EOF = None


class OutcomeKind(str, Enum):
    """How a benchmark process ended."""
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    LAUNCH_FAILED = "launch_failed"
    KILLED = "killed"


class ProcessOutcome(BaseModel):
    """Terminal outcome of one process."""
    kind: OutcomeKind
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    duration_seconds: float = Field(default=0, ge=0)

    @classmethod
    def exited(cls, exit_code: int, duration_seconds: float = 0) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.EXITED, exit_code=exit_code, duration_seconds=duration_seconds)

    @classmethod
    def timed_out(cls, exit_code: Optional[int] = None, duration_seconds: float = 0) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.TIMED_OUT, exit_code=exit_code, duration_seconds=duration_seconds)

    @classmethod
    def launch_failed(cls, reason: str) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.LAUNCH_FAILED, reason=reason)

    @classmethod
    def killed(cls, exit_code: Optional[int] = None, duration_seconds: float = 0) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.KILLED, exit_code=exit_code, duration_seconds=duration_seconds)

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.EXITED and self.exit_code == 0


class ProcessHandle:
    """Owns one subprocess, its output channels and its watchdog."""

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        working_dir: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        kill_grace_period: float = 10.0,
    ):
        self.command = command
        self.args = list(args)
        self.working_dir = working_dir
        self.timeout = timeout
        self.kill_grace_period = kill_grace_period

        self.dropped_lines = 0

        self._process: Optional[asyncio.subprocess.Process] = None
        self._lines: asyncio.Queue = asyncio.Queue()
        self._stderr = bytearray()
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._outcome: Optional[ProcessOutcome] = None
        self._started_at: float = 0
        self._timed_out = False
        self._cancel_requested = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def outcome(self) -> Optional[ProcessOutcome]:
        return self._outcome

    @property
    def stderr(self) -> bytes:
        """Tail of the process's stderr collected so far."""
        return bytes(self._stderr)

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    async def start(self) -> None:
        """Spawn the process. Launch errors become a launch_failed outcome."""
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                cwd=str(self.working_dir) if self.working_dir else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"Failed to launch {self.command}: {reason}")
            self._outcome = ProcessOutcome.launch_failed(reason)
            self._lines.put_nowait(_EOF)
            return

        logger.info(f"Started {self.command} (pid {self._process.pid}, timeout {self.timeout}s)")
        logger.debug(f"Command line: {self.command} {' '.join(self.args)}")

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._supervisor = asyncio.create_task(self._supervise())

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded stdout lines until the stream closes."""
        while True:
            line = await self._lines.get()
            if line is _EOF:
                # Leave the marker for any later consumer
                self._lines.put_nowait(_EOF)
                return
            yield line

    async def wait(self) -> ProcessOutcome:
        """Wait for the terminal outcome."""
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)
        assert self._outcome is not None
        return self._outcome

    async def cancel(self) -> None:
        """Terminate the process group; the outcome becomes killed."""
        if not self.is_running:
            return
        logger.info(f"Cancelling {self.command} (pid {self.pid})")
        self._cancel_requested = True
        await self._terminate()

    async def close(self) -> None:
        """Make sure nothing is left running and all readers are done."""
        if self._process is None:
            return
        if self.is_running:
            await self.cancel()
        await self.wait()

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def __del__(self):
        process = self._process
        if process is not None and process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except OSError:
                pass

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        try:
            while True:
                try:
                    raw = await self._process.stdout.readline()
                except ValueError:
                    # Line longer than STREAM_LIMIT; the reader skips past it
                    self.dropped_lines += 1
                    logger.warning(f"Dropped over-long output line from pid {self.pid}")
                    continue
                if not raw:
                    break
                await self._lines.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        finally:
            self._lines.put_nowait(_EOF)

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            chunk = await self._process.stderr.read(4096)
            if not chunk:
                break
            self._stderr.extend(chunk)
            if len(self._stderr) > STDERR_TAIL_BYTES:
                del self._stderr[:-STDERR_TAIL_BYTES]

    async def _supervise(self) -> None:
        assert self._process is not None
        loop = asyncio.get_running_loop()
        deadline = None if self.timeout is None else self._started_at + self.timeout

        try:
            if self.timeout is None:
                await self._process.wait()
            else:
                remaining = max(deadline - loop.time(), 0)
                await asyncio.wait_for(self._process.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            self._timed_out = True
            logger.warning(f"{self.command} (pid {self.pid}) exceeded timeout of {self.timeout}s")
            await self._terminate()

        # An exit observed at or after the deadline still counts as a timeout
        if deadline is not None and loop.time() >= deadline:
            self._timed_out = True

        await self._drain_readers()

        duration = loop.time() - self._started_at
        exit_code = self._process.returncode
        if self._timed_out:
            self._outcome = ProcessOutcome.timed_out(exit_code, duration)
        elif self._cancel_requested:
            self._outcome = ProcessOutcome.killed(exit_code, duration)
        else:
            self._outcome = ProcessOutcome.exited(exit_code, duration)

        logger.info(f"{self.command} (pid {self.pid}) finished: {self._outcome.kind.value} (code {exit_code})")

    async def _drain_readers(self) -> None:
        readers = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=self.kill_grace_period)
        if pending:
            # Orphaned children still hold the pipes open
            logger.warning(f"Output pipes of pid {self.pid} still open after exit; killing process group")
            self._signal_group(signal.SIGKILL)
            await asyncio.wait(pending)

    async def _terminate(self) -> None:
        assert self._process is not None
        if self._process.returncode is not None:
            return

        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self.kill_grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"pid {self.pid} ignored SIGTERM for {self.kill_grace_period}s; sending SIGKILL")
            self._signal_group(signal.SIGKILL)
            await self._process.wait()

    def _signal_group(self, sig: int) -> None:
        assert self._process is not None
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Cannot signal process group {self._process.pid}: {e}")


class ProcessRunner:
    """Launch external benchmark processes."""

    def __init__(self, kill_grace_period: float = 10.0):
        self.kill_grace_period = kill_grace_period

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        working_dir: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> ProcessHandle:
        """Spawn exactly one process and return its handle."""
        handle = ProcessHandle(
            command,
            args,
            working_dir=working_dir,
            timeout=timeout,
            kill_grace_period=self.kill_grace_period,
        )
        await handle.start()
        return handle
