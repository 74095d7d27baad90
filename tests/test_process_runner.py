"""Tests for ProcessRunner using real short-lived shell processes."""

import asyncio
import os
import signal

import pytest

from runner.core.process import OutcomeKind, ProcessOutcome, ProcessRunner


async def collect(handle) -> list[str]:
    return [line async for line in handle.lines()]


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


class TestProcessOutcome:
    """Tests for outcome construction."""

    def test_succeeded(self):
        assert ProcessOutcome.exited(0).succeeded is True
        assert ProcessOutcome.exited(2).succeeded is False
        assert ProcessOutcome.timed_out(0).succeeded is False
        assert ProcessOutcome.launch_failed("missing").reason == "missing"


@pytest.mark.asyncio
class TestProcessRunner:
    """Tests for ProcessRunner and ProcessHandle."""

    @pytest.fixture
    def runner(self):
        return ProcessRunner(kill_grace_period=0.5)

    async def test_exit_zero_with_output(self, runner):
        handle = await runner.run("sh", ["-c", "echo one; echo two; echo oops >&2"])

        lines = await collect(handle)
        outcome = await handle.wait()

        assert lines == ["one", "two"]
        assert outcome.kind == OutcomeKind.EXITED
        assert outcome.exit_code == 0
        assert outcome.succeeded
        assert handle.stderr_text().strip() == "oops"

    async def test_nonzero_exit(self, runner):
        handle = await runner.run("sh", ["-c", "exit 3"])

        outcome = await handle.wait()

        assert outcome.kind == OutcomeKind.EXITED
        assert outcome.exit_code == 3
        assert not outcome.succeeded

    async def test_working_dir(self, runner, temp_dir):
        handle = await runner.run("pwd", working_dir=temp_dir)

        lines = await collect(handle)
        await handle.wait()

        assert os.path.realpath(lines[0]) == os.path.realpath(temp_dir)

    async def test_launch_failure_does_not_raise(self, runner):
        handle = await runner.run("/nonexistent/fio-binary", ["--version"])

        lines = await collect(handle)
        outcome = await handle.wait()

        assert lines == []
        assert outcome.kind == OutcomeKind.LAUNCH_FAILED
        assert "FileNotFoundError" in outcome.reason
        assert handle.pid is None

    async def test_timeout(self, runner):
        handle = await runner.run("sh", ["-c", "echo started; exec sleep 30"], timeout=0.3)

        lines = await collect(handle)
        outcome = await handle.wait()

        assert lines == ["started"]
        assert outcome.kind == OutcomeKind.TIMED_OUT
        assert outcome.duration_seconds < 5
        assert not pid_alive(handle.pid)

    async def test_timeout_when_sigterm_ignored(self, runner):
        """Escalates to SIGKILL and still reports a timeout."""
        handle = await runner.run("sh", ["-c", "trap '' TERM; sleep 30"], timeout=0.3)

        outcome = await handle.wait()

        assert outcome.kind == OutcomeKind.TIMED_OUT
        assert outcome.exit_code == -signal.SIGKILL

    async def test_timeout_takes_precedence_over_exit_in_grace_window(self, runner):
        """A process that exits cleanly on SIGTERM is still timed out."""
        handle = await runner.run("sh", ["-c", "trap 'exit 0' TERM; while true; do sleep 0.05; done"], timeout=0.3)

        outcome = await handle.wait()

        assert outcome.kind == OutcomeKind.TIMED_OUT

    async def test_children_are_killed(self, runner):
        handle = await runner.run("sh", ["-c", "sleep 30 & echo $!; wait"], timeout=0.3)

        lines = await collect(handle)
        await handle.wait()
        child = int(lines[0])

        await asyncio.sleep(0.1)
        assert not pid_alive(child)

    async def test_cancel(self, runner):
        handle = await runner.run("sh", ["-c", "exec sleep 30"], timeout=10)

        await asyncio.sleep(0.1)
        await handle.cancel()
        outcome = await handle.wait()

        assert outcome.kind == OutcomeKind.KILLED

    async def test_close_terminates_running_process(self, runner):
        async with await runner.run("sh", ["-c", "exec sleep 30"]) as handle:
            pid = handle.pid
            assert handle.is_running

        assert not handle.is_running
        assert not pid_alive(pid)

    async def test_lines_can_be_iterated_after_exit(self, runner):
        handle = await runner.run("sh", ["-c", "echo a"])

        await handle.wait()

        assert await collect(handle) == ["a"]
        assert await collect(handle) == []
