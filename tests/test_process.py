"""Tests for the scoped process guard."""
from __future__ import annotations

import subprocess

import pytest

from dbsrvctl.process import ProcessError, ProcessGuard


class FakePopen:
    """Popen double that ignores SIGTERM when asked to."""

    def __init__(self, *, stubborn: bool = False) -> None:
        """Start as a running process."""
        self.pid = 4242
        self.stubborn = stubborn
        self.returncode: int | None = None
        self.calls: list[str] = []

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.calls.append("terminate")
        if not self.stubborn:
            self.returncode = -15

    def kill(self) -> None:
        self.calls.append("kill")
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int:
        self.calls.append("wait")
        if self.returncode is None:
            raise subprocess.TimeoutExpired("server", timeout or 0)
        return self.returncode


def test_guard_terminates_on_exit() -> None:
    """Leaving the block terminates the process."""
    process = FakePopen()

    with ProcessGuard(process) as guard:  # type: ignore[arg-type]
        assert guard.pid == 4242

    assert process.calls == ["terminate", "wait"]


def test_guard_terminates_when_block_raises() -> None:
    """The process is stopped even when the block fails."""
    process = FakePopen()

    with pytest.raises(RuntimeError):
        with ProcessGuard(process):  # type: ignore[arg-type]
            raise RuntimeError("restore failed")

    assert process.returncode == -15


def test_guard_kills_stubborn_process() -> None:
    """Processes ignoring SIGTERM are killed after the timeout."""
    process = FakePopen(stubborn=True)

    ProcessGuard(process, stop_timeout=0.01).close()  # type: ignore[arg-type]

    assert process.calls == ["terminate", "wait", "kill", "wait"]


def test_guard_skips_exited_process() -> None:
    """Closing an already exited process does nothing."""
    process = FakePopen()
    process.returncode = 0

    ProcessGuard(process).close()  # type: ignore[arg-type]

    assert process.calls == []


def test_run_missing_binary_raises() -> None:
    """Starting a missing executable raises ProcessError."""
    with pytest.raises(ProcessError, match="error running server"):
        ProcessGuard.run(["/nonexistent/dbsrvctl-test-server"])


@pytest.mark.mutation_timeout
def test_run_real_process_is_reaped() -> None:
    """A real child process is terminated when the guard closes."""
    with ProcessGuard.run(["sleep", "30"], stop_timeout=5) as guard:
        assert guard.pid > 0
    assert guard._process.poll() is not None  # type: ignore[attr-defined]
