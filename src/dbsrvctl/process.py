"""Scoped lifetime for server processes run outside the service supervisor."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from types import TracebackType

LOGGER = logging.getLogger(__name__)


class ProcessError(RuntimeError):
    """Raised when a guarded process cannot be started."""


class ProcessGuard:
    """Own a child process and terminate it when the guard is closed.

    Use as a context manager so the process is gone on every exit path::

        with ProcessGuard.run(argv):
            ...
    """

    def __init__(self, process: subprocess.Popen[bytes], *, stop_timeout: float = 10.0) -> None:
        """Wrap an already started *process*."""
        self._process = process
        self._stop_timeout = stop_timeout

    @classmethod
    def run(cls, args: Sequence[str], *, stop_timeout: float = 10.0) -> ProcessGuard:
        """Start *args* and return a guard owning the new process."""
        LOGGER.debug("Running server: %s", " ".join(args))
        try:
            process = subprocess.Popen(list(args))  # noqa: S603
        except OSError as exc:
            raise ProcessError(f"error running server {' '.join(args)}: {exc}") from exc
        return cls(process, stop_timeout=stop_timeout)

    @property
    def pid(self) -> int:
        """Return the child's process id."""
        return self._process.pid

    def close(self) -> None:
        """Terminate the process, killing it if it ignores SIGTERM."""
        if self._process.poll() is not None:
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=self._stop_timeout)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Server pid %s did not exit after SIGTERM; killing it", self.pid)
            self._process.kill()
            self._process.wait()

    def __enter__(self) -> ProcessGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["ProcessError", "ProcessGuard"]
