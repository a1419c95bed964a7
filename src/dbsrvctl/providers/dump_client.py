"""Async dump/restore client driving the server's own dump tool."""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .base import DumpError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DumpToolClient:
    """Dump and restore every database of an instance over its admin socket.

    Both operations first wait, up to ``wait_timeout`` seconds, until the
    socket accepts connections.
    """

    dump_bin: str = "edgedb"
    user: str = "edgedb"
    database: str = "edgedb"
    wait_timeout: float = 30.0
    poll_interval: float = 0.5

    async def wait_until_available(self, socket: Path) -> None:
        """Block until *socket* accepts a connection or the timeout expires."""
        deadline = time.monotonic() + self.wait_timeout
        while True:
            try:
                _, writer = await asyncio.open_unix_connection(str(socket))
            except OSError as exc:
                if time.monotonic() >= deadline:
                    raise DumpError(
                        f"server at {socket} not available after {self.wait_timeout:g}s: {exc}"
                    ) from exc
                await asyncio.sleep(self.poll_interval)
                continue
            writer.close()
            await writer.wait_closed()
            return

    async def dump_all(self, socket: Path, destination: Path) -> None:
        """Dump all databases into the directory *destination*."""
        await self.wait_until_available(socket)
        LOGGER.debug("Dumping all databases via %s into %s", socket, destination)
        await self._run([*self._connection_args(socket), "dump", "--all", str(destination)])

    async def restore_all(self, socket: Path, source: Path) -> None:
        """Restore all databases from the dump directory *source*."""
        await self.wait_until_available(socket)
        LOGGER.debug("Restoring all databases via %s from %s", socket, source)
        await self._run([*self._connection_args(socket), "restore", "--all", str(source)])

    def _connection_args(self, socket: Path) -> list[str]:
        return [
            self.dump_bin,
            "--admin",
            "--unix-path",
            str(socket),
            "--user",
            self.user,
            "--database",
            self.database,
        ]

    async def _run(self, args: Sequence[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise DumpError(f"{args[0]} not found: {exc}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = (
                stderr.decode(errors="replace").strip()
                or stdout.decode(errors="replace").strip()
                or "no output"
            )
            command = " ".join(args[-3:])
            raise DumpError(f"{command} failed (exit {process.returncode}): {message}")


__all__ = ["DumpToolClient"]
