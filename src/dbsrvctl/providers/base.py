"""Interfaces of the collaborators driven by the upgrade executor."""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ..discovery import Instance


class ControlError(RuntimeError):
    """Raised when starting or stopping an instance fails."""


class DumpError(RuntimeError):
    """Raised when a logical dump or restore fails."""


class InstanceControl(Protocol):
    """Process supervision for instances."""

    def start(self, name: str) -> object:
        """Start the supervised service of instance *name*."""
        ...

    def stop(self, name: str) -> object:
        """Stop the supervised service of instance *name*."""
        ...

    def socket_path(self, instance: Instance) -> Path:
        """Return the admin socket the instance listens on."""
        ...

    def run_command(self, instance: Instance) -> list[str]:
        """Return the argv that runs the server in the foreground."""
        ...


class DatabaseClient(Protocol):
    """Logical dump and restore of every database in an instance."""

    async def dump_all(self, socket: Path, destination: Path) -> None:
        """Dump all databases reachable through *socket* into *destination*."""
        ...

    async def restore_all(self, socket: Path, source: Path) -> None:
        """Restore all databases from *source* through *socket*."""
        ...


__all__ = ["ControlError", "DatabaseClient", "DumpError", "InstanceControl"]
