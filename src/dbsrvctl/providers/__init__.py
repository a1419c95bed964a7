"""Provider interfaces for dbsrvctl."""
from __future__ import annotations

from .base import ControlError, DatabaseClient, DumpError, InstanceControl
from .dump_client import DumpToolClient
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ControlError",
    "DatabaseClient",
    "DumpError",
    "DumpToolClient",
    "InstanceControl",
    "SystemdError",
    "SystemdProvider",
]
