"""Discovery of the server instances configured under the data directory.

Each instance owns ``<data_dir>/<name>/`` with a ``metadata.json`` describing
which installation method and major version it runs on. Dumps
(``<name>.dump``) and backups (``<name>.backup``) share the same parent and
are never mistaken for instances because their names are not valid instance
names.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .versions import InstallMethod, Version

LOGGER = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
START_CONF_VALUES = ("auto", "manual")

_NAME_RE = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_-]*")


class MetadataError(RuntimeError):
    """Raised when instance metadata cannot be read or is invalid."""


def is_valid_name(name: str) -> bool:
    """Return True when *name* can be used as an instance name."""
    return _NAME_RE.fullmatch(name) is not None


@dataclass(frozen=True, slots=True)
class Metadata:
    """Persisted description of an instance."""

    method: InstallMethod
    version: Version
    nightly: bool
    port: int
    start_conf: str = "auto"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object], *, source: str) -> Metadata:
        """Validate *payload* read from *source*."""
        method_raw = payload.get("method")
        try:
            method = InstallMethod(str(method_raw))
        except ValueError as exc:
            raise MetadataError(f"{source}: unknown method {method_raw!r}") from exc

        version_raw = payload.get("version")
        if not isinstance(version_raw, str) or not version_raw.strip():
            raise MetadataError(f"{source}: 'version' must be a non-empty string")

        nightly = payload.get("nightly", False)
        if not isinstance(nightly, bool):
            raise MetadataError(f"{source}: 'nightly' must be a boolean")

        port = payload.get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise MetadataError(f"{source}: 'port' must be an integer between 1 and 65535")

        start_conf = payload.get("start_conf", payload.get("startConf", "auto"))
        if start_conf not in START_CONF_VALUES:
            raise MetadataError(
                f"{source}: 'start_conf' must be one of {', '.join(START_CONF_VALUES)}"
            )

        return cls(
            method=method,
            version=Version(version_raw),
            nightly=nightly,
            port=port,
            start_conf=str(start_conf),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON representation stored in ``metadata.json``."""
        return {
            "method": self.method.value,
            "version": str(self.version),
            "nightly": self.nightly,
            "port": self.port,
            "start_conf": self.start_conf,
        }


@dataclass(slots=True)
class Instance:
    """An instance found on disk.

    ``source`` and ``target`` are only filled in while an upgrade runs.
    """

    name: str
    metadata: Metadata
    data_dir: Path
    system: bool = False
    source: Version | None = None
    target: Version | None = None


def read_metadata(path: Path) -> Metadata:
    """Read and validate the metadata file at *path*."""
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise MetadataError(f"error reading {path}: {exc}") from exc
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise MetadataError(f"error decoding json {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise MetadataError(f"{path}: metadata must be a JSON object")
    return Metadata.from_mapping(payload, source=str(path))


def list_instances(data_dir: Path) -> list[Instance]:
    """Return every readable instance under *data_dir*.

    A missing directory is a fresh environment and yields no instances.
    Entries with unreadable metadata are logged and skipped.
    """
    if not data_dir.exists():
        return []

    instances: list[Instance] = []
    for child in sorted(data_dir.iterdir()):
        if not child.is_dir():
            continue
        name = child.name
        if not is_valid_name(name):
            continue
        try:
            metadata = read_metadata(child / METADATA_FILE)
        except MetadataError as exc:
            LOGGER.warning("Error reading metadata for instance %r: %s. Skipping...", name, exc)
            continue
        instances.append(Instance(name=name, metadata=metadata, data_dir=child))
    return instances


__all__ = [
    "METADATA_FILE",
    "Instance",
    "Metadata",
    "MetadataError",
    "is_valid_name",
    "list_instances",
    "read_metadata",
]
