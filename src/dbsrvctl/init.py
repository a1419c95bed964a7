"""Initialisation of instance data directories.

Used for fresh instances and by the upgrade executor to recreate a data
directory for the new server version after the old one was moved aside.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .discovery import METADATA_FILE, Instance, Metadata, is_valid_name
from .providers.systemd import SystemdProvider
from .versions import InstallMethod, Version

LOGGER = logging.getLogger(__name__)

UPGRADE_MARKER_FILE = "upgrade_marker.json"


class InitError(RuntimeError):
    """Raised when an instance cannot be initialised."""


class NoInstalledServerError(InitError):
    """Raised when no installed server version can host a new instance."""


@dataclass(slots=True)
class InitOptions:
    """Parameters for creating an instance data directory."""

    name: str
    method: InstallMethod
    version: Version
    nightly: bool
    port: int
    start_conf: str = "auto"
    system: bool = False
    inhibit_user_creation: bool = False
    inhibit_start: bool = False
    upgrade_marker: str | None = None
    overwrite: bool = False
    default_user: str = "edgedb"
    default_database: str = "edgedb"


@dataclass(slots=True)
class Initializer:
    """Bootstrap data directories and register their services."""

    data_root: Path
    control: SystemdProvider

    def init(self, options: InitOptions) -> Instance:
        """Create and bootstrap the data directory described by *options*."""
        if not is_valid_name(options.name):
            raise InitError(f"Invalid instance name {options.name!r}.")
        data_dir = self.data_root / options.name
        if data_dir.exists():
            if not options.overwrite:
                raise InitError(f"Instance {options.name!r} already exists at {data_dir}.")
            LOGGER.info("Removing existing data directory %s", data_dir)
            shutil.rmtree(data_dir)
        data_dir.mkdir(parents=True)

        metadata = Metadata(
            method=options.method,
            version=options.version,
            nightly=options.nightly,
            port=options.port,
            start_conf=options.start_conf,
        )
        instance = Instance(
            name=options.name,
            metadata=metadata,
            data_dir=data_dir,
            system=options.system,
        )

        command = [*self.control.run_command(instance), "--bootstrap-only"]
        if not options.inhibit_user_creation:
            command.extend(
                [
                    "--default-database-user",
                    options.default_user,
                    "--default-database",
                    options.default_database,
                ]
            )
        env = os.environ.copy()
        if options.upgrade_marker is not None:
            env["DBSRVCTL_UPGRADE_MARKER"] = options.upgrade_marker
        LOGGER.info("Bootstrapping instance %r in %s", options.name, data_dir)
        result = self._run_bootstrap(command, env=env)
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise InitError(
                f"bootstrap of {options.name!r} failed (exit {result.returncode}): {message}"
            )

        _write_json(data_dir / METADATA_FILE, metadata.to_dict())
        if options.upgrade_marker is not None:
            _write_json(data_dir / UPGRADE_MARKER_FILE, json.loads(options.upgrade_marker))

        self.control.render_unit(instance)
        if options.start_conf == "auto":
            self.control.enable(options.name)
        if not options.inhibit_start:
            self.control.start(options.name)
        return instance

    def _run_bootstrap(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str],
    ) -> subprocess.CompletedProcess[str]:
        """Run the server bootstrap (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603
                list(command),
                check=False,
                capture_output=True,
                text=True,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise InitError(f"{command[0]} not found: {exc}") from exc


def _write_json(path: Path, payload: Mapping[str, object]) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "InitError",
    "InitOptions",
    "Initializer",
    "NoInstalledServerError",
    "UPGRADE_MARKER_FILE",
]
