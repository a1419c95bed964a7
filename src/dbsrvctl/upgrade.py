"""Upgrade orchestration for installed server instances.

Three mutually exclusive plans exist:

* :class:`MinorUpgrade` swaps the package of every stable instance for the
  newest point release of its major version. Storage is compatible, so the
  instances are only stopped, upgraded and started again.
* :class:`NightlyUpgrade` moves every nightly instance to the newest nightly
  build. Nightly storage formats are not stable, so each instance is dumped,
  its data directory moved to ``<name>.backup``, reinitialised and restored.
* :class:`InstanceUpgrade` moves one named instance to an arbitrary target
  using the same dump and restore sequence.

Everything runs sequentially. Dump and restore are coroutines of the
database client; :func:`run_sync` drives each one to completion before the
next step starts, because a dump must be complete before the server stops
and the package must be installed before the data directory is rebuilt.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from collections import defaultdict
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar

from .config import AppConfig
from .detect import Platform
from .discovery import Instance, list_instances
from .init import InitError, InitOptions
from .process import ProcessError, ProcessGuard
from .providers.base import ControlError, DatabaseClient, DumpError, InstanceControl
from .versions import (
    InstallCandidate,
    InstallMethod,
    Method,
    MethodError,
    NightlyQuery,
    Settings,
    StableQuery,
    Version,
    VersionQuery,
    get_installed,
    installed_for_major,
)

LOGGER = logging.getLogger(__name__)

BACKUP_META_FILE = "backup.json"
UNKNOWN_VERSION = Version("unknown")

_T = TypeVar("_T")


class UpgradeError(RuntimeError):
    """Raised when upgrading an instance fails; names the instance."""

    def __init__(self, message: str, *, instance: str | None = None) -> None:
        """Store *message* and the affected *instance*."""
        super().__init__(message)
        self.instance = instance


@dataclass(slots=True)
class UpgradeOptions:
    """User intent as given on the command line."""

    name: str | None = None
    nightly: bool = False
    to_nightly: bool = False
    to_version: str | None = None
    force: bool = False


@dataclass(frozen=True, slots=True)
class MinorUpgrade:
    """Upgrade all stable instances within their major version."""


@dataclass(frozen=True, slots=True)
class NightlyUpgrade:
    """Upgrade all nightly instances to the newest nightly."""


@dataclass(frozen=True, slots=True)
class InstanceUpgrade:
    """Upgrade the instance ``name`` to whatever ``query`` resolves to."""

    name: str
    query: VersionQuery


UpgradePlan = MinorUpgrade | NightlyUpgrade | InstanceUpgrade


@dataclass(frozen=True, slots=True)
class UpgradeMeta:
    """Marker describing an upgrade in flight, handed to reinitialisation."""

    source: Version
    target: Version
    started: datetime
    pid: int

    def to_json(self) -> str:
        """Return the JSON encoding passed to ``init``."""
        return json.dumps(
            {
                "source": str(self.source),
                "target": str(self.target),
                "started": _format_timestamp(self.started),
                "pid": self.pid,
            }
        )


@dataclass(frozen=True, slots=True)
class BackupMeta:
    """Contents of ``backup.json`` next to a moved-aside data directory."""

    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timestamp": _format_timestamp(self.timestamp)}


@dataclass(slots=True)
class UpgradeReport:
    """What an upgrade run did, for logging and display."""

    plan: UpgradePlan
    upgraded: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    unavailable: dict[str, list[str]] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        """Return the number of upgraded instances."""
        return len(self.upgraded)


class InstanceInitializer(Protocol):
    """Creates a fresh data directory for an instance."""

    def init(self, options: InitOptions) -> Instance:
        """Initialise the instance described by *options*."""
        ...


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def run_sync(coro: Coroutine[Any, Any, _T]) -> _T:
    """Run *coro* to completion, blocking the caller."""
    return asyncio.run(coro)


def interpret_options(options: UpgradeOptions) -> UpgradePlan:
    """Map command line intent onto exactly one upgrade plan."""
    if options.name is not None:
        if options.nightly:
            LOGGER.warning(
                "Cannot upgrade specific nightly instance, use `--to-nightly` to upgrade "
                "to nightly. Use `--nightly` without instance name to upgrade all nightly "
                "instances."
            )
        query: VersionQuery
        if options.to_nightly:
            query = NightlyQuery()
        elif options.to_version:
            query = StableQuery(Version(options.to_version))
        else:
            query = StableQuery()
        return InstanceUpgrade(options.name, query)
    if options.nightly:
        return NightlyUpgrade()
    return MinorUpgrade()


def get_instances(plan: UpgradePlan, data_dir: Path) -> list[Instance]:
    """Discover instances and keep those *plan* applies to."""
    instances = list_instances(data_dir)
    if isinstance(plan, MinorUpgrade):
        return [inst for inst in instances if not inst.metadata.nightly]
    if isinstance(plan, NightlyUpgrade):
        return [inst for inst in instances if inst.metadata.nightly]
    return [inst for inst in instances if inst.name == plan.name]


def _names(instances: Sequence[Instance]) -> str:
    return ", ".join(inst.name for inst in instances)


def _is_up_to_date(installed: Version | None, candidate: InstallCandidate) -> bool:
    return installed is not None and installed >= candidate.full_version()


def _method_failure(instances: Sequence[Instance], exc: MethodError) -> UpgradeError:
    names = _names(instances)
    return UpgradeError(f"failed to upgrade {names}: {exc}", instance=names)


def backup_path(inst: Instance) -> Path:
    """Return where the data of *inst* is moved before reinitialisation."""
    return inst.data_dir.with_name(f"{inst.name}.backup")


@dataclass(slots=True)
class Upgrader:
    """Drive upgrades of discovered instances."""

    config: AppConfig
    platform: Platform
    control: InstanceControl
    client: DatabaseClient
    initializer: InstanceInitializer
    clock: Callable[[], datetime] = _utcnow

    def upgrade(self, options: UpgradeOptions) -> UpgradeReport:
        """Upgrade the instances selected by *options*."""
        plan = interpret_options(options)
        report = UpgradeReport(plan=plan)
        instances = get_instances(plan, self.config.data_dir)
        if not instances:
            if options.nightly:
                LOGGER.warning("No instances found. Nothing to upgrade.")
            else:
                LOGGER.warning(
                    "No instances found. Nothing to upgrade (Note: nightly instances "
                    "are upgraded only if `--nightly` is specified)."
                )
            return report

        by_method: dict[InstallMethod, list[Instance]] = defaultdict(list)
        for inst in instances:
            by_method[inst.metadata.method].append(inst)

        avail = self.platform.get_available_methods()
        for method_name in InstallMethod:
            group = by_method.get(method_name)
            if not group:
                continue
            if not avail.is_supported(method_name):
                LOGGER.warning(
                    "Method %s is not available. Instances using it: %s. Skipping...",
                    method_name.title(),
                    _names(group),
                )
                report.unavailable[method_name.value] = [inst.name for inst in group]
                continue
            method = avail.make_method(method_name)
            if isinstance(plan, MinorUpgrade):
                self._minor_upgrade(method, group, options, report)
            elif isinstance(plan, NightlyUpgrade):
                self._nightly_upgrade(method, group, options, report)
            else:
                for inst in group:
                    self._instance_upgrade(method, inst, plan.query, options, report)
        return report

    # Plans -----------------------------------------------------------
    def _minor_upgrade(
        self,
        method: Method,
        instances: list[Instance],
        options: UpgradeOptions,
        report: UpgradeReport,
    ) -> None:
        by_major: dict[Version, list[Instance]] = defaultdict(list)
        for inst in instances:
            by_major[inst.metadata.version].append(inst)

        for major in sorted(by_major):
            group = by_major[major]
            try:
                new = method.get_version(StableQuery(major))
                old = installed_for_major(major, method)
            except MethodError as exc:
                raise _method_failure(group, exc) from exc

            if not options.force and _is_up_to_date(old, new):
                LOGGER.info(
                    "Version %s is up to date %s, skipping instances: %s",
                    major,
                    old,
                    _names(group),
                )
                report.up_to_date.extend(inst.name for inst in group)
                continue

            LOGGER.info(
                "Upgrading version %s to %s-%s, instances: %s",
                major,
                new.version,
                new.revision,
                _names(group),
            )
            for inst in group:
                inst.source = old
                inst.target = new.full_version()

            # Packages are not replaced under a running server.
            for inst in group:
                try:
                    self.control.stop(inst.name)
                except ControlError as exc:
                    LOGGER.warning("Failed to stop instance %r: %s", inst.name, exc)

            LOGGER.info("Upgrading the package")
            self._install(
                method,
                Settings(
                    method=method.name(),
                    package_name=new.package_name,
                    major_version=major,
                    version=new.version,
                    nightly=False,
                ),
                group,
            )

            for inst in group:
                try:
                    self.control.start(inst.name)
                except ControlError as exc:
                    raise UpgradeError(
                        f"failed to start {inst.name!r}: {exc}", instance=inst.name
                    ) from exc
            report.upgraded.extend(inst.name for inst in group)

    def _nightly_upgrade(
        self,
        method: Method,
        instances: list[Instance],
        options: UpgradeOptions,
        report: UpgradeReport,
    ) -> None:
        query = NightlyQuery()
        try:
            new = method.get_version(query)
            old = get_installed(query, method)
        except MethodError as exc:
            raise _method_failure(instances, exc) from exc

        if not options.force and _is_up_to_date(old, new):
            LOGGER.info(
                "Nightly is up to date %s, skipping instances: %s", old, _names(instances)
            )
            report.up_to_date.extend(inst.name for inst in instances)
            return

        for inst in instances:
            _check_no_backup(inst)
            inst.source = old
            inst.target = new.full_version()

        for inst in instances:
            self._dump_and_stop(inst)

        LOGGER.info("Upgrading the package")
        self._install(
            method,
            Settings(
                method=method.name(),
                package_name=new.package_name,
                major_version=new.major_version,
                version=new.version,
                nightly=True,
            ),
            instances,
        )

        for inst in instances:
            self._reinit_and_restore(inst, new.major_version, True, method)
            report.upgraded.append(inst.name)

    def _instance_upgrade(
        self,
        method: Method,
        inst: Instance,
        query: VersionQuery,
        options: UpgradeOptions,
        report: UpgradeReport,
    ) -> None:
        try:
            new = method.get_version(query)
            old = get_installed(query, method)
        except MethodError as exc:
            raise _method_failure([inst], exc) from exc

        if not options.force and _is_up_to_date(old, new):
            LOGGER.info(
                "Version %s is up to date %s, skipping instance: %s", query, old, inst.name
            )
            report.up_to_date.append(inst.name)
            return

        _check_no_backup(inst)
        inst.source = old
        inst.target = new.full_version()

        self._dump_and_stop(inst)

        LOGGER.info("Installing the package")
        self._install(
            method,
            Settings(
                method=method.name(),
                package_name=new.package_name,
                major_version=new.major_version,
                version=new.version,
                nightly=query.is_nightly(),
            ),
            [inst],
        )

        self._reinit_and_restore(inst, new.major_version, query.is_nightly(), method)
        report.upgraded.append(inst.name)

    # Steps -----------------------------------------------------------
    def _install(self, method: Method, settings: Settings, instances: Sequence[Instance]) -> None:
        try:
            method.install(settings)
        except MethodError as exc:
            raise _method_failure(instances, exc) from exc

    def _dump_and_stop(self, inst: Instance) -> None:
        try:
            LOGGER.info("Ensuring instance %r is started", inst.name)
            self.control.start(inst.name)

            path = self.config.dump_path(inst.name)
            if path.exists():
                LOGGER.info("Removing old dump at %s", path)
                _remove_path(path)
            LOGGER.info("Dumping instance %r", inst.name)
            run_sync(self.client.dump_all(self.control.socket_path(inst), path))

            LOGGER.info("Stopping instance %r before package upgrade", inst.name)
            self.control.stop(inst.name)
        except (ControlError, DumpError, OSError) as exc:
            raise UpgradeError(f"failed to dump {inst.name!r}: {exc}", instance=inst.name) from exc

    def _reinit_and_restore(
        self,
        inst: Instance,
        major_version: Version,
        nightly: bool,
        method: Method,
    ) -> None:
        _check_no_backup(inst)
        try:
            backup = backup_path(inst)
            inst.data_dir.rename(backup)
            _write_backup_meta(backup / BACKUP_META_FILE, BackupMeta(timestamp=self.clock()))
            LOGGER.info("Moved data of instance %r to %s", inst.name, backup)

            fresh = self.initializer.init(
                InitOptions(
                    name=inst.name,
                    method=method.name(),
                    version=major_version,
                    nightly=nightly,
                    port=inst.metadata.port,
                    start_conf=inst.metadata.start_conf,
                    system=inst.system,
                    inhibit_user_creation=True,
                    inhibit_start=True,
                    upgrade_marker=self._upgrade_meta(inst).to_json(),
                    overwrite=True,
                    default_user=self.config.admin_user,
                    default_database=self.config.admin_database,
                )
            )

            with self._run_server(self.control.run_command(fresh)):
                LOGGER.info("Restoring instance %r", inst.name)
                run_sync(
                    self.client.restore_all(
                        self.control.socket_path(fresh),
                        self.config.dump_path(inst.name),
                    )
                )

            LOGGER.info("Restarting instance %r to apply changes from restore", inst.name)
            self.control.start(inst.name)
        except (ControlError, DumpError, InitError, ProcessError, OSError) as exc:
            raise UpgradeError(
                f"failed to restore {inst.name!r}: {exc}", instance=inst.name
            ) from exc

    def _run_server(self, command: Sequence[str]) -> ProcessGuard:
        """Run the server outside the supervisor (isolated for testing)."""
        return ProcessGuard.run(command, stop_timeout=self.config.stop_timeout)

    def _upgrade_meta(self, inst: Instance) -> UpgradeMeta:
        return UpgradeMeta(
            source=inst.source or UNKNOWN_VERSION,
            target=inst.target or UNKNOWN_VERSION,
            started=self.clock(),
            pid=os.getpid(),
        )


def _check_no_backup(inst: Instance) -> None:
    """Refuse to touch *inst* while an earlier backup of its data exists."""
    backup = backup_path(inst)
    if os.path.lexists(backup):
        raise UpgradeError(
            f"backup of {inst.name!r} already exists at {backup}; it may hold the only "
            "copy of the original data. Move it away after checking the instance, "
            "then retry.",
            instance=inst.name,
        )


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _write_backup_meta(path: Path, metadata: BackupMeta) -> None:
    path.write_text(json.dumps(metadata.to_dict()) + "\n", encoding="utf-8")


__all__ = [
    "BackupMeta",
    "InstanceUpgrade",
    "MinorUpgrade",
    "NightlyUpgrade",
    "UpgradeError",
    "UpgradeMeta",
    "UpgradeOptions",
    "UpgradePlan",
    "UpgradeReport",
    "Upgrader",
    "backup_path",
    "get_instances",
    "interpret_options",
    "run_sync",
]
