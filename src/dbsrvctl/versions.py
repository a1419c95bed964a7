"""Version values and the installation method contract.

Every installation channel (system packages, docker images, nightly feeds)
is represented by an object satisfying the :class:`Method` protocol. The
upgrade and install executors only ever talk to that protocol; concrete
channels are provided by plugins (see :mod:`dbsrvctl.detect`).
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from typing import Protocol, runtime_checkable

from packaging.version import InvalidVersion
from packaging.version import Version as _Pep440Version

_TOKEN_RE = re.compile(r"\d+|[A-Za-z]+")


class MethodError(RuntimeError):
    """Base class for failures reported by an installation method."""


class QueryError(MethodError):
    """Raised when installed versions cannot be listed for a method."""


class ResolutionError(MethodError):
    """Raised when a version query does not resolve to an installable package."""


class InstallError(MethodError):
    """Raised when installing a package fails."""


def _natural_key(value: str) -> tuple[tuple[int, int, str], ...]:
    tokens: list[tuple[int, int, str]] = []
    for token in _TOKEN_RE.findall(value):
        if token.isdigit():
            tokens.append((1, int(token), ""))
        else:
            tokens.append((0, 0, token.lower()))
    return tuple(tokens)


def _sort_key(value: str) -> tuple[int, object]:
    try:
        return (0, _Pep440Version(value))
    except InvalidVersion:
        return (1, _natural_key(value))


@total_ordering
class Version:
    """Opaque version tag ordered so that greater means newer.

    PEP 440 ordering is used when the tag parses (``1-alpha.4``,
    ``1.0-rc.2``, ``1.1-1``); other tags fall back to a digit-aware token
    ordering. Tags of the first kind sort before tags of the second.
    """

    __slots__ = ("_key", "_value")

    def __init__(self, value: str) -> None:
        """Wrap *value* after stripping surrounding whitespace."""
        normalised = str(value).strip()
        if not normalised:
            raise ValueError("Version must be a non-empty string.")
        self._value = normalised
        self._key = _sort_key(normalised)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"Version({self._value!r})"

    def __hash__(self) -> int:
        return hash(self._key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key < other._key  # type: ignore[operator]


class InstallMethod(Enum):
    """Installation channels an instance can be managed by."""

    PACKAGE = "package"
    DOCKER = "docker"

    def title(self) -> str:
        """Return the human readable name of the channel."""
        return _METHOD_TITLES[self]

    def option(self) -> str:
        """Return the command line option selecting this channel."""
        return f"--method={self.value}"


_METHOD_TITLES = {
    InstallMethod.PACKAGE: "Native System Package",
    InstallMethod.DOCKER: "Docker Container",
}


@dataclass(frozen=True, slots=True)
class InstalledRecord:
    """One installed server package as reported by a method."""

    major_version: Version
    version: Version
    revision: str
    nightly: bool = False

    def full_version(self) -> Version:
        """Return the version including the package revision."""
        return Version(f"{self.version}-{self.revision}")


@dataclass(frozen=True, slots=True)
class InstallCandidate:
    """Concrete installable package resolved from a :data:`VersionQuery`."""

    package_name: str
    major_version: Version
    version: Version
    revision: str

    def full_version(self) -> Version:
        """Return the version including the package revision."""
        return Version(f"{self.version}-{self.revision}")


@dataclass(frozen=True, slots=True)
class StableQuery:
    """Request for a stable release, optionally pinned to ``version``."""

    version: Version | None = None

    def matches(self, record: InstalledRecord) -> bool:
        """Return True when *record* satisfies this query."""
        if self.version is None:
            return not record.nightly
        return record.version == self.version

    def is_nightly(self) -> bool:
        """Return False; stable queries never select nightly builds."""
        return False

    def __str__(self) -> str:
        return str(self.version) if self.version is not None else "stable"


@dataclass(frozen=True, slots=True)
class NightlyQuery:
    """Request for the latest nightly build."""

    def matches(self, record: InstalledRecord) -> bool:
        """Return True when *record* is a nightly build."""
        return record.nightly

    def is_nightly(self) -> bool:
        """Return True."""
        return True

    def __str__(self) -> str:
        return "nightly"


VersionQuery = StableQuery | NightlyQuery


def query_from_flags(nightly: bool, version: str | None) -> VersionQuery:
    """Build a query from ``--nightly``/``--version`` style flags."""
    if nightly:
        return NightlyQuery()
    return StableQuery(Version(version) if version else None)


@dataclass(slots=True)
class Settings:
    """Everything a method needs to install one package."""

    method: InstallMethod
    package_name: str
    major_version: Version
    version: Version
    nightly: bool = False
    extra: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "method": self.method.value,
            "package_name": self.package_name,
            "major_version": str(self.major_version),
            "version": str(self.version),
            "nightly": self.nightly,
            "extra": dict(self.extra),
        }


@runtime_checkable
class Method(Protocol):
    """Capability set of one installation channel."""

    def installed_versions(self) -> list[InstalledRecord]:
        """Return installed packages; raise :class:`QueryError` on failure."""
        ...

    def get_version(self, query: VersionQuery) -> InstallCandidate:
        """Resolve *query*; raise :class:`ResolutionError` when nothing matches."""
        ...

    def install(self, settings: Settings) -> None:
        """Install a package; raise :class:`InstallError` on failure."""
        ...

    def name(self) -> InstallMethod:
        """Return the channel this method implements."""
        ...


def _newest(records: Iterable[InstalledRecord]) -> Version | None:
    versions = [record.full_version() for record in records]
    return max(versions) if versions else None


def get_installed(query: VersionQuery, method: Method) -> Version | None:
    """Return the newest installed version matching *query*, if any."""
    return _newest(record for record in method.installed_versions() if query.matches(record))


def installed_for_major(major_version: Version, method: Method) -> Version | None:
    """Return the newest installed stable version of *major_version*, if any."""
    return _newest(
        record
        for record in method.installed_versions()
        if not record.nightly and record.major_version == major_version
    )


__all__ = [
    "InstallCandidate",
    "InstallError",
    "InstallMethod",
    "InstalledRecord",
    "Method",
    "MethodError",
    "NightlyQuery",
    "QueryError",
    "ResolutionError",
    "Settings",
    "StableQuery",
    "Version",
    "VersionQuery",
    "get_installed",
    "installed_for_major",
    "query_from_flags",
]
