"""Detection of the installation methods usable on the current platform.

Concrete installation channels live outside this package. They register a
backend factory under the ``dbsrvctl.methods`` entry-point group, keyed by the
:class:`~dbsrvctl.versions.InstallMethod` value they implement::

    [project.entry-points."dbsrvctl.methods"]
    package = "dbsrvctl_apt:AptBackend"
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from importlib.metadata import EntryPoint, entry_points
from typing import Protocol

from .versions import InstallMethod, Method

LOGGER = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "dbsrvctl.methods"


class MethodUnavailableError(RuntimeError):
    """Raised when a method is requested that the platform cannot provide."""


@dataclass(frozen=True, slots=True)
class MethodAvailability:
    """Whether a method can be used here and, if not, what is missing."""

    method: InstallMethod
    supported: bool
    missing: tuple[str, ...] = ()


class MethodBackend(Protocol):
    """Factory for one installation channel."""

    def probe(self) -> MethodAvailability:
        """Report whether the channel's toolchain is present."""
        ...

    def create(self) -> Method:
        """Return a ready to use :class:`~dbsrvctl.versions.Method`."""
        ...


@dataclass(slots=True)
class AvailableMethods:
    """Availability report for every known installation method."""

    entries: dict[InstallMethod, MethodAvailability] = field(default_factory=dict)
    backends: dict[InstallMethod, MethodBackend] = field(default_factory=dict)

    def is_supported(self, method: InstallMethod) -> bool:
        """Return True when *method* is usable on this platform."""
        entry = self.entries.get(method)
        return entry is not None and entry.supported

    def supported_methods(self) -> list[InstallMethod]:
        """Return usable methods in declaration order."""
        return [method for method in InstallMethod if self.is_supported(method)]

    def format_error(self) -> str:
        """Explain which methods are unusable and why."""
        lines = ["No installation method is available on this platform."]
        for method in InstallMethod:
            entry = self.entries.get(method)
            if entry is None:
                lines.append(
                    f"  * {method.title()} ({method.option()}): no backend registered "
                    f"in entry point group '{ENTRY_POINT_GROUP}'."
                )
                continue
            if entry.supported:
                lines.append(f"  * {method.title()} ({method.option()}): available.")
                continue
            reasons = "; ".join(entry.missing) or "unsupported on this platform"
            lines.append(f"  * {method.title()} ({method.option()}): {reasons}.")
        return "\n".join(lines)

    def make_method(self, method: InstallMethod) -> Method:
        """Instantiate *method*, refusing unsupported ones."""
        backend = self.backends.get(method)
        if backend is None or not self.is_supported(method):
            raise MethodUnavailableError(
                f"Installation method {method.title()} is not available."
            )
        return backend.create()

    def instantiate_all(self) -> dict[InstallMethod, Method]:
        """Instantiate every supported method."""
        return {method: self.make_method(method) for method in self.supported_methods()}


class Platform:
    """The set of method backends installed alongside dbsrvctl."""

    def __init__(self, backends: Mapping[InstallMethod, MethodBackend]) -> None:
        """Store the backends keyed by the method they implement."""
        self._backends = dict(backends)

    @property
    def backends(self) -> dict[InstallMethod, MethodBackend]:
        """Return a copy of the registered backends."""
        return dict(self._backends)

    def get_available_methods(self) -> AvailableMethods:
        """Probe every backend and collect the availability report."""
        report = AvailableMethods(backends=dict(self._backends))
        for method, backend in self._backends.items():
            try:
                entry = backend.probe()
            except OSError as exc:
                LOGGER.warning("Probing method %s failed: %s", method.title(), exc)
                entry = MethodAvailability(method=method, supported=False, missing=(str(exc),))
            report.entries[method] = entry
        return report


def load_backends(
    discovered: Iterable[EntryPoint] | None = None,
) -> dict[InstallMethod, MethodBackend]:
    """Load method backends registered through entry points."""
    candidates = entry_points(group=ENTRY_POINT_GROUP) if discovered is None else discovered
    backends: dict[InstallMethod, MethodBackend] = {}
    for entry_point in candidates:
        try:
            method = InstallMethod(entry_point.name)
        except ValueError:
            LOGGER.warning(
                "Ignoring backend %r for unknown installation method %r.",
                entry_point.value,
                entry_point.name,
            )
            continue
        factory: Callable[[], MethodBackend] = entry_point.load()
        backends[method] = factory()
    return backends


def current_platform() -> Platform:
    """Return the platform built from the installed backends."""
    return Platform(load_backends())


__all__ = [
    "ENTRY_POINT_GROUP",
    "AvailableMethods",
    "MethodAvailability",
    "MethodBackend",
    "MethodUnavailableError",
    "Platform",
    "current_platform",
    "load_backends",
]
