"""Tests for installation method detection."""
from __future__ import annotations

import logging
from importlib.metadata import EntryPoint

import pytest
from fakes import FakeBackend, FakeMethod, make_platform

from dbsrvctl.detect import (
    ENTRY_POINT_GROUP,
    MethodAvailability,
    MethodUnavailableError,
    Platform,
    load_backends,
)
from dbsrvctl.versions import InstallMethod


def test_available_methods_reports_support() -> None:
    """Supported methods are listed in declaration order."""
    platform = make_platform(
        FakeMethod(InstallMethod.DOCKER),
        FakeMethod(InstallMethod.PACKAGE),
    )

    avail = platform.get_available_methods()

    assert avail.is_supported(InstallMethod.PACKAGE)
    assert avail.supported_methods() == [InstallMethod.PACKAGE, InstallMethod.DOCKER]


def test_format_error_explains_each_method() -> None:
    """The error text names every method and why it is unusable."""
    platform = make_platform(FakeMethod(InstallMethod.PACKAGE), unsupported=[InstallMethod.PACKAGE])

    text = platform.get_available_methods().format_error()

    assert text.splitlines()[0] == "No installation method is available on this platform."
    assert "Native System Package (--method=package): required tool not found." in text
    assert "Docker Container (--method=docker): no backend registered" in text


def test_make_method_refuses_unsupported() -> None:
    """Instantiating an unsupported method fails without touching the backend."""
    method = FakeMethod(InstallMethod.DOCKER)
    backend = FakeBackend(method, supported=False)
    avail = Platform({InstallMethod.DOCKER: backend}).get_available_methods()

    with pytest.raises(MethodUnavailableError):
        avail.make_method(InstallMethod.DOCKER)
    with pytest.raises(MethodUnavailableError):
        avail.make_method(InstallMethod.PACKAGE)
    assert backend.created == 0
    assert avail.instantiate_all() == {}


def test_probe_os_error_marks_method_unsupported(caplog: pytest.LogCaptureFixture) -> None:
    """A probe that cannot run counts as unsupported and is logged."""

    class BrokenBackend:
        def probe(self) -> MethodAvailability:
            raise OSError("permission denied")

        def create(self) -> FakeMethod:  # pragma: no cover - never reached
            raise AssertionError

    platform = Platform({InstallMethod.PACKAGE: BrokenBackend()})

    with caplog.at_level(logging.WARNING, logger="dbsrvctl"):
        avail = platform.get_available_methods()

    assert not avail.is_supported(InstallMethod.PACKAGE)
    assert avail.entries[InstallMethod.PACKAGE].missing == ("permission denied",)
    assert "permission denied" in caplog.text


def test_load_backends_from_entry_points(caplog: pytest.LogCaptureFixture) -> None:
    """Entry points keyed by method value are loaded; unknown keys are ignored."""
    discovered = [
        EntryPoint(name="package", value="collections:OrderedDict", group=ENTRY_POINT_GROUP),
        EntryPoint(name="snap", value="collections:OrderedDict", group=ENTRY_POINT_GROUP),
    ]

    with caplog.at_level(logging.WARNING, logger="dbsrvctl"):
        backends = load_backends(discovered)

    assert list(backends) == [InstallMethod.PACKAGE]
    assert "snap" in caplog.text
