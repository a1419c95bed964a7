"""Tests for the fresh-install executor."""
from __future__ import annotations

import pytest
from fakes import FakeMethod, candidate, make_platform, record
from rich.console import Console

from dbsrvctl.exit_codes import ExitCode
from dbsrvctl.install import (
    AlreadyInstalledError,
    Installer,
    InstallOptions,
    InstalledViaOtherMethodError,
    MethodUnsupportedError,
    build_settings,
)
from dbsrvctl.versions import InstallMethod, NightlyQuery, StableQuery, Version


def _console() -> Console:
    return Console(record=True, width=200)


def test_install_default_method_latest_stable() -> None:
    """Without flags the newest stable release is installed via the default method."""
    method = FakeMethod(candidates={"stable": candidate("2", "2.1")})
    console = _console()
    installer = Installer(platform=make_platform(method), console=console)

    settings = installer.install(InstallOptions())

    assert method.installs == [settings]
    assert settings.method is InstallMethod.PACKAGE
    assert settings.version == Version("2.1")
    output = console.export_text()
    assert "edgedb-server-2" in output
    assert "dbsrvctl init" in output
    assert "--nightly" not in output


def test_install_nightly_prints_nightly_hint() -> None:
    """Nightly installs mention --nightly in the follow-up hint."""
    method = FakeMethod(candidates={"nightly": candidate("3-dev", "3.0.dev1", "20240101")})
    console = _console()

    settings = Installer(platform=make_platform(method), console=console).install(
        InstallOptions(nightly=True)
    )

    assert settings.nightly is True
    assert "dbsrvctl init <name> --nightly" in console.export_text()


def test_default_method_unsupported_fails_fast() -> None:
    """Non-interactive installs refuse when the default method is unusable."""
    method = FakeMethod(candidates={"stable": candidate("2", "2.1")})
    installer = Installer(
        platform=make_platform(method, unsupported=[InstallMethod.PACKAGE]),
        console=_console(),
    )

    with pytest.raises(MethodUnsupportedError, match="No installation method is available"):
        installer.install(InstallOptions())
    assert method.installs == []


def test_explicit_unsupported_method_fails() -> None:
    """An explicitly requested method must be available."""
    package = FakeMethod(candidates={"stable": candidate("2", "2.1")})
    installer = Installer(platform=make_platform(package), console=_console())

    with pytest.raises(MethodUnsupportedError, match="Docker Container"):
        installer.install(InstallOptions(method=InstallMethod.DOCKER))


def test_interactive_chooses_from_supported_methods() -> None:
    """Interactive mode asks which method to use when the default is unusable."""
    docker = FakeMethod(InstallMethod.DOCKER, candidates={"stable": candidate("2", "2.1")})
    offered: list[list[InstallMethod]] = []

    def chooser(methods: list[InstallMethod]) -> InstallMethod:
        offered.append(methods)
        return methods[0]

    installer = Installer(
        platform=make_platform(docker),
        console=_console(),
        chooser=chooser,
    )

    settings = installer.install(InstallOptions(interactive=True))

    assert offered == [[InstallMethod.DOCKER]]
    assert settings.method is InstallMethod.DOCKER


def test_already_installed_same_method() -> None:
    """Installing an installed version via the same method is a conflict."""
    method = FakeMethod(
        installed=[record("2", "2.1")],
        candidates={"2.1": candidate("2", "2.1")},
    )
    installer = Installer(platform=make_platform(method), console=_console())

    with pytest.raises(AlreadyInstalledError, match="dbsrvctl upgrade") as excinfo:
        installer.install(InstallOptions(version="2.1"))

    assert excinfo.value.exit_code == ExitCode.ALREADY_INSTALLED
    assert method.installs == []


def test_installed_via_other_method() -> None:
    """A version installed by another method blocks the install."""
    package = FakeMethod(candidates={"nightly": candidate("3-dev", "3.0.dev1")})
    docker = FakeMethod(
        InstallMethod.DOCKER,
        installed=[record("3-dev", "3.0.dev1", nightly=True)],
    )
    installer = Installer(platform=make_platform(package, docker), console=_console())

    with pytest.raises(InstalledViaOtherMethodError, match="--method=docker") as excinfo:
        installer.install(InstallOptions(nightly=True))

    assert int(excinfo.value.exit_code) == 52
    assert package.installs == []


def test_build_settings_uses_resolved_candidate() -> None:
    """Settings carry the resolved package and the query's channel."""
    method = FakeMethod(
        candidates={
            "2": candidate("2", "2.4", package="edgedb-server-2"),
            "nightly": candidate("3-dev", "3.0.dev9"),
        }
    )

    stable = build_settings(StableQuery(Version("2")), method)
    nightly = build_settings(NightlyQuery(), method)

    assert (stable.package_name, stable.version, stable.nightly) == (
        "edgedb-server-2",
        Version("2.4"),
        False,
    )
    assert nightly.major_version == Version("3-dev")
    assert nightly.nightly is True
