"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from dbsrvctl.config import ServerConfig
from dbsrvctl.discovery import Instance, Metadata
from dbsrvctl.providers.systemd import SystemdError, SystemdProvider
from dbsrvctl.templates import TemplateEngine
from dbsrvctl.versions import InstallMethod, Version


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider instance scoped to the temporary path."""
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        runtime_dir=tmp_path / "run",
        server=ServerConfig(bin_template="/opt/edgedb-{major_version}/bin/edgedb-server"),
        systemd_dir=tmp_path / "systemd",
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


def _instance(tmp_path: Path, name: str = "alpha") -> Instance:
    metadata = Metadata(
        method=InstallMethod.PACKAGE,
        version=Version("2"),
        nightly=False,
        port=10701,
    )
    return Instance(name=name, metadata=metadata, data_dir=tmp_path / "data" / name)


def _capture(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(
        self: SystemdProvider,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> DummyResult:
        calls.append([*args, f"check={check}"])
        return DummyResult(returncode=0, stdout="ok")

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run)
    return calls


def test_run_command_and_socket_path(provider: SystemdProvider, tmp_path: Path) -> None:
    """The foreground command and admin socket derive from metadata."""
    inst = _instance(tmp_path)

    assert provider.run_command(inst) == [
        "/opt/edgedb-2/bin/edgedb-server",
        "--data-dir",
        str(tmp_path / "data" / "alpha"),
        "--runstate-dir",
        str(tmp_path / "run" / "alpha"),
        "--port",
        "10701",
    ]
    assert provider.socket_path(inst) == tmp_path / "run" / "alpha" / ".s.EDGEDB.admin.10701"


def test_render_unit_writes_file_and_reload(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    tmp_path: Path,
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    calls = _capture(monkeypatch)

    changed = provider.render_unit(_instance(tmp_path))

    contents = provider.unit_path("alpha").read_text(encoding="utf-8")
    assert changed is True
    assert "Database server instance (alpha)" in contents
    assert "--port 10701" in contents
    assert "WantedBy=default.target" in contents
    assert calls == [["systemctl", "--user", "daemon-reload", "check=True"]]

    # Second render with identical context should remain a no-op.
    calls.clear()
    assert provider.render_unit(_instance(tmp_path)) is False
    assert calls == []


@pytest.mark.parametrize("command", ["enable", "disable", "start", "stop"])
def test_unit_management_calls_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    command: str,
) -> None:
    """Enable/disable/start/stop delegate to systemctl with the unit name."""
    calls = _capture(monkeypatch)

    getattr(provider, command)("alpha")

    assert calls == [["systemctl", "--user", command, "dbsrvctl-alpha.service", "check=True"]]


def test_status_uses_non_check(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Status calls systemctl with ``check=False`` and returns the result."""
    calls = _capture(monkeypatch)
    provider.user_mode = False

    result = provider.status("alpha")

    assert calls == [["systemctl", "status", "dbsrvctl-alpha.service", "check=False"]]
    assert result.stdout == "ok"


def test_remove_deletes_unit_and_reloads(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    tmp_path: Path,
) -> None:
    """Removing a unit deletes the file; a missing file is not an error."""
    calls = _capture(monkeypatch)
    provider.render_unit(_instance(tmp_path))
    calls.clear()

    provider.remove("alpha")
    provider.remove("alpha")

    assert not provider.unit_path("alpha").exists()
    assert calls == [["systemctl", "--user", "daemon-reload", "check=True"]]


def test_failed_command_raises(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Non-zero exit codes surface as SystemdError with stderr."""

    def fake_subprocess_run(*args: object, **kwargs: object) -> DummyResult:
        return DummyResult(returncode=5, stderr="Unit not loaded")

    monkeypatch.setattr("dbsrvctl.providers.systemd.subprocess.run", fake_subprocess_run)

    with pytest.raises(SystemdError, match="systemctl start failed \\(exit 5\\): Unit not loaded"):
        provider.start("alpha")


def test_missing_binary_raises(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A missing systemctl binary raises SystemdError."""

    def fake_subprocess_run(*args: object, **kwargs: object) -> DummyResult:
        raise FileNotFoundError("systemctl")

    monkeypatch.setattr("dbsrvctl.providers.systemd.subprocess.run", fake_subprocess_run)

    with pytest.raises(SystemdError, match="not found"):
        provider.stop("alpha")
