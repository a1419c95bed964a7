"""Systemd provider for supervising instance services."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import ServerConfig
from ..templates import TemplateEngine
from .base import ControlError

if TYPE_CHECKING:
    from ..discovery import Instance


class SystemdError(ControlError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for dbsrvctl instances."""

    templates: TemplateEngine
    runtime_dir: Path
    server: ServerConfig = ServerConfig()
    systemd_dir: Path = Path("~/.config/systemd/user")
    systemctl_bin: str = "systemctl"
    user_mode: bool = True

    def unit_name(self, instance: str) -> str:
        """Return the systemd unit name for *instance*."""
        safe = instance.replace("/", "-")
        return f"dbsrvctl-{safe}.service"

    def unit_path(self, instance: str) -> Path:
        """Return the full path for the instance unit file."""
        return self.systemd_dir.expanduser() / self.unit_name(instance)

    def runstate_dir(self, instance: str) -> Path:
        """Return the directory holding the instance's sockets."""
        return self.runtime_dir.expanduser() / instance

    def socket_path(self, instance: Instance) -> Path:
        """Return the admin socket of *instance*."""
        return self.runstate_dir(instance.name) / f".s.EDGEDB.admin.{instance.metadata.port}"

    def run_command(self, instance: Instance) -> list[str]:
        """Return the argv that runs *instance*'s server in the foreground."""
        return [
            self.server.server_bin(str(instance.metadata.version)),
            "--data-dir",
            str(instance.data_dir),
            "--runstate-dir",
            str(self.runstate_dir(instance.name)),
            "--port",
            str(instance.metadata.port),
        ]

    def render_unit(self, instance: Instance) -> bool:
        """Render the unit file for *instance*; reload systemd when it changed."""
        context = {
            "instance_name": instance.name,
            "environment": [f"DBSRVCTL_INSTANCE={instance.name}"],
            "runstate_dir": str(self.runstate_dir(instance.name)),
            "exec_start": " ".join(self.run_command(instance)),
            "wanted_by": "default.target" if self.user_mode else "multi-user.target",
        }
        changed = self.templates.render_to_path(
            "systemd/service.j2", self.unit_path(instance.name), context, mode=0o644
        )
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Enable the instance unit."""
        return self._systemctl("enable", self.unit_name(instance))

    def disable(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Disable the instance unit."""
        return self._systemctl("disable", self.unit_name(instance))

    def start(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Start the instance unit."""
        return self._systemctl("start", self.unit_name(instance))

    def stop(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Stop the instance unit."""
        return self._systemctl("stop", self.unit_name(instance))

    def status(self, instance: str) -> subprocess.CompletedProcess[str]:
        """Return the status output for the unit."""
        return self._systemctl("status", self.unit_name(instance), check=False)

    def remove(self, instance: str) -> None:
        """Remove the unit file for *instance*."""
        path = self.unit_path(instance)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        self._reload_daemon()

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin]
        if self.user_mode:
            args.append("--user")
        args.append(command)
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
