"""Fresh installation of server packages."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from .detect import Platform
from .exit_codes import ExitCode
from .versions import InstallMethod, Method, Settings, VersionQuery, query_from_flags

LOGGER = logging.getLogger(__name__)


class InstallConflictError(RuntimeError):
    """Raised when the requested version is already installed."""

    exit_code = ExitCode.ALREADY_INSTALLED


class AlreadyInstalledError(InstallConflictError):
    """The version is installed through the requested method."""

    exit_code = ExitCode.ALREADY_INSTALLED


class InstalledViaOtherMethodError(InstallConflictError):
    """The version is installed through a different method."""

    exit_code = ExitCode.INSTALLED_VIA_OTHER_METHOD


class MethodUnsupportedError(RuntimeError):
    """Raised when no usable installation method can be selected."""


@dataclass(slots=True)
class InstallOptions:
    """User intent for ``install``."""

    method: InstallMethod | None = None
    interactive: bool = False
    version: str | None = None
    nightly: bool = False


def check_conflicts(
    query: VersionQuery,
    effective: InstallMethod,
    methods: Mapping[InstallMethod, Method],
) -> None:
    """Refuse to install anything *query* matches across all *methods*."""
    for method_name, method in methods.items():
        for record in method.installed_versions():
            if not query.matches(record):
                continue
            if method_name == effective:
                raise AlreadyInstalledError(
                    f"Server {record.major_version} ({record.version}-{record.revision}) "
                    "is already installed. Use `dbsrvctl upgrade` for upgrade."
                )
            raise InstalledViaOtherMethodError(
                f"Server {record.major_version} is already installed via "
                f"{method_name.option()}. Please deinstall before installing via "
                f"{effective.option()}."
            )


def build_settings(query: VersionQuery, method: Method) -> Settings:
    """Resolve *query* through *method* into installation settings."""
    candidate = method.get_version(query)
    return Settings(
        method=method.name(),
        package_name=candidate.package_name,
        major_version=candidate.major_version,
        version=candidate.version,
        nightly=query.is_nightly(),
    )


def render_settings(settings: Settings) -> Table:
    """Return a summary table of *settings*."""
    table = Table(show_header=False, title="Installation settings")
    table.add_row("Method", settings.method.title())
    table.add_row("Package", settings.package_name)
    table.add_row("Major version", str(settings.major_version))
    table.add_row("Version", str(settings.version))
    table.add_row("Nightly", "yes" if settings.nightly else "no")
    for key, value in settings.extra.items():
        table.add_row(key, value)
    return table


@dataclass(slots=True)
class Installer:
    """Install a server package through one of the platform's methods."""

    platform: Platform
    console: Console
    default_method: InstallMethod = InstallMethod.PACKAGE
    chooser: Callable[[list[InstallMethod]], InstallMethod] | None = None

    def install(self, options: InstallOptions) -> Settings:
        """Install the version requested by *options* and return its settings."""
        avail = self.platform.get_available_methods()
        if (
            options.method is None
            and not options.interactive
            and not avail.is_supported(self.default_method)
        ):
            raise MethodUnsupportedError(avail.format_error())

        methods = avail.instantiate_all()
        effective = self._effective_method(options, methods)
        query = query_from_flags(options.nightly, options.version)
        check_conflicts(query, effective, methods)

        settings = build_settings(query, methods[effective])
        self.console.print(render_settings(settings))
        LOGGER.info("Installing %s via %s", settings.package_name, effective.title())
        methods[effective].install(settings)

        nightly_arg = " --nightly" if options.nightly else ""
        self.console.print(
            "\nThe database server is installed now. Great!\n"
            "Initialize and start a new database instance with:\n"
            f"  dbsrvctl init <name>{nightly_arg}"
        )
        return settings

    def _effective_method(
        self,
        options: InstallOptions,
        methods: Mapping[InstallMethod, Method],
    ) -> InstallMethod:
        if options.method is not None:
            chosen = options.method
        elif self.default_method in methods:
            chosen = self.default_method
        elif options.interactive and methods and self.chooser is not None:
            chosen = self.chooser(list(methods))
        else:
            raise MethodUnsupportedError(
                self.platform.get_available_methods().format_error()
            )
        if chosen not in methods:
            raise MethodUnsupportedError(
                f"Installation method {chosen.title()} is not available on this platform."
            )
        return chosen


__all__ = [
    "AlreadyInstalledError",
    "InstallConflictError",
    "InstallOptions",
    "InstalledViaOtherMethodError",
    "Installer",
    "MethodUnsupportedError",
    "build_settings",
    "check_conflicts",
    "render_settings",
]
