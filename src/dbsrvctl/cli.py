"""Typer-powered command line for ``dbsrvctl``.

Every command runs inside a structured operation scope and maps the typed
errors raised by the library modules onto :class:`~dbsrvctl.exit_codes.ExitCode`
values. This module is the only place that terminates the process.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .detect import MethodUnavailableError, Platform, current_platform
from .discovery import START_CONF_VALUES, list_instances
from .exit_codes import ExitCode
from .init import InitError, InitOptions, Initializer, NoInstalledServerError
from .install import (
    InstallConflictError,
    Installer,
    InstallOptions,
    MethodUnsupportedError,
)
from .logging import OperationScope, StructuredLogger, configure_logging
from .providers import ControlError, DumpToolClient, SystemdProvider
from .templates import TemplateEngine
from .upgrade import UpgradeError, Upgrader, UpgradeOptions
from .versions import InstallMethod, MethodError, Version, VersionQuery, query_from_flags

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to dbsrvctl's YAML config file.",
)

METHOD_OPTION = typer.Option(
    None,
    "--method",
    case_sensitive=False,
    help="Installation method to use (defaults to the configured default_method).",
)

NIGHTLY_OPTION = typer.Option(
    False,
    "--nightly",
    help="Select nightly builds.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Database server install and upgrade manager.

        Installs server packages through the available installation methods
        and upgrades the instances running on them.
        """
    ).strip(),
)

instances_app = typer.Typer(help="Inspect configured instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instances")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    client: DumpToolClient
    initializer: Initializer
    platform: Platform


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd_config = config.systemd
    systemd_provider = SystemdProvider(
        templates=templates,
        runtime_dir=config.runtime_dir,
        server=config.server,
        systemd_dir=systemd_config.unit_dir or Path("~/.config/systemd/user"),
        systemctl_bin=systemd_config.systemctl_bin,
        user_mode=systemd_config.user_mode,
    )
    client = DumpToolClient(
        dump_bin=config.server.dump_bin,
        user=config.admin_user,
        database=config.admin_database,
        wait_timeout=config.connect_timeout,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        systemd_provider=systemd_provider,
        client=client,
        initializer=Initializer(data_root=config.data_dir, control=systemd_provider),
        platform=current_platform(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the dbsrvctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug output.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"dbsrvctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    configure_logging(verbose=verbose)
    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _prompt_method(methods: list[InstallMethod]) -> InstallMethod:
    for index, method in enumerate(methods, start=1):
        console.print(f"  {index}. {method.title()} ({method.value})")
    answer = typer.prompt("Installation method", default=methods[0].value)
    return InstallMethod(answer.strip().lower())


@app.command()
def install(
    ctx: typer.Context,
    method: InstallMethod | None = METHOD_OPTION,
    interactive: bool = typer.Option(
        False,
        "--interactive",
        "-i",
        help="Ask for missing choices instead of failing.",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        help="Install this major version or release.",
    ),
    nightly: bool = NIGHTLY_OPTION,
) -> None:
    """Install a server package."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={
            "method": method.value if method else None,
            "interactive": interactive,
            "version": version,
            "nightly": nightly,
        },
        target={"kind": "package"},
    ) as op:
        if nightly and version:
            _command_error(op, "--nightly and --version are mutually exclusive.")
        installer = Installer(
            platform=runtime.platform,
            console=console,
            default_method=runtime.config.default_method,
            chooser=_prompt_method if interactive else None,
        )
        options = InstallOptions(
            method=method, interactive=interactive, version=version, nightly=nightly
        )
        try:
            settings = installer.install(options)
        except InstallConflictError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)
        except (MethodUnsupportedError, MethodUnavailableError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except MethodError as exc:
            _command_error(op, f"Installation failed: {exc}", rc=ExitCode.PROVIDER)
        except ValueError as exc:
            _command_error(op, str(exc))
        op.success(
            f"Installed {settings.package_name} {settings.version}.",
            changed=1,
            context=settings.to_dict(),
        )


@app.command()
def upgrade(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Upgrade only this instance."),
    nightly: bool = typer.Option(
        False,
        "--nightly",
        help="Upgrade all nightly instances to the latest nightly.",
    ),
    to_nightly: bool = typer.Option(
        False,
        "--to-nightly",
        help="Upgrade the named instance to the latest nightly.",
    ),
    to_version: str | None = typer.Option(
        None,
        "--to-version",
        help="Upgrade the named instance to this version.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Reinstall and migrate even when already up to date.",
    ),
) -> None:
    """Upgrade installed instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "upgrade",
        args={
            "nightly": nightly,
            "to_nightly": to_nightly,
            "to_version": to_version,
            "force": force,
        },
        target={"kind": "instance", "name": name or "*"},
    ) as op:
        if to_nightly and to_version:
            _command_error(op, "--to-nightly and --to-version are mutually exclusive.")
        if name is None and (to_nightly or to_version):
            _command_error(op, "--to-nightly and --to-version require an instance name.")

        upgrader = Upgrader(
            config=runtime.config,
            platform=runtime.platform,
            control=runtime.systemd_provider,
            client=runtime.client,
            initializer=runtime.initializer,
        )
        options = UpgradeOptions(
            name=name,
            nightly=nightly,
            to_nightly=to_nightly,
            to_version=to_version,
            force=force,
        )
        try:
            report = upgrader.upgrade(options)
        except UpgradeError as exc:
            _command_error(op, f"Upgrade failed: {exc}", rc=ExitCode.PROVIDER)
        except (MethodError, ControlError) as exc:
            _command_error(op, f"Upgrade failed: {exc}", rc=ExitCode.PROVIDER)
        except ValueError as exc:
            _command_error(op, str(exc))

        context = {
            "upgraded": report.upgraded,
            "up_to_date": report.up_to_date,
            "unavailable": report.unavailable,
        }
        if report.upgraded:
            console.print(f"[green]Upgraded: {', '.join(report.upgraded)}[/green]")
        if report.up_to_date:
            console.print(f"Already up to date: {', '.join(report.up_to_date)}")
        if report.unavailable:
            skipped = sorted(n for names in report.unavailable.values() for n in names)
            console.print(f"[yellow]Skipped (method unavailable): {', '.join(skipped)}[/yellow]")
            op.warning(
                "Some instances were skipped.",
                warnings=[
                    f"{method}: {', '.join(names)}"
                    for method, names in report.unavailable.items()
                ],
                changed=report.changed,
                context=context,
            )
            return
        op.success(
            f"Upgraded {report.changed} instance(s).",
            changed=report.changed,
            context=context,
        )


def _resolve_major(
    platform: Platform,
    method: InstallMethod,
    query: VersionQuery,
) -> Version:
    installed = platform.get_available_methods().make_method(method)
    records = [record for record in installed.installed_versions() if query.matches(record)]
    if not records:
        raise NoInstalledServerError(
            f"No installed server matches {query}. Run `dbsrvctl install` first."
        )
    return max(records, key=lambda record: record.full_version()).major_version


@app.command()
def init(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new instance."),
    port: int = typer.Option(..., "--port", min=1, max=65535, help="Server port."),
    method: InstallMethod | None = METHOD_OPTION,
    version: str | None = typer.Option(
        None,
        "--version",
        help="Major version to run (defaults to the newest installed one).",
    ),
    nightly: bool = NIGHTLY_OPTION,
    start_conf: str = typer.Option(
        "auto",
        "--start-conf",
        help=f"Service start mode ({'|'.join(START_CONF_VALUES)}).",
    ),
    no_start: bool = typer.Option(
        False,
        "--no-start",
        help="Create the instance without starting it.",
    ),
) -> None:
    """Initialise a new instance on an installed server version."""
    runtime = _get_runtime(ctx)
    effective = method or runtime.config.default_method
    with runtime.logger.operation(
        "init",
        args={
            "method": effective.value,
            "port": port,
            "version": version,
            "nightly": nightly,
            "start_conf": start_conf,
            "no_start": no_start,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        if start_conf not in START_CONF_VALUES:
            _command_error(op, f"Unsupported --start-conf {start_conf!r}.")
        try:
            query = query_from_flags(nightly, version)
            major = _resolve_major(runtime.platform, effective, query)
            instance = runtime.initializer.init(
                InitOptions(
                    name=name,
                    method=effective,
                    version=major,
                    nightly=nightly,
                    port=port,
                    start_conf=start_conf,
                    inhibit_start=no_start,
                    default_user=runtime.config.admin_user,
                    default_database=runtime.config.admin_database,
                )
            )
        except (MethodUnavailableError, NoInstalledServerError) as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except InitError as exc:
            _command_error(op, f"Initialisation failed: {exc}", rc=ExitCode.FAILURE)
        except (MethodError, ControlError) as exc:
            _command_error(op, f"Initialisation failed: {exc}", rc=ExitCode.PROVIDER)
        except ValueError as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Instance {instance.name!r} initialised on {major}.[/green]")
        op.success(
            f"Initialised instance {instance.name}.",
            changed=1,
            context={"data_dir": instance.data_dir, "version": str(major)},
        )


@instances_app.command("list")
def instances_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances found in the data directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        instances = list_instances(runtime.config.data_dir)
        if json_output:
            payload = [
                {"name": inst.name, "data_dir": str(inst.data_dir), **inst.metadata.to_dict()}
                for inst in instances
            ]
            console.print_json(data={"instances": payload})
            op.success("Reported instances (JSON).")
            return

        if not instances:
            console.print("No instances found.")
            op.success("No instances found.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Method")
        table.add_column("Version")
        table.add_column("Port", justify="right")
        table.add_column("Start")
        for inst in instances:
            version = str(inst.metadata.version)
            if inst.metadata.nightly:
                version += " (nightly)"
            table.add_row(
                inst.name,
                inst.metadata.method.value,
                version,
                str(inst.metadata.port),
                inst.metadata.start_conf,
            )
        console.print(table)
        op.success(f"Reported {len(instances)} instance(s).")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the effective configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        data = runtime.config.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            console.print(json.dumps(data, indent=2))
        op.success("Reported configuration.")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
