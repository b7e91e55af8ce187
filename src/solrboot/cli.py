"""Command-line interface for solrboot.

Every command runs inside a structured logging operation. Engine credentials
come from configuration only (file, coordination env file or ``SOLRBOOT_*``
environment variables); they are never accepted as arguments and never
printed.
"""
from __future__ import annotations

import signal
import textwrap
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap import BootstrapOptions, BootstrapReport, BootstrapStateMachine, CredentialRotator
from .catalog import load_catalog
from .config import AppConfig, load_config
from .errors import ConfigError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers.launcher import CommandLauncher, Launcher, build_launch_parameters
from .solr.client import RetryPolicy, SolrAdminClient
from .topology import resolve_topology

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to an alternate config.yml file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Solr provisioning and security bootstrap.

        Resolves the deployment topology, creates cores or collections,
        applies the schema and swaps the default administrator for the
        configured caller account.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    cancel: threading.Event = field(default_factory=threading.Event)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _build_client(config: AppConfig, cancel: threading.Event) -> SolrAdminClient:
    """Return the admin client for *config* (patched in tests)."""
    return SolrAdminClient(
        config.endpoint,
        timeout=config.timeouts.request,
        connect_timeout=config.timeouts.connect,
        retry=RetryPolicy(
            max_attempts=config.retries.max_attempts,
            base_delay=config.retries.base_delay,
            max_delay=config.retries.max_delay,
        ),
        cancel=cancel,
    )


def _build_launcher(config: AppConfig) -> Launcher:
    """Return the launcher collaborator for *config* (patched in tests)."""
    launcher = config.launcher
    return CommandLauncher(
        env_file=launcher.env_file,
        start_command=launcher.start_command,
        restart_command=launcher.restart_command,
        security_path=launcher.security_path,
        security_command=launcher.security_command,
    )


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


@contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative cancellation request."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        cancel.set()

    previous = {
        signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _render_report(report: BootstrapReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
        return
    colour = "green" if report.failure is None else "red"
    console.print(f"[bold]State:[/bold] [{colour}]{report.state.value}[/{colour}]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Entity", style="bold")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Outcome")
    for result in [*report.entities, *report.schema]:
        table.add_row(result.entity, result.kind, result.name, result.outcome)
    if table.row_count:
        console.print(table)
    if report.auth is not None:
        console.print(f"Authentication: {report.auth}")
    if report.rotation is not None:
        console.print(f"Rotation: {report.rotation.status}")
    if report.bootstrap_revoked is not None:
        console.print(f"Bootstrap credential revoked: {'yes' if report.bootstrap_revoked else 'no'}")
    if report.failure is not None:
        failure = report.failure
        console.print(f"[red]Failed at {failure.stage.value}: {failure.reason}[/red]")
        details = [
            f"{label}={value}"
            for label, value in (
                ("category", failure.category),
                ("entity", failure.entity),
                ("field", failure.field),
                ("http_status", failure.http_status),
            )
            if value is not None
        ]
        if details:
            console.print(f"  {' '.join(details)}")


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the solrboot version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"solrboot {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command("bootstrap")
def bootstrap_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Provision entities and schema, enable authentication and rotate credentials."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "bootstrap",
        args={"json": json_output},
        target={"kind": "engine", "endpoint": config.endpoint},
    ) as op:
        try:
            topology = resolve_topology(config.coordination)
            catalog = load_catalog(config.catalog_file)
            policy = config.security.to_policy()
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        op.add_step("topology.resolve", detail=topology.to_dict())

        options = BootstrapOptions(
            ready_timeout=config.timeouts.ready,
            poll_interval=config.timeouts.poll_interval,
            schema_concurrency=config.schema_concurrency,
        )
        with _cancel_on_signals(runtime.cancel), _build_client(config, runtime.cancel) as client:
            machine = BootstrapStateMachine(
                client,
                _build_launcher(config),
                options=options,
                cancel=runtime.cancel,
            )
            report = machine.run(
                topology,
                catalog.entities(topology),
                catalog.schemas(),
                policy,
                op=op,
            )

        _render_report(report, json_output=json_output)
        context = report.to_dict()
        if report.failure is None:
            op.success(
                "Bootstrap complete.",
                changed=report.created_count,
                context=context,
            )
            return
        message = f"Bootstrap failed at {report.failure.stage.value}: {report.failure.reason}"
        op.error(message, rc=report.exit_code, context=context)
    raise typer.Exit(code=report.exit_code)


@app.command("rotate")
def rotate_command(ctx: typer.Context) -> None:
    """Replace the bootstrap administrator with the configured caller account."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "rotate",
        target={"kind": "engine", "endpoint": config.endpoint},
    ) as op:
        try:
            policy = config.security.to_policy()
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        with _cancel_on_signals(runtime.cancel), _build_client(config, runtime.cancel) as client:
            outcome = CredentialRotator().rotate(client, policy.bootstrap, policy.caller)
        op.add_step("rotation", status=outcome.status, detail=outcome.to_dict())
        if outcome.succeeded:
            console.print(
                f"[green]Credentials rotated[/green]: '{policy.caller.username}' is now the administrator."
            )
            op.success("Credentials rotated.", changed=1, context=outcome.to_dict())
            return
        _command_error(
            op,
            f"Rotation failed at {outcome.step}: {outcome.reason}",
            rc=outcome.exit_code,
        )


@app.command("topology")
def topology_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the resolved topology and the launch parameters derived from it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "topology",
        args={"json": json_output},
        target={"kind": "topology"},
    ) as op:
        try:
            topology = resolve_topology(runtime.config.coordination)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        parameters = build_launch_parameters(topology)
        payload = {"topology": topology.to_dict(), "launch": parameters.to_dict()}
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            table.add_row("mode", topology.mode.value)
            table.add_row("connect_string", topology.connect_string or "-")
            table.add_row("timeout_ms", str(topology.timeout_ms))
            table.add_row("tls", "yes" if topology.tls_material else "no")
            for key, value in sorted(parameters.env.items()):
                table.add_row(f"env.{key}", value)
            for volume in parameters.volumes:
                table.add_row("volume", volume)
            console.print(table)
        op.success("Resolved topology.", changed=0, context={"mode": topology.mode.value})


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges (secrets redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                for child_key, child_value in value.items():
                    table.add_row(f"{key}.{child_key}", str(child_value))
            else:
                table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
