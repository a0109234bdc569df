"""Typer-powered command line for ``maasflow``.

``maasflow run`` polls the MAAS server and drives every in-scope machine
towards ``Deployed``. ``maasflow once`` performs a single pass and reports
what was dispatched. The remaining commands inspect the transition table and
the resolved configuration.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .config import AppConfig, ConfigError, build_processing_options, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger, configure_logging
from .models import ProcessingOptions
from .providers import MaasAuthError, MaasClient, MaasError
from .reconcile import CycleReport, Reconciler
from .transitions import TRANSITIONS, TransitionTableError

console = Console()
LOGGER = logging.getLogger(__name__)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to maasflow's YAML config file.",
)

MAAS_URL_OPTION = typer.Option(
    None,
    "--maas",
    help="URL over which to access MAAS (default http://localhost/MAAS).",
)
API_KEY_OPTION = typer.Option(
    None,
    "--apikey",
    help="Key with which to access the MAAS server (consumer:token:secret).",
)
API_VERSION_OPTION = typer.Option(
    None,
    "--api-version",
    help="Version of the MAAS API to access.",
)
PERIOD_OPTION = typer.Option(
    None,
    "--period",
    help="How often the MAAS service is polled for node states (e.g. 15s, 1m).",
)
FILTER_OPTION = typer.Option(
    None,
    "--filter",
    help="Filter document (JSON/YAML) or @file constraining which nodes are automated.",
)
MAPPING_OPTION = typer.Option(
    None,
    "--mapping",
    help="MAC to hostname mapping document (JSON/YAML) or @file.",
)
PREVIEW_OPTION = typer.Option(
    False,
    "--preview",
    help="Show the actions that would be taken without applying them, then exit.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Enable debug logging.",
)
ALWAYS_RENAME_OPTION = typer.Option(
    False,
    "--always-rename",
    help="Issue the hostname update even when the name already matches the mapping.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        MAAS lifecycle automation.

        Polls a MAAS server and moves every machine selected by the filter
        through commissioning, allocation and deployment.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    options: ProcessingOptions
    logger: StructuredLogger


@dataclass(slots=True)
class CliState:
    """Values captured by the root callback."""

    config_file: Path | None = None


def _fatal(message: str, *, rc: int = ExitCode.VALIDATION) -> NoReturn:
    LOGGER.error(message)
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(code=rc)


def _ensure_runtime(
    ctx: typer.Context,
    overrides: Mapping[str, object] | None = None,
) -> RuntimeContext:
    state = ctx.obj if isinstance(ctx.obj, CliState) else CliState()
    try:
        config = load_config(config_file=state.config_file, overrides=overrides)
        options = build_processing_options(config)
    except ConfigError as exc:
        _fatal(f"Invalid configuration: {exc}")
    logger = StructuredLogger(config.logs_dir)
    return RuntimeContext(config=config, options=options, logger=logger)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _connect(runtime: RuntimeContext, op: OperationScope) -> MaasClient:
    maas = runtime.config.maas
    try:
        client = MaasClient(
            maas.url,
            maas.api_key,
            api_version=maas.api_version,
            timeout=maas.timeout,
        )
        version = client.check_connection()
    except MaasAuthError as exc:
        _command_error(
            op,
            f"Unable to connect and authenticate to the MAAS server: {exc}",
            rc=ExitCode.PROVIDER,
        )
    except MaasError as exc:
        _command_error(op, f"Unable to reach the MAAS server: {exc}", rc=ExitCode.PROVIDER)
    LOGGER.info("connected and authenticated to the MAAS server at %s", maas.url)
    op.add_step("maas.connect", status="success", detail=version or maas.url)
    return client


def _build_reconciler(
    runtime: RuntimeContext,
    client: MaasClient,
    op: OperationScope,
) -> Reconciler:
    try:
        return Reconciler(client, runtime.options, logger=runtime.logger)
    except TransitionTableError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _run_overrides(
    *,
    maas_url: str | None,
    api_key: str | None,
    api_version: str | None,
    period: str | None,
    filter_spec: str | None,
    mapping: str | None,
    preview: bool,
    verbose: bool,
    always_rename: bool,
) -> dict[str, object]:
    overrides: dict[str, object] = {}
    maas: dict[str, object] = {}
    if maas_url is not None:
        maas["url"] = maas_url
    if api_key is not None:
        maas["api_key"] = api_key
    if api_version is not None:
        maas["api_version"] = api_version
    if maas:
        overrides["maas"] = maas
    if period is not None:
        overrides["period"] = period
    if filter_spec is not None:
        overrides["filter"] = filter_spec
    if mapping is not None:
        overrides["mappings"] = mapping
    if preview:
        overrides["preview"] = True
    if verbose:
        overrides["verbose"] = True
    if always_rename:
        overrides["always_rename"] = True
    return overrides


def _render_report(report: CycleReport) -> None:
    table = Table(title="Reconciliation pass")
    table.add_column("Node")
    table.add_column("Outcome")
    table.add_column("Detail")
    for hostname, action in report.dispatched:
        table.add_row(escape(hostname), "[green]dispatched[/green]", action)
    for hostname in report.suppressed:
        table.add_row(
            escape(hostname), "[yellow]in flight[/yellow]", "previous action still running"
        )
    for hostname in report.skipped:
        table.add_row(escape(hostname), "[dim]skipped[/dim]", "did not match include filter")
    for error in [*report.errors, *report.completed_failures]:
        table.add_row(escape(error.hostname or "-"), "[red]error[/red]", escape(error.message))
    console.print(table)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the maasflow version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"maasflow {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    ctx.obj = CliState(config_file=config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@app.command()
def run(
    ctx: typer.Context,
    maas_url: str | None = MAAS_URL_OPTION,
    api_key: str | None = API_KEY_OPTION,
    api_version: str | None = API_VERSION_OPTION,
    period: str | None = PERIOD_OPTION,
    filter_spec: str | None = FILTER_OPTION,
    mapping: str | None = MAPPING_OPTION,
    preview: bool = PREVIEW_OPTION,
    verbose: bool = VERBOSE_OPTION,
    always_rename: bool = ALWAYS_RENAME_OPTION,
) -> None:
    """Poll MAAS and drive machines towards Deployed until interrupted."""
    configure_logging(verbose)
    runtime = _ensure_runtime(
        ctx,
        _run_overrides(
            maas_url=maas_url,
            api_key=api_key,
            api_version=api_version,
            period=period,
            filter_spec=filter_spec,
            mapping=mapping,
            preview=preview,
            verbose=verbose,
            always_rename=always_rename,
        ),
    )
    configure_logging(runtime.options.verbose)
    config = runtime.config
    with runtime.logger.operation(
        "run",
        args={
            "maas": config.maas.url,
            "period": config.period,
            "preview": config.preview,
            "always_rename": config.always_rename,
        },
        target={"kind": "maas", "scope": "nodes"},
    ) as op:
        client = _connect(runtime, op)
        reconciler = _build_reconciler(runtime, client, op)
        try:
            cycles = reconciler.run(config.period)
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted; waiting for in-flight actions.[/yellow]")
            op.warning("Interrupted by operator.", warnings=["interrupted"])
            return
        finally:
            reconciler.shutdown(wait=True)
        op.success(f"Completed {cycles} cycle(s).", changed=0)


@app.command()
def once(
    ctx: typer.Context,
    maas_url: str | None = MAAS_URL_OPTION,
    api_key: str | None = API_KEY_OPTION,
    api_version: str | None = API_VERSION_OPTION,
    filter_spec: str | None = FILTER_OPTION,
    mapping: str | None = MAPPING_OPTION,
    preview: bool = PREVIEW_OPTION,
    verbose: bool = VERBOSE_OPTION,
    always_rename: bool = ALWAYS_RENAME_OPTION,
) -> None:
    """Run a single reconciliation pass and report the outcome."""
    configure_logging(verbose)
    runtime = _ensure_runtime(
        ctx,
        _run_overrides(
            maas_url=maas_url,
            api_key=api_key,
            api_version=api_version,
            period=None,
            filter_spec=filter_spec,
            mapping=mapping,
            preview=preview,
            verbose=verbose,
            always_rename=always_rename,
        ),
    )
    configure_logging(runtime.options.verbose)
    with runtime.logger.operation(
        "once",
        args={"maas": runtime.config.maas.url, "preview": runtime.config.preview},
        target={"kind": "maas", "scope": "nodes"},
    ) as op:
        client = _connect(runtime, op)
        reconciler = _build_reconciler(runtime, client, op)
        try:
            report = reconciler.run_cycle()
            reconciler.wait_for_dispatches()
        finally:
            reconciler.shutdown(wait=True)
        report.completed_failures.extend(reconciler.drain_dispatch_errors())
        _render_report(report)

        failures = [str(error) for error in [*report.errors, *report.completed_failures]]
        if failures:
            _command_error(
                op,
                f"{len(failures)} error(s) recorded during the pass.",
                rc=ExitCode.PROVIDER,
                errors=failures,
            )
        op.success("Pass completed.", changed=len(report.dispatched), context=report.to_dict())


@app.command()
def transitions(json_output: bool = JSON_OPTION) -> None:
    """Show the status to action transition table."""
    rows = [
        {
            "target": transition.target.label,
            "current": transition.current.label,
            "action": transition.action.name,
        }
        for transition in TRANSITIONS
    ]
    if json_output:
        console.print_json(data={"transitions": rows})
        return
    table = Table(title="Transitions")
    table.add_column("Current")
    table.add_column("Action")
    table.add_column("Target")
    for row in rows:
        table.add_row(row["current"], row["action"], row["target"])
    console.print(table)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the merged configuration."""
    runtime = _ensure_runtime(ctx)
    payload = runtime.config.to_dict()
    if json_output:
        console.print_json(data=payload)
    else:
        rendered = yaml.safe_dump(payload, sort_keys=False).rstrip()
        console.print(rendered, markup=False, highlight=False, soft_wrap=True)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
