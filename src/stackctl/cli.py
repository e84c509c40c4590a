"""Typer-powered command line interface for ``stackctl``.

Every command runs inside a structured operation scope so that its outcome is
recorded in the operation log, whatever the exit path. Preconditions are
checked before anything on disk or in the orchestrator is touched.
"""
from __future__ import annotations

import shutil
import textwrap
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import __version__
from .autoscale import (
    AutoscaleEngine,
    AutoscaleError,
    ScalePolicy,
    ScaleReport,
    ThresholdTable,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .instance_config import FOLLOW_LATEST, InstanceConfigDocument, InstanceConfigError
from .instances import (
    Instance,
    InstanceError,
    InstanceStore,
    metadata_timestamp,
    normalize_name,
)
from .lister import (
    FleetLister,
    ListingPatternError,
    ListingRecord,
    StateFilter,
    render_flat,
    render_json,
    render_long,
)
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator
from .probe import Probe, ProbeProfile
from .providers import (
    DockerStackOrchestrator,
    ManagementTool,
    ManagementToolError,
    OrchestratorError,
    select_management_tool,
)
from .proxy import ProxyConfigError, ProxyError, ProxyReconciler, ProxyRule
from .state import HealthState, StateResolver

console = Console()

DEPLOYMENT_MODE = "stack"
DB_SECRET_PATTERNS = ("postgres_password", "*_postgres_password")
DB_SERVICES = ("DATASTORE", "MEDIA", "VOTE")
DB_PASSWORD_FILE = "/run/secrets/postgres_password"
CONFIRM_WORD = "YES"

SYMBOL_STYLES = {
    HealthState.NORMAL: "green",
    HealthState.ERROR: "red",
    HealthState.UNKNOWN: "yellow",
    HealthState.STOPPED: "bright_black",
}

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackctl's YAML config file.",
)

INSTANCES_DIR_OPTION = typer.Option(
    None,
    "--instances-dir",
    file_okay=False,
    help="Override the directory holding instance directories.",
)

MANAGEMENT_TOOL_OPTION = typer.Option(
    None,
    "--management-tool",
    "-O",
    help="Management tool to use: a path, a name inside the versions directory, or '-' for latest.",
)

TAG_OPTION = typer.Option(
    None,
    "--tag",
    "-t",
    help="Default image tag for all services (defaults.tag).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage a fleet of application stacks on this host.

        Instances are created, cloned, listed, started, stopped, updated,
        erased, removed and autoscaled; the reverse proxy's routing file is
        kept in line with the fleet.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    store: InstanceStore
    orchestrator: DockerStackOrchestrator
    probe: Probe
    resolver: StateResolver
    ports: PortAllocator
    proxy: ProxyReconciler


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    instances_dir: Path | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if instances_dir is not None:
        overrides["instances_dir"] = str(instances_dir)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.FATAL) from exc

    logger = StructuredLogger(config.logs_dir)
    store = InstanceStore(config.instances_dir, config.config_template)
    orchestrator = DockerStackOrchestrator(docker_bin=config.docker_bin)
    probe = Probe()
    resolver = StateResolver(orchestrator, probe, store=store)
    ports = PortAllocator(
        store=store,
        base_port=config.ports.base,
        max_port=config.ports.max,
        max_retries=config.ports.max_retries,
    )
    proxy = ProxyReconciler(
        config_file=config.proxy.config_file,
        backup_file=config.proxy.backup_file,
        begin_marker=config.proxy.begin_marker,
        end_marker=config.proxy.end_marker,
        reload_command=config.proxy.reload_command,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        store=store,
        orchestrator=orchestrator,
        probe=probe,
        resolver=resolver,
        ports=ports,
        proxy=proxy,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    instances_dir: Path | None = INSTANCES_DIR_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, instances_dir)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stackctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, instances_dir)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Shared helpers -----------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FATAL,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _require_dependency(runtime: RuntimeContext, op: OperationScope) -> None:
    binary = runtime.config.docker_bin
    if shutil.which(binary) is None:
        _command_error(op, f"Dependency not found: {binary}")


def _require_instances_dir(runtime: RuntimeContext, op: OperationScope) -> None:
    if not runtime.store.root.is_dir():
        _command_error(op, f"{runtime.store.root} not found!")


def _normalize(op: OperationScope, name: str) -> str:
    try:
        return normalize_name(name)
    except InstanceError as exc:
        _command_error(op, str(exc))


def _require_instance(runtime: RuntimeContext, name: str, op: OperationScope) -> Instance:
    _require_instances_dir(runtime, op)
    try:
        return runtime.store.require(name)
    except InstanceError as exc:
        _command_error(op, str(exc))


def _load_document(
    runtime: RuntimeContext, instance: Instance, op: OperationScope
) -> InstanceConfigDocument:
    try:
        return runtime.store.document(instance)
    except InstanceConfigError as exc:
        _command_error(op, str(exc))


def _select_tool(
    runtime: RuntimeContext,
    op: OperationScope,
    *,
    option: str | None,
    document: InstanceConfigDocument | None = None,
) -> tuple[ManagementTool, str]:
    """Return the management tool to use and its hash."""
    path = select_management_tool(
        runtime.config.management_tool.bin_dir,
        option=option,
        instance_hash=document.management_tool_hash if document is not None else None,
        default=runtime.config.management_tool.default,
    )
    tool = ManagementTool(path)
    try:
        tool.ensure_available()
        tool_hash = tool.hash()
    except ManagementToolError as exc:
        _command_error(op, str(exc))
    console.print(f"Using management tool at {path}")
    op.add_step("management_tool.select", status="success", detail=str(path))
    return tool, tool_hash


def _render_stack_file(
    runtime: RuntimeContext,
    op: OperationScope,
    tool: ManagementTool,
    instance: Instance,
) -> None:
    try:
        tool.render_config(
            instance.directory,
            instance.config_file,
            compose_template=runtime.config.compose_template,
            config_template=runtime.config.config_template,
        )
    except ManagementToolError as exc:
        _provider_error(op, str(exc))
    op.add_step("management_tool.config", status="success", detail=str(instance.stack_file))


def _deploy(
    runtime: RuntimeContext,
    op: OperationScope,
    tool: ManagementTool,
    instance: Instance,
    document: InstanceConfigDocument,
) -> None:
    _render_stack_file(runtime, op, tool, instance)
    stack = document.stack_name or instance.stack_name
    try:
        runtime.orchestrator.deploy(instance.stack_file, stack)
    except OrchestratorError as exc:
        _provider_error(op, str(exc))
    op.add_step("orchestrator.deploy", status="success", detail=stack)


def _apply_db_params(document: InstanceConfigDocument, name: str) -> None:
    for service in DB_SERVICES:
        document.set(f"defaultEnvironment.{service}_DATABASE_NAME", name)
        document.set(f"defaultEnvironment.{service}_DATABASE_USER", f"{name}_user")
        document.set(f"defaultEnvironment.{service}_DATABASE_PASSWORD_FILE", DB_PASSWORD_FILE)


def _restrict_secrets(instance: Instance) -> None:
    secrets_dir = instance.secrets_dir
    if not secrets_dir.is_dir():
        return
    for path in secrets_dir.rglob("*"):
        if path.is_file():
            path.chmod(0o600)
    secrets_dir.chmod(0o700)


def _confirmed(prompt: str) -> bool:
    answer = typer.prompt(
        f"{prompt} (uppercase {CONFIRM_WORD} to confirm)", default="", show_default=False
    )
    return answer == CONFIRM_WORD


def _styled_row(row: str, state: HealthState) -> Text:
    text = Text(row)
    text.stylize(SYMBOL_STYLES[state], 0, 2)
    return text


def _print_rows(rows: Sequence[str], record: ListingRecord) -> None:
    for index, row in enumerate(rows):
        text = _styled_row(row, record.state) if index == 0 else Text(row)
        console.print(text, soft_wrap=True, highlight=False)


def _show_instance(runtime: RuntimeContext, instance: Instance) -> None:
    """Print the long listing (with metadata) of *instance*."""
    lister = FleetLister(
        runtime.store,
        runtime.resolver,
        runtime.config.probe.fast,
        parallel=False,
    )
    for record in lister.collect([instance], details=True):
        _print_rows(render_long(record, long=True, metadata=True), record)


def _build_engine(runtime: RuntimeContext, op: OperationScope) -> AutoscaleEngine:
    settings = runtime.config.autoscale
    try:
        thresholds = ThresholdTable.parse(settings.accounts_over)
        reset_thresholds = ThresholdTable.parse(settings.reset_accounts_over)
    except AutoscaleError as exc:
        _command_error(op, str(exc))
    return AutoscaleEngine(
        runtime.store,
        runtime.orchestrator,
        runtime.resolver,
        thresholds=thresholds,
        reset_thresholds=reset_thresholds,
        service_env_vars=settings.service_env_vars,
    )


def _print_scale_report(report: ScaleReport) -> None:
    name = report.instance.name
    if not report.live:
        console.print(
            f"[yellow]WARN[/yellow]: {name} is not running. The configuration will be "
            "updated and changes will take effect upon its next start."
        )
    if report.policy is ScalePolicy.RESET:
        console.print(f"Resetting scalings of {name}:")
    else:
        console.print(f"{name} will be scaled to handle {report.accounts} accounts.")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="bold")
    table.add_column("Scale from")
    table.add_column("Scale to")
    for spec in report.services:
        table.add_row(spec.service, spec.running, str(spec.target))
    console.print(table)
    for warning in report.warnings:
        console.print(f"[yellow]WARN[/yellow]: {warning}")


def _run_autoscale(
    runtime: RuntimeContext,
    op: OperationScope,
    instance: Instance,
    *,
    accounts: int | None,
    policy: ScalePolicy,
    dry_run: bool,
) -> int:
    """Plan and apply an autoscale run; return the number of changed services."""
    engine = _build_engine(runtime, op)
    try:
        report = engine.plan(instance, accounts, policy)
    except (AutoscaleError, InstanceError) as exc:
        _command_error(op, str(exc))
    except OrchestratorError as exc:
        _provider_error(op, str(exc))
    _print_scale_report(report)
    op.add_step(
        "autoscale.plan",
        status="success",
        detail={"accounts": report.accounts, "policy": policy.value, "live": report.live},
    )

    if not report.action_required:
        console.print("No action required")
        return 0

    if dry_run:
        for command in report.commands:
            console.print(" ".join(command), markup=False)
        for env_var, value in report.env_updates.items():
            console.print(f"set {env_var}={value} in {instance.env.path}", markup=False)
        op.add_step("autoscale.apply", status="skipped", detail="dry-run")
        return 0

    try:
        outcome = engine.apply(report)
    except OrchestratorError as exc:
        _provider_error(op, str(exc))
    for line in outcome.metadata_lines:
        console.print(line, markup=False)
    op.add_step("autoscale.apply", status="success", detail=outcome.changed)
    return len(outcome.changed)


def _wait_until_ready(
    runtime: RuntimeContext,
    tool: ManagementTool,
    instance: Instance,
    port: int,
) -> None:
    """Block until the instance is healthy and its initial data is loaded."""
    readiness = runtime.config.readiness
    console.print("Waiting for instance to become ready.")
    time.sleep(readiness.initial_delay)
    while not runtime.probe.healthy(port, runtime.config.probe.fast):
        time.sleep(readiness.interval)
    while not tool.initial_data(port, instance.secrets_dir):
        time.sleep(readiness.interval)
        console.print("Waiting for datastore to load initial data.")


def _edit_proxy_rule(
    runtime: RuntimeContext,
    op: OperationScope,
    rule: ProxyRule,
    *,
    local_only: bool,
) -> list[str]:
    try:
        result = runtime.proxy.add_rule(rule, local_only=local_only)
    except ProxyConfigError as exc:
        _command_error(op, f"Proxy configuration error: {exc}")
    except (ProxyError, OSError) as exc:
        _provider_error(op, f"Proxy update failed: {exc}")
    if local_only:
        op.add_step("proxy.add", status="skipped", detail="local-only")
    else:
        status = "success" if result.changed else "skipped"
        op.add_step("proxy.add", status=status, detail=rule.name)
    return [str(result.backup)] if result.backup is not None else []


# Commands -----------------------------------------------------------------
@app.command("ls")
def list_instances(
    ctx: typer.Context,
    pattern: str | None = typer.Argument(None, help="Case-insensitive search pattern (regex)."),
    long: bool = typer.Option(False, "--long", "-l", help="Include the extended listing."),
    secrets: bool = typer.Option(False, "--secrets", "-s", help="Include login credentials."),
    metadata: bool = typer.Option(False, "--metadata", "-m", help="Include instance metadata."),
    show_all: bool = typer.Option(False, "--all", "-a", help="Equivalent to -l -m -s."),
    search_metadata: bool = typer.Option(
        False, "--search-metadata", "-M", help="Also match the pattern against metadata."
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Emit instances as JSON."),
    online: bool = typer.Option(False, "--online", "-n", help="Show only online instances."),
    offline: bool = typer.Option(False, "--offline", "-f", help="Show only stopped instances."),
    errors_only: bool = typer.Option(
        False, "--error", "-e", help="Show only instances in error or unknown state."
    ),
    fast: bool = typer.Option(False, "--fast", help="Skip health and version checks."),
    patient: bool = typer.Option(False, "--patient", help="Use long timeouts, no parallelism."),
    running_version: str | None = typer.Option(
        None, "--version", help="Show only instances running this version."
    ),
) -> None:
    """List instances and their status."""
    runtime = _get_runtime(ctx)
    if show_all:
        long = metadata = secrets = True
    state_filter: StateFilter | None = None
    if online:
        state_filter = StateFilter.ONLINE
    elif offline:
        state_filter = StateFilter.STOPPED
    elif errors_only:
        state_filter = StateFilter.ERROR
    if running_version:
        state_filter = StateFilter.ONLINE

    profile: ProbeProfile
    parallel = runtime.config.listing.parallel
    if patient:
        profile = runtime.config.probe.patient
        parallel = False
    elif fast:
        profile = runtime.config.probe.fast
    else:
        profile = replace(runtime.config.probe.fast, name="default", skip_health=False)

    with runtime.logger.operation(
        "ls",
        args={
            "pattern": pattern,
            "long": long,
            "json": json_output,
            "profile": profile.name,
            "state": state_filter.value if state_filter else None,
        },
        target={"kind": "fleet", "scope": str(runtime.store.root)},
    ) as op:
        if running_version and profile.skip_health:
            _command_error(op, "--version cannot be combined with --fast.", rc=ExitCode.USAGE)
        _require_instances_dir(runtime, op)
        if not profile.skip_health:
            _require_dependency(runtime, op)
        lister = FleetLister(
            runtime.store,
            runtime.resolver,
            profile,
            parallel=parallel,
            max_workers=runtime.config.listing.max_workers,
        )
        try:
            selected = lister.select(pattern, search_metadata=search_metadata)
        except ListingPatternError as exc:
            _command_error(op, str(exc), rc=ExitCode.USAGE)
        records = lister.collect(
            selected,
            state_filter=state_filter,
            version=running_version,
            details=long or secrets or metadata or json_output,
        )

        if json_output:
            console.print_json(data=render_json(records))
        elif long or secrets or metadata:
            for record in records:
                _print_rows(
                    render_long(record, long=long, secrets=secrets, metadata=metadata),
                    record,
                )
        else:
            for row, record in zip(render_flat(records), records, strict=True):
                console.print(_styled_row(row, record.state), soft_wrap=True, highlight=False)
        op.success(
            "Reported instance list.",
            changed=0,
            context={"selected": len(selected), "listed": len(records)},
        )


@app.command("add")
def add_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Domain name of the new instance."),
    tag: str | None = TAG_OPTION,
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
    clone_from: str | None = typer.Option(
        None, "--clone-from", help="Create the instance based on an existing instance."
    ),
    local_only: bool = typer.Option(
        False, "--local-only", help="Do not add a reverse-proxy rule for the instance."
    ),
    www: bool = typer.Option(False, "--www", help="Also route the www subdomain."),
    start: bool | None = typer.Option(
        None, "--start/--no-start", help="Start the instance without asking."
    ),
) -> None:
    """Create a new instance (optionally cloned from an existing one)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "add",
        args={
            "tag": tag,
            "management_tool": management_tool,
            "clone_from": clone_from,
            "local_only": local_only,
            "www": www,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        _require_instances_dir(runtime, op)
        instance = runtime.store.get(name)
        if instance.exists():
            _command_error(op, f"Instance '{name}' already exists.")

        source: Instance | None = None
        source_document: InstanceConfigDocument | None = None
        if clone_from is not None:
            source = _require_instance(runtime, clone_from, op)
            if not source.has_marker():
                _command_error(op, f"The instance '{source.name}' was not created with stackctl.")
            source_document = _load_document(runtime, source, op)
        _require_dependency(runtime, op)

        if source is None:
            console.print(f"Creating new instance: {name}")
            option = management_tool or FOLLOW_LATEST
        else:
            console.print(f"Creating new instance: {name} (based on {source.name})")
            option = management_tool
        tool, tool_hash = _select_tool(runtime, op, option=option, document=source_document)

        try:
            port = runtime.ports.next_free_port()
        except PortAllocationError as exc:
            _command_error(op, str(exc))
        op.add_step("ports.allocate", status="success", detail=port)

        if source is None:
            try:
                tool.setup(
                    instance.directory,
                    compose_template=runtime.config.compose_template,
                    config_template=runtime.config.config_template,
                )
            except ManagementToolError as exc:
                _provider_error(op, f"Error during setup: {exc}")
            instance.marker_file.touch()
            _restrict_secrets(instance)
            op.add_step("management_tool.setup", status="success", detail=str(instance.directory))
        else:
            instance.directory.mkdir(parents=True)
            shutil.copy2(source.config_file, instance.config_file)
            shutil.copy2(source.marker_file, instance.marker_file)
            if source.secrets_dir.is_dir():
                shutil.copytree(
                    source.secrets_dir,
                    instance.secrets_dir,
                    ignore=shutil.ignore_patterns(*DB_SECRET_PATTERNS),
                )
            _restrict_secrets(instance)
            op.add_step("instance.clone", status="success", detail=source.name)

        document = InstanceConfigDocument.create(
            instance.config_file, runtime.config.config_template
        )
        if source is None:
            document.set(
                "managementToolHash",
                FOLLOW_LATEST if option == FOLLOW_LATEST else tool_hash,
            )
            if document.postgres_disabled:
                db_data = instance.directory / "db-data"
                if db_data.is_dir() and not any(db_data.iterdir()):
                    db_data.rmdir()
        document.set("port", port)
        document.set("stackName", instance.stack_name)
        if tag:
            document.set("defaults.tag", tag)
        _apply_db_params(document, name)
        document.save()
        op.add_step("config.update", status="success", detail={"port": port})

        _render_stack_file(runtime, op, tool, instance)

        timestamp = metadata_timestamp()
        lines = (
            [f"{timestamp}: Instance created ({DEPLOYMENT_MODE})"]
            if source is None
            else [f"Cloned from {source.name} on {timestamp}"]
        )
        lines.append(f"{timestamp}: image={tag or document.default_tag or ''} manage={tool_hash}")
        if local_only:
            lines.append("No HAProxy config added (--local-only)")
        instance.metadata.append(*lines)
        op.add_step("metadata.append", status="success", detail=len(lines))

        rule = ProxyRule(name=name, port=port, www=www)
        backups = _edit_proxy_rule(runtime, op, rule, local_only=local_only)

        try:
            accounts = instance.metadata.accounts()
        except InstanceError as exc:
            _command_error(op, str(exc))
        if source is None and accounts is not None:
            _run_autoscale(
                runtime, op, instance, accounts=None, policy=ScalePolicy.RESET, dry_run=False
            )

        console.print(f"[green]Instance '{name}' created on port {port}.[/green]")
        if start is None:
            console.print(
                "The instance must be started for the setup process to finish. "
                "You may edit config.yml before starting it."
            )
            start = typer.confirm("Start the instance?", default=True)
        if not start:
            console.print("Not starting instance.")
            op.success(
                "Instance created.",
                changed=1,
                backups=backups,
                context={"port": port, "started": False},
            )
            return

        _deploy(runtime, op, tool, instance, document)
        if source is None:
            _wait_until_ready(runtime, tool, instance, port)
            op.add_step("instance.ready", status="success")
        op.success(
            "Instance created and started.",
            changed=1,
            backups=backups,
            context={"port": port, "started": True},
        )


@app.command("rm")
def remove_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
    force: bool = typer.Option(
        False, "--force", help="Remove instances that were not created with stackctl."
    ),
) -> None:
    """Remove an instance including all of its data and configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rm",
        args={"force": force},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        if not force and not instance.has_marker():
            _command_error(
                op,
                f"The instance '{name}' was not created with stackctl. "
                "Refusing to delete unless --force is given.",
            )
        _require_dependency(runtime, op)

        console.print("Delete the following instance including all of its data and configuration?")
        _show_instance(runtime, instance)
        if not _confirmed("Really delete?"):
            console.print("Aborted.")
            op.success("Removal not confirmed.", changed=0)
            return

        document = _load_document(runtime, instance, op)
        stack = document.stack_name or instance.stack_name
        console.print("Stopping and removing containers...")
        try:
            runtime.orchestrator.remove(stack)
            op.add_step("orchestrator.remove", status="success", detail=stack)
        except OrchestratorError as exc:
            op.add_step("orchestrator.remove", status="warning", detail=str(exc))

        console.print("Removing instance directory...")
        shutil.rmtree(instance.directory)
        op.add_step("filesystem.remove", status="success", detail=str(instance.directory))

        console.print("Removing reverse-proxy rule...")
        try:
            result = runtime.proxy.remove_rule(name)
        except ProxyConfigError as exc:
            _command_error(op, f"Proxy configuration error: {exc}")
        except (ProxyError, OSError) as exc:
            _provider_error(op, f"Proxy update failed: {exc}")
        op.add_step("proxy.remove", status="success" if result.changed else "skipped", detail=name)
        console.print(f"[yellow]Instance '{name}' removed.[/yellow]")
        backups = [str(result.backup)] if result.backup is not None else []
        op.success("Instance removed.", changed=1, backups=backups)


@app.command("start")
def start_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
) -> None:
    """Start, i.e. (re)deploy, an existing instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"management_tool": management_tool},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        _require_dependency(runtime, op)
        document = _load_document(runtime, instance, op)
        tool, _ = _select_tool(runtime, op, option=management_tool, document=document)
        _deploy(runtime, op, tool, instance, document)
        console.print(f"[green]Instance '{name}' started.[/green]")
        op.success("Instance started.", changed=1)


@app.command("stop")
def stop_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Stop a running instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        _require_dependency(runtime, op)
        document = _load_document(runtime, instance, op)
        stack = document.stack_name or instance.stack_name
        try:
            runtime.orchestrator.remove(stack)
        except OrchestratorError as exc:
            _provider_error(op, str(exc))
        op.add_step("orchestrator.remove", status="success", detail=stack)
        console.print(f"[green]Instance '{name}' stopped.[/green]")
        op.success("Instance stopped.", changed=1)


@app.command("update")
def update_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to update."),
    tag: str | None = TAG_OPTION,
    management_tool: str | None = MANAGEMENT_TOOL_OPTION,
) -> None:
    """Update the instance's image tag and/or management tool."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"tag": tag, "management_tool": management_tool},
        target={"kind": "instance", "name": name},
    ) as op:
        if not tag and not management_tool:
            _command_error(op, "Update requires tag or management tool option.")
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        _require_dependency(runtime, op)
        document = _load_document(runtime, instance, op)
        tool, tool_hash = _select_tool(runtime, op, option=management_tool, document=document)

        timestamp = metadata_timestamp()
        if tag:
            document.set("defaults.tag", tag)
            _apply_db_params(document, name)
            document.save()
            _render_stack_file(runtime, op, tool, instance)
            instance.metadata.append(f"{timestamp}: Updated all services to {tag}")
            op.add_step("config.tag", status="success", detail=tag)

        if management_tool:
            recorded = FOLLOW_LATEST if management_tool == FOLLOW_LATEST else tool_hash
            document.set("managementToolHash", recorded)
            document.save()
            instance.metadata.append(
                f"{timestamp}: Updated management tool to {recorded} ({tool_hash})"
            )
            op.add_step("config.management_tool", status="success", detail=recorded)

        try:
            deployed = runtime.resolver.is_deployed(instance)
        except OrchestratorError as exc:
            _provider_error(op, str(exc))
        if not deployed:
            console.print(
                f"[yellow]WARN[/yellow]: {name} is not running. The configuration has been "
                "updated and the instance will be upgraded upon its next start."
            )
            op.warning("Instance updated but not running.", changed=1)
            return

        _deploy(runtime, op, tool, instance, document)
        console.print(f"[green]Instance '{name}' updated.[/green]")
        op.success("Instance updated and redeployed.", changed=1)


@app.command("erase")
def erase_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to erase."),
) -> None:
    """Stop the instance and remove its containers and volumes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "erase",
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        _require_dependency(runtime, op)

        console.print("Stop the following instance, and remove its containers and volumes?")
        _show_instance(runtime, instance)
        if not _confirmed("Really delete?"):
            console.print("Aborted.")
            op.success("Erase not confirmed.", changed=0)
            return

        document = _load_document(runtime, instance, op)
        stack = document.stack_name or instance.stack_name
        try:
            runtime.orchestrator.remove(stack)
            op.add_step("orchestrator.remove", status="success", detail=stack)
        except OrchestratorError as exc:
            op.add_step("orchestrator.remove", status="warning", detail=str(exc))
        console.print(
            "The database is not deleted automatically for stack deployments; "
            "remove it separately if required."
        )
        op.success("Instance erased.", changed=1)


@app.command("autoscale")
def autoscale_instance(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to autoscale."),
    allow_downscale: bool = typer.Option(
        False, "--allow-downscale", help="Also scale services down to their targets."
    ),
    reset: bool = typer.Option(
        False, "--reset", "--reset-scale", help="Reset all scalings using the reset table."
    ),
    accounts: int | None = typer.Option(
        None, "--accounts", min=0, help="Number of accounts (overrides the ACCOUNTS metadatum)."
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Print the actions that would be taken without applying them.",
    ),
) -> None:
    """Scale an instance's services to its number of accounts."""
    runtime = _get_runtime(ctx)
    if reset:
        policy = ScalePolicy.RESET
    elif allow_downscale:
        policy = ScalePolicy.ALLOW_DOWNSCALE
    else:
        policy = ScalePolicy.NORMAL
    with runtime.logger.operation(
        "autoscale",
        args={"accounts": accounts, "policy": policy.value, "dry_run": dry_run},
        target={"kind": "instance", "name": name},
    ) as op:
        name = _normalize(op, name)
        instance = _require_instance(runtime, name, op)
        _require_dependency(runtime, op)
        changed = _run_autoscale(
            runtime, op, instance, accounts=accounts, policy=policy, dry_run=dry_run
        )
        if dry_run:
            _dry_run_complete(
                op, f"Autoscale of '{name}' not applied.", context={"policy": policy.value}
            )
            return
        op.success("Autoscale complete.", changed=changed)


def main() -> None:
    """Entry point used by the console script."""
    app()


if __name__ == "__main__":  # pragma: no cover - manual invocation path
    main()
