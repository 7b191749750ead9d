"""Typer-powered command line for ``ovpnctl``.

Every command runs inside a structured operation scope so the operations log
records its arguments, steps and outcome. Domain errors are mapped to exit
codes through :func:`ovpnctl.errors.exit_code_for`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .clients import DEFAULT_PAGE_SIZE, ClientService
from .config import AppConfig, load_config
from .errors import AdvisoryResult, OvpnctlError, ServiceError, exit_code_for
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .monitor import ConnectionMonitor
from .providers import CommandRunner, HostProviders, NetworkConfigurator, SystemdProvider
from .provisioning import ProvisioningOrchestrator
from .rendering import ConfigRenderer
from .server import DEFAULT_LOG_LINES, ServerManager
from .state import Database, InstanceRegistry, migrate
from .state.records import ClientStatus, ProvisioningStep, validate_instance_name
from .templates import TemplateEngine, write_if_changed

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Path to an alternate configuration file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")
INSTANCE_ARGUMENT = typer.Argument(..., help="Name of the instance.")
CLIENT_ARGUMENT = typer.Argument(..., help="Name of the client.")

HOSTNAME_OPTION = typer.Option(None, "--hostname", help="Public hostname clients connect to.")
PROTOCOL_OPTION = typer.Option(None, "--protocol", help="Transport protocol (udp or tcp).")
PORT_OPTION = typer.Option(None, "--port", help="Listening port.")
DEV_TYPE_OPTION = typer.Option(None, "--dev-type", help="Virtual device type (tun or tap).")
SUBNET_OPTION = typer.Option(None, "--subnet", help="Client address network.")
SUBNET_MASK_OPTION = typer.Option(None, "--subnet-mask", help="Client address netmask.")
DNS_OPTION = typer.Option(None, "--dns", help="Comma separated resolvers pushed to clients.")
CIPHER_OPTION = typer.Option(None, "--cipher", help="Data channel cipher.")
AUTH_OPTION = typer.Option(None, "--auth", help="HMAC digest.")
TLS_AUTH_OPTION = typer.Option(
    None, "--tls-auth/--no-tls-auth", help="Protect the handshake with a static key."
)
COMPRESS_OPTION = typer.Option(None, "--compress", help="Compression mode.")
CLIENT_TO_CLIENT_OPTION = typer.Option(
    None, "--client-to-client/--no-client-to-client", help="Let clients reach each other."
)
MAX_CLIENTS_OPTION = typer.Option(None, "--max-clients", help="Concurrent client limit.")
KEEPALIVE_OPTION = typer.Option(None, "--keepalive", help="Keepalive as '<interval> <timeout>'.")
ROUTE_OPTION = typer.Option(
    None, "--route", help="Network pushed to clients (network/mask); repeatable."
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        OpenVPN multi-instance provisioning and supervision CLI.

        Create instances, provision their certificate authority, daemon
        configuration and firewall rules, manage client credentials and
        inspect live sessions.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    database: Database
    registry: InstanceRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    providers: HostProviders
    renderer: ConfigRenderer
    orchestrator: ProvisioningOrchestrator
    server: ServerManager
    clients: ClientService
    migrated: list[int]

    def host_network(self) -> NetworkConfigurator:
        """Return a configurator for host-wide network commands."""
        return NetworkConfigurator(
            device="",
            runner=self.providers.runner,
            settings=self.config.network,
        )

    def monitor(self, name: str) -> ConnectionMonitor:
        """Return the connection monitor of instance *name*."""
        return ConnectionMonitor.for_instance(self.database, self.registry.require(name))


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    database = Database.open(config.database)
    migrated = migrate(database, config.legacy)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runner = CommandRunner()
    systemd = SystemdProvider(
        runner=runner,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
        unit_prefix=config.systemd.unit_prefix,
    )
    providers = HostProviders(
        runner=runner,
        systemd=systemd,
        easyrsa=config.easyrsa,
        network=config.network,
    )
    registry = InstanceRegistry(
        database=database,
        server_dir=config.server_dir,
        log_dir=config.log_dir,
        stop_service=systemd.stop,
        disable_service=systemd.disable,
    )
    renderer = ConfigRenderer(templates)
    runtime = RuntimeContext(
        config=config,
        database=database,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        providers=providers,
        renderer=renderer,
        orchestrator=ProvisioningOrchestrator(
            registry=registry,
            locks=locks,
            renderer=renderer,
            providers=providers,
            packages=config.packages,
        ),
        server=ServerManager(
            registry=registry, locks=locks, renderer=renderer, providers=providers
        ),
        clients=ClientService(
            registry=registry, locks=locks, renderer=renderer, providers=providers
        ),
        migrated=migrated,
    )
    ctx.obj = runtime
    ctx.call_on_close(database.dispose)
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
        help="Show the ovpnctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"ovpnctl {__version__}")
        raise typer.Exit(code=0)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except (OvpnctlError, OSError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exit_code_for(exc))) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    errors = [str(exc)]
    if isinstance(exc, ServiceError) and exc.cause is not None:
        errors.append(f"{type(exc.cause).__name__}: {exc.cause}")
    _command_error(op, str(exc), rc=int(exit_code_for(exc)), errors=errors)


def _finish(
    op: OperationScope,
    result: AdvisoryResult[Any],
    message: str,
    *,
    changed: int = 1,
) -> None:
    if result.warnings:
        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        op.warning(message, warnings=result.warnings, changed=changed)
        return
    op.success(message, changed=changed)


def _settings_changes(**values: object) -> dict[str, object]:
    changes = {key: value for key, value in values.items() if value is not None}
    routes = changes.get("routes")
    if routes is not None and not routes:
        changes.pop("routes")
    return changes


def _print_mapping(data: Mapping[str, object]) -> None:
    table = Table(show_header=False)
    for key, value in data.items():
        if value in (None, ""):
            continue
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value) or "-"
        table.add_row(key.replace("_", " ").title(), str(value))
    console.print(table)


def _format_bytes(value: int) -> str:
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


instances_app = typer.Typer(help="Create, inspect and delete instances.")
setup_app = typer.Typer(help="Provision instances.")
server_app = typer.Typer(help="Manage the daemon of a provisioned instance.")
clients_app = typer.Typer(help="Issue and revoke client credentials.")
network_app = typer.Typer(help="Inspect and change host forwarding and firewall rules.")
status_app = typer.Typer(help="Inspect live sessions and traffic history.")
db_app = typer.Typer(help="Manage the state database.")
config_app = typer.Typer(help="Inspect configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(setup_app, name="setup")
app.add_typer(server_app, name="server")
app.add_typer(clients_app, name="client")
app.add_typer(network_app, name="network")
app.add_typer(status_app, name="status")
app.add_typer(db_app, name="db")
app.add_typer(config_app, name="config")


# config ---------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show", args={"json": json_output}, target={"kind": "config"}
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
                rendered = "\n".join(f"{inner}: {item}" for inner, item in value.items())
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# db -------------------------------------------------------------------
@db_app.command("migrate")
def db_migrate(ctx: typer.Context) -> None:
    """Apply pending schema migrations."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db migrate", target={"kind": "database", "path": str(runtime.config.database)}
    ) as op:
        try:
            applied = runtime.migrated + migrate(runtime.database, runtime.config.legacy)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        if applied:
            joined = ", ".join(str(version) for version in applied)
            console.print(f"[green]Applied migrations: {joined}.[/green]")
        else:
            console.print("[green]Schema is up to date.[/green]")
        op.success("Database migrated.", changed=len(applied), context={"applied": applied})


# instance -------------------------------------------------------------
@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances and their lifecycle status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        records = runtime.registry.list()
        if json_output:
            console.print_json(data={"instances": [record.to_dict() for record in records]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Display Name")
        table.add_column("Status")
        table.add_column("Config")
        if not records:
            table.add_row("(none)", "", "", "")
        for record in records:
            table.add_row(
                record.name,
                record.display_name or "",
                record.status.value,
                str(record.paths.config_path),
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one instance with its settings and provisioning state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            record = runtime.registry.require(name)
            settings = runtime.registry.server_settings(name)
            provisioning = runtime.registry.provisioning_status(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        data = record.to_dict()
        data["settings"] = settings.to_dict()
        data["provisioning"] = provisioning.to_dict()
        if json_output:
            console.print_json(data=data)
            op.success("Displayed instance details as JSON.", changed=0)
            return
        summary: dict[str, object] = {
            "name": record.name,
            "display_name": record.display_name,
            "status": record.status.value,
            "step": provisioning.step.value,
            "provisioned": "yes" if provisioning.completed else "no",
            "endpoint": f"{settings.hostname}:{settings.port}/{settings.protocol}",
            "network": str(settings.network),
        }
        summary.update(record.paths.to_dict())
        _print_mapping(summary)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    display_name: str | None = typer.Option(
        None, "--display-name", help="Human friendly label."
    ),
) -> None:
    """Register a new instance with default settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "display_name": display_name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            name = validate_instance_name(name)
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                record = runtime.registry.create(name, display_name)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        op.add_step("registry.create", status="success", detail=record.paths.to_dict())
        console.print(f"[green]Instance '{record.name}' created.[/green]")
        op.success(f"Instance '{record.name}' created.", changed=1)


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Stop and remove an instance with all of its files and rows."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            name = validate_instance_name(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        record = runtime.registry.get(name)
        if record is None:
            console.print(f"Instance '{name}' does not exist; nothing to delete.")
            op.success("Instance absent.", changed=0)
            return
        if not yes:
            typer.confirm(f"Delete instance '{name}' and all of its credentials?", abort=True)

        warnings: list[str] = []
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                settings = runtime.registry.server_settings(name)
                network = runtime.providers.network_for(record, settings)
                nat = network.remove_nat(settings.subnet, settings.subnet_mask)
                op.add_step("network.remove_nat", status="success", detail=nat.value)
                warnings.extend(nat.warnings)
                deleted = runtime.registry.delete(name)
                warnings.extend(deleted.warnings)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        op.add_step("registry.delete", status="success")
        console.print(f"[green]Instance '{name}' deleted.[/green]")
        _finish(op, AdvisoryResult(value=name, warnings=warnings), f"Instance '{name}' deleted.")


# setup ----------------------------------------------------------------
@setup_app.command("run")
def setup_run(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    hostname: str | None = HOSTNAME_OPTION,
    protocol: str | None = PROTOCOL_OPTION,
    port: int | None = PORT_OPTION,
    dev_type: str | None = DEV_TYPE_OPTION,
    subnet: str | None = SUBNET_OPTION,
    subnet_mask: str | None = SUBNET_MASK_OPTION,
    dns: str | None = DNS_OPTION,
    cipher: str | None = CIPHER_OPTION,
    auth: str | None = AUTH_OPTION,
    tls_auth: bool | None = TLS_AUTH_OPTION,
    compress: str | None = COMPRESS_OPTION,
    client_to_client: bool | None = CLIENT_TO_CLIENT_OPTION,
    max_clients: int | None = MAX_CLIENTS_OPTION,
    keepalive: str | None = KEEPALIVE_OPTION,
    route: list[str] | None = ROUTE_OPTION,
) -> None:
    """Provision an instance: packages, authority, configuration, network and service."""
    runtime = _get_runtime(ctx)
    params = _settings_changes(
        hostname=hostname,
        protocol=protocol,
        port=port,
        dev_type=dev_type,
        subnet=subnet,
        subnet_mask=subnet_mask,
        dns=dns,
        cipher=cipher,
        auth=auth,
        tls_auth=tls_auth,
        compress=compress,
        client_to_client=client_to_client,
        max_clients=max_clients,
        keepalive=keepalive,
        routes=route,
    )
    with runtime.logger.operation(
        "setup run",
        args={"name": name, **params},
        target={"kind": "instance", "name": name},
    ) as op:

        def _record_step(step: ProvisioningStep) -> None:
            op.add_step(f"provision.{step.value}", status="success")
            console.print(f"  [cyan]done[/cyan] {step.value}")

        try:
            status = runtime.orchestrator.setup(name, params, on_step=_record_step)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"[green]Instance '{name}' provisioned.[/green]")
        op.success(
            f"Instance '{name}' provisioned.", changed=1, context={"status": status.to_dict()}
        )


@setup_app.command("status")
def setup_status(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show how far provisioning of an instance got."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            status = runtime.orchestrator.status(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=status.to_dict())
        else:
            _print_mapping(status.to_dict() | {"completed": "yes" if status.completed else "no"})
        op.success("Reported provisioning status.", changed=0)


@setup_app.command("reset")
def setup_reset(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Clear the provisioned flag so setup can run again."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup reset", args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        try:
            runtime.orchestrator.reset(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        console.print(f"[green]Provisioning state of '{name}' reset.[/green]")
        op.success("Provisioning state reset.", changed=1)


# server ---------------------------------------------------------------
@server_app.command("show")
def server_show(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the daemon settings of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            settings = runtime.server.settings(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        data = settings.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            data["routes"] = [f"{item.network}/{item.netmask}" for item in settings.routes]
            _print_mapping(data)
        op.success("Displayed server settings.", changed=0)


@server_app.command("update")
def server_update(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    hostname: str | None = HOSTNAME_OPTION,
    protocol: str | None = PROTOCOL_OPTION,
    port: int | None = PORT_OPTION,
    dev_type: str | None = DEV_TYPE_OPTION,
    subnet: str | None = SUBNET_OPTION,
    subnet_mask: str | None = SUBNET_MASK_OPTION,
    dns: str | None = DNS_OPTION,
    cipher: str | None = CIPHER_OPTION,
    auth: str | None = AUTH_OPTION,
    tls_auth: bool | None = TLS_AUTH_OPTION,
    compress: str | None = COMPRESS_OPTION,
    client_to_client: bool | None = CLIENT_TO_CLIENT_OPTION,
    max_clients: int | None = MAX_CLIENTS_OPTION,
    keepalive: str | None = KEEPALIVE_OPTION,
) -> None:
    """Change daemon settings, re-render the configuration and restart it."""
    runtime = _get_runtime(ctx)
    changes = _settings_changes(
        hostname=hostname,
        protocol=protocol,
        port=port,
        dev_type=dev_type,
        subnet=subnet,
        subnet_mask=subnet_mask,
        dns=dns,
        cipher=cipher,
        auth=auth,
        tls_auth=tls_auth,
        compress=compress,
        client_to_client=client_to_client,
        max_clients=max_clients,
        keepalive=keepalive,
    )
    with runtime.logger.operation(
        "server update",
        args={"name": name, **changes},
        target={"kind": "instance", "name": name},
    ) as op:
        if not changes:
            _command_error(op, "No settings supplied; nothing to update.", rc=2)
        try:
            result = runtime.server.update_settings(name, changes)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"[green]Settings of '{name}' updated.[/green]")
        _finish(op, result, f"Settings of '{name}' updated.")


_PAST_TENSE = {"start": "started", "stop": "stopped", "restart": "restarted"}


def _service_action(ctx: typer.Context, name: str, action: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"server {action}", args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        try:
            getattr(runtime.server, action)(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        op.add_step(f"systemd.{action}", status="success")
        console.print(f"[green]Service of '{name}' {_PAST_TENSE[action]}.[/green]")
        op.success(f"Service {action} requested.", changed=1)


@server_app.command("start")
def server_start(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Start the daemon of an instance."""
    _service_action(ctx, name, "start")


@server_app.command("stop")
def server_stop(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Stop the daemon of an instance."""
    _service_action(ctx, name, "stop")


@server_app.command("restart")
def server_restart(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Restart the daemon of an instance."""
    _service_action(ctx, name, "restart")


@server_app.command("status")
def server_status(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the systemd state of an instance's daemon."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            data = runtime.server.service_status(name)
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=data)
        else:
            colour = "green" if data["active"] else "yellow"
            console.print(f"{data['unit']}: [{colour}]{data['state']}[/{colour}]")
        op.success("Reported service status.", changed=0, context=data)


@server_app.command("logs")
def server_logs(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    lines: int = typer.Option(DEFAULT_LOG_LINES, "--lines", "-n", min=1, help="Lines to show."),
) -> None:
    """Print the tail of the daemon log."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server logs",
        args={"name": name, "lines": lines},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            output = runtime.server.logs(name, lines)
        except OvpnctlError as exc:
            _fail(op, exc)
        typer.echo(output, nl=not output.endswith("\n"))
        op.success("Displayed daemon log.", changed=0)


@server_app.command("config")
def server_config(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Print the rendered daemon configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server config", args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        try:
            content = runtime.server.raw_config(name)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        typer.echo(content, nl=False)
        op.success("Displayed daemon configuration.", changed=0)


@server_app.command("routes")
def server_routes(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    set_routes: list[str] | None = typer.Option(
        None, "--set", help="Replace pushed routes (network/mask); repeatable."
    ),
    clear: bool = typer.Option(False, "--clear", help="Remove every pushed route."),
) -> None:
    """Show or replace the networks pushed to clients."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server routes",
        args={"name": name, "set": set_routes or [], "clear": clear},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            if clear or set_routes:
                result = runtime.server.set_routes(name, [] if clear else list(set_routes or []))
                routes = result.value.routes if result.value is not None else ()
            else:
                result = None
                routes = runtime.server.routes(name)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        if not routes:
            console.print("No routes are pushed to clients.")
        for item in routes:
            console.print(f"{item.network} {item.netmask}")
        if result is None:
            op.success("Listed pushed routes.", changed=0)
            return
        _finish(op, result, f"Pushed routes of '{name}' replaced.")


# client ---------------------------------------------------------------
@clients_app.command("list")
def client_list(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    status: ClientStatus | None = typer.Option(None, "--status", help="Filter by status."),
    search: str | None = typer.Option(None, "--search", help="Match name or email."),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(DEFAULT_PAGE_SIZE, "--limit", min=1, max=100),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the clients of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client list",
        args={"name": name, "status": status, "search": search, "page": page, "limit": limit},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            result = runtime.clients.list(
                name, status=status, search=search, page=page, limit=limit
            )
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=result.to_dict())
            op.success("Reported client list as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Static IP")
        table.add_column("Expires")
        table.add_column("Notes")
        if not result.clients:
            table.add_row("(none)", "", "", "", "")
        for client in result.clients:
            table.add_row(
                client.name,
                client.status.value,
                client.static_ip or "",
                client.expires_at.date().isoformat() if client.expires_at else "",
                client.notes or "",
            )
        console.print(table)
        console.print(f"Page {result.page}/{max(result.pages, 1)} ({result.total} total)")
        op.success("Reported client list.", changed=0)


@clients_app.command("show")
def client_show(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one client credential."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client show",
        args={"name": name, "client": client},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            record = runtime.clients.get(name, client)
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=record.to_dict())
        else:
            _print_mapping(record.to_dict())
        op.success("Displayed client.", changed=0)


@clients_app.command("issue")
def client_issue(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
    static_ip: str | None = typer.Option(None, "--static-ip", help="Fixed tunnel address."),
    email: str | None = typer.Option(None, "--email", help="Contact address."),
    notes: str | None = typer.Option(None, "--notes", help="Free-form notes."),
) -> None:
    """Issue a certificate for a new client."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client issue",
        args={"name": name, "client": client, "static_ip": static_ip, "email": email},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            record = runtime.clients.issue(
                name, client, static_address=static_ip, notes=notes, email=email
            )
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        op.add_step("authority.issue_client", status="success", detail=record.cert_cn)
        console.print(f"[green]Client '{record.name}' issued.[/green]")
        op.success(f"Client '{record.name}' issued.", changed=1)


@clients_app.command("revoke")
def client_revoke(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
) -> None:
    """Revoke a client certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client revoke",
        args={"name": name, "client": client},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            result = runtime.clients.revoke(name, client)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        if not result.changed:
            console.print(result.message)
            op.success("Client already revoked.", changed=0)
            return
        console.print(f"[green]Client '{client}' revoked.[/green]")
        _finish(op, result, f"Client '{client}' revoked.")


@clients_app.command("refence")
def client_refence(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Regenerate the revocation list after a failed revoke."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client refence", args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        try:
            runtime.clients.refence(name)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        op.add_step("authority.gen_crl", status="success")
        console.print(f"[green]Revocation list of '{name}' regenerated.[/green]")
        op.success("Revocation list regenerated.", changed=1)


@clients_app.command("renew")
def client_renew(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
) -> None:
    """Replace a client certificate and reactivate the client."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client renew",
        args={"name": name, "client": client},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            result = runtime.clients.renew(name, client)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"[green]Client '{client}' renewed.[/green]")
        _finish(op, result, f"Client '{client}' renewed.")


@clients_app.command("profile")
def client_profile(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
    output: Path | None = typer.Option(
        None, "--output", "-o", dir_okay=False, help="Write the profile to this file."
    ),
) -> None:
    """Export a client profile with inline credentials."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client profile",
        args={"name": name, "client": client, "output": str(output) if output else None},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            profile = runtime.clients.profile(name, client)
            if output is not None:
                write_if_changed(output, profile, mode=0o600)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        if output is None:
            typer.echo(profile, nl=False)
        else:
            console.print(f"[green]Profile written to {output}.[/green]")
        op.success("Exported client profile.", changed=1 if output else 0)


@clients_app.command("override")
def client_override(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    client: str = CLIENT_ARGUMENT,
    static_ip: str | None = typer.Option(None, "--static-ip", help="Fixed tunnel address."),
    route: list[str] | None = ROUTE_OPTION,
    write: bool = typer.Option(False, "--write", help="Rewrite the override file."),
) -> None:
    """Show or rewrite the per-client override file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "client override",
        args={"name": name, "client": client, "static_ip": static_ip, "write": write},
        target={"kind": "client", "instance": name, "name": client},
    ) as op:
        try:
            if write:
                content = runtime.clients.set_override(
                    name, client, static_address=static_ip, routes=list(route or [])
                )
            else:
                content = runtime.clients.override(name, client)
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        typer.echo(content or "(empty)", nl=not content.endswith("\n"))
        op.success("Client override processed.", changed=1 if write else 0)


# network --------------------------------------------------------------
@network_app.command("forwarding")
def network_forwarding(
    ctx: typer.Context,
    enable: bool | None = typer.Option(
        None, "--enable/--disable", help="Change host-wide IPv4 forwarding."
    ),
) -> None:
    """Show or change IPv4 forwarding."""
    runtime = _get_runtime(ctx)
    network = runtime.host_network()
    with runtime.logger.operation(
        "network forwarding", args={"enable": enable}, target={"kind": "host"}
    ) as op:
        try:
            if enable is True:
                network.enable_forwarding()
            elif enable is False:
                network.disable_forwarding()
            state = network.forwarding_enabled()
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"IPv4 forwarding: {'enabled' if state else 'disabled'}")
        op.success("Forwarding reported.", changed=0 if enable is None else 1)


@network_app.command("interfaces")
def network_interfaces(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List host interfaces and their addresses."""
    runtime = _get_runtime(ctx)
    network = runtime.host_network()
    with runtime.logger.operation(
        "network interfaces", args={"json": json_output}, target={"kind": "host"}
    ) as op:
        try:
            interfaces = network.list_interfaces()
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"interfaces": [item.to_dict() for item in interfaces]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Name", style="bold")
            table.add_column("State")
            table.add_column("MTU")
            table.add_column("Addresses")
            for item in interfaces:
                table.add_row(
                    item.name,
                    item.state,
                    "" if item.mtu is None else str(item.mtu),
                    ", ".join(item.addresses),
                )
            console.print(table)
        op.success("Listed interfaces.", changed=0)


@network_app.command("rules")
def network_rules(
    ctx: typer.Context,
    chain: str = typer.Argument("POSTROUTING", help="POSTROUTING or FORWARD."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the numbered rules of a chain."""
    runtime = _get_runtime(ctx)
    network = runtime.host_network()
    with runtime.logger.operation(
        "network rules", args={"chain": chain, "json": json_output}, target={"kind": "host"}
    ) as op:
        try:
            rules = network.list_rules(chain)
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"rules": [rule.to_dict() for rule in rules]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            for column in ("#", "Target", "Prot", "In", "Out", "Source", "Destination", "Bytes"):
                table.add_column(column)
            for rule in rules:
                table.add_row(
                    str(rule.num),
                    rule.target,
                    rule.protocol,
                    rule.in_interface,
                    rule.out_interface,
                    rule.source,
                    rule.destination,
                    _format_bytes(rule.byte_count),
                )
            console.print(table)
        op.success("Listed firewall rules.", changed=0)


@network_app.command("add-rule")
def network_add_rule(
    ctx: typer.Context,
    chain: str = typer.Argument(..., help="POSTROUTING or FORWARD."),
    source: str = typer.Argument(..., help="Source network (CIDR)."),
    target: str = typer.Option("MASQUERADE", "--target", help="Rule target."),
    destination: str | None = typer.Option(None, "--destination", help="Destination network."),
    out_interface: str | None = typer.Option(None, "--out-interface", help="Egress interface."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Save the ruleset."),
) -> None:
    """Append a firewall rule."""
    runtime = _get_runtime(ctx)
    network = runtime.host_network()
    with runtime.logger.operation(
        "network add-rule",
        args={"chain": chain, "source": source, "target": target, "persist": persist},
        target={"kind": "host"},
    ) as op:
        try:
            network.add_rule(
                chain,
                source,
                target=target.upper(),
                destination=destination,
                out_interface=out_interface,
            )
            if persist:
                op.add_step("network.persist", status="success", detail=str(network.persist()))
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"[green]Rule added to {chain.upper()}.[/green]")
        op.success("Firewall rule added.", changed=1)


@network_app.command("delete-rule")
def network_delete_rule(
    ctx: typer.Context,
    chain: str = typer.Argument(..., help="POSTROUTING or FORWARD."),
    index: int = typer.Argument(..., min=1, help="Rule number from 'network rules'."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Save the ruleset."),
) -> None:
    """Delete a numbered firewall rule."""
    runtime = _get_runtime(ctx)
    network = runtime.host_network()
    with runtime.logger.operation(
        "network delete-rule",
        args={"chain": chain, "index": index, "persist": persist},
        target={"kind": "host"},
    ) as op:
        try:
            network.delete_rule(chain, index)
            if persist:
                op.add_step("network.persist", status="success", detail=str(network.persist()))
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"[green]Rule {index} deleted from {chain.upper()}.[/green]")
        op.success("Firewall rule deleted.", changed=1)


@network_app.command("nat")
def network_nat(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    remove: bool = typer.Option(False, "--remove", help="Remove instead of install."),
) -> None:
    """Install (or remove) the NAT rules of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "network nat",
        args={"name": name, "remove": remove},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            with runtime.locks.instance_lock(name) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                record = runtime.registry.require(name)
                settings = runtime.registry.server_settings(name)
                network = runtime.providers.network_for(record, settings)
                if remove:
                    result = network.remove_nat(settings.subnet, settings.subnet_mask)
                    changed = result.value or 0
                else:
                    changed = network.setup_nat(settings.subnet, settings.subnet_mask)
                    result = AdvisoryResult(value=changed)
                network.persist()
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        verb = "removed" if remove else "installed"
        console.print(f"[green]{changed} NAT rule(s) {verb} for '{name}'.[/green]")
        _finish(op, result, f"NAT rules {verb}.", changed=changed)


# status ---------------------------------------------------------------
@status_app.command("show")
def status_show(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the clients connected right now."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            connections = runtime.monitor(name).get_active_connections()
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"connections": [item.to_dict() for item in connections]})
            op.success("Reported connections as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Client", style="bold")
        table.add_column("Real Address")
        table.add_column("Virtual Address")
        table.add_column("Received")
        table.add_column("Sent")
        table.add_column("Connected Since")
        if not connections:
            table.add_row("(none)", "", "", "", "", "")
        for item in connections:
            table.add_row(
                item.common_name,
                item.real_address,
                item.virtual_address,
                _format_bytes(item.bytes_received),
                _format_bytes(item.bytes_sent),
                item.connected_since,
            )
        console.print(table)
        op.success("Reported connections.", changed=0)


@status_app.command("record")
def status_record(ctx: typer.Context, name: str = INSTANCE_ARGUMENT) -> None:
    """Store the current sessions in the connection history."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status record", args={"name": name}, target={"kind": "instance", "name": name}
    ) as op:
        try:
            count = runtime.monitor(name).record_snapshot()
        except (OvpnctlError, OSError) as exc:
            _fail(op, exc)
        console.print(f"Recorded {count} active session(s).")
        op.success("Recorded connection snapshot.", changed=count)


@status_app.command("history")
def status_history(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(20, "--limit", min=1, max=100),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show recorded sessions, most recent first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status history",
        args={"name": name, "page": page, "limit": limit},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            history = runtime.monitor(name).get_connection_history(page, limit)
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=history.to_dict())
            op.success("Reported history as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Client", style="bold")
        table.add_column("Connected")
        table.add_column("Disconnected")
        table.add_column("Received")
        table.add_column("Sent")
        for row in history.rows:
            table.add_row(
                row.client_name,
                row.connected_at,
                row.disconnected_at or "(connected)",
                _format_bytes(row.bytes_received),
                _format_bytes(row.bytes_sent),
            )
        console.print(table)
        console.print(f"{len(history.rows)} of {history.total} session(s)")
        op.success("Reported history.", changed=0)


@status_app.command("bandwidth")
def status_bandwidth(
    ctx: typer.Context,
    name: str = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show cumulative traffic per client."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status bandwidth",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            stats = runtime.monitor(name).get_bandwidth_stats()
        except OvpnctlError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"clients": [item.to_dict() for item in stats]})
            op.success("Reported bandwidth as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Client", style="bold")
        table.add_column("Received")
        table.add_column("Sent")
        table.add_column("Sessions")
        table.add_column("Last Connected")
        for item in stats:
            table.add_row(
                item.client_name,
                _format_bytes(item.total_received),
                _format_bytes(item.total_sent),
                str(item.connection_count),
                item.last_connected or "",
            )
        console.print(table)
        op.success("Reported bandwidth.", changed=0)


def main() -> None:
    """Entry point for console scripts."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
