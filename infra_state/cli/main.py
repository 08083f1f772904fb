"""
Main CLI entry point for infra-state.

Commands run against the backend named in ~/.infra-state/config.json;
``configure`` writes that file.
"""

import functools
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from infra_state import __version__
from infra_state.auth.session import default_holder
from infra_state.core.config import BackendConfig, Config, ConfigManager
from infra_state.core.exceptions import (
    AuthenticationError, ConfigurationError, ConflictError, InfraStateError,
    LockedError, LockNotHeldError, ReleaseFailedError, ServiceError, UserCancelled,
)
from infra_state.descriptors.catalog import build_descriptors, load_descriptors
from infra_state.descriptors.graph import DescriptorGraph
from infra_state.descriptors.models import ResourceDescriptor
from infra_state.planning.models import ChangeAction, Plan
from infra_state.planning.planner import DescriptorPlanner
from infra_state.state.backend import StateBackend, backend_from_config
from infra_state.state.coordinator import StateCoordinator


console = Console()

# Exit codes for different error types
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_SERVICE_ERROR = 4
EXIT_LOCKED = 5
EXIT_CONFLICT = 6
EXIT_RELEASE_FAILED = 7
EXIT_USER_CANCELLED = 130

ACTION_STYLES = {
    ChangeAction.CREATE: "[green]+ create[/green]",
    ChangeAction.UPDATE: "[yellow]~ update[/yellow]",
    ChangeAction.DELETE: "[red]- delete[/red]",
    ChangeAction.NO_OP: "[dim]  no-op[/dim]",
}


def handle_errors(func):
    """Translate infra-state errors into messages and exit codes."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (KeyboardInterrupt, click.Abort, UserCancelled):
            console.print("\n⚠️  [yellow]Operation cancelled by user[/yellow]")
            sys.exit(EXIT_USER_CANCELLED)
        except LockedError as e:
            console.print(f"🔒 [red]{e.message}[/red]")
            if e.current is not None:
                console.print(
                    f"[dim]Held since {e.current.acquired_at} "
                    f"for {e.current.operation or 'unknown operation'}. Retry later.[/dim]"
                )
            sys.exit(EXIT_LOCKED)
        except ConflictError as e:
            console.print(f"❌ [red]{e.message}[/red]")
            console.print("[dim]Someone wrote the state without holding the lock. Inspect `history` before retrying.[/dim]")
            sys.exit(EXIT_CONFLICT)
        except ReleaseFailedError as e:
            console.print(f"🚨 [bold red]{e.message}[/bold red]")
            if e.original_error is not None:
                console.print(f"[red]The operation had already failed: {e.original_error}[/red]")
            console.print(
                f"[yellow]The lock is abandoned. Once nothing is running, clear it with "
                f"`infra-state unlock --force --state-id {e.lock_id}`.[/yellow]"
            )
            sys.exit(EXIT_RELEASE_FAILED)
        except ConfigurationError as e:
            console.print(f"❌ [red]Configuration error: {e}[/red]")
            sys.exit(EXIT_CONFIG_ERROR)
        except AuthenticationError as e:
            console.print(f"❌ [red]Authentication error: {e}[/red]")
            sys.exit(EXIT_AUTH_ERROR)
        except ServiceError as e:
            console.print(f"❌ [red]Service error: {e}[/red]")
            sys.exit(EXIT_SERVICE_ERROR)
        except InfraStateError as e:
            console.print(f"❌ [red]{e}[/red]")
            sys.exit(EXIT_GENERAL_ERROR)
        except Exception as e:
            console.print(f"💥 [red]Unexpected error: {e}[/red]")
            console.print("[dim]Please report this issue with the full error message.[/dim]")
            sys.exit(EXIT_GENERAL_ERROR)

    return wrapper


class CliContext:
    """Lazily builds the backend objects a command needs."""

    def __init__(self, config_manager: ConfigManager, holder: str):
        self.config_manager = config_manager
        self.holder = holder
        self._config: Optional[Config] = None
        self._backend: Optional[StateBackend] = None

    @property
    def config(self) -> Config:
        if self._config is None:
            try:
                config = self.config_manager.load_config()
            except ValueError as e:
                raise ConfigurationError(str(e))
            if config is None:
                raise ConfigurationError(
                    "No configuration found. Run `infra-state configure` first."
                )
            self._config = config
        return self._config

    @property
    def backend(self) -> StateBackend:
        if self._backend is None:
            self._backend = backend_from_config(self.config.backend)
        return self._backend

    def coordinator(self) -> StateCoordinator:
        return StateCoordinator(
            self.backend.lock_table(),
            self.backend.object_store(),
            holder=self.holder,
        )

    def state_id(self, override: Optional[str]) -> str:
        return override or self.config.state_id

    def descriptors(self, path: Optional[Path]) -> List[ResourceDescriptor]:
        if path is not None:
            return load_descriptors(path)
        return build_descriptors(self.config.locals)


state_id_option = click.option('--state-id', help="State identifier (defaults to the configured one)")
descriptors_option = click.option(
    '--descriptors',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file of resource descriptors (defaults to the built-in service catalog)",
)


@click.group()
@click.option('--config-dir', type=click.Path(file_okay=False, path_type=Path), help="Configuration directory")
@click.option('--holder', help="Lock holder identity (defaults to user@host:pid)")
@click.option('-v', '--verbose', is_flag=True, help="Show debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx, config_dir: Optional[Path], holder: Optional[str], verbose: bool) -> None:
    """
    🗄️  infra-state - Shared infrastructure state with locking

    Keeps state snapshots in a versioned, encrypted S3 bucket and serializes
    every change through a DynamoDB lock.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    ctx.obj = CliContext(ConfigManager(config_dir), holder or default_holder())


@main.command()
@click.option('--bucket', required=True, help="S3 bucket for state snapshots")
@click.option('--lock-table', required=True, help="DynamoDB table for locks")
@click.option('--region', default="us-east-1", show_default=True, help="AWS region of the backend")
@click.option('--key-prefix', default="", help="Key prefix for snapshot objects")
@click.option('--state-id', default="default", show_default=True, help="Default state identifier")
@click.option('--kms-key-id', help="Encrypt with this KMS key instead of AES256")
@click.option('--role-arn', help="IAM role to assume for backend access")
@click.option('--no-encrypt', is_flag=True, help="Do not request server-side encryption")
@click.pass_obj
@handle_errors
def configure(obj: CliContext, bucket, lock_table, region, key_prefix, state_id, kms_key_id, role_arn, no_encrypt) -> None:
    """Save backend settings to the configuration file."""
    previous = None
    if obj.config_manager.config_exists():
        try:
            previous = obj.config_manager.load_config()
        except ValueError:
            # unreadable file is replaced below
            pass

    try:
        backend = BackendConfig(
            bucket=bucket,
            lock_table=lock_table,
            region=region,
            key_prefix=key_prefix,
            encrypt=not no_encrypt,
            kms_key_id=kms_key_id,
            role_arn=role_arn,
        )
        if previous is not None:
            config = Config(backend=backend, locals=previous.locals, state_id=state_id)
        else:
            config = Config(backend=backend, state_id=state_id)
    except ValueError as e:
        raise ConfigurationError(str(e))

    try:
        obj.config_manager.save_config(config)
    except OSError as e:
        raise ConfigurationError(str(e))

    console.print(f"✅ [green]Saved configuration to {obj.config_manager.get_config_path()}[/green]")


@main.command()
@click.pass_obj
@handle_errors
def init(obj: CliContext) -> None:
    """Create the state bucket and lock table if they do not exist."""
    backend_config = obj.config.backend
    with console.status(f"Bootstrapping s3://{backend_config.bucket} and {backend_config.lock_table}..."):
        status = obj.backend.bootstrap()

    table = Table(title="Backend")
    table.add_column("Check")
    table.add_column("Status")
    table.add_row("Bucket exists", _tick(status.bucket_exists))
    table.add_row("Versioning enabled", _tick(status.versioning_enabled))
    table.add_row("Default encryption", _tick(status.encryption_enabled))
    table.add_row("Lock table exists", _tick(status.table_exists))
    console.print(table)

    if not status.ready:
        raise ServiceError("Backend is not ready after bootstrap")
    console.print("✅ [green]Backend ready[/green]")


@main.command()
@state_id_option
@descriptors_option
@click.pass_obj
@handle_errors
def plan(obj: CliContext, state_id: Optional[str], descriptors: Optional[Path]) -> None:
    """Show what apply would change, without locking or writing."""
    state_id = obj.state_id(state_id)
    outcome = obj.coordinator().preview(state_id, DescriptorPlanner(), obj.descriptors(descriptors))
    _print_plan(outcome.plan)


@main.command()
@state_id_option
@descriptors_option
@click.option('--yes', '-y', is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
@handle_errors
def apply(obj: CliContext, state_id: Optional[str], descriptors: Optional[Path], yes: bool) -> None:
    """Lock the state, record the descriptors as a new snapshot, and unlock."""
    state_id = obj.state_id(state_id)
    coordinator = obj.coordinator()
    planner = DescriptorPlanner()
    desired = obj.descriptors(descriptors)

    preview = coordinator.preview(state_id, planner, desired)
    _print_plan(preview.plan)

    if not yes and not click.confirm(f"Write a new snapshot for '{state_id}'?", default=False):
        raise UserCancelled()

    result = coordinator.run_cycle(state_id, planner, desired)

    previous = "none" if result.previous_version is None else str(result.previous_version)
    console.print(
        f"✅ [green]Wrote '{state_id}' version {result.snapshot.version} "
        f"(previous: {previous}) in {result.duration:.1f}s[/green]"
    )


@main.command()
@state_id_option
@click.option('--raw', is_flag=True, help="Print the snapshot payload")
@click.pass_obj
@handle_errors
def show(obj: CliContext, state_id: Optional[str], raw: bool) -> None:
    """Show the latest snapshot and the current lock holder."""
    state_id = obj.state_id(state_id)
    coordinator = obj.coordinator()
    snapshot = coordinator.read(state_id)
    lock = coordinator.lock_table.get_lock(state_id)

    if lock is None:
        console.print(f"🔓 '{state_id}' is unlocked")
    else:
        console.print(
            f"🔒 '{state_id}' is locked by [bold]{lock.holder}[/bold] since {lock.acquired_at}"
            + (f" ({lock.operation})" if lock.operation else "")
        )

    if snapshot is None:
        console.print("[yellow]No snapshot has been written yet[/yellow]")
        return

    console.print(
        f"Version {snapshot.version}, {len(snapshot.payload)} bytes, "
        f"{'encrypted' if snapshot.encrypted else '[red]not encrypted[/red]'}, "
        f"object version {snapshot.version_id}"
    )
    if raw:
        console.print(Panel(Text(snapshot.payload.decode("utf-8", errors="replace")), title=state_id))
    else:
        document = DescriptorPlanner().decode(snapshot)
        for resource in document.get('resources', []):
            console.print(f"  • {resource.get('address', '?')}")


@main.command()
@state_id_option
@click.pass_obj
@handle_errors
def history(obj: CliContext, state_id: Optional[str]) -> None:
    """List retained snapshot versions, newest first."""
    state_id = obj.state_id(state_id)
    versions = obj.backend.object_store().list_versions(state_id)
    if not versions:
        console.print(f"[yellow]No versions stored for '{state_id}'[/yellow]")
        return

    table = Table(title=f"History of {state_id}")
    table.add_column("Object version")
    table.add_column("Serial", justify="right")
    table.add_column("Written")
    table.add_column("Size", justify="right")
    for version in versions:
        marker = " (latest)" if version.is_latest else ""
        table.add_row(
            version.version_id + marker,
            "?" if version.version is None else str(version.version),
            str(version.last_modified),
            str(version.size),
        )
    console.print(table)


@main.command()
@click.argument('version_id')
@state_id_option
@click.option('--yes', '-y', is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
@handle_errors
def rollback(obj: CliContext, version_id: str, state_id: Optional[str], yes: bool) -> None:
    """Restore an older object version as the newest snapshot."""
    state_id = obj.state_id(state_id)
    if not yes and not click.confirm(f"Restore '{state_id}' to object version {version_id}?", default=False):
        raise UserCancelled()

    result = obj.coordinator().rollback(state_id, version_id)
    console.print(f"✅ [green]Restored {version_id} as version {result.snapshot.version}[/green]")


@main.command()
@state_id_option
@click.option('--reason', help="Free text stored with the lock")
@click.pass_obj
@handle_errors
def lock(obj: CliContext, state_id: Optional[str], reason: Optional[str]) -> None:
    """Take the lock and keep it, e.g. during a maintenance window."""
    state_id = obj.state_id(state_id)
    record = obj.backend.lock_table().acquire(state_id, obj.holder, operation='manual', info=reason)
    console.print(f"🔒 [green]Locked '{state_id}' as {record.holder}[/green]")
    console.print(f"[dim]Release with: infra-state --holder '{record.holder}' unlock --state-id {state_id}[/dim]")


@main.command()
@state_id_option
@click.option('--force', is_flag=True, help="Remove the lock whoever holds it")
@click.pass_obj
@handle_errors
def unlock(obj: CliContext, state_id: Optional[str], force: bool) -> None:
    """Release a lock held by --holder, or remove an abandoned lock with --force."""
    state_id = obj.state_id(state_id)
    lock_table = obj.backend.lock_table()

    if not force:
        try:
            lock_table.release(state_id, obj.holder)
        except LockNotHeldError as e:
            console.print(f"❌ [red]{e.message}[/red]")
            sys.exit(EXIT_LOCKED)
        console.print(f"🔓 [green]Released '{state_id}'[/green]")
        return

    current = lock_table.get_lock(state_id)
    if current is None:
        console.print(f"[yellow]'{state_id}' is not locked[/yellow]")
        return

    console.print(f"⚠️  [yellow]'{state_id}' is locked by {current.holder} since {current.acquired_at}[/yellow]")
    if not click.confirm("Force-remove this lock? Only do this if that operation is no longer running", default=False):
        raise UserCancelled()

    removed = lock_table.force_release(state_id)
    holder = removed.holder if removed else current.holder
    console.print(f"🔓 [green]Removed lock on '{state_id}' held by {holder}[/green]")


@main.command()
@descriptors_option
@click.pass_obj
@handle_errors
def graph(obj: CliContext, descriptors: Optional[Path]) -> None:
    """Print resource descriptors in dependency order."""
    descriptor_graph = DescriptorGraph(obj.descriptors(descriptors))
    for index, descriptor in enumerate(descriptor_graph.topological_order(), start=1):
        deps = sorted(descriptor_graph.dependencies(descriptor.address))
        suffix = f" [dim]← {', '.join(deps)}[/dim]" if deps else ""
        console.print(f"{index:3}. {descriptor.address}{suffix}")


def _print_plan(plan: Optional[Plan]) -> None:
    if plan is None:
        return
    for change in plan.changes:
        if change.action != ChangeAction.NO_OP:
            console.print(f"  {ACTION_STYLES[change.action]} {change.address}")
    summary = plan.summary()
    if not plan.has_changes:
        console.print("[green]No changes. State matches the descriptors.[/green]")
    console.print(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete."
    )


def _tick(value: bool) -> str:
    return "✅" if value else "❌"


if __name__ == "__main__":
    main()
