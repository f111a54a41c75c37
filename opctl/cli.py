"""CLI interface for opctl."""

import click
import json
import logging
import sys
from functools import wraps
from typing import Optional
from .cancellation import CancellationCoordinator
from .errors import NotFound, OpctlError
from .gateway import PollResult, PollingGateway, accepted, created
from .machine import StateMachine
from .models import EntityKind, EntityRef, Event, OperationStatus, ResourceStatus
from .settings import get_settings
from .storage import Storage
from .sweeper import Sweeper


# Global storage instance
_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


def handle_errors(func):
    """Report engine errors the way every command does and exit non-zero."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except NotFound as e:
            click.echo(f"✗ 404 Not Found: {e}", err=True)
            sys.exit(1)
        except OpctlError as e:
            click.echo(f"✗ {type(e).__name__}: {e}", err=True)
            sys.exit(1)
        except ValueError as e:
            click.echo(f"✗ Invalid value: {e}", err=True)
            sys.exit(1)

    return wrapper


def echo_response(result: PollResult) -> None:
    """Print an LRO response as status line, headers and JSON body."""
    click.echo(f"HTTP {result.status_code}")
    for name, value in result.headers().items():
        click.echo(f"{name}: {value}")
    click.echo(json.dumps(result.body(), indent=2))


@click.group()
def cli():
    """opctl - Long-Running Operation Tracker"""
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.group()
def operation():
    """Track Stepwise operations"""
    pass


@operation.command("create")
@click.option("--id", "operation_id", default=None, help="Operation ID (generated if omitted)")
@click.option("--retry-after", type=int, default=None, help="Polling hint in seconds")
@click.option(
    "--status",
    type=click.Choice([s.value for s in OperationStatus]),
    default=OperationStatus.NOT_STARTED.value,
    help="Initial status",
)
@click.option("--location", default=None, help="Resource location (when created succeeded)")
@handle_errors
def operation_create(operation_id: Optional[str], retry_after: Optional[int], status: str, location: Optional[str]):
    """Create an operation and print the 202 response.

    Example:
        opctl operation create --id op-123 --retry-after 30
    """
    machine = StateMachine(get_storage())
    op = machine.create_operation(
        operation_id=operation_id,
        status=OperationStatus(status),
        resource_location=location,
        retry_after=retry_after,
    )
    echo_response(accepted(op))


@operation.command("get")
@click.argument("operation_id")
@handle_errors
def operation_get(operation_id: str):
    """Poll an operation.

    Example:
        opctl operation get op-123
    """
    echo_response(PollingGateway(get_storage()).poll_operation(operation_id))


@operation.command("start")
@click.argument("operation_id")
@handle_errors
def operation_start(operation_id: str):
    """Mark an operation as running."""
    _transition(EntityRef.operation(operation_id), Event.START)


@operation.command("progress")
@click.argument("operation_id")
@click.option("--percent", type=click.IntRange(0, 100), default=None, help="Percent complete")
@handle_errors
def operation_progress(operation_id: str, percent: Optional[int]):
    """Report progress on an operation."""
    _transition(EntityRef.operation(operation_id), Event.PROGRESS, percent_complete=percent)


@operation.command("complete")
@click.argument("operation_id")
@click.option("--location", required=True, help="URI of the affected resource")
@handle_errors
def operation_complete(operation_id: str, location: str):
    """Mark an operation as succeeded.

    Example:
        opctl operation complete op-123 --location /archives/987
    """
    _transition(EntityRef.operation(operation_id), Event.COMPLETE, resource_location=location)


@operation.command("fail")
@click.argument("operation_id")
@click.option("--code", default="Failed", help="Error code")
@click.option("--message", default="", help="Error message")
@handle_errors
def operation_fail(operation_id: str, code: str, message: str):
    """Mark an operation as failed."""
    _transition(EntityRef.operation(operation_id), Event.FAIL, error_code=code, error_message=message)


@operation.command("cancel")
@click.argument("operation_id")
@handle_errors
def operation_cancel(operation_id: str):
    """Cancel an operation. Finished operations are left as they are."""
    coordinator = CancellationCoordinator(StateMachine(get_storage()))
    status = coordinator.cancel(EntityRef.operation(operation_id))
    click.echo(f"✓ Operation {operation_id} is {status.value}")


@cli.group()
def resource():
    """Track RELO resources"""
    pass


@resource.command("create")
@click.argument("resource_id")
@click.option("--properties", default=None, help="Resource properties as JSON")
@handle_errors
def resource_create(resource_id: str, properties: Optional[str]):
    """Create a resource and print the 201 response.

    Example:
        opctl resource create db1
    """
    try:
        props = json.loads(properties) if properties else None
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)
    machine = StateMachine(get_storage())
    echo_response(created(machine.create_resource(resource_id, properties=props)))


@resource.command("get")
@click.argument("resource_id")
@handle_errors
def resource_get(resource_id: str):
    """Poll a resource."""
    echo_response(PollingGateway(get_storage()).poll_resource(resource_id))


@resource.command("delete")
@click.argument("resource_id")
@handle_errors
def resource_delete(resource_id: str):
    """Start deleting a resource and print the 202 response.

    Example:
        opctl resource delete db1
    """
    coordinator = CancellationCoordinator(StateMachine(get_storage()))
    echo_response(coordinator.delete(resource_id))


@resource.command("update")
@click.argument("resource_id")
@handle_errors
def resource_update(resource_id: str):
    """Start updating a provisioned resource."""
    _transition(EntityRef.resource(resource_id), Event.START)


@resource.command("complete")
@click.argument("resource_id")
@handle_errors
def resource_complete(resource_id: str):
    """Finish the resource's current provisioning, update or deletion."""
    _transition(EntityRef.resource(resource_id), Event.COMPLETE)


@resource.command("fail")
@click.argument("resource_id")
@click.option("--code", default="Failed", help="Error code")
@click.option("--message", default="", help="Error message")
@handle_errors
def resource_fail(resource_id: str, code: str, message: str):
    """Mark the resource's current action as failed."""
    _transition(EntityRef.resource(resource_id), Event.FAIL, error_code=code, error_message=message)


def _transition(ref: EntityRef, event: Event, **detail) -> None:
    machine = StateMachine(get_storage())
    status = machine.transition(ref, event, **detail)
    click.echo(f"✓ {ref} is {status.value}")


@cli.command()
def status():
    """Show tracked entity statistics.

    Example:
        opctl status
    """
    storage = get_storage()
    stats = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("opctl Status")
    click.echo("=" * 50)
    for kind in EntityKind:
        counts = stats[kind.value]
        click.echo(f"{kind.value.capitalize()}s: {counts['total']} ({counts['tombstoned']} tombstoned)")
        statuses = OperationStatus if kind == EntityKind.OPERATION else ResourceStatus
        for s in statuses:
            click.echo(f"  {s.value + ':':<14}{counts.get(s.value, 0)}")
    click.echo("\nRetention:")
    click.echo(f"  Retention:    {config.retention_seconds}s")
    click.echo(f"  Grace:        {config.tombstone_grace_seconds}s")
    click.echo("=" * 50 + "\n")


@cli.command("list")
@click.option("--kind", type=click.Choice([k.value for k in EntityKind]), default=EntityKind.OPERATION.value)
@click.option("--status", "status_filter", default=None, help="Filter by status")
@click.option("--limit", default=10, help="Maximum entries to display")
def list_entities(kind: str, status_filter: Optional[str], limit: int):
    """List operations or resources.

    Example:
        opctl list --kind operation --status running
        opctl list --kind resource --limit 20
    """
    entities = get_storage().list(EntityKind(kind))
    if status_filter:
        entities = [e for e in entities if e.status.value == status_filter]
    entities = entities[:limit]

    if not entities:
        click.echo(f"No {kind}s found")
        return

    click.echo(f"\n{'ID':<38} {'Status':<14} {'Last Action':<20} {'Tombstoned':<10}")
    click.echo("-" * 84)
    for entity in entities:
        last = entity.last_action_at.strftime("%Y-%m-%d %H:%M:%S")
        tomb = "yes" if entity.tombstoned_at else ""
        click.echo(f"{entity.id:<38} {entity.status.value:<14} {last:<20} {tomb:<10}")
    click.echo()


@cli.command()
@click.option("--id", "entity_id", default=None, help="Only this entity")
@click.option("--kind", type=click.Choice([k.value for k in EntityKind]), default=EntityKind.OPERATION.value)
@click.option("--limit", default=20, help="Maximum events to display")
@handle_errors
def events(entity_id: Optional[str], kind: str, limit: int):
    """Show the transition log.

    Example:
        opctl events --id op-123
    """
    ref = EntityRef(kind=EntityKind(kind), id=entity_id) if entity_id else None
    records = StateMachine(get_storage()).events(ref, limit=limit)
    if not records:
        click.echo("No transitions recorded")
        return

    for record in records:
        at = record.at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{at}  {record.entity_kind.value}/{record.entity_id}  "
            f"{record.from_status} -> {record.to_status} ({record.event.value})"
        )


@cli.group()
def sweeper():
    """Run the retention sweeper"""
    pass


@sweeper.command()
@click.option("--interval", type=float, default=None, help="Seconds between passes")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
def start(interval: Optional[float], once: bool):
    """Start the retention sweeper.

    Example:
        opctl sweeper start --interval 30
    """
    s = Sweeper(get_storage())
    if once:
        report = s.sweep_once()
        click.echo(
            f"✓ Sweep done: {report.tombstoned} tombstoned, {report.purged} purged, "
            f"{report.expired} expired, {report.events_dropped} log records dropped"
        )
        return

    click.echo("Starting sweeper...")
    s.run(interval)
    click.echo("Sweeper stopped")


@cli.group()
def config():
    """Manage configuration"""
    pass


CONFIG_KEYS = {
    "default-retry-after": ("default_retry_after", int),
    "retention-seconds": ("retention_seconds", int),
    "tombstone-grace-seconds": ("tombstone_grace_seconds", int),
    "stale-after-seconds": ("stale_after_seconds", int),
    "sweep-interval": ("sweep_interval", float),
    "sweep-max-retries": ("sweep_max_retries", int),
    "lock-timeout": ("lock_timeout", float),
}


@config.command()
def show():
    """Show current configuration.

    Example:
        opctl config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    for key, (field, _) in CONFIG_KEYS.items():
        click.echo(f"  {key + ':':<26}{getattr(cfg, field)}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_config(key: str, value: str):
    """Set a configuration value.

    Example:
        opctl config set retention-seconds 172800
        opctl config set default-retry-after 10
    """
    storage = get_storage()
    cfg = storage.get_config()

    if key not in CONFIG_KEYS:
        click.echo(f"✗ Unknown config key: {key}", err=True)
        sys.exit(1)

    field, cast = CONFIG_KEYS[key]
    try:
        cfg = cfg.model_validate({**cfg.model_dump(), field: cast(value)})
    except ValueError as e:
        click.echo(f"✗ Invalid value: {e}", err=True)
        sys.exit(1)

    storage.set_config(cfg)
    click.echo(f"✓ Configuration updated: {key} = {value}")


if __name__ == "__main__":
    cli()
