from contextlib import contextmanager

import click
from rich.console import Console

from worldkeep import __version__
from worldkeep.config import Settings, find_config, init_config, load_config
from worldkeep.coordinator import SnapshotCoordinator
from worldkeep.durations import parse_duration
from worldkeep.errors import KeeperError
from worldkeep.log import ConsoleLog
from worldkeep.manager import ServerManager
from worldkeep.server import create_server
from worldkeep.snapshot import SnapshotKind, create_store


def _build(workspace=None, verbose=False, periodic=True):
    """Wire up settings, console, store, server and coordinator."""
    config = load_config()
    if workspace:
        config["workspace_dir"] = workspace
    if verbose:
        config["verbose"] = True
    if not periodic:
        # One-shot commands never stay alive long enough for a timer
        config["backup_interval"] = "0"
    settings = Settings.from_config(config)

    log = ConsoleLog(Console(), verbose=settings.verbose)
    store = create_store(settings, log)
    server = create_server(settings, log)
    coordinator = SnapshotCoordinator(settings, store, server, log)
    return settings, log, store, server, coordinator


@contextmanager
def _offline(ctx):
    """Coordinator for a single command with the server stopped."""
    console = Console()
    coordinator = None
    try:
        _, _, _, _, coordinator = _build(
            ctx.obj.get("workspace"), ctx.obj.get("verbose"), periodic=False
        )
        yield coordinator
    except (KeeperError, ValueError) as e:
        console.print(f"[red]{e}[/red]", highlight=False)
        raise SystemExit(1)
    finally:
        if coordinator is not None:
            coordinator.close()


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option("--workspace", type=click.Path(file_okay=False), default=None,
              help="World directory under git. Defaults to the server executable's directory.")
@click.option("-v", "--verbose", is_flag=True, help="Show backend commands as they run.")
@click.pass_context
def main(ctx, workspace, verbose):
    """worldkeep: run a game server and keep its world in git."""
    ctx.obj = {"workspace": workspace, "verbose": verbose}
    if ctx.invoked_subcommand is None:
        shell(workspace, verbose)


@main.command()
@click.option("--server-exe", default=None, help="Server executable name or path.")
@click.pass_context
def init(ctx, server_exe):
    """Initialize worldkeep here. Creates .worldkeep and a git repository."""
    console = Console()
    if find_config():
        click.echo(".worldkeep already exists.")
    else:
        config_path = init_config(server_exe=server_exe)
        click.echo(f"Created {config_path}")

    with _offline(ctx) as coordinator:
        if coordinator.store.init_repository():
            console.print(f"[green]Initialized git repository in {coordinator.store.workspace}[/green]")


@main.command()
@click.pass_context
def status(ctx):
    """Show whether the workspace is clean and which backup is checked out."""
    with _offline(ctx) as coordinator:
        state = "clean" if coordinator.store.is_clean() else "dirty"
        head = coordinator.store.current_head()
        click.echo(f"workspace is {state}, active backup: {head.name}")


@main.command("list")
@click.argument("filters", nargs=-1)
@click.pass_context
def list_cmd(ctx, filters):
    """List backups. FILTERS are git branch patterns, e.g. 'saves/manual/*'."""
    with _offline(ctx) as coordinator:
        coordinator.list(filters)


@main.command()
@click.argument("message", nargs=-1)
@click.pass_context
def save(ctx, message):
    """Save the workspace as a manual backup (server must be stopped)."""
    with _offline(ctx) as coordinator:
        coordinator.save(SnapshotKind.MANUAL, " ".join(message) or "Manual save")


@main.command()
@click.argument("name")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def restore(ctx, name, yes):
    """Restore the workspace to backup NAME."""
    if not yes and not click.confirm(f"Restore backup {name}?", default=False):
        click.echo("Cancelled.")
        return
    with _offline(ctx) as coordinator:
        coordinator.restore(name)


@main.command()
@click.argument("filters", nargs=-1, required=True)
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def delete(ctx, filters, yes):
    """Delete backups matching FILTERS. The active backup is never deleted."""
    if not yes and not click.confirm(f"Delete backups matching {' '.join(filters)}?", default=False):
        click.echo("Cancelled.")
        return
    with _offline(ctx) as coordinator:
        coordinator.delete(filters)


@main.command()
@click.argument("cutoff")
@click.argument("retain")
@click.pass_context
def prune(ctx, cutoff, retain):
    """Thin periodic backups older than CUTOFF to one per RETAIN.

    Example: worldkeep prune 24h 6h
    """
    with _offline(ctx) as coordinator:
        coordinator.prune(parse_duration(cutoff), parse_duration(retain))


@main.command()
@click.pass_context
def clean(ctx):
    """Reset the workspace to the active backup, keeping changes as a temp backup."""
    with _offline(ctx) as coordinator:
        coordinator.clean()


def shell(workspace=None, verbose=False):
    """Interactive session: start/stop the server, send commands, manage backups."""
    console = Console()
    try:
        settings, log, store, server, coordinator = _build(workspace, verbose)
    except (KeeperError, ValueError) as e:
        console.print(f"[red]{e}[/red]", highlight=False)
        raise SystemExit(1)

    console.print(f"[dim]Workspace: {settings.workspace_dir} | Server: {settings.server_exe}[/dim]")
    manager = ServerManager(settings, server, store, coordinator, log)
    manager.run()
