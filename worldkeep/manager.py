"""Interactive server manager.

Reads commands from the operator, expands aliases and dispatches to handlers
held in a CommandRegistry. Backup commands go through the
SnapshotCoordinator; server lifecycle commands go through the ServerProcess.
"""

import shlex
import subprocess
import time

from worldkeep.config import resolve_server_exe
from worldkeep.durations import format_duration, parse_duration
from worldkeep.errors import (
    ExitSession,
    ExternalCommandError,
    HandshakeTimeout,
    KeeperError,
    StateError,
    ValidationError,
)
from worldkeep.snapshot.reference import SnapshotKind

# The server prints this once per listening socket (IPv4 and IPv6 ports);
# the second occurrence means it is fully up.
SERVER_STARTED_MARKER = "[INFO] IPv6 supported, port:"
SERVER_STARTED_COUNT = 2

MANUAL_SAVE_MESSAGE = "Manual save"

ALIASES = {
    "bs": "backup save",
    "br": "backup restore",
    "bl": "backup list",
    "bp": "backup period",
    "bd": "backup delete",
    "bpr": "backup prune",
    "workspace": "backup",
    "wc": "backup clean",
    "h": "help",
    "e": "exit",
    "q": "exit",
    "quit": "exit",
    "s": "status",
    "$": "shell",
    "@": "server",
}

HELP_TEXT = """\
worldkeep: game server manager with git backups

Syntax:
  help                          Print this help message. alias: h
  @ COMMAND                     Send a command to the server directly.
  $ COMMAND                     Run a host command and print its output.
  status                        Server and workspace status. alias: s
  start                         Start the server.
  stop                          Stop the server.
  quit                          Stop the server and exit. alias: q, e, exit
  backup save [DESCRIPTION]     Save the current state as a backup. alias: bs
                                Example: backup save Built a gold farm
  backup restore NAME           Restore the named backup (server must be stopped). alias: br
  backup list [FILTER ...]      List backups. alias: bl
                                Example: backup list saves/manual/* saves/periodic/20211002-*
  backup period INTERVAL        Set the automatic backup period, 0 disables. alias: bp
                                Example formats: 1h, 20m, 30s, 1h30m
  backup delete FILTER ...      Delete backups; wildcards allowed. alias: bd
                                Example: backup delete saves/manual/202102*
  backup prune CUTOFF RETAIN    Thin periodic backups older than CUTOFF to one per RETAIN. alias: bpr
                                Example: backup prune 24h 6h
  workspace clean               Reset the workspace to the active backup. alias: wc
                                Current changes are kept as saves/temp/DATE-TIME.
"""


class CommandRegistry:
    """Maps command names to handlers.

    A handler is called as handler(manager, args) where args excludes the
    command name itself.
    """

    def __init__(self):
        self._handlers = {}
        self._help = {}

    def register(self, name, handler, help=None):
        if name in self._handlers:
            raise ValueError(f"command {name!r} already registered")
        self._handlers[name] = handler
        if help:
            self._help[name] = help

    def get(self, name):
        return self._handlers.get(name)

    def names(self):
        return sorted(self._handlers)

    def __contains__(self, name):
        return name in self._handlers


def expand_alias(parts, aliases=None):
    """Replace a leading alias with its expansion: ["bs", "x"] → ["backup", "save", "x"]."""
    aliases = ALIASES if aliases is None else aliases
    if parts and parts[0] in aliases:
        return aliases[parts[0]].split() + list(parts[1:])
    return list(parts)


def split_command(line):
    """Split a command line into words. Quotes group words when balanced."""
    try:
        return shlex.split(line)
    except ValueError:
        return line.split()


class ServerManager:
    """One interactive session: a server process, its workspace, its backups."""

    def __init__(self, settings, server, store, coordinator, console, registry=None):
        self.settings = settings
        self.server = server
        self.store = store
        self.coordinator = coordinator
        self.console = console
        self.registry = registry or default_registry()

    def handle_command(self, line):
        """Run one command line. Errors are reported; only ExitSession escapes."""
        line = line.strip()
        if not line:
            return
        parts = expand_alias(split_command(line))
        if not parts:
            return

        handler = self.registry.get(parts[0])
        if handler is None:
            self.console.error(f"invalid command '{parts[0]}'. try 'help'")
            return

        try:
            handler(self, parts[1:])
        except KeeperError as e:
            self.console.error(str(e))
        except ExitSession:
            raise
        except Exception as e:
            # Host failures (disk full, unwritable audit log) must not end the session
            self.console.error(f"{parts[0]} failed unexpectedly. {type(e).__name__}: {e}")

    def run(self, input_fn=input):
        """Prompt loop. Returns when the operator exits or input ends."""
        self.print_help()
        try:
            while True:
                try:
                    line = input_fn("> ")
                except (KeyboardInterrupt, EOFError):
                    self.console.print("\n[dim]Goodbye.[/dim]")
                    break
                try:
                    self.handle_command(line)
                except ExitSession:
                    self.console.log("exiting the session")
                    break
        finally:
            self.shutdown()

    def shutdown(self):
        try:
            self.server.kill()
        except KeeperError as e:
            self.console.error(f"unable to stop server. {e}")
        self.coordinator.close()

    def print_help(self):
        self.console.print(HELP_TEXT, markup=False, highlight=False)

    def status_line(self):
        server_state = "running" if self.server.is_running() else "not running"
        ws_state = "clean" if self.store.is_clean() else "dirty"
        return (
            f"server is {server_state}, workspace is {ws_state}, "
            f"automatic backup interval: {format_duration(self.coordinator.interval)}"
        )

    def start_server(self):
        """Start the server and wait until it reports both listening ports."""
        if self.server.is_running():
            raise StateError("server already running")

        exe = resolve_server_exe(self.settings.server_exe, self.settings.workspace_dir)
        if exe is None:
            raise ValidationError(
                f"server executable {self.settings.server_exe!r} not found. "
                "Set server_exe in .worldkeep"
            )

        sub = self.server.start_read_output()
        try:
            self.server.start(exe, self.settings.workspace_dir, self.settings.server_args)
            deadline = time.monotonic() + self.settings.start_timeout.total_seconds()
            seen = 0
            while seen < SERVER_STARTED_COUNT:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise HandshakeTimeout(
                        f"server did not finish starting within "
                        f"{format_duration(self.settings.start_timeout)}"
                    )
                try:
                    line = sub.get(timeout=remaining)
                except StateError as e:
                    raise StateError("failed to start the server") from e
                if line is not None and SERVER_STARTED_MARKER in line:
                    seen += 1
        finally:
            self.server.end_read_output()
        self.console.success("server started successfully")


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------

def handle_help(manager, args):
    manager.print_help()


def handle_exit(manager, args):
    raise ExitSession()


def handle_status(manager, args):
    manager.console.log(manager.status_line())


def handle_start(manager, args):
    manager.start_server()


def handle_stop(manager, args):
    if not manager.server.is_running():
        manager.console.log("server not running")
        return
    manager.server.kill()


def handle_server(manager, args):
    if not args:
        return
    if not manager.server.is_running():
        raise StateError("cannot send command. server is not running")
    manager.server.send_input(" ".join(args))


def handle_shell(manager, args):
    if not args:
        return
    try:
        result = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as e:
        raise ExternalCommandError(f"unable to run {args[0]}. {e}", command=args) from e

    manager.console.log(f" {result.stdout.rstrip()}")
    if result.returncode != 0:
        raise ExternalCommandError(
            f"command failed with exit code {result.returncode}",
            command=args,
            returncode=result.returncode,
            output=result.stdout,
        )


def _backup_save(manager, args):
    message = " ".join(args) or MANUAL_SAVE_MESSAGE
    manager.coordinator.save(SnapshotKind.MANUAL, message)


def _backup_restore(manager, args):
    if len(args) != 1:
        raise ValidationError("invalid args. must specify NAME to restore. try 'help' for syntax")
    manager.coordinator.restore(args[0])


def _backup_list(manager, args):
    manager.coordinator.list(args)


def _backup_period(manager, args):
    if len(args) != 1:
        raise ValidationError("invalid args. must specify INTERVAL. try 'help' for usage")
    manager.coordinator.set_period(parse_duration(args[0]))


def _backup_delete(manager, args):
    manager.coordinator.delete(args)


def _backup_prune(manager, args):
    if len(args) != 2:
        raise ValidationError("invalid args. must specify CUTOFF and RETAIN. try 'help' for usage")
    manager.coordinator.prune(parse_duration(args[0]), parse_duration(args[1]))


def _backup_clean(manager, args):
    manager.coordinator.clean()


BACKUP_COMMANDS = {
    "save": _backup_save,
    "restore": _backup_restore,
    "list": _backup_list,
    "period": _backup_period,
    "delete": _backup_delete,
    "prune": _backup_prune,
    "clean": _backup_clean,
}


def handle_backup(manager, args):
    if not args:
        raise ValidationError("invalid command. try help")
    sub = BACKUP_COMMANDS.get(args[0])
    if sub is None:
        raise ValidationError(f"unknown backup command '{args[0]}'. try help")
    sub(manager, args[1:])


def default_registry():
    """Registry with every built-in command."""
    registry = CommandRegistry()
    registry.register("help", handle_help, "print help")
    registry.register("exit", handle_exit, "stop the server and exit")
    registry.register("status", handle_status, "server and workspace status")
    registry.register("start", handle_start, "start the server")
    registry.register("stop", handle_stop, "stop the server")
    registry.register("server", handle_server, "send a command to the server")
    registry.register("shell", handle_shell, "run a host command")
    registry.register("backup", handle_backup, "backup operations")
    return registry
