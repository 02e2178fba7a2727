"""Backup coordination for a running game server.

The coordinator owns every operation that touches the backup store: save,
restore, list, clean, delete, prune and the periodic backup timer. All of
them run under one lock, so a periodic save can never interleave with a
manual restore or a prune.

Saving while the server is running uses the Bedrock quiesce handshake:

    > save hold                      pause world writes
    > save query                     repeated until the server answers
    < Data saved. Files are now ready to be copied.
    < <file manifest>
      ... commit the workspace ...
    > save resume                    always attempted once hold was sent

If the server never answers before save_timeout the save fails. The resume is
still attempted, but if the server is wedged it may stay in "writes paused"
state; that is reported to the operator, not repaired.
"""

import threading
import time
from datetime import datetime, timedelta

from worldkeep.durations import format_duration
from worldkeep.errors import (
    ExternalCommandError,
    HandshakeTimeout,
    InternalError,
    KeeperError,
    StateError,
    ValidationError,
)
from worldkeep.log import write_log
from worldkeep.retention import prune_candidates
from worldkeep.scheduler import PeriodicTimer
from worldkeep.snapshot.reference import SnapshotKind, kind_filter, reference_name

HOLD_COMMAND = "save hold"
QUERY_COMMAND = "save query"
RESUME_COMMAND = "save resume"
READY_MARKER = "Data saved. Files are now ready to be copied"

PERIODIC_MESSAGE = "Automatic periodic backup"
CLEAN_MESSAGE = "Saving for cleaning"

MIN_PERIOD = timedelta(seconds=1)


def _local_now():
    return datetime.now().astimezone()


def validate_period(interval):
    """Zero disables periodic backups; otherwise the period must be at least a second."""
    if interval < timedelta(0):
        raise ValidationError("backup period cannot be negative")
    if timedelta(0) < interval < MIN_PERIOD:
        raise ValidationError("backup period cannot be shorter than a second")
    return interval


class SnapshotCoordinator:
    """Serializes backup operations against one workspace and one server.

    clock returns the current time; it names new backups and anchors the
    prune cutoff.
    """

    def __init__(self, settings, store, server, console, clock=None):
        self.settings = settings
        self.store = store
        self.server = server
        self.console = console
        self._clock = clock or _local_now
        self._lock = threading.Lock()

        interval = validate_period(settings.backup_interval)
        self.console.log(f"backup interval set to {format_duration(interval)}")
        self._timer = PeriodicTimer(
            self._periodic_save,
            interval,
            on_error=self._report_periodic_failure,
        )

    @property
    def interval(self):
        return self._timer.interval

    def close(self):
        """Stop the periodic backup thread."""
        self._timer.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def save(self, kind, message):
        """Back up the workspace. Returns the new backup name, or None if clean."""
        with self._lock:
            return self._save(kind, message)

    def create_snapshot(self, kind, message):
        """Commit the workspace without talking to the server."""
        with self._lock:
            return self._create_snapshot(_kind(kind), message)

    def restore(self, name):
        with self._lock:
            if not name:
                raise ValidationError("must specify the backup to restore. try 'backup list'")
            if self.server.is_running():
                raise StateError("stop the server before restoring the backup")
            if not self.store.is_clean():
                raise StateError(
                    "there are dirty files in the directory. "
                    "run 'backup save' or 'workspace clean' first"
                )

            matches = [r for r in self.store.list_references([name]) if r.name == name]
            if not matches:
                raise ValidationError(f"backup {name!r} not found. try 'backup list'")

            self.store.checkout(matches[0])
            self.console.success(f"successfully restored to {name}")
            self._audit("restore", backup=name)
            return matches[0]

    def list(self, filters=None):
        """Print backups matching filters in the order the store returns them."""
        with self._lock:
            refs = self.store.list_references(list(filters or []))
            if not refs:
                self.console.print("no backups found")
            for ref in refs:
                self.console.print(str(ref), markup=False, highlight=False)
            return refs

    def clean(self):
        """Discard workspace changes, keeping them as a temp backup first."""
        with self._lock:
            if self.server.is_running():
                raise StateError("cannot clean. server is running")

            head = self.store.current_head()
            if not head.content_id:
                raise StateError(
                    f"cannot clean. {head.name} has no commits yet. run 'backup save' first"
                )
            self._save(SnapshotKind.TEMP, CLEAN_MESSAGE)
            self.store.checkout(head)
            self.console.success("clean successful")
            return head

    def delete(self, filters):
        with self._lock:
            filters = list(filters or [])
            if not filters:
                raise ValidationError("must specify at least one backup to delete")
            refs = self.store.list_references(filters)
            if not refs:
                raise ValidationError(f"no backups match {' '.join(filters)}")
            return self._delete_refs(refs)

    def prune(self, cutoff_age, retain_interval):
        """Thin out periodic backups older than cutoff_age.

        Keeps at most one backup per retain_interval beyond the cutoff.
        Returns the backups selected for deletion.
        """
        with self._lock:
            if cutoff_age < timedelta(0) or retain_interval < timedelta(0):
                raise ValidationError("prune durations cannot be negative")

            refs = self.store.list_references([kind_filter(SnapshotKind.PERIODIC)])
            candidates = prune_candidates(refs, self._clock(), cutoff_age, retain_interval)
            if not candidates:
                self.console.log("nothing to prune")
                return []

            self.console.log(f"pruning {len(candidates)} of {len(refs)} periodic backups")
            deleted = self._delete_refs(candidates)
            self._audit(
                "prune",
                cutoff=format_duration(cutoff_age),
                retain=format_duration(retain_interval),
                count=len(deleted),
            )
            return candidates

    def set_period(self, interval):
        with self._lock:
            validate_period(interval)
            self._timer.reset(interval)
            self.console.log(f"backup interval set to {format_duration(interval)}")

    # ------------------------------------------------------------------
    # Helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _save(self, kind, message):
        kind = _kind(kind)
        if not self.server.is_running():
            return self._create_snapshot(kind, message)

        sub = self.server.start_read_output()
        held = False
        try:
            try:
                self.server.send_input(HOLD_COMMAND)
            except StateError as e:
                raise StateError(f"unable to communicate with server. {e}") from e
            held = True
            self._wait_until_ready(sub)
            return self._create_snapshot(kind, message)
        except HandshakeTimeout:
            self.console.warn(
                "server did not confirm the save hold. world writes may still be paused; "
                f"check the server and send '{RESUME_COMMAND}' if needed"
            )
            raise
        finally:
            if held:
                self._resume()
            self.server.end_read_output()

    def _wait_until_ready(self, sub):
        time.sleep(self.settings.hold_grace.total_seconds())
        timeout = self.settings.save_timeout.total_seconds()
        deadline = time.monotonic() + timeout
        while True:
            if time.monotonic() >= deadline:
                raise HandshakeTimeout(
                    f"timed out after {format_duration(self.settings.save_timeout)} "
                    "waiting for server. bailing out"
                )

            line = sub.get(timeout=0)
            if line is None:
                self.console.debug("waiting for save to be ready")
                try:
                    self.server.send_input(QUERY_COMMAND)
                except StateError as e:
                    raise StateError(f"unable to communicate with server. {e}") from e
                time.sleep(self.settings.poll_interval.total_seconds())
                continue

            if READY_MARKER in line:
                # Next line lists the files being held
                manifest = sub.get(timeout=max(0.0, deadline - time.monotonic()))
                self.console.debug(f"files ready to copy: {manifest}")
                return

    def _resume(self):
        try:
            self.server.send_input(RESUME_COMMAND)
        except KeeperError as e:
            self.console.error(f"unable to resume server saves. {e}")

    def _create_snapshot(self, kind, message):
        if not message:
            raise InternalError("backup message not set")

        if self.store.is_clean():
            self.console.log("skipping backup. no dirty files")
            return None

        name = reference_name(kind, self._clock())
        try:
            self.store.run_command("checkout", "--orphan", name)
            self.store.run_command("add", "-A")
            self.store.run_command("commit", "--allow-empty", "-m", message)
        except ExternalCommandError as e:
            self.console.error(f"backup failed. {e}")
            raise

        self.console.success(f"backup success: {name}")
        self._audit("save", backup=name, kind=kind.value, message=message)
        return name

    def _delete_refs(self, refs):
        deleted = self.store.delete_references(refs)
        if deleted:
            self._audit("delete", backups=[r.name for r in deleted])
        return deleted

    def _periodic_save(self):
        with self._lock:
            # set_period() may have taken the lock after this fire was due
            if not self._timer.fire_is_current():
                self.console.debug("periodic backup skipped. backup period changed")
                return None
            return self._save(SnapshotKind.PERIODIC, PERIODIC_MESSAGE)

    def _report_periodic_failure(self, error):
        self.console.error(f"periodic backup failed. {error}")

    def _audit(self, event, **fields):
        if not self.settings.audit_log:
            return
        write_log({"event": event, "workspace": str(self.settings.workspace_dir), **fields})


def _kind(kind):
    try:
        return SnapshotKind(kind)
    except ValueError as e:
        raise ValidationError(
            f"unknown backup kind {kind!r}. Use one of: "
            + ", ".join(k.value for k in SnapshotKind)
        ) from e
