"""Git-backed backup store.

Each backup is an orphan branch named saves/<kind>/<timestamp>, so every
backup is a self-contained commit with no shared history. Restoring is a
plain checkout of that branch.

All git invocations run in the workspace directory with a per-command
timeout. Output is captured, never printed directly; the caller decides what
the operator sees.
"""

import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path

from worldkeep.errors import (
    CommandTimeout,
    ExternalCommandError,
    ProtectedResourceError,
    ValidationError,
)
from worldkeep.snapshot.base import VersionControl
from worldkeep.snapshot.reference import SnapshotReference

# %1f is the ASCII unit separator; subjects can contain anything else
_FIELD_SEP = "\x1f"
_BRANCH_FORMAT = "%1f".join([
    "%(refname:short)",
    "%(objectname:short)",
    "%(contents:subject)",
    "%(committerdate:iso-strict)",
    "%(committerdate:relative)",
    "%(HEAD)",
])


def parse_branch_list(out):
    """Parse `git branch --format=_BRANCH_FORMAT` output into references."""
    refs = []
    for line in out.splitlines():
        if not line.strip():
            continue
        comps = line.split(_FIELD_SEP)
        if len(comps) != 6:
            raise ValueError(f"unexpected git branch output: {line!r}")
        name, content_id, subject, date, relative, head = (c.strip() for c in comps)
        # Detached HEAD shows up as "(HEAD detached at ...)"; it is not a backup
        if name.startswith("("):
            continue
        if date.endswith("Z"):
            date = date[:-1] + "+00:00"
        refs.append(SnapshotReference(
            name=name,
            content_id=content_id,
            subject=subject,
            created_at=datetime.fromisoformat(date),
            created_at_relative=relative,
            is_active=head == "*",
        ))
    return refs


class GitStore(VersionControl):

    def __init__(self, workspace, console, git_exe="git", timeout=30.0, dry_run=False):
        self.workspace = Path(workspace)
        self.console = console
        self.timeout = timeout
        self.dry_run = dry_run
        exe = git_exe
        if not os.path.isabs(exe):
            exe = shutil.which(git_exe)
            if exe is None:
                raise ExternalCommandError(
                    f"git executable {git_exe!r} not found. Install git or set git_exe in .worldkeep",
                    command=[git_exe],
                )
        self.git_exe = exe

    def run_command(self, *args):
        cmd = [self.git_exe, *args]
        self.console.debug(f"running {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.workspace,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(
                f"git {' '.join(args)} timed out after {self.timeout:g}s"
            ) from e
        except OSError as e:
            raise ExternalCommandError(
                f"failed to run git {' '.join(args)}. {e}", command=cmd
            ) from e

        if result.returncode != 0:
            self.console.debug(f"command failed with exit code {result.returncode}")
            self.console.debug(result.stdout)
            raise ExternalCommandError(
                f"git {' '.join(args)} failed with exit code {result.returncode}. {result.stdout.strip()}",
                command=cmd,
                returncode=result.returncode,
                output=result.stdout,
            )
        return result.stdout

    def init_repository(self):
        """Create the git repository in the workspace if there isn't one yet.

        Returns True if a repository was created.
        """
        self.workspace.mkdir(parents=True, exist_ok=True)
        if (self.workspace / ".git").exists():
            return False
        self.run_command("init")
        return True

    def is_clean(self):
        out = self.run_command("status", "--porcelain")
        return out.strip() == ""

    def list_references(self, filters=None):
        args = ["branch", f"--format={_BRANCH_FORMAT}", "--list"]
        if filters:
            args.extend(filters)
        out = self.run_command(*args)
        try:
            return parse_branch_list(out)
        except ValueError as e:
            raise ExternalCommandError(f"invalid output from git branch. {e}", output=out) from e

    def current_head(self):
        try:
            name = self.run_command("symbolic-ref", "--short", "-q", "HEAD").strip()
        except ExternalCommandError:
            # Detached HEAD: fall back to the commit id
            name = self.run_command("rev-parse", "--short", "HEAD").strip()
            return SnapshotReference(name=name, content_id=name, is_active=True)

        for ref in self.list_references([name]):
            if ref.name == name:
                return ref
        # Unborn branch: no commit yet
        return SnapshotReference(name=name, is_active=True)

    def checkout(self, ref):
        self.run_command("checkout", ref.name)

    def delete_references(self, refs):
        refs = list(refs)
        if not refs:
            raise ValidationError("must specify at least one backup to delete")

        targets = []
        for ref in refs:
            if ref.is_active:
                if len(refs) == 1:
                    raise ProtectedResourceError(f"active backup {ref.name} cannot be deleted")
                self.console.warn(f"active backup '{ref.name}' cannot be deleted. skipping")
            else:
                targets.append(ref)

        listing = "\n".join(str(r) for r in targets)
        self.console.log(f"deleting the following backups:\n{listing}")

        if self.dry_run:
            self.console.warn("*** dry run only. deletion not performed ***")
            return []

        try:
            self.run_command("branch", "-D", *(r.name for r in targets))
        except ExternalCommandError as e:
            self.console.error(f"git branch -D failed. {e.output.strip()}")
            raise
        return targets
