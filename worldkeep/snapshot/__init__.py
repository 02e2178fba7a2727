from worldkeep.snapshot.base import VersionControl
from worldkeep.snapshot.git import GitStore
from worldkeep.snapshot.reference import SnapshotKind, SnapshotReference, kind_filter, reference_name

__all__ = [
    "GitStore",
    "SnapshotKind",
    "SnapshotReference",
    "VersionControl",
    "create_store",
    "kind_filter",
    "reference_name",
]


def create_store(settings, console, backend="git"):
    """Create the backup store for the configured workspace.

    Settings used:
        workspace_dir, git_exe, git_command_timeout, git_dry_run
    """
    if backend == "git":
        return GitStore(
            settings.workspace_dir,
            console,
            git_exe=settings.git_exe,
            timeout=settings.git_command_timeout.total_seconds(),
            dry_run=settings.git_dry_run,
        )
    raise ValueError(f"Unknown backup backend: {backend!r}. Use 'git'.")
