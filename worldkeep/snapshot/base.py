from abc import ABC, abstractmethod


class VersionControl(ABC):
    """Base interface for backup stores driven through a version-control CLI.

    Implementations: GitStore.
    """

    @abstractmethod
    def run_command(self, *args):
        """Run a backend command in the workspace. Returns combined output.

        Raises ExternalCommandError on failure and CommandTimeout on timeout.
        """
        pass

    @abstractmethod
    def is_clean(self):
        """True if the workspace has no uncommitted changes."""
        pass

    @abstractmethod
    def list_references(self, filters=None):
        """List backups matching the filters, in backend order."""
        pass

    @abstractmethod
    def current_head(self):
        """The reference currently checked out into the workspace."""
        pass

    @abstractmethod
    def checkout(self, ref):
        """Switch the workspace to ref."""
        pass

    @abstractmethod
    def delete_references(self, refs):
        """Delete refs. The active reference is never deleted.

        Deleting only the active reference raises ProtectedResourceError.
        When it is part of a larger batch it is skipped with a warning.
        """
        pass
