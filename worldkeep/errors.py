"""Error types raised by worldkeep.

Every error the shell knows how to report derives from KeeperError. Handlers
raise; the dispatcher prints the message and keeps the session alive.
"""


class KeeperError(Exception):
    """Base class for all worldkeep errors."""


class ValidationError(KeeperError, ValueError):
    """Malformed arguments: bad interval, missing backup name, no filter match."""


class StateError(KeeperError):
    """Operation not allowed in the current server or workspace state."""


class OutputClosed(StateError):
    """The server output stream ended while a consumer was reading it."""


class HandshakeTimeout(KeeperError, TimeoutError):
    """The server did not answer in time (save handshake or start marker)."""


class CommandTimeout(KeeperError, TimeoutError):
    """A backend command exceeded its timeout."""


class ExternalCommandError(KeeperError):
    """A backend command failed to start or exited non-zero."""

    def __init__(self, message, command=None, returncode=None, output=""):
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output


class ProtectedResourceError(KeeperError):
    """Attempt to delete the active backup on its own."""


class InternalError(KeeperError):
    """An internal invariant was violated. This is a bug, not a user error."""


class ExitSession(Exception):
    """Raised by the exit command to end the interactive session."""
