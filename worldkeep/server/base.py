from abc import ABC, abstractmethod


class ServerProcess(ABC):
    """Base interface for the supervised game server.

    Implementations: ChildProcess.
    """

    @abstractmethod
    def start(self, path, cwd, args=()):
        """Spawn the server. Raises StateError if it is already running."""
        pass

    @abstractmethod
    def send_input(self, line):
        """Write one command line to the server's stdin.

        Raises StateError if the server is not running.
        """
        pass

    @abstractmethod
    def start_read_output(self, subscription=None):
        """Tap the server output. Returns the active OutputSubscription.

        Only one subscription may be active; a second call before
        end_read_output() raises StateError.
        """
        pass

    @abstractmethod
    def end_read_output(self):
        """Close and detach the active subscription, if any."""
        pass

    @abstractmethod
    def is_running(self):
        pass

    @abstractmethod
    def kill(self):
        """Kill the server. No-op if it is not running."""
        pass
