import subprocess
import threading
from datetime import datetime

from worldkeep.errors import ExternalCommandError, StateError
from worldkeep.server.base import ServerProcess
from worldkeep.server.output import LogLine, OutputSubscription

# Seconds to wait for reader threads to drain after the process exits.
# A server that leaks its pipes to a grandchild would otherwise hang the waiter.
_DRAIN_TIMEOUT = 5
_KILL_TIMEOUT = 10


class ChildProcess(ServerProcess):
    """The game server running as a child process.

    Two reader threads (stdout, stderr) echo every line to the console. Lines
    from stdout are also kept in history. When a subscription is active each
    line is additionally delivered to it; the console always gets the line.
    A waiter thread logs the exit status and closes the subscription when the
    process terminates.
    """

    def __init__(self, console, line_limit=100, queue_size=256):
        self.console = console
        self.line_limit = line_limit
        self.queue_size = queue_size
        self._proc = None
        self._lock = threading.Lock()
        self._subscriber = None
        self._history = []

    @property
    def state(self):
        if self._proc is None:
            return "not started"
        return "running" if self.is_running() else "exited"

    @property
    def history(self):
        with self._lock:
            return list(self._history)

    @property
    def pid(self):
        return self._proc.pid if self._proc else None

    def start(self, path, cwd, args=()):
        if self.is_running():
            raise StateError("server already running")

        cmd = [str(path), *args]
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise ExternalCommandError(f"unable to start server. {e}", command=cmd) from e

        self._proc = proc
        readers = [
            threading.Thread(target=self._read_stream, args=(proc.stdout, True), daemon=True),
            threading.Thread(target=self._read_stream, args=(proc.stderr, False), daemon=True),
        ]
        for t in readers:
            t.start()
        threading.Thread(target=self._wait, args=(proc, readers), daemon=True).start()

    def send_input(self, line):
        if not self.is_running():
            raise StateError("server not running. cannot send input")

        self.console.log(f">{line}")
        try:
            # Text-mode stdin turns "\n" into the platform line terminator
            self._proc.stdin.write(line + "\n")
            self._proc.stdin.flush()
        except (OSError, ValueError) as e:
            raise StateError(f"unable to write to server. {e}") from e

    def start_read_output(self, subscription=None):
        with self._lock:
            if self._subscriber is not None:
                raise StateError("server output already has a reader")
            self._subscriber = subscription or OutputSubscription(self.queue_size)
            return self._subscriber

    def end_read_output(self):
        with self._lock:
            sub, self._subscriber = self._subscriber, None
        if sub is not None:
            sub.close()

    def is_running(self):
        return self._proc is not None and self._proc.poll() is None

    def kill(self):
        if not self.is_running():
            return
        self.console.debug("killing server")
        self._proc.kill()
        try:
            self._proc.wait(timeout=_KILL_TIMEOUT)
        except subprocess.TimeoutExpired as e:
            raise StateError(f"server did not exit after kill (pid {self._proc.pid})") from e

    def _read_stream(self, stream, capture):
        for raw in stream:
            self._process_line(raw.rstrip("\r\n"), capture)
        self.console.debug("output reader finished")

    def _process_line(self, line, capture):
        shown = line
        if len(shown) > self.line_limit:
            shown = shown[:self.line_limit] + " ..."
        self.console.log(shown)

        with self._lock:
            if capture:
                self._history.append(LogLine(line=line, time=datetime.now()))
            sub = self._subscriber
        if sub is not None:
            sub.put(line)

    def _wait(self, proc, readers):
        code = proc.wait()
        for t in readers:
            t.join(timeout=_DRAIN_TIMEOUT)
        if code != 0:
            self.console.warn(f"server exited with failure (code {code})")
        else:
            self.console.log("server exited with success")
        # The waiter only closes the subscription of the process it watches
        if proc is self._proc:
            self.end_read_output()
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            try:
                stream.close()
            except OSError:
                pass
