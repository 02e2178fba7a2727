"""Console output and backup audit logging.

ConsoleLog is the single place that writes to the terminal. Every line the
server prints, every command sent to it and every backup result goes through
log() with a local timestamp, so the operator sees one interleaved stream.

write_log() appends structured JSON entries to ~/.worldkeep/logs.jsonl. Each
entry records a backup event (save, restore, delete, prune) with timestamp,
workspace and backup name.
"""

import json
import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console

LOGS_FILE = Path.home() / ".worldkeep" / "logs.jsonl"

TIMESTAMP_FORMAT = "%Y%m%d-%H:%M:%S"


def write_log(entry, path=None):
    """Append a backup event to the audit log."""
    path = Path(path) if path else LOGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    entry["timestamp"] = datetime.now().isoformat()
    with open(path, "a") as f:
        f.write(json.dumps(entry) + "\n")


class ConsoleLog:
    """Timestamped console writer shared by the manager, server and coordinator.

    Reader threads and the periodic backup thread write concurrently with the
    interactive prompt, so every write is serialized.
    """

    def __init__(self, console=None, verbose=False):
        self.console = console or Console()
        self.verbose = verbose
        self._lock = threading.Lock()

    def _stamp(self):
        return datetime.now().strftime(TIMESTAMP_FORMAT)

    def log(self, line, style=None):
        """Print a timestamped line. Text is printed literally, never as markup."""
        with self._lock:
            self.console.print(
                f"[{self._stamp()}] {line}",
                style=style,
                markup=False,
                highlight=False,
                soft_wrap=True,
            )

    def warn(self, line):
        self.log(line, style="yellow")

    def error(self, line):
        self.log(line, style="red")

    def success(self, line):
        self.log(line, style="green")

    def debug(self, line):
        if self.verbose:
            self.log(line, style="dim")

    def print(self, *objects, **kwargs):
        """Untimestamped output: backup lists, help text, rich renderables."""
        with self._lock:
            self.console.print(*objects, **kwargs)
