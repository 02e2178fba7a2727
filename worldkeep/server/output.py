import queue
import threading
from dataclasses import dataclass
from datetime import datetime

from worldkeep.errors import OutputClosed

_CLOSED = object()


@dataclass(frozen=True)
class LogLine:
    """One line of server output and when it was read."""

    line: str
    time: datetime


class OutputSubscription:
    """Bounded tap on server output.

    The reader threads call put() and must never block on a slow consumer, so
    a full queue discards its oldest line. close() wakes a consumer blocked in
    get(); once the remaining lines are drained get() raises OutputClosed.
    """

    def __init__(self, maxsize=256):
        self._queue = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self):
        return self._closed

    def _force_put(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def put(self, line):
        """Deliver a line. Returns False if the subscription is already closed."""
        with self._lock:
            if self._closed:
                return False
            self._force_put(line)
            return True

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._force_put(_CLOSED)

    def get(self, timeout=None):
        """Next line, or None if nothing arrived within timeout.

        timeout=0 polls without waiting; timeout=None waits indefinitely.
        """
        try:
            if timeout == 0:
                item = self._queue.get_nowait()
            else:
                item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

        if item is _CLOSED:
            # Leave the marker for any later get()
            self._queue.put_nowait(_CLOSED)
            raise OutputClosed("server output closed")
        return item
