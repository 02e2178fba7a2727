import threading
import time
from datetime import timedelta


class PeriodicTimer:
    """Re-armable timer driving periodic backups from one background thread.

    reset() replaces the pending deadline atomically; there is never a stale
    fire left to drain. A fire that was already running when reset() happened
    is not re-armed with the old interval: the loop only re-arms when the
    generation it fired for is still current.

        timer = PeriodicTimer(save, timedelta(minutes=30), on_error=report)
        timer.reset(timedelta(hours=1))   # re-arm for an hour from now
        timer.reset(timedelta(0))         # disable
        timer.close()
    """

    def __init__(self, callback, interval=timedelta(0), on_error=None, name="periodic-backup"):
        self._callback = callback
        self._on_error = on_error
        self._cond = threading.Condition()
        self._interval = timedelta(0)
        self._deadline = None
        self._generation = 0
        self._firing = None
        self._closed = False
        self._set(interval)
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def interval(self):
        with self._cond:
            return self._interval

    @property
    def armed(self):
        with self._cond:
            return self._deadline is not None

    @property
    def closed(self):
        return self._closed

    def fire_is_current(self):
        """True while a callback is running for a fire no reset() has superseded.

        A callback that waits on other locks calls this once it holds them;
        False means the operator changed or disabled the period meanwhile.
        """
        with self._cond:
            return (
                self._firing is not None
                and self._firing == self._generation
                and not self._closed
            )

    def reset(self, interval):
        """Disarm, then arm for interval from now. A zero interval leaves it disarmed."""
        with self._cond:
            self._set(interval)
            self._cond.notify_all()

    def close(self, timeout=5):
        with self._cond:
            self._closed = True
            self._deadline = None
            self._cond.notify_all()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _set(self, interval):
        self._generation += 1
        self._interval = interval
        if interval > timedelta(0):
            self._deadline = time.monotonic() + interval.total_seconds()
        else:
            self._deadline = None

    def _run(self):
        while True:
            with self._cond:
                while not self._closed:
                    if self._deadline is None:
                        self._cond.wait()
                        continue
                    remaining = self._deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if self._closed:
                    return
                fired = self._generation
                self._deadline = None
                self._firing = fired

            # The callback takes other locks; never hold the condition here
            try:
                self._callback()
            except Exception as e:
                if self._on_error is None:
                    raise
                self._on_error(e)

            with self._cond:
                self._firing = None
                if fired == self._generation and not self._closed and self._interval > timedelta(0):
                    self._deadline = time.monotonic() + self._interval.total_seconds()
