import logging
import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """Paces operations so that no two start less than `delay` seconds apart.

    Each server owns its own instance, so servers never throttle each other.
    Callers are admitted one at a time: the lock is held while waiting, which
    keeps arrival order for contending threads and makes the spacing between
    consecutive returns at least `delay`.

    Attributes:
        delay (float): Minimum number of seconds between two admitted `acquire()` calls.
        stop_event (threading.Event): Optional shutdown event. Once set, an
            interruptible wait ends early and the caller is not admitted.
    """

    def __init__(self, delay: float, name: str = "",
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 stop_event: Optional[threading.Event] = None):
        self.delay = max(0.0, float(delay))
        self.name = name
        self.stop_event = stop_event
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    @property
    def last_call(self) -> Optional[float]:
        return self._last_call

    def _wait(self, seconds: float, interruptible: bool) -> bool:
        """Waits `seconds`. Returns False if the stop event cut the wait short."""
        if interruptible and self.stop_event is not None:
            return not self.stop_event.wait(seconds)
        self._sleep(seconds)
        return True

    def acquire(self, interruptible: bool = True) -> bool:
        """Blocks until `delay` has elapsed since the previous admitted call.

        Returns True once the caller is admitted. Returns False, without
        admitting, when the stop event is set during an interruptible wait.
        Pass `interruptible=False` for work that must finish during shutdown.
        """
        with self._lock:
            if self._last_call is not None and self.delay > 0:
                wait = self._last_call + self.delay - self._clock()
                while wait > 0:
                    logging.debug(f"RATE: [{self.name}] Waiting {wait:.2f}s before the next operation.")
                    if not self._wait(wait, interruptible):
                        logging.debug(f"RATE: [{self.name}] Wait interrupted by shutdown.")
                        return False
                    wait = self._last_call + self.delay - self._clock()
            self._last_call = self._clock()
            return True

    def __enter__(self) -> "RateLimiter":
        self.acquire(interruptible=False)
        return self

    def __exit__(self, *exc_info) -> None:
        return None
