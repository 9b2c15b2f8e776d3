import threading
import time

from qbit_mover.core_logic.rate_limiter import RateLimiter


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_acquire_does_not_wait():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    assert clock.sleeps == []
    assert limiter.last_call == 1000.0


def test_consecutive_acquires_are_spaced_by_delay():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
    returns = []
    for _ in range(3):
        limiter.acquire()
        returns.append(clock())
    assert returns == [1000.0, 1005.0, 1010.0]


def test_elapsed_time_counts_towards_delay():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    clock.now += 3
    limiter.acquire()
    assert clock.sleeps == [2]


def test_no_wait_once_delay_has_passed():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
    limiter.acquire()
    clock.now += 60
    limiter.acquire()
    assert clock.sleeps == []


def test_zero_delay_never_sleeps():
    clock = FakeClock()
    limiter = RateLimiter(0, clock=clock, sleep=clock.sleep)
    for _ in range(5):
        limiter.acquire()
    assert clock.sleeps == []


def test_negative_delay_is_clamped():
    assert RateLimiter(-3).delay == 0.0


def test_context_manager_acquires():
    clock = FakeClock()
    limiter = RateLimiter(2, clock=clock, sleep=clock.sleep)
    with limiter:
        pass
    with limiter:
        pass
    assert clock.sleeps == [2]


def test_concurrent_callers_are_serialized():
    limiter = RateLimiter(0.05)
    threads = [threading.Thread(target=limiter.acquire) for _ in range(4)]

    started = time.monotonic()
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = time.monotonic() - started

    # First caller is free, the other three each wait a full delay.
    assert elapsed >= 0.15 - 1e-3


def test_shutdown_interrupts_wait_without_admitting():
    stop = threading.Event()
    limiter = RateLimiter(30, stop_event=stop)
    assert limiter.acquire() is True
    admitted_at = limiter.last_call
    stop.set()

    started = time.monotonic()
    assert limiter.acquire() is False
    assert time.monotonic() - started < 5
    assert limiter.last_call == admitted_at


def test_uninterruptible_acquire_waits_out_the_delay_during_shutdown():
    clock = FakeClock()
    stop = threading.Event()
    stop.set()
    limiter = RateLimiter(5, clock=clock, sleep=clock.sleep, stop_event=stop)
    limiter.acquire()

    assert limiter.acquire(interruptible=False) is True
    assert clock.sleeps == [5]


def test_set_stop_event_does_not_block_a_call_that_needs_no_wait():
    stop = threading.Event()
    stop.set()
    limiter = RateLimiter(30, stop_event=stop)
    assert limiter.acquire() is True
