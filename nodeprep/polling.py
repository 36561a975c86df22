"""Injectable clock and deadline-bounded polling."""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol, TypeVar

T = TypeVar("T")


class Clock(Protocol):
    def now(self) -> float:
        """Monotonic seconds."""

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real monotonic time."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class Deadline:
    """An absolute point on a clock's timeline."""

    def __init__(self, clock: Clock, timeout_seconds: float):
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.expires_at = clock.now() + timeout_seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock.now())

    def expired(self) -> bool:
        return self.clock.now() >= self.expires_at

    def sleep(self, interval: float) -> None:
        """Sleep ``interval`` seconds without overshooting the deadline."""
        remaining = self.remaining()
        if remaining > 0:
            self.clock.sleep(min(interval, remaining))


def poll_until(
    check: Callable[[], Optional[T]],
    clock: Clock,
    timeout_seconds: float,
    interval: float,
) -> Optional[T]:
    """Call ``check`` until it returns non-None or the deadline passes.

    The deadline is tested before every call and before every sleep.
    Returns None on expiry.
    """
    deadline = Deadline(clock, timeout_seconds)
    while not deadline.expired():
        result = check()
        if result is not None:
            return result
        if deadline.expired():
            break
        deadline.sleep(interval)
    return None
