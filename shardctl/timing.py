"""
Deadlines, backoff and cancellation for every suspension point.

Probing, registration confirmation and drain confirmation all wait through a
Deadline. Time is injectable (clock + sleep) so retry limits and terminal
failures can be tested without real waiting.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional


Clock = Callable[[], float]
Sleep = Callable[[float], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        initial_s: Delay before the second attempt
        max_s: Cap on any single delay
        multiplier: Growth factor between delays
    """
    initial_s: float = 1.0
    max_s: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.initial_s <= 0:
            raise ValueError("initial_s must be positive")
        if self.max_s < self.initial_s:
            raise ValueError("max_s must be >= initial_s")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-indexed) attempt."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        return min(self.max_s, self.initial_s * self.multiplier ** (attempt - 1))

    def delays(self) -> Iterator[float]:
        """Infinite sequence of delays: initial, initial*m, ... capped at max_s."""
        attempt = 1
        while True:
            yield self.delay(attempt)
            attempt += 1


class Deadline:
    """
    A point in time after which waiting stops, plus a cancellation signal.

    Usage:
        deadline = Deadline(180.0, cancel=stop_event)
        while not deadline.expired:
            ...
            if not deadline.sleep(delay):
                break  # cancelled or out of time
    """

    def __init__(
        self,
        timeout_s: float,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
        cancel: Optional[threading.Event] = None,
    ):
        """
        Args:
            timeout_s: Seconds from now until the deadline
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep function; when None, waits on the cancel event so cancellation wakes it
            cancel: Cancellation signal shared with the caller
        """
        self._clock = clock
        self._sleep = sleep
        self._cancel = cancel if cancel is not None else threading.Event()
        self._started = clock()
        self._expires_at = self._started + max(0.0, timeout_s)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def expired(self) -> bool:
        return self.cancelled or self.remaining() <= 0

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self._started

    def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, never past the deadline.

        Returns:
            False if the deadline was cancelled or has now passed, True otherwise
        """
        if self.cancelled:
            return False
        wait = min(seconds, self.remaining())
        if wait > 0:
            if self._sleep is None:
                if self._cancel.wait(wait):
                    return False
            else:
                self._sleep(wait)
        return not self.expired


class TimeSource:
    """
    Factory for deadlines sharing one clock, sleep and cancel signal.

    The controller owns one TimeSource per instance; tests pass a fake clock.
    """

    def __init__(
        self,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.clock = clock
        self.sleep = sleep
        self.cancel_event = cancel if cancel is not None else threading.Event()

    def deadline(self, timeout_s: float, cancel: Optional[threading.Event] = None) -> Deadline:
        """New deadline; `cancel` overrides the shared signal for one operation."""
        return Deadline(
            timeout_s,
            clock=self.clock,
            sleep=self.sleep,
            cancel=cancel if cancel is not None else self.cancel_event,
        )

    def cancel(self) -> None:
        self.cancel_event.set()
