"""Circuit breaker guarding calls to an unreliable operation."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, TypeVar

T = TypeVar("T")


class BreakerError(Exception):
    """An operation run through the breaker failed or was refused."""


class BreakerOpenError(BreakerError):
    """The circuit is open and calls are rejected without being run."""

    def __init__(self, message: str = "breaker: circuit open") -> None:
        super().__init__(message)


class OperationCancelledError(Exception):
    """The caller cancelled the operation; the breaker did not cause this."""

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)


class State(str, Enum):
    """State of a circuit breaker."""

    CLOSED = "closed"  # requests flow through
    OPEN = "open"  # requests rejected immediately
    HALF_OPEN = "half-open"  # a limited number of trial requests allowed


@dataclass
class Counts:
    """Request counters of the current generation."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def _on_request(self) -> None:
        self.requests += 1

    def _on_success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def _on_failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0

    def _clear(self) -> None:
        self.requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.consecutive_successes = 0
        self.consecutive_failures = 0


class _Cancel(Protocol):
    def is_set(self) -> bool: ...


def _default_ready_to_trip(counts: Counts) -> bool:
    return counts.consecutive_failures >= 5


def _cancelled(cancel: Optional[_Cancel]) -> bool:
    return cancel is not None and cancel.is_set()


class Breaker:
    """A named circuit breaker.

    Times are in seconds. ``interval`` is the cyclic period in the closed
    state after which counts are cleared (0 means never); ``timeout`` is how
    long the breaker stays open before allowing trial requests.
    """

    def __init__(
        self,
        name: str,
        max_requests: int = 1,
        interval: float = 0.0,
        timeout: float = 60.0,
        ready_to_trip: Optional[Callable[[Counts], bool]] = None,
    ) -> None:
        self.name = name
        self._max_requests = max_requests if max_requests > 0 else 1
        self._interval = interval if interval > 0 else 0.0
        self._timeout = timeout if timeout > 0 else 60.0
        self._ready_to_trip = ready_to_trip or _default_ready_to_trip
        self._lock = threading.Lock()
        self._state = State.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry: Optional[float] = None
        self._new_generation(time.monotonic())

    def execute(self, fn: Callable[[], T], cancel: Optional[_Cancel] = None) -> T:
        """Run ``fn`` under the breaker and return its result.

        ``cancel`` is an optional object with ``is_set()`` such as a
        ``threading.Event``; once set, the call fails with
        ``OperationCancelledError``.
        """
        try:
            generation = self._before_request()
        except BreakerError as exc:
            if _cancelled(cancel):
                raise OperationCancelledError() from exc
            raise

        try:
            if _cancelled(cancel):
                raise OperationCancelledError()
            result = fn()
        except Exception as exc:
            self._after_request(generation, success=False)
            if _cancelled(cancel):
                if isinstance(exc, OperationCancelledError):
                    raise
                raise OperationCancelledError() from exc
            raise BreakerError(f"breaker: {exc}") from exc
        except BaseException:
            self._after_request(generation, success=False)
            raise
        self._after_request(generation, success=True)
        return result

    def state(self) -> State:
        """Return the current state, applying any pending timed transition."""
        with self._lock:
            state, _ = self._current_state(time.monotonic())
            return state

    def counts(self) -> Counts:
        """Return a snapshot of the current generation's counters."""
        with self._lock:
            self._current_state(time.monotonic())
            return dataclasses.replace(self._counts)

    def _before_request(self) -> int:
        with self._lock:
            state, generation = self._current_state(time.monotonic())
            if state is State.OPEN:
                raise BreakerOpenError()
            if state is State.HALF_OPEN and self._counts.requests >= self._max_requests:
                raise BreakerError("breaker: too many requests")
            self._counts._on_request()
            return generation

    def _after_request(self, before: int, success: bool) -> None:
        with self._lock:
            now = time.monotonic()
            state, generation = self._current_state(now)
            if generation != before:
                return
            if success:
                self._on_success(state, now)
            else:
                self._on_failure(state, now)

    def _on_success(self, state: State, now: float) -> None:
        if state is State.CLOSED:
            self._counts._on_success()
        elif state is State.HALF_OPEN:
            self._counts._on_success()
            if self._counts.consecutive_successes >= self._max_requests:
                self._set_state(State.CLOSED, now)

    def _on_failure(self, state: State, now: float) -> None:
        if state is State.CLOSED:
            self._counts._on_failure()
            if self._ready_to_trip(dataclasses.replace(self._counts)):
                self._set_state(State.OPEN, now)
        elif state is State.HALF_OPEN:
            self._set_state(State.OPEN, now)

    def _current_state(self, now: float) -> tuple[State, int]:
        if self._state is State.CLOSED:
            if self._expiry is not None and self._expiry < now:
                self._new_generation(now)
        elif self._state is State.OPEN:
            if self._expiry is not None and self._expiry < now:
                self._set_state(State.HALF_OPEN, now)
        return self._state, self._generation

    def _set_state(self, state: State, now: float) -> None:
        if self._state is state:
            return
        self._state = state
        self._new_generation(now)

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts._clear()
        if self._state is State.CLOSED:
            self._expiry = now + self._interval if self._interval else None
        elif self._state is State.OPEN:
            self._expiry = now + self._timeout
        else:
            self._expiry = None

    def __repr__(self) -> str:
        return f"Breaker(name={self.name!r}, state={self.state().value!r})"


__all__: list[Any] = [
    "Breaker",
    "BreakerError",
    "BreakerOpenError",
    "Counts",
    "OperationCancelledError",
    "State",
]