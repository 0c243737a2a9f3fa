"""Bounded-concurrency request queue with retry and per-endpoint circuit breaking.

Every call to the provisioning backend goes through one shared RequestQueue,
so billing, admin actions and status reads all draw on the same concurrency
budget toward the external API.

Circuit breaker states are CLOSED and OPEN only. Once the cool-down has
elapsed after the last failure, the next call resets the breaker to CLOSED
and goes to the network; there is no separate half-open probe phase.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

log = logging.getLogger("coinmeter")

DEFAULT_CONCURRENCY = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SEC = 15.0
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SEC = 60.0
DEFAULT_BACKOFF_BASE_SEC = 1.0
DEFAULT_BACKOFF_CAP_SEC = 4.0


# ── Error taxonomy ────────────────────────────────────────────────────


class ExternalCallError(Exception):
    """Base for failures talking to an external API."""

    retryable = True

    def __init__(self, message: str, endpoint: str = "", status_code: Optional[int] = None):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class ExternalClientError(ExternalCallError):
    """4xx-equivalent. The request itself is wrong; retrying will not help."""

    retryable = False


class ExternalServerError(ExternalCallError):
    """5xx-equivalent or connection failure."""


class ExternalTimeout(ExternalCallError):
    """A single attempt ran past its timeout."""


class CircuitOpenError(ExternalCallError):
    """The endpoint's breaker is open; the call was not attempted."""

    retryable = False

    def __init__(self, endpoint: str, remaining_sec: float = 0.0):
        self.remaining_sec = remaining_sec
        super().__init__(
            f"Circuit breaker is OPEN for {endpoint}. Retry in {remaining_sec:.1f}s.",
            endpoint=endpoint,
        )


def is_retryable(exc: Exception) -> bool:
    """Client errors are final. Anything else (server errors, timeouts,
    connection resets, unexpected exceptions) is treated as transient."""
    if isinstance(exc, ExternalCallError):
        return exc.retryable
    return True


def backoff_delay(attempt: int, base: float = DEFAULT_BACKOFF_BASE_SEC,
                  cap: float = DEFAULT_BACKOFF_CAP_SEC) -> float:
    """Delay after the given 1-based failed attempt: base * 2^(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


# ── Circuit breaker ───────────────────────────────────────────────────


@dataclass
class CircuitState:
    consecutive_failures: int = 0
    last_failure_at: float = 0.0
    is_open: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class CircuitBreakerRegistry:
    """Per-endpoint breaker state. Thread-safe; one lock for all endpoints."""

    def __init__(self, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
                 cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
                 clock: Callable[[], float] = time.monotonic):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.cooldown_sec = cooldown_sec
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def check(self, endpoint: str):
        """Raise CircuitOpenError while the breaker is open. Resets it once
        the cool-down has elapsed."""
        with self._lock:
            state = self._states.get(endpoint)
            if state is None or not state.is_open:
                return
            elapsed = self._clock() - state.last_failure_at
            if elapsed >= self.cooldown_sec:
                state.is_open = False
                state.consecutive_failures = 0
                log.info("CIRCUIT RESET %s after %.1fs cool-down", endpoint, elapsed)
                return
            remaining = self.cooldown_sec - elapsed
        raise CircuitOpenError(endpoint, remaining)

    def record_success(self, endpoint: str):
        with self._lock:
            state = self._states.get(endpoint)
            if state is None:
                return
            if state.is_open:
                log.info("CIRCUIT CLOSED %s", endpoint)
            state.consecutive_failures = 0
            state.is_open = False

    def record_failure(self, endpoint: str):
        with self._lock:
            state = self._states.setdefault(endpoint, CircuitState())
            state.consecutive_failures += 1
            state.last_failure_at = self._clock()
            if state.consecutive_failures >= self.failure_threshold and not state.is_open:
                state.is_open = True
                log.warning("CIRCUIT OPEN %s (%d consecutive failures)",
                            endpoint, state.consecutive_failures)

    def get_state(self, endpoint: str) -> CircuitState:
        """Snapshot copy; CLOSED default for unknown endpoints."""
        with self._lock:
            state = self._states.get(endpoint)
            return CircuitState(**asdict(state)) if state else CircuitState()

    def snapshot(self) -> dict:
        with self._lock:
            return {name: s.to_dict() for name, s in self._states.items()}

    def reset(self, endpoint: Optional[str] = None):
        with self._lock:
            if endpoint is None:
                self._states.clear()
            else:
                self._states.pop(endpoint, None)


# ── Request queue ─────────────────────────────────────────────────────


class RequestQueue:
    """Process-wide executor for external calls.

    - at most `concurrency` tasks run at once; the rest wait in FIFO order
    - per-endpoint circuit breaker, checked before a task is queued and
      again once it holds a slot
    - retry with exponential backoff for transient failures
    - per-attempt timeout, independent of the backoff sleeps

    execute() blocks the calling thread until the task finishes or fails.
    """

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY,
                 breakers: Optional[CircuitBreakerRegistry] = None,
                 backoff_base_sec: float = DEFAULT_BACKOFF_BASE_SEC,
                 backoff_cap_sec: float = DEFAULT_BACKOFF_CAP_SEC,
                 default_max_retries: int = DEFAULT_MAX_RETRIES,
                 default_timeout_sec: Optional[float] = DEFAULT_TIMEOUT_SEC,
                 sleep: Callable[[float], Any] = time.sleep):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.breakers = breakers or CircuitBreakerRegistry()
        self.backoff_base_sec = backoff_base_sec
        self.backoff_cap_sec = backoff_cap_sec
        self.default_max_retries = default_max_retries
        self.default_timeout_sec = default_timeout_sec
        self._sleep = sleep

        self._cond = threading.Condition()
        self._waiting: deque = deque()
        self._running = 0
        self._paused = False

    # ── Public API ───────────────────────────────────────────────────

    def execute(self, endpoint: str, task: Callable[[], Any],
                max_retries: Optional[int] = None,
                timeout_sec: Optional[float] = None) -> Any:
        """Run task under the queue's concurrency, retry and breaker policy.

        Raises CircuitOpenError without running the task while the
        endpoint's breaker is open; otherwise returns the task's result or
        raises its last error.
        """
        self.breakers.check(endpoint)

        attempts = self.default_max_retries if max_retries is None else max_retries
        attempts = max(1, attempts)
        timeout = self.default_timeout_sec if timeout_sec is None else timeout_sec

        self._acquire_slot()
        try:
            # The breaker may have opened while this caller was waiting.
            self.breakers.check(endpoint)
            return self._execute_with_retry(endpoint, task, attempts, timeout)
        finally:
            self._release_slot()

    def pause(self):
        """Stop starting new tasks. Running tasks finish normally."""
        with self._cond:
            self._paused = True
        log.info("REQUEST QUEUE paused")

    def resume(self):
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        log.info("REQUEST QUEUE resumed")

    def get_stats(self) -> dict:
        """size = callers waiting for a slot, pending = tasks running."""
        with self._cond:
            return {
                "size": len(self._waiting),
                "pending": self._running,
                "is_paused": self._paused,
            }

    def get_circuit_states(self) -> dict:
        return self.breakers.snapshot()

    # ── Internals ────────────────────────────────────────────────────

    def _acquire_slot(self):
        ticket = object()
        with self._cond:
            self._waiting.append(ticket)
            try:
                while (self._paused
                       or self._running >= self.concurrency
                       or self._waiting[0] is not ticket):
                    self._cond.wait()
            except BaseException:
                self._waiting.remove(ticket)
                self._cond.notify_all()
                raise
            self._waiting.popleft()
            self._running += 1
            # The next ticket in line may also fit.
            self._cond.notify_all()

    def _release_slot(self):
        with self._cond:
            self._running -= 1
            self._cond.notify_all()

    def _execute_with_retry(self, endpoint: str, task: Callable[[], Any],
                            attempts: int, timeout: Optional[float]) -> Any:
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                result = self._run_attempt(endpoint, task, timeout)
            except Exception as exc:
                last_error = exc
                if not is_retryable(exc):
                    raise
                if attempt == attempts:
                    break
                delay = backoff_delay(attempt, self.backoff_base_sec, self.backoff_cap_sec)
                log.info("RETRY %d/%d for %s after %.1fs: %s",
                         attempt, attempts, endpoint, delay, exc)
                self._sleep(delay)
                continue
            self.breakers.record_success(endpoint)
            return result

        self.breakers.record_failure(endpoint)
        log.warning("REQUEST FAILED %s after %d attempts: %s", endpoint, attempts, last_error)
        raise last_error

    @staticmethod
    def _run_attempt(endpoint: str, task: Callable[[], Any], timeout: Optional[float]) -> Any:
        """Run one attempt, bounded by timeout when one is set.

        A timed-out attempt keeps running on its daemon thread; its result
        is discarded.
        """
        if not timeout:
            return task()

        future: Future = Future()

        def runner():
            try:
                future.set_result(task())
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=runner, daemon=True, name=f"attempt-{endpoint}").start()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise ExternalTimeout(
                f"{endpoint} timed out after {timeout:.1f}s", endpoint=endpoint
            )
