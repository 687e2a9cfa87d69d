"""
Resilience primitives for calls to external systems.

Provides exponential-backoff retry and a circuit breaker. Every call that
leaves the process (collector APIs, Slack, Jira, blob storage) is wrapped as:

    breaker.execute(lambda: retry_with_backoff(call))

so the breaker sits outside the retry loop and a single breaker failure
corresponds to exhausting all retries.

Breaker state lives in a BreakerStateStore. The default in-memory store keeps
state local to the owning collector instance; SqliteBreakerStore shares state
between worker processes pointed at the same database.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_MS = 60_000


class CircuitOpenError(Exception):
    """
    Raised when a call is rejected because the circuit breaker is open.

    Attributes:
        breaker_name: Name of the breaker that rejected the call.
        retry_at: Epoch seconds after which a trial call will be admitted.
    """

    def __init__(self, breaker_name: str, retry_at: float | None = None) -> None:
        self.breaker_name = breaker_name
        self.retry_at = retry_at
        super().__init__(f"Circuit breaker '{breaker_name}' is OPEN")


# -----------------------------------------------------------------------------
# Retry
# -----------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """
    Inner retry settings applied around a single external call.

    Attributes:
        max_attempts: Total number of attempts, including the first.
        base_delay_ms: Delay before the second attempt; doubles each time.
        non_retryable: Exception types that are re-raised without retrying
            and that call_with_resilience does not count against the breaker.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    non_retryable: tuple[type[BaseException], ...] = ()


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    *,
    non_retryable: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Call an operation, retrying failures with exponential backoff.

    After a failed attempt n (0-based) the call waits base_delay_ms * 2**n
    milliseconds. If the error carries a retry_after hint (seconds) that is
    longer than the computed delay, the hint wins.

    Args:
        operation: Zero-argument callable to invoke.
        max_attempts: Maximum number of invocations.
        base_delay_ms: Base delay in milliseconds.
        non_retryable: Exception types that propagate on the first failure.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The operation's return value.

    Raises:
        The last exception raised by the operation once attempts run out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return operation()
        except non_retryable:
            raise
        except Exception as e:
            if attempt == max_attempts - 1:
                logger.error(f"Failed after {max_attempts} attempts: {e}")
                raise

            delay_ms = float(base_delay_ms * (2**attempt))
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay_ms = max(delay_ms, float(retry_after) * 1000)

            logger.warning(
                f"Retry attempt {attempt + 1}/{max_attempts - 1} "
                f"after {delay_ms:.0f}ms: {e}"
            )
            sleep(delay_ms / 1000)

    raise RuntimeError("unreachable")


# -----------------------------------------------------------------------------
# Circuit Breaker State Storage
# -----------------------------------------------------------------------------


class BreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerSnapshot:
    """Persistable breaker state."""

    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_failure_at: float | None = None


class BreakerStateStore(Protocol):
    """Storage backend for breaker state, keyed by breaker name."""

    def load(self, name: str) -> BreakerSnapshot: ...

    def save(self, name: str, snapshot: BreakerSnapshot) -> None: ...


@dataclass
class InMemoryBreakerStore:
    """Process-local breaker state. The default."""

    _states: dict[str, BreakerSnapshot] = field(default_factory=dict)

    def load(self, name: str) -> BreakerSnapshot:
        snapshot = self._states.get(name)
        if snapshot is None:
            return BreakerSnapshot()
        return BreakerSnapshot(
            state=snapshot.state,
            failure_count=snapshot.failure_count,
            last_failure_at=snapshot.last_failure_at,
        )

    def save(self, name: str, snapshot: BreakerSnapshot) -> None:
        self._states[name] = snapshot


class SqliteBreakerStore:
    """
    Breaker state shared through a SQLite table.

    Worker processes that point at the same database file see the same
    breaker state for a given breaker name, so an outage observed by one
    replica fails fast in all of them.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS breaker_state (
        name TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        failure_count INTEGER NOT NULL,
        last_failure_at REAL,
        updated_at TEXT NOT NULL
    )
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(self.CREATE_TABLE_SQL)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)

    def load(self, name: str) -> BreakerSnapshot:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT state, failure_count, last_failure_at "
                "FROM breaker_state WHERE name = ?",
                (name,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return BreakerSnapshot()
        return BreakerSnapshot(
            state=BreakerState(row[0]),
            failure_count=row[1],
            last_failure_at=row[2],
        )

    def save(self, name: str, snapshot: BreakerSnapshot) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO breaker_state
                        (name, state, failure_count, last_failure_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        state = excluded.state,
                        failure_count = excluded.failure_count,
                        last_failure_at = excluded.last_failure_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        name,
                        snapshot.state.value,
                        snapshot.failure_count,
                        snapshot.last_failure_at,
                        datetime.now(UTC).isoformat(),
                    ),
                )
        finally:
            conn.close()


# -----------------------------------------------------------------------------
# Circuit Breaker
# -----------------------------------------------------------------------------


class CircuitBreaker:
    """
    Circuit breaker guarding one external dependency.

    States:
        CLOSED: calls run; consecutive failures are counted and reaching
            failure_threshold opens the breaker.
        OPEN: calls fail fast with CircuitOpenError until reset_timeout_ms
            has passed since the last failure, then one trial is admitted.
        HALF_OPEN: a single trial call runs. Success closes the breaker and
            clears the count; failure reopens it and restarts the timer.

    Example:
        breaker = CircuitBreaker(name="okta")
        users = breaker.execute(lambda: retry_with_backoff(fetch_users))
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
        name: str = "default",
        store: BreakerStateStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.name = name
        self._store: BreakerStateStore = store or InMemoryBreakerStore()
        self._clock = clock
        self._lock = threading.Lock()
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        """Current breaker state."""
        return self._store.load(self.name).state

    @property
    def failure_count(self) -> int:
        """Current consecutive failure count."""
        return self._store.load(self.name).failure_count

    def status(self) -> dict[str, Any]:
        """Breaker state summary for health reporting."""
        snapshot = self._store.load(self.name)
        return {
            "name": self.name,
            "state": snapshot.state.value,
            "failure_count": snapshot.failure_count,
            "last_failure_at": snapshot.last_failure_at,
        }

    def reset(self) -> None:
        """Force the breaker back to CLOSED with a zero failure count."""
        with self._lock:
            self._store.save(self.name, BreakerSnapshot())
            self._trial_in_flight = False

    def execute(
        self,
        operation: Callable[[], T],
        neutral: tuple[type[BaseException], ...] = (),
    ) -> T:
        """
        Run an operation under breaker protection.

        Args:
            operation: Zero-argument callable, usually a retry_with_backoff
                wrapper around the real external call.
            neutral: Exception types that say nothing about the remote
                service's health (bad credentials, missing configuration).
                They propagate without counting as a failure or a success.

        Returns:
            The operation's return value.

        Raises:
            CircuitOpenError: If the breaker rejects the call.
            Exception: Whatever the operation raised.
        """
        trial = self._admit()
        try:
            result = operation()
        except neutral:
            self._on_neutral(trial)
            raise
        except Exception:
            self._on_failure(trial)
            raise
        self._on_success(trial)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True for a trial call."""
        with self._lock:
            snapshot = self._store.load(self.name)

            if snapshot.state == BreakerState.OPEN:
                if not self._reset_timeout_elapsed(snapshot):
                    raise CircuitOpenError(self.name, self._retry_at(snapshot))
                snapshot.state = BreakerState.HALF_OPEN
                self._store.save(self.name, snapshot)
                logger.info(f"Circuit breaker '{self.name}' half-open, admitting trial call")

            if snapshot.state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, self._retry_at(snapshot))
                self._trial_in_flight = True
                return True

            return False

    def _on_success(self, trial: bool) -> None:
        with self._lock:
            snapshot = self._store.load(self.name)
            if trial:
                logger.info(f"Circuit breaker '{self.name}' closed")
                self._store.save(self.name, BreakerSnapshot())
                self._trial_in_flight = False
            elif snapshot.state == BreakerState.CLOSED:
                if snapshot.failure_count:
                    self._store.save(self.name, BreakerSnapshot())
            else:
                # A call admitted while CLOSED finished after the breaker opened
                logger.debug(
                    f"Circuit breaker '{self.name}' ignoring late success while "
                    f"{snapshot.state.value}"
                )

    def _on_neutral(self, trial: bool) -> None:
        if trial:
            with self._lock:
                self._trial_in_flight = False

    def _on_failure(self, trial: bool) -> None:
        with self._lock:
            snapshot = self._store.load(self.name)
            snapshot.failure_count += 1
            snapshot.last_failure_at = self._clock()

            if trial or snapshot.failure_count >= self.failure_threshold:
                if snapshot.state != BreakerState.OPEN:
                    logger.warning(
                        f"Circuit breaker '{self.name}' opened after "
                        f"{snapshot.failure_count} failures"
                    )
                snapshot.state = BreakerState.OPEN

            self._store.save(self.name, snapshot)
            if trial:
                self._trial_in_flight = False

    def _reset_timeout_elapsed(self, snapshot: BreakerSnapshot) -> bool:
        if snapshot.last_failure_at is None:
            return True
        elapsed_ms = (self._clock() - snapshot.last_failure_at) * 1000
        return elapsed_ms >= self.reset_timeout_ms

    def _retry_at(self, snapshot: BreakerSnapshot) -> float | None:
        if snapshot.last_failure_at is None:
            return None
        return snapshot.last_failure_at + self.reset_timeout_ms / 1000


def call_with_resilience(
    breaker: CircuitBreaker,
    call: Callable[[], T],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Run an external call inside the breaker, retrying inside it.

    Errors the policy marks non-retryable are precondition failures of the
    caller. They skip the retry loop and leave the breaker untouched.

    Args:
        breaker: Breaker owned by the calling component.
        call: Zero-argument callable performing the external call.
        policy: Inner retry policy. Defaults to RetryPolicy().
        sleep: Sleep function for backoff, replaceable in tests.

    Returns:
        The call's return value.
    """
    policy = policy or RetryPolicy()
    return breaker.execute(
        lambda: retry_with_backoff(
            call,
            max_attempts=policy.max_attempts,
            base_delay_ms=policy.base_delay_ms,
            non_retryable=policy.non_retryable,
            sleep=sleep,
        ),
        neutral=policy.non_retryable,
    )
