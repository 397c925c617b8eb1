"""Circuit breaker: stops sending traffic to a provider that keeps failing.

State machine:
    CLOSED    → (N failures inside the failure window) → OPEN
    OPEN      → (cooldown expires, evaluated lazily)   → HALF_OPEN
    HALF_OPEN → (probe succeeds)                       → CLOSED
    HALF_OPEN → (probe fails)                          → OPEN

There is no background timer: the OPEN → HALF_OPEN transition happens at the
start of ``can_execute`` / ``allows_traffic`` / ``get_status`` / ``state``.
In HALF_OPEN exactly one caller claims the probe; everyone else is refused
until the probe's outcome is recorded.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, TypeVar

import structlog

from ai_providers.errors import AIError, AIErrorCode
from ai_providers.observability.metrics import CIRCUIT_TRANSITIONS
from ai_providers.types import ProviderType, provider_key

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitStatus:
    """Snapshot of a breaker.  ``next_attempt_at`` is set iff ``state`` is OPEN."""

    state: CircuitState
    failures: int
    last_failure_at: float | None
    last_success_at: float | None
    opened_at: float | None
    next_attempt_at: float | None


class CircuitBreaker:
    """Per-provider circuit breaker with lazy half-open probing."""

    def __init__(
        self,
        provider_id: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        failure_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider_id = provider_id
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._failure_window = failure_window_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None
        self._opened_at: float | None = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_transition_to_half_open()
            return self._state

    def can_execute(self) -> bool:
        """Gate a real call.  In HALF_OPEN this claims the single probe slot."""
        with self._lock:
            self._maybe_transition_to_half_open()

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    return False
                self._probe_in_flight = True
                return True

            return False

    def allows_traffic(self) -> bool:
        """Like ``can_execute`` but never claims the half-open probe."""
        with self._lock:
            self._maybe_transition_to_half_open()
            if self._state == CircuitState.HALF_OPEN:
                return not self._probe_in_flight
            return self._state == CircuitState.CLOSED

    def record_success(self) -> None:
        """Record a successful call; it always clears the failure count."""
        with self._lock:
            prev = self._state
            self._last_success_at = self._clock()
            self._failures = 0
            self._probe_in_flight = False
            if prev != CircuitState.CLOSED:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                CIRCUIT_TRANSITIONS.labels(provider=self._provider_id, state="closed").inc()
                logger.info(
                    "circuit_breaker_closed",
                    provider=self._provider_id,
                    previous_state=prev.value,
                )

    def record_failure(self) -> None:
        """Record a failed call; it may trip the circuit."""
        with self._lock:
            now = self._clock()

            # Stale failures do not compound with fresh ones
            if (
                self._last_failure_at is not None
                and now - self._last_failure_at > self._failure_window
            ):
                self._failures = 0

            self._failures += 1
            self._last_failure_at = now
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                logger.warning(
                    "circuit_breaker_reopened",
                    provider=self._provider_id,
                    failures=self._failures,
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failures >= self._failure_threshold
            ):
                self._open(now)
                logger.warning(
                    "circuit_breaker_opened",
                    provider=self._provider_id,
                    failures=self._failures,
                    cooldown_s=self._cooldown,
                )

    def release_probe(self) -> None:
        """Free a claimed half-open probe without recording an outcome.

        Used when the probing call was cancelled before it could succeed or
        fail; the next ``can_execute`` may probe again.
        """
        with self._lock:
            if self._probe_in_flight:
                self._probe_in_flight = False
                logger.info("circuit_breaker_probe_released", provider=self._provider_id)

    def get_status(self) -> CircuitStatus:
        with self._lock:
            self._maybe_transition_to_half_open()
            next_attempt_at = None
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                next_attempt_at = self._opened_at + self._cooldown
            return CircuitStatus(
                state=self._state,
                failures=self._failures,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                opened_at=self._opened_at,
                next_attempt_at=next_attempt_at,
            )

    def reset(self) -> None:
        """Force-reset the circuit to CLOSED (manual recovery)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._opened_at = None
            self._probe_in_flight = False
            logger.info("circuit_breaker_force_reset", provider=self._provider_id)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` behind this breaker, raising CIRCUIT_OPEN without calling it."""
        if not self.can_execute():
            status = self.get_status()
            raise AIError(
                f"Circuit breaker open for {self._provider_id}; "
                f"next attempt at {status.next_attempt_at}",
                AIErrorCode.CIRCUIT_OPEN,
                self._provider_id,
            )
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancelled mid-call: no outcome, but the probe slot must not leak
            self.release_probe()
            raise
        self.record_success()
        return result

    # ── Internals ────────────────────────────────────────────
    def _open(self, now: float) -> None:
        """Caller must hold lock."""
        self._state = CircuitState.OPEN
        self._opened_at = now
        CIRCUIT_TRANSITIONS.labels(provider=self._provider_id, state="open").inc()

    def _maybe_transition_to_half_open(self) -> None:
        """Caller must hold lock."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._cooldown:
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                CIRCUIT_TRANSITIONS.labels(provider=self._provider_id, state="half_open").inc()
                logger.info(
                    "circuit_breaker_half_open",
                    provider=self._provider_id,
                    elapsed_s=round(elapsed, 1),
                )


class CircuitBreakerRegistry:
    """One breaker per provider identity, created on first reference."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        failure_window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown_seconds
        self._failure_window = failure_window_seconds
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, provider_id: ProviderType | str) -> CircuitBreaker:
        key = provider_key(provider_id)
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    failure_threshold=self._failure_threshold,
                    cooldown_seconds=self._cooldown,
                    failure_window_seconds=self._failure_window,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def get_all_status(
        self, provider_ids: Iterable[ProviderType | str] | None = None
    ) -> dict[str, CircuitStatus]:
        if provider_ids is None:
            with self._lock:
                provider_ids = list(self._breakers)
        return {
            provider_key(pid): self.get(pid).get_status()
            for pid in provider_ids
        }

    def reset(self, provider_id: ProviderType | str) -> None:
        self.get(provider_id).reset()

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
