"""Circuit Breaker: Fehlerzähler mit exponentiellem Backoff.

Zweiphasige Policy:
  - Bis ``max_failures`` werden Fehler ohne Wartezeit toleriert.
  - Ab der Schwelle gilt eine Sperrzeit von
    ``min(max_backoff, base_backoff * 2 ** (failures - max_failures))``.

``can_attempt()`` ist das einzige Gate, das Aufrufer prüfen müssen.
Eine Instanz pro geschützter Ressource; nicht thread-safe.

Usage:
    breaker = CircuitBreaker()
    breaker.guard()
    try:
        result = await call()
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from skillguard.core.errors import CircuitOpenError


@dataclass
class CircuitBreakerState:
    failure_count: int = 0
    last_failure_at: float | None = None
    next_retry_at: float | None = None


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


class CircuitBreaker:
    """Fehlerzählendes Gate mit Backoff. Zeiten in Epoch-Sekunden."""

    def __init__(
        self,
        max_failures: int = 3,
        base_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        *,
        name: str = "default",
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be >= 1")
        self.name = name
        self._max_failures = max_failures
        self._base_backoff = base_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._state = CircuitBreakerState()

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def can_attempt(self, now: float | None = None) -> bool:
        next_retry_at = self._state.next_retry_at
        if next_retry_at is None:
            return True
        return (time.time() if now is None else now) >= next_retry_at

    def guard(self, now: float | None = None) -> None:
        """Wirft CircuitOpenError, solange die Sperrzeit läuft."""
        if not self.can_attempt(now):
            raise CircuitOpenError(
                f"circuit '{self.name}' is in backoff window",
                details={"circuit": self.state()},
            )

    def record_success(self) -> None:
        self._state = CircuitBreakerState()

    def record_failure(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        state = self._state
        state.failure_count += 1
        state.last_failure_at = now
        if state.failure_count < self._max_failures:
            state.next_retry_at = None
            return
        # Exponent begrenzen, sonst OverflowError bei int -> float
        exponent = min(state.failure_count - self._max_failures, 62)
        backoff = min(self._max_backoff, self._base_backoff * (2 ** exponent))
        state.next_retry_at = now + backoff

    def state(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "failure_count": self._state.failure_count,
            "last_failure_at": _iso(self._state.last_failure_at),
            "next_retry_at": _iso(self._state.next_retry_at),
        }
