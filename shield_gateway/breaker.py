"""Circuit breaker for the persistence layer.

Storage degradation must never stall or fail the decision path. After
`failure_threshold` consecutive failures the breaker suspends writes for
`lockdown_seconds`; the in-memory state keeps going and the next committed
snapshot is written once the window expires.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from .config import PersistencePolicy
from .errors import SHIELD_E_STORAGE_SUSPENDED, PersistenceFailure


class StorageSuspendedError(PersistenceFailure):
    """Raised when persistence writes are suspended after repeated failures."""


class PersistenceCircuitBreaker:
    """A simple circuit breaker for persistence operations."""

    def __init__(
        self,
        policy: Optional[PersistencePolicy] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or PersistencePolicy()
        self._monotonic = monotonic
        self._failure_count = 0
        self._suspended_until: float = 0.0

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_suspended(self) -> bool:
        return self._monotonic() < self._suspended_until

    def raise_if_suspended(self) -> None:
        if self.is_suspended():
            raise StorageSuspendedError(
                code=SHIELD_E_STORAGE_SUSPENDED,
                message="persistence writes suspended",
                retryable=True,
                http_status=503,
                details={"retry_after_seconds": round(self._suspended_until - self._monotonic(), 3)},
            )

    def _trip(self) -> None:
        self._suspended_until = self._monotonic() + float(self.policy.lockdown_seconds)
        # Keep failure_count at threshold to avoid immediate decay confusion.
        self._failure_count = self.policy.failure_threshold

    def record_success(self) -> None:
        # Decay failures slowly on success.
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_failure(self) -> bool:
        """Count a failure; returns True if this failure tripped the breaker."""
        self._failure_count += 1
        if self._failure_count >= self.policy.failure_threshold:
            self._trip()
            return True
        return False
