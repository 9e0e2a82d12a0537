"""
Suspicious activity tracking.

Counts recent authentication/token failures per identifier (client IP, and
``email:<address>`` when known). Identifiers with enough recent failures get
tighter rate limits through ``get_adaptive_config``.
"""

import logging
import time
from collections import deque
from dataclasses import replace
from typing import Callable

from app.core.rate_limit import RateLimitConfig

logger = logging.getLogger(__name__)


def email_identifier(email: str) -> str:
    return f"email:{email.strip().lower()}"


class SuspiciousActivityTracker:
    """
    One expiring map shared by IP and email identifiers.

    Each identifier keeps the timestamps of its failures inside the trailing
    ``window_seconds``, so the count is exact: failures at 0s, 240s and 480s
    never add up to 3 within a 300s window. Identifiers idle for longer than
    ``retention_seconds`` are dropped by ``purge``.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        threshold: int = 3,
        window_seconds: float = 300,
        retention_seconds: float = 3600,
    ):
        self.clock = clock
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.retention_seconds = retention_seconds
        self._failures: dict[str, deque[float]] = {}

    def _recent(self, identifier: str, now: float) -> int:
        failures = self._failures.get(identifier)
        if not failures:
            return 0
        return sum(1 for at in failures if now - at <= self.window_seconds)

    def _bump(self, identifier: str, now: float) -> int:
        failures = self._failures.setdefault(identifier, deque())
        while failures and now - failures[0] > self.window_seconds:
            failures.popleft()
        failures.append(now)
        return len(failures)

    def track_auth_failure(self, identifier: str, email: str | None = None) -> int:
        """Record one failure. Returns the identifier's failure count in the trailing window."""
        now = self.clock()
        count = self._bump(identifier, now)
        if email:
            self._bump(email_identifier(email), now)
        if count == self.threshold:
            logger.warning("Suspicious activity threshold reached for %s", identifier)
        return count

    def reset_auth_failures(self, identifier: str, email: str | None = None) -> None:
        self._failures.pop(identifier, None)
        if email:
            self._failures.pop(email_identifier(email), None)

    def get_failure_count(self, identifier: str) -> int:
        """Failures inside the trailing window."""
        return self._recent(identifier, self.clock())

    def is_suspicious(self, identifier: str) -> bool:
        return self.get_failure_count(identifier) >= self.threshold

    def get_adaptive_config(self, identifier: str, base: RateLimitConfig) -> RateLimitConfig:
        if not self.is_suspicious(identifier):
            return base
        return replace(
            base,
            max_attempts=max(1, base.max_attempts // 2),
            message=f"{base.message} (reduced limit due to suspicious activity)",
        )

    def purge(self) -> int:
        """Drop identifiers whose last failure is older than the retention period."""
        now = self.clock()
        stale = [
            identifier
            for identifier, failures in self._failures.items()
            if not failures or now - failures[-1] > self.retention_seconds
        ]
        for identifier in stale:
            del self._failures[identifier]
        return len(stale)

    def __len__(self) -> int:
        return len(self._failures)
