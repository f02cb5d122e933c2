"""Utilities for applying delay and rate limiting to provider fetches."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from .models import IncomingRecord, SyncCursor


@dataclass
class DelayPolicy:
    """Simple policy describing artificial delay behaviour for providers."""

    delay_seconds: float = 0.0


class RateLimiter:
    """Token bucket style rate limiter enforcing minimum interval between calls."""

    def __init__(self, calls_per_minute: Optional[float]) -> None:
        self._interval = 60.0 / float(calls_per_minute) if calls_per_minute else 0.0
        self._lock = threading.Lock()
        self._next_available = 0.0

    def acquire(self) -> None:
        if self._interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            if now < self._next_available:
                time.sleep(self._next_available - now)
                now = time.monotonic()
            self._next_available = now + self._interval


class RateLimitedProvider:
    """Wrapper that enforces delay and rate limiting when fetching from a provider.

    Records are re-labelled with ``display_name`` so source priorities can be
    configured against the name used in the configuration file.
    """

    def __init__(
        self,
        provider,
        *,
        display_name: Optional[str] = None,
        delay_policy: Optional[DelayPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._provider = provider
        self._display_name = display_name
        self._delay_policy = delay_policy or DelayPolicy()
        self._rate_limiter = rate_limiter or RateLimiter(None)

    @property
    def name(self) -> str:
        if self._display_name:
            return self._display_name
        return getattr(self._provider, "name", self._provider.__class__.__name__)

    def fetch(self, cursor: SyncCursor) -> List[IncomingRecord]:
        self._rate_limiter.acquire()
        records = list(self._provider.fetch(cursor))
        if self._delay_policy.delay_seconds > 0:
            time.sleep(self._delay_policy.delay_seconds)
        name = self.name
        return [
            record
            if record.provider == name
            else IncomingRecord(
                provider=name,
                fields=record.fields,
                confidence=record.confidence,
                retrieved_at=record.retrieved_at,
                record_id=record.record_id,
            )
            for record in records
        ]

    def __getattr__(self, item):  # pragma: no cover - simple delegation
        return getattr(self._provider, item)


__all__ = ["DelayPolicy", "RateLimiter", "RateLimitedProvider"]
