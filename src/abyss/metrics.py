"""Simple metrics for the relay.

This module provides:
- Handler timing (per inbound event)
- Named counters for room lifecycle and traffic
- Simple in-memory metrics exposed via the /metrics endpoint

Metrics are designed to be lightweight and not require external dependencies.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

# Type variable for generic function decoration
F = TypeVar("F", bound=Callable[..., Any])

SLOW_HANDLER_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Record a timing measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    handlers: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_handler(self, event: str, duration_ms: float) -> None:
        """Record an inbound event handler timing."""
        with self._lock:
            self.handlers[event].record(duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] += amount

    def get(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "handlers": {k: v.to_dict() for k, v in self.handlers.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.handlers.clear()
            self.counters.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


def timed_handler(event: str) -> Callable[[F], F]:
    """Decorator to time an inbound event handler.

    Usage:
        @timed_handler("sendMessage")
        def send_message(self, connection_id, data):
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                metrics.record_handler(event, duration_ms)
                if duration_ms > SLOW_HANDLER_MS:
                    logger.warning(f"Slow handler: {event} took {duration_ms:.1f}ms")

        return wrapper  # type: ignore

    return decorator
