# tdcloud_client/backoff.py
from __future__ import annotations
import random
from dataclasses import dataclass, field

# Jittered waits stay within [JITTER_FLOOR * interval, interval]
JITTER_FLOOR = 0.5


def next_interval(
    attempt: int,
    initial_interval_ms: float,
    max_interval_ms: float,
    multiplier: float,
) -> float:
    """Unjittered wait before retry number `attempt` (0 for the first retry)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    try:
        grown = initial_interval_ms * (multiplier ** attempt)
    except OverflowError:
        return float(max_interval_ms)
    return float(min(max_interval_ms, grown))


def jitter(interval_ms: float, rng: random.Random | None = None) -> float:
    r = rng or random
    return interval_ms * r.uniform(JITTER_FLOOR, 1.0)


@dataclass
class BackoffPolicy:
    retry_limit: int
    initial_interval_ms: float
    max_interval_ms: float
    multiplier: float
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_config(cls, cfg) -> "BackoffPolicy":
        return cls(
            retry_limit=cfg.retry_limit,
            initial_interval_ms=cfg.retry_initial_interval_ms,
            max_interval_ms=cfg.retry_max_interval_ms,
            multiplier=cfg.retry_multiplier,
        )

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.retry_limit

    def interval_ms(self, attempt: int) -> float:
        return next_interval(attempt, self.initial_interval_ms, self.max_interval_ms, self.multiplier)

    def wait_ms(self, attempt: int) -> float:
        return jitter(self.interval_ms(attempt), self.rng)
