"""Poll-interval strategies for the outbox worker loop."""

import random

from storymint.common.config import settings


class FixedPollScheduler:
    """Always wait the same interval between polls."""

    name = "fixed"

    def __init__(self, interval_seconds: float) -> None:
        self.interval_seconds = interval_seconds

    def next_delay(self, productive: bool) -> float:
        return self.interval_seconds


class ExponentialPollScheduler:
    """Double the wait after each idle or failed poll, with full jitter.

    A productive poll resets the backoff so a busy queue drains at the base
    interval.
    """

    name = "exponential"

    def __init__(self, base_seconds: float, max_seconds: float, rng: random.Random | None = None) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.idle_polls = 0
        self.rng = rng or random.Random()

    def next_delay(self, productive: bool) -> float:
        if productive:
            self.idle_polls = 0
            return self.base_seconds
        self.idle_polls += 1
        ceiling = min(self.max_seconds, self.base_seconds * (2 ** self.idle_polls))
        return self.rng.uniform(self.base_seconds, ceiling)


def make_scheduler(strategy: str | None = None):
    """Build the scheduler named by `strategy` (defaults to settings)."""

    strategy = strategy or settings.poll_strategy
    if strategy == "fixed":
        return FixedPollScheduler(settings.poll_interval_seconds)
    if strategy == "exponential":
        return ExponentialPollScheduler(settings.poll_interval_seconds, settings.poll_max_interval_seconds)
    raise ValueError(f"Unknown poll strategy: {strategy}")
