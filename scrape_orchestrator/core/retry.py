"""Retry policy for scrape attempts.

Delays come from a configured backoff table indexed by attempt number
(0 = delay before the second attempt). Attempts past the end of the table
reuse its last entry.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

from scrape_orchestrator.config import Settings
from scrape_orchestrator.core.errors import ClassifiedError


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    backoff_delays: Sequence[float] = field(default_factory=lambda: (30.0, 60.0, 120.0))

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        delays = tuple(float(d) for d in self.backoff_delays)
        if any(d < 0 for d in delays):
            raise ValueError("backoff delays must be non-negative")
        if any(later < earlier for earlier, later in zip(delays, delays[1:], strict=False)):
            raise ValueError("backoff delays must be non-decreasing")
        self.backoff_delays = delays

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_delays=settings.retry_backoff_seconds,
        )

    def delay_for(self, attempt_index: int) -> float:
        """Seconds to wait after the attempt with this zero-based index failed."""
        if not self.backoff_delays:
            return 0.0
        index = min(max(attempt_index, 0), len(self.backoff_delays) - 1)
        return self.backoff_delays[index]

    def should_retry(self, error: ClassifiedError, attempts_made: int) -> bool:
        """True if the error is transient and the attempt budget is not spent."""
        return error.retryable and attempts_made < self.max_attempts

    def schedule(self) -> list[float]:
        """Delays that would be applied if every attempt failed with a retryable error."""
        return [self.delay_for(i) for i in range(self.max_attempts - 1)]
