from __future__ import annotations

from dataclasses import dataclass

from kimirelay.config import RetryConfig
from kimirelay.error_classifier import is_retry_eligible


@dataclass(frozen=True)
class RetryPolicy:
    config: RetryConfig

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def will_retry(self, retries: int, message: str) -> bool:
        if not self.config.enable_auto_retry:
            return False
        if retries >= self.config.max_attempts:
            return False
        return is_retry_eligible(message)

    def budget_exhausted(self, retries: int) -> bool:
        return retries >= self.config.max_attempts

    def delay_minutes(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based), clamped to the last entry."""
        delays = self.config.delay_minutes
        if not delays:
            return 0
        index = min(max(attempt, 1) - 1, len(delays) - 1)
        return delays[index]
