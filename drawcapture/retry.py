import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from loguru import logger

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the second attempt
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay added or removed at random (0 disables)
    """
    max_attempts: int = 3
    base_delay: float = 0.6
    max_delay: float = 10.0
    jitter: float = 0.0

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, delay)

    def call(self,
             fn: Callable[[], T],
             is_retryable: Callable[[Exception], bool],
             sleep: Callable[[float], None] = time.sleep,
             label: str = "call") -> T:
        """
        Runs fn until it succeeds, a non-retryable error is raised, or
        max_attempts is exhausted (the last error is re-raised).

        Args:
            fn: Zero-argument callable
            is_retryable: Decides whether an exception warrants another attempt
            sleep: Sleep function (injected in tests)
            label: Name used in log lines

        Returns:
            Whatever fn returns
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"🔁 {label} attempt {attempt}/{self.max_attempts} failed: {e} - retrying in {delay:.2f}s"
                )
                sleep(delay)
