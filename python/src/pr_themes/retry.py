"""
Retry policy with exponential backoff and jitter.

Each logical context (theme processing, batch calls, general) has its own
retry budget; rate-limit failures get a longer budget and base delay than
other transient failures. Retrying is an explicit bounded loop driven by
an injectable clock, so tests can run it without real sleeping.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import RetryExhaustedError, is_rate_limit_error, is_retryable_error
from .utils import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.1  # +/-10% of the computed delay
MAX_RETRY_DELAY = 30.0


@dataclass(frozen=True)
class RetryBudget:
    """Retry limits for one logical context."""
    max_retries: int
    base_delay: float
    multiplier: float
    rate_limit_max_retries: int
    rate_limit_base_delay: float
    max_delay: float = MAX_RETRY_DELAY


DEFAULT_BUDGETS: dict[str, RetryBudget] = {
    "theme_processing": RetryBudget(
        max_retries=3, base_delay=1.0, multiplier=1.8,
        rate_limit_max_retries=5, rate_limit_base_delay=2.0,
    ),
    "ai_batch": RetryBudget(
        max_retries=2, base_delay=0.8, multiplier=2.2,
        rate_limit_max_retries=6, rate_limit_base_delay=3.0,
    ),
    "general": RetryBudget(
        max_retries=3, base_delay=1.0, multiplier=2.0,
        rate_limit_max_retries=4, rate_limit_base_delay=1.0,
    ),
}


class RetryPolicy:
    """Context-aware bounded retry loop."""

    def __init__(
        self,
        budgets: dict[str, RetryBudget] | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ):
        self.budgets = dict(DEFAULT_BUDGETS)
        if budgets:
            self.budgets.update(budgets)
        self.clock = clock or SystemClock()
        self._rng = rng or random.Random()

        # Stats
        self._attempts = 0
        self._retries = 0
        self._successes = 0
        self._exhausted = 0
        self._non_retryable = 0

    def budget_for(self, context: str) -> RetryBudget:
        return self.budgets.get(context, self.budgets["general"])

    def compute_delay(self, attempt: int, context: str = "general", rate_limited: bool = False) -> float:
        """
        Backoff delay before retry number `attempt` (0-based).

        delay = min(base * multiplier^attempt, max_delay), then +/-10% jitter.
        """
        budget = self.budget_for(context)
        base = budget.rate_limit_base_delay if rate_limited else budget.base_delay
        delay = min(base * (budget.multiplier ** attempt), budget.max_delay)
        jitter = delay * JITTER_RATIO * self._rng.uniform(-1.0, 1.0)
        return max(0.0, delay + jitter)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "general",
        max_retries: int | None = None,
        retry_on: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """
        Run `operation` until it succeeds or the context budget is spent.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt
            context: Budget name (theme_processing, ai_batch, general)
            max_retries: Override the budget's transient retry count
            retry_on: Predicate deciding retryability (default: is_retryable_error)

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: after max_retries + 1 failed attempts
            Any non-retryable error, unchanged, on first occurrence
        """
        budget = self.budget_for(context)
        should_retry = retry_on or is_retryable_error
        transient_limit = budget.max_retries if max_retries is None else max_retries

        attempt = 0
        last_error: BaseException | None = None
        while True:
            attempt += 1
            self._attempts += 1
            try:
                result = await operation()
                self._successes += 1
                return result
            except Exception as e:
                last_error = e
                if not should_retry(e):
                    self._non_retryable += 1
                    raise

                rate_limited = is_rate_limit_error(e)
                limit = budget.rate_limit_max_retries if rate_limited and max_retries is None else transient_limit
                if attempt > limit:
                    break

                delay = self.compute_delay(attempt - 1, context, rate_limited)
                self._retries += 1
                logger.debug(
                    f"[RETRY] {context} attempt {attempt}/{limit + 1} failed "
                    f"({type(e).__name__}: {e}); retrying in {delay:.2f}s"
                )
                await self.clock.sleep(delay)

        self._exhausted += 1
        logger.warning(f"[RETRY] {context} exhausted after {attempt} attempt(s): {last_error}")
        raise RetryExhaustedError(attempt, last_error, context)

    def get_stats(self) -> dict[str, Any]:
        """Get retry statistics."""
        return {
            "attempts": self._attempts,
            "retries": self._retries,
            "successes": self._successes,
            "exhausted": self._exhausted,
            "non_retryable": self._non_retryable,
        }
