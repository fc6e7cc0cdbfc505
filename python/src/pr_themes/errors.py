"""
Typed errors for the orchestration core.

Classification helpers decide which failures the queue retries, which
trip the rate-limit circuit breaker and which propagate immediately.
"""

from typing import Any

import httpx
import openai


RATE_LIMIT_MARKERS = (
    "rate_limit_error",
    "rate limit",
    "too many requests",
    "quota exceeded",
    "429",
    "throttled",
)

NON_RETRYABLE_MARKERS = (
    "json",
    "parse",
    "syntax",
    "auth",
    "unauthorized",
    "forbidden",
    "401",
    "403",
)

RETRYABLE_MARKERS = (
    "network",
    "connection",
    "timeout",
    "econnreset",
    "enotfound",
    "500",
    "502",
    "503",
    "504",
)


class ThemesError(Exception):
    """Base class for all orchestration errors."""


class TransientError(ThemesError):
    """Network blip or 5xx-equivalent failure; safe to retry."""


class RateLimitError(TransientError):
    """HTTP 429 or a provider-specific throttling signal."""


class RetryExhaustedError(ThemesError):
    """Retry budget spent; carries the attempt count and last failure."""

    def __init__(self, attempts: int, last_error: BaseException | None, context: str = "general"):
        self.attempts = attempts
        self.last_error = last_error
        self.context = context
        super().__init__(
            f"Retries exhausted after {attempts} attempt(s) in context '{context}': "
            f"{type(last_error).__name__ if last_error else 'unknown'}: {last_error}"
        )


class JsonExtractionError(ThemesError):
    """No JSON value could be extracted from model output."""

    def __init__(self, message: str, original_response: str = ""):
        self.original_response = original_response[:500]
        super().__init__(message)


class SchemaValidationError(ThemesError):
    """A JSON value was extracted but does not match the prompt type's shape."""

    def __init__(self, prompt_type: Any, issues: list[str]):
        self.prompt_type = prompt_type
        self.issues = issues
        label = getattr(prompt_type, "value", prompt_type)
        super().__init__(f"Schema validation failed for {label}: {'; '.join(issues)}")


class QueueFullError(ThemesError):
    """Enqueue rejected because the configured max queue depth was reached."""


class QueueClearedError(ThemesError):
    """A pending item was rejected by clear_queue()."""


class CircuitOpenError(ThemesError):
    """Batch circuit breaker is open for this request type."""


class HierarchyIntegrityError(ThemesError):
    """Theme forest violates ownership, acyclicity or coverage rules."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        super().__init__(message)


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Check whether a failure is a rate-limit signal."""
    if isinstance(exc, (RateLimitError, openai.RateLimitError)):
        return True
    if _status_code(exc) == 429:
        return True
    if isinstance(exc, ThemesError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether a failure may be retried.

    Schema and extraction failures are never retried blindly; unknown
    errors are assumed transient.
    """
    if isinstance(exc, (SchemaValidationError, JsonExtractionError)):
        return False
    if isinstance(exc, (QueueClearedError, QueueFullError, RetryExhaustedError, HierarchyIntegrityError)):
        return False
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError, httpx.TransportError)):
        return True

    status = _status_code(exc)
    if status is not None:
        return status == 429 or status >= 500

    if is_rate_limit_error(exc):
        return True

    message = str(exc).lower()
    if any(marker in message for marker in NON_RETRYABLE_MARKERS):
        return False
    if any(marker in message for marker in RETRYABLE_MARKERS):
        return True
    return True


# Failures a model call can surface after the queue has done its work.
# Call sites that degrade locally catch exactly these.
MODEL_CALL_ERRORS: tuple[type[BaseException], ...] = (ThemesError, openai.APIError, httpx.HTTPError)
