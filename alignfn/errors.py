"""
Error Hierarchy and Categorization

Defines the error categories raised by the engine:
- ProviderError: model provider failures (transient ones are retried)
- DecodeError: model output could not be coerced after the repair loop
- StorageError: alignment store unavailable (absorbed by the engine)
- DistillationJobError: fine-tuning job failed (absorbed by the scheduler)
- SignatureMismatchError: fatal programming error, never retried

Only ProviderError and DecodeError ever reach the caller of a patched function.
"""

from typing import Any, Optional, Tuple, Type

import openai


class AlignFnError(Exception):
    """Base exception for all engine errors."""

    error_type: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """
        Initialize error with message and optional original error.

        Args:
            message: Human-readable error message
            original_error: The underlying exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class SignatureMismatchError(AlignFnError):
    """A stored signature disagrees with the one declared for the same fingerprint."""

    error_type: str = "fatal"


class ProviderError(AlignFnError):
    """
    Failure reported by the model provider.

    Non-retryable by default (authentication, bad request); the transient
    subclasses below are retried with exponential backoff.
    """

    error_type: str = "provider"


class TransientProviderError(ProviderError):
    """Provider failure that may succeed on retry."""

    error_type: str = "transient"
    retryable: bool = True


class RateLimitError(TransientProviderError):
    """Rate limit hit (can retry after backoff)."""

    pass


class ProviderTimeoutError(TransientProviderError):
    """Request timed out."""

    pass


class ProviderConnectionError(TransientProviderError):
    """Network-level failure reaching the provider."""

    pass


class ProviderServerError(TransientProviderError):
    """5xx response from the provider."""

    pass


class OutputValidationError(AlignFnError):
    """A decoded value does not satisfy the declared output type."""

    error_type: str = "validation"

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DecodeError(AlignFnError):
    """
    Raw output could not be coerced into the declared type after exhausting
    the repair loop. Carries the last raw output and failure reason.
    """

    error_type: str = "decode"

    def __init__(self, message: str, raw_output: str, reason: str, attempts: int = 0):
        super().__init__(message)
        self.raw_output = raw_output
        self.reason = reason
        self.attempts = attempts


class StorageError(AlignFnError):
    """Alignment store unavailable or failed."""

    error_type: str = "storage"
    retryable: bool = True


class DistillationJobError(AlignFnError):
    """Fine-tuning job could not be submitted or finished unsuccessfully."""

    error_type: str = "distillation"

    def __init__(self, message: str, job_id: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, original_error=original_error)
        self.job_id = job_id


# Mapping of provider SDK exception types to engine error categories.
# Order matters: subclasses are listed before their bases.
PROVIDER_ERROR_CLASSIFICATION: Tuple[Tuple[Type[Exception], Type[ProviderError]], ...] = (
    (openai.RateLimitError, RateLimitError),
    (openai.APITimeoutError, ProviderTimeoutError),
    (openai.APIConnectionError, ProviderConnectionError),
    (openai.InternalServerError, ProviderServerError),
    (openai.AuthenticationError, ProviderError),
    (openai.PermissionDeniedError, ProviderError),
    (openai.BadRequestError, ProviderError),
    (openai.NotFoundError, ProviderError),
    (ConnectionError, ProviderConnectionError),
    (TimeoutError, ProviderTimeoutError),
)


def categorize_provider_exception(exception: Exception) -> Type[ProviderError]:
    """
    Categorize a raw provider exception into an engine error class.

    Args:
        exception: The exception to categorize

    Returns:
        ProviderError subclass
    """
    for known_exc, error_class in PROVIDER_ERROR_CLASSIFICATION:
        if isinstance(exception, known_exc):
            return error_class

    # Any other 5xx-looking status error is worth a retry
    status = getattr(exception, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return ProviderServerError

    return ProviderError


def wrap_provider_exception(exception: Exception, context: str = "") -> ProviderError:
    """
    Wrap a raw provider exception with a categorized ProviderError.

    Args:
        exception: The exception to wrap
        context: Additional context string (usually the model name)

    Returns:
        ProviderError subclass instance
    """
    if isinstance(exception, ProviderError):
        return exception
    error_class = categorize_provider_exception(exception)
    message = f"{context}: {exception}" if context else str(exception)
    return error_class(message, original_error=exception)


def should_retry(exception: Any) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: The exception to evaluate

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, AlignFnError):
        return exception.retryable
    return categorize_provider_exception(exception).retryable
