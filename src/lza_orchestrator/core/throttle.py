"""Retry wrapper for throttled AWS API calls.

Every AWS call made by the orchestrator passes through
:func:`throttling_backoff`. Retryable failures are retried with a linear
delay of ``base + attempt * increment`` milliseconds; any other failure
propagates on the first occurrence.

An error is retryable when botocore's standard retry checkers classify
it as throttled, transient or modeled-retryable, or when its code is one
of the Organizations and Config conditions listed in
``RETRYABLE_ERROR_CODES``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from botocore.awsrequest import AWSResponse
from botocore.exceptions import BotoCoreError, ClientError
from botocore.retries.standard import (
    ModeledRetryableChecker,
    RetryContext,
    ThrottledRetryableChecker,
    TransientRetryableChecker,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 800
DEFAULT_BASE_DELAY_MS = 100
DEFAULT_DELAY_INCREMENT_MS = 1000

# Codes retried in addition to the SDK's own classification
RETRYABLE_ERROR_CODES = frozenset([
    "PolicyTypeNotEnabledException",
    "ConcurrentModificationException",
    "InsufficientDeliveryPolicyException",
    "NoAvailableDeliveryChannelException",
    "ConcurrentModifications",
    "LimitExceededException",
    "OperationNotPermittedException",
    "CredentialsProviderError",
    "TooManyRequestsException",
    "TooManyUpdates",
    "Throttling",
    "ThrottlingException",
    "InternalErrorException",
    "InternalException",
    "ServiceUnavailable",
])

SDK_RETRY_CHECKERS = (
    ThrottledRetryableChecker(),
    TransientRetryableChecker(),
    ModeledRetryableChecker(),
)


@dataclass(frozen=True)
class RetrySettings:
    """Backoff parameters, fixed for the lifetime of a pipeline execution."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    delay_increment_ms: int = DEFAULT_DELAY_INCREMENT_MS

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay in seconds before retrying after the given zero-based attempt."""
        return (self.base_delay_ms + attempt * self.delay_increment_ms) / 1000.0


def _retry_context(error: BaseException) -> RetryContext:
    """Describe a failed call the way botocore's retry handler sees it."""
    if isinstance(error, ClientError):
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        http_response = AWSResponse(None, status, {}, None) if status else None
        return RetryContext(attempt_number=1, parsed_response=error.response, http_response=http_response)
    return RetryContext(attempt_number=1, caught_exception=error)


def is_throttling_error(error: BaseException) -> bool:
    """Check whether an error is a rate-limit or transient service condition.

    Args:
        error: Exception raised by a boto3 call

    Returns:
        True when the call should be retried
    """
    if isinstance(error, ClientError):
        if error.response.get("Error", {}).get("Code", "") in RETRYABLE_ERROR_CODES:
            return True
    elif not isinstance(error, BotoCoreError):
        return False
    context = _retry_context(error)
    return any(checker.is_retryable(context) for checker in SDK_RETRY_CHECKERS)


def throttling_backoff(
    operation: Callable[[], T],
    settings: Optional[RetrySettings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke an AWS operation, retrying throttling-class failures.

    Args:
        operation: Zero-argument callable performing the API call
        settings: Backoff parameters; defaults when omitted
        sleep: Wait function, replaceable in tests

    Returns:
        Whatever the operation returns

    Raises:
        Exception: The operation's own error when it is not retryable or
            when the attempt budget is exhausted
    """
    settings = settings or RetrySettings()
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_throttling_error(e) or attempt + 1 >= settings.max_attempts:
                raise
            delay = settings.delay_for_attempt(attempt)
            logger.debug(
                "Retrying throttled call (attempt %d/%d) in %.1fs: %s",
                attempt + 1, settings.max_attempts, delay, e
            )
            sleep(delay)
            attempt += 1
