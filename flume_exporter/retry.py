"""Bounded retry module.

This module handles:
- Classifying request failures into error kinds
- Re-running an operation immediately while its failure kind is retryable
- Logging every retry with the error kind and attempt count
"""

import logging
from enum import Enum
from typing import Callable, FrozenSet, Optional, TypeVar

import requests

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """Kinds of failure a network call can end in."""
    BAD_GATEWAY = "bad-gateway"
    GATEWAY_TIMEOUT = "gateway-timeout"
    INTERNAL_SERVER_ERROR = "internal-server-error"
    CONNECT_TIMEOUT = "connect-timeout"
    READ_TIMEOUT = "read-timeout"
    CONNECTION_ERROR = "connection-error"
    BAD_REQUEST = "bad-request"
    UNAUTHORIZED = "unauthorized"
    HTTP_ERROR = "http-error"
    OTHER = "other"


_STATUS_KINDS = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.UNAUTHORIZED,
    500: ErrorKind.INTERNAL_SERVER_ERROR,
    502: ErrorKind.BAD_GATEWAY,
    504: ErrorKind.GATEWAY_TIMEOUT,
}

# Token requests: a 500 from the token endpoint is not retried
AUTH_RETRYABLE: FrozenSet[ErrorKind] = frozenset({
    ErrorKind.BAD_GATEWAY,
    ErrorKind.GATEWAY_TIMEOUT,
    ErrorKind.CONNECT_TIMEOUT,
    ErrorKind.READ_TIMEOUT,
    ErrorKind.CONNECTION_ERROR,
})

QUERY_RETRYABLE: FrozenSet[ErrorKind] = AUTH_RETRYABLE | {ErrorKind.INTERNAL_SERVER_ERROR}

DEFAULT_MAX_RETRIES = 5


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a request to its error kind.

    Args:
        exc: Exception raised while performing a request

    Returns:
        The matching ErrorKind (OTHER for anything not produced by requests)
    """
    # ConnectTimeout is also a ConnectionError, so it must be checked first
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return ErrorKind.CONNECT_TIMEOUT
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return ErrorKind.READ_TIMEOUT
    if isinstance(exc, requests.exceptions.ConnectionError):
        return ErrorKind.CONNECTION_ERROR
    if isinstance(exc, requests.exceptions.HTTPError):
        if exc.response is None:
            return ErrorKind.HTTP_ERROR
        return _STATUS_KINDS.get(exc.response.status_code, ErrorKind.HTTP_ERROR)
    return ErrorKind.OTHER


class RetryExecutor:
    """Runs an operation with a fixed retry budget and no delay.

    The operation receives the current attempt number (starting at 0). A
    failure whose kind is in the retryable set is retried immediately until
    the attempt number exceeds the bound, at which point the original
    exception is re-raised unchanged. Any other failure propagates at once.

    Attributes:
        max_retries: Default retry bound (default 5)
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.max_retries = max_retries

    def execute(
        self,
        operation: Callable[[int], T],
        retryable: FrozenSet[ErrorKind],
        max_retries: Optional[int] = None,
    ) -> T:
        """Run operation, retrying on retryable error kinds.

        Args:
            operation: Callable taking the attempt number
            retryable: Error kinds that may be retried
            max_retries: Override for the executor's default bound

        Returns:
            Whatever the operation returns on its first success

        Raises:
            Exception: The operation's own exception, once it is not
                retryable or the retry budget is spent
        """
        bound = self.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            try:
                return operation(attempt)
            except Exception as e:
                kind = classify_error(e)
                if kind not in retryable:
                    raise
                attempt += 1
                if attempt > bound:
                    logger.warning(f"Giving up after {bound} retries ({kind.value}): {e}")
                    raise
                logger.info(f"Retrying after {kind.value} (attempt {attempt}/{bound})")
