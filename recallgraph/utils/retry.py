"""
Retry policy for upstream calls: one retry after a fixed delay, then surface the failure.
"""

import time
from functools import wraps
from typing import Callable

from botocore.exceptions import (ClientError, ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError,
                                 ReadTimeoutError)

from ..models.errors import RecallGraphError, UpstreamTransientError
from .logging_config import get_logger

logger = get_logger(__name__)

TRANSIENT_AWS_CODES = {
    'ThrottlingException',
    'TooManyRequestsException',
    'ServiceUnavailableException',
    'InternalServerException',
    'ModelNotReadyException',
    'ModelTimeoutException',
}


def is_transient_aws_error(error: Exception) -> bool:
    """Return True for 5xx-class, throttling and connection failures from AWS clients."""
    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return True
    if isinstance(error, ClientError):
        response = error.response or {}
        status = response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        code = response.get('Error', {}).get('Code', '')
        return status >= 500 or code in TRANSIENT_AWS_CODES
    return False


def retry_transient(service: str, is_transient: Callable[[Exception], bool] = is_transient_aws_error):
    """Decorator for client methods whose instance carries config.retry_attempts and config.retry_delay.

    Transient failures are retried with a fixed delay until the attempts are used up and then
    raised as UpstreamTransientError. Package errors and non-transient failures propagate unchanged.
    """

    def decorator(func):

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            attempts = max(1, int(self.config.retry_attempts))
            for attempt in range(attempts):
                try:
                    return func(self, *args, **kwargs)
                except RecallGraphError:
                    raise
                except Exception as e:
                    if not is_transient(e):
                        raise
                    logger.warning(f'{service} {func.__name__} attempt {attempt + 1}/{attempts} failed: {e}')
                    if attempt < attempts - 1:
                        time.sleep(self.config.retry_delay)
                    else:
                        raise UpstreamTransientError(service, f'{func.__name__} failed after {attempts} attempts: {e}') from e

        return wrapper

    return decorator
