from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..constants import IDP_HTTP_MAX_ATTEMPTS, IDP_HTTP_RETRY_MAX_WAIT
from ..logging_config import log_structured_error
from .internal import (
    ConfigError,
    FetchTimeoutError,
    InternalError,
    MalformedTokenError,
    NetworkError,
    OAuthError,
    ParsingError,
)


def error_category(error: BaseException) -> str:
    """Map an exception onto the structured logging category name."""
    if isinstance(error, NetworkError | OSError | ConnectionError):
        return "network"
    if isinstance(error, OAuthError):
        return "auth"
    if isinstance(error, MalformedTokenError):
        return "token"
    if isinstance(error, ParsingError | ValidationError):
        return "parsing"
    if isinstance(error, FetchTimeoutError):
        return "timeout"
    if isinstance(error, ConfigError):
        return "config"
    if isinstance(error, InternalError):
        return "internal"
    return "unknown"


def log_error(
    message: str,
    error: BaseException,
    context: dict[str, object] | None = None,
    level: int = logging.ERROR,
) -> None:
    """Logs an error message with the associated exception details.

    The exception class decides the category used for aggregation, so callers
    only describe where the failure happened.

    Args:
        message: A descriptive message about the error context.
        error: The exception instance to be logged.
        context: Optional additional context data for debugging.
        level: Logging level passed through to the structured logger.
    """
    log_structured_error(
        category=error_category(error),
        message=f"{message}: {str(error)}",
        exception=error,
        context=context,
        level=level,
    )


T = TypeVar("T")


async def retry_network(
    operation: Callable[[], Awaitable[T]],
    context: str,
    max_attempts: int = IDP_HTTP_MAX_ATTEMPTS,
) -> T:
    """Run ``operation`` retrying only transient ``NetworkError`` failures.

    Any other exception (OAuth rejections, parsing problems) propagates on the
    first attempt. After the final attempt the last ``NetworkError`` is
    re-raised unchanged.

    Args:
        operation: Zero-argument coroutine factory.
        context: Descriptive context used in retry log lines.
        max_attempts: Maximum number of attempts (values below 1 mean 1).

    Returns:
        The result of the first successful attempt.
    """

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logging.info(
            f"🔁 Retrying {context} attempt={retry_state.attempt_number + 1}/{max_attempts} error={str(exc)}"
        )

    # tenacity only awaits coroutine functions; factories such as lambdas
    # returning a coroutine must go through a real ``async def``.
    async def attempt() -> T:
        return await operation()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=0.5, max=IDP_HTTP_RETRY_MAX_WAIT),
        retry=retry_if_exception_type(NetworkError),
        before_sleep=before_sleep,
        reraise=True,
    )
    return await retrying(attempt)
