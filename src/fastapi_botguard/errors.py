"""Error types for FastAPI BotGuard.

Insufficient signal data and malformed user agents are never errors; they
surface as unknown features or as a user-agent class. The exceptions here
cover the conditions a caller has to react to: rate limiting, failing
external collaborators and bad configuration.
"""

import logging
import math
import time
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Error categories for classification."""
    RATE_LIMIT = "rate_limit"
    DEPENDENCY_FAILURE = "dependency_failure"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"


class FailurePolicy(str, Enum):
    """How a failed external lookup is read.

    FAIL_OPEN treats the missing answer as neutral, FAIL_CLOSED as maximal risk.
    """
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class BotGuardError(Exception):
    """Base exception for all BotGuard errors."""

    category: ErrorCategory = ErrorCategory.DEPENDENCY_FAILURE
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class RateExceeded(BotGuardError):
    """Raised when an identity key used up its sliding window.

    The request was not recorded. `retry_after` is the number of seconds
    until the oldest timestamp in the window ages out.
    """

    category = ErrorCategory.RATE_LIMIT
    retryable = True

    def __init__(self, key: str, limit: int, window_seconds: float, retry_after: float):
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window_seconds:g}s",
            limit=limit,
            window_seconds=window_seconds,
            retry_after=retry_after,
        )
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        """Standard rate limit response headers."""
        now = time.time() if now is None else now
        retry_after = max(1, math.ceil(self.retry_after))
        return {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(now + retry_after)),
        }


class ExternalServiceError(BotGuardError):
    """An external collaborator (IP reputation, reCAPTCHA) failed."""

    category = ErrorCategory.DEPENDENCY_FAILURE
    retryable = True

    def __init__(self, service: str, message: str, **details: Any):
        super().__init__(f"{service}: {message}", service=service, **details)
        self.service = service


class ExternalServiceTimeout(ExternalServiceError):
    """An external collaborator did not answer within its time budget."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, service: str, timeout: float):
        super().__init__(service, f"no answer within {timeout:g}s", timeout=timeout)
        self.timeout = timeout


class ConfigurationError(BotGuardError):
    """Configuration could not be loaded or failed validation."""

    category = ErrorCategory.CONFIGURATION


async def rate_exceeded_handler(request: Request, exc: RateExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": exc.message, "retry_after": exc.retry_after},
        headers=exc.headers(),
    )


async def external_service_error_handler(
    request: Request, exc: ExternalServiceError
) -> JSONResponse:
    logger.error(f"External service failure on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=exc.to_dict(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the BotGuard exception handlers on an application."""
    app.add_exception_handler(RateExceeded, rate_exceeded_handler)
    app.add_exception_handler(ExternalServiceError, external_service_error_handler)
