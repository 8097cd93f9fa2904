"""Gateway error taxonomy.

Every provider failure is converted into a ``GatewayError`` subclass at the
adapter boundary (or by ``classify_error`` for anything that slips past it).
The class decides three things for the orchestrator: the ``ErrorKind`` shown to
callers, whether the call may be retried inline, and whether it counts against
the provider's circuit breaker.
"""

from __future__ import annotations

import asyncio

import httpx
import pydantic

from wellness_ai.gateway.types import ErrorKind


class GatewayError(Exception):
    """Base class for all gateway errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False
    trips_breaker: bool = True

    def __init__(self, message: str = "", provider_id: str = ""):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id


class NetworkError(GatewayError):
    """Connection refused/reset, DNS failure, dropped link."""

    kind = ErrorKind.NETWORK
    retryable = True


class ProviderTimeoutError(GatewayError):
    kind = ErrorKind.TIMEOUT
    retryable = True


class QuotaExceededError(GatewayError):
    """Provider returned 429. Routed to the durability queue, never retried inline."""

    kind = ErrorKind.QUOTA_EXCEEDED
    retryable = False
    trips_breaker = False

    def __init__(self, message: str = "", provider_id: str = "", retry_after: float | None = None):
        super().__init__(message, provider_id)
        self.retry_after = retry_after


class ProviderClientError(GatewayError):
    """4xx other than 429: malformed or unauthorized, will not succeed on retry."""

    kind = ErrorKind.PROVIDER_4XX
    retryable = False

    def __init__(self, message: str = "", provider_id: str = "", status_code: int = 400):
        super().__init__(message, provider_id)
        self.status_code = status_code


class ProviderServerError(GatewayError):
    kind = ErrorKind.PROVIDER_5XX
    retryable = True

    def __init__(self, message: str = "", provider_id: str = "", status_code: int = 500):
        super().__init__(message, provider_id)
        self.status_code = status_code


class CircuitOpenError(GatewayError):
    """Provider circuit is OPEN (or HALF_OPEN with no probe slot free)."""

    kind = ErrorKind.CIRCUIT_OPEN
    retryable = False
    trips_breaker = False

    def __init__(self, provider_id: str, retry_at: float | None = None):
        super().__init__(f"Circuit breaker open for {provider_id}", provider_id)
        self.retry_at = retry_at


class ResponseValidationError(GatewayError):
    """Provider answered, but the body failed schema checks."""

    kind = ErrorKind.VALIDATION
    retryable = False


class RequestCancelledError(GatewayError):
    kind = ErrorKind.CANCELLED
    retryable = False
    trips_breaker = False


class QueueFullError(GatewayError):
    """Durability queue is at capacity and the overflow policy is reject_new."""

    kind = ErrorKind.QUEUE_FULL
    retryable = False
    trips_breaker = False


def error_for_status(status_code: int, message: str, provider_id: str = "", retry_after: float | None = None) -> GatewayError:
    """Map an HTTP status code to the gateway taxonomy."""
    if status_code == 429:
        return QuotaExceededError(message, provider_id, retry_after=retry_after)
    if 400 <= status_code < 500:
        return ProviderClientError(message, provider_id, status_code=status_code)
    return ProviderServerError(message, provider_id, status_code=status_code)


def classify_error(exc: BaseException, provider_id: str = "") -> GatewayError:
    """Convert any exception raised around a provider call into a GatewayError."""
    if isinstance(exc, GatewayError):
        if not exc.provider_id:
            exc.provider_id = provider_id
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ProviderTimeoutError(str(exc) or "Provider call timed out", provider_id)
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc), provider_id)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return NetworkError(str(exc) or type(exc).__name__, provider_id)
    if isinstance(exc, pydantic.ValidationError):
        return ResponseValidationError(str(exc), provider_id)
    if isinstance(exc, asyncio.CancelledError):
        return RequestCancelledError("Call cancelled", provider_id)

    return GatewayError(f"{type(exc).__name__}: {exc}", provider_id)
