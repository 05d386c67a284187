"""Bounded, retrying execution of idempotent provider reads.

Every network call a provider makes goes through :class:`ResilientTransport`.
Transport-level failures (connection errors, timeouts) are retried with
exponential backoff; a response the backend actually returned is translated
to a typed error straight away and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from indexbridge.config import INDEX_REQUEST_TIMEOUT_S, INDEX_RETRY_ATTEMPTS
from indexbridge.errors import (
    IndexBridgeError,
    ProviderAccessError,
    ProviderConnectionError,
    TransportError,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (httpx.TransportError, TimeoutError, BotoConnectionError, HTTPClientError)
_ACCESS_DENIED_STATUS = {401, 403}
_ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "ExpiredTokenException",
    "InvalidSignatureException",
    "UnauthorizedException",
    "UnrecognizedClientException",
}


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_ERRORS)


def check_response(response: httpx.Response, service: str) -> httpx.Response:
    """Raise a typed error for any non-2xx response."""
    if response.is_success:
        return response
    status = response.status_code
    if status in _ACCESS_DENIED_STATUS:
        raise ProviderAccessError(
            f"Invalid API key or access denied by {service} (status: {status})"
        )
    raise ProviderConnectionError(f"{service} request failed (status: {status})")


def translate_client_error(exc: ClientError, service: str) -> ProviderConnectionError:
    error = exc.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = error.get("Message") or str(exc)
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if code in _ACCESS_DENIED_CODES or status in _ACCESS_DENIED_STATUS:
        return ProviderAccessError(f"Access denied by {service} ({code}): {message}")
    return ProviderConnectionError(f"{service} request failed ({code}): {message}")


class ResilientTransport:
    """Executes one idempotent read with a per-attempt deadline and bounded retries."""

    def __init__(
        self,
        retry_attempts: int | None = None,
        timeout_s: float | None = None,
        *,
        service: str = "index provider",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        attempts = INDEX_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        self.retry_attempts = max(1, attempts)
        self.timeout_s = INDEX_REQUEST_TIMEOUT_S if timeout_s is None else timeout_s
        self.service = service
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return float(2**attempt)

    async def execute(
        self,
        operation: Callable[[float], Awaitable[T]],
        *,
        description: str,
    ) -> T:
        """Run ``operation(deadline_s)``, retrying transport failures.

        The operation receives the per-attempt deadline in seconds and should pass
        it to its client; the attempt is also cancelled when the deadline expires.
        """
        last_error: TransportError | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await asyncio.wait_for(operation(self.timeout_s), timeout=self.timeout_s)
            except IndexBridgeError:
                raise
            except ClientError as exc:
                raise translate_client_error(exc, self.service) from exc
            except Exception as exc:
                if not is_transient(exc):
                    raise ProviderConnectionError(
                        f"{self.service} {description} failed: {exc}"
                    ) from exc
                reason = f"{exc.__class__.__name__}: {exc}" if str(exc) else exc.__class__.__name__
                last_error = TransportError(f"{description}: {reason}")
                last_error.__cause__ = exc
                if attempt == self.retry_attempts:
                    break
                delay = self.backoff_delay(attempt)
                log.warning(
                    "%s %s transient error (attempt %d/%d, reason=%s). Retrying in %.0fs...",
                    self.service,
                    description,
                    attempt,
                    self.retry_attempts,
                    reason,
                    delay,
                )
                await self._sleep(delay)

        raise ProviderConnectionError(
            f"{self.service} {description} failed after {self.retry_attempts} attempts: {last_error}"
        ) from last_error
