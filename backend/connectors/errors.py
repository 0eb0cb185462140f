"""
Error taxonomy shared by every connector.

HTTP failures are classified once, here, so the retry policy and the sync
orchestrator can react to the *kind* of failure instead of status codes:

- ``AuthError``: 401/403 - refresh the token and retry once, then give up
- ``RateLimited``: 429 - wait at least ``retry_after`` seconds
- ``TransientError``: 5xx or network failure - exponential backoff
- ``PermanentError``: any other 4xx - never retried
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

DEFAULT_RETRY_AFTER_SECONDS = 10.0


class ConnectorError(Exception):
    """Base class for provider API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(ConnectorError):
    """Credential rejected, expired, or revoked."""


class RateLimited(ConnectorError):
    """Provider backpressure (HTTP 429)."""

    def __init__(
        self,
        message: str,
        retry_after: float = DEFAULT_RETRY_AFTER_SECONDS,
        status_code: Optional[int] = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientError(ConnectorError):
    """Network failure or provider-side 5xx."""


class PermanentError(ConnectorError):
    """Bad request, unknown object, unsupported association - retrying will not help."""


class UnsupportedProviderError(PermanentError):
    """No connector is registered for the requested provider."""


def _parse_retry_after(value: Optional[str]) -> float:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(float(value), 0.0)
    except ValueError:
        # HTTP-date form is legal but HubSpot never sends it
        return DEFAULT_RETRY_AFTER_SECONDS


def extract_error_detail(response: httpx.Response) -> str:
    """Pull a readable message out of a provider error body."""
    try:
        body: Any = response.json()
    except ValueError:
        return response.text[:500] if response.text else ""

    if not isinstance(body, dict):
        return str(body)[:500]

    # HubSpot error format: {"message": "...", "errors": [{"message": "..."}]}
    detail: str = str(body.get("message") or body.get("error_description") or body.get("error") or "")
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        messages: list[str] = [
            e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors
        ]
        detail = f"{detail}: {'; '.join(messages)}" if detail else "; ".join(messages)
    return detail


def classify_response(response: httpx.Response, provider: str = "Provider") -> Optional[ConnectorError]:
    """Map an HTTP error response onto the taxonomy; None for 2xx/3xx."""
    status = response.status_code
    if status < 400:
        return None

    detail = extract_error_detail(response)
    message = f"{provider} API error ({status}): {detail}" if detail else f"{provider} API error ({status})"

    if status in (401, 403):
        return AuthError(message, status_code=status)
    if status == 429:
        return RateLimited(
            message,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return TransientError(message, status_code=status)
    return PermanentError(message, status_code=status)


def classify_transport_error(exc: httpx.TransportError, provider: str = "Provider") -> TransientError:
    """Timeouts, connection resets and DNS failures are all worth retrying."""
    return TransientError(f"{provider} network error: {type(exc).__name__}: {exc}")
