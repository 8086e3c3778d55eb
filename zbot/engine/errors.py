"""Upstream error taxonomy.

The gateway only reacts to the class of an error, never to its message:
rate-limit and permission errors are solved by switching credentials,
transient errors by waiting, everything else aborts the retry loop.
"""

from __future__ import annotations

from typing import Any

RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504, 529})


class UpstreamError(RuntimeError):
    """Base class for failures of the upstream generate call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(UpstreamError):
    """HTTP 429 / RESOURCE_EXHAUSTED."""


class PermissionDeniedError(UpstreamError):
    """HTTP 403 -- key revoked, invalid, or without access to the model."""


class TransientUpstreamError(UpstreamError):
    """Overload, 5xx, timeouts and dropped connections."""


class FatalUpstreamError(UpstreamError):
    """Anything that will not get better by retrying."""


def _error_fields(body: Any) -> tuple[str, str]:
    if isinstance(body, dict):
        error = body.get("error") or {}
        if isinstance(error, dict):
            return str(error.get("status", "")), str(error.get("message", ""))
    return "", ""


def classify_http_error(status_code: int, body: Any = None, text: str = "") -> UpstreamError:
    """Map a non-200 upstream response to an UpstreamError subclass."""
    status, message = _error_fields(body)
    detail = message or text[:500] or f"HTTP {status_code}"
    label = f"Upstream API error ({status_code}): {status or 'unknown'} - {detail}"

    if status_code == 429 or status == "RESOURCE_EXHAUSTED":
        return RateLimitError(label, status_code)
    if status_code == 403 or status == "PERMISSION_DENIED" or "does not have permission" in detail:
        return PermissionDeniedError(label, status_code)
    if status_code in RETRYABLE_STATUS_CODES or status in ("UNAVAILABLE", "INTERNAL"):
        return TransientUpstreamError(label, status_code)
    return FatalUpstreamError(label, status_code)
