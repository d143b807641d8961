"""Classify openai SDK exceptions without importing the SDK at module load."""

from __future__ import annotations

_REASONS: dict[str, str] = {
    "AuthenticationError": "auth",
    "PermissionDeniedError": "auth",
    "RateLimitError": "rate_limited",
    "APITimeoutError": "timeout",
    "TimeoutError": "timeout",
    "APIConnectionError": "unavailable",
    "InternalServerError": "unavailable",
    "BadRequestError": "invalid_request",
    "NotFoundError": "invalid_request",
    "UnprocessableEntityError": "invalid_request",
}


def classify(ex: BaseException) -> str | None:
    """Most specific reason along the exception's MRO, or None if unknown."""
    for cls in type(ex).__mro__:
        reason = _REASONS.get(cls.__name__)
        if reason is not None:
            return reason
    return None
