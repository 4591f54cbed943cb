"""
Error taxonomy shared by the API layer and the provider/backend clients.

Every error carries a stable ``code`` and an HTTP ``status_code`` so the
FastAPI exception handlers can translate it without inspecting types, and a
``user_message`` that is safe to show to an end user.
"""

from __future__ import annotations

import math
from typing import Optional


class AdoqError(Exception):
    """Base class for all classified application errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        return self.message


class ConfigurationError(AdoqError):
    """Missing credentials or environment. Never retried."""

    code = "CONFIGURATION_ERROR"
    default_message = "The service is not configured."

    def __init__(self, message: Optional[str] = None, setting: Optional[str] = None):
        if setting and not message:
            message = f"{setting} is not configured. Set it in the environment and restart the service."
        super().__init__(message)
        self.setting = setting


class UpstreamError(AdoqError):
    """An error returned by (or while talking to) an upstream provider."""

    code = "UPSTREAM_ERROR"
    status_code = 502
    default_message = "An upstream service failed."

    def __init__(
        self,
        message: Optional[str] = None,
        provider: str = "unknown",
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status = status


class RateLimitError(UpstreamError):
    """Rate limited by an upstream provider or by a local usage counter."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Rate limit exceeded."

    def __init__(
        self,
        message: Optional[str] = None,
        provider: str = "unknown",
        status: Optional[int] = 429,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, status=status)
        self.retry_after_seconds = retry_after_seconds

    @property
    def user_message(self) -> str:
        return format_retry_message(self.retry_after_seconds)


class TransientUpstreamError(UpstreamError):
    """Timeouts, connection failures and 5xx responses. Retried with backoff."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    default_message = "An upstream service is temporarily unavailable."

    @property
    def user_message(self) -> str:
        return "The service is temporarily unavailable. Please try again shortly."


class PermanentUpstreamError(UpstreamError):
    """4xx responses other than rate limiting. Never retried."""

    code = "UPSTREAM_REJECTED"
    status_code = 502
    default_message = "An upstream service rejected the request."


class AuthenticationError(AdoqError):
    code = "NOT_AUTHENTICATED"
    status_code = 401
    default_message = "Not authenticated"


class AuthorizationError(AdoqError):
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "Unauthorized"


class ConversationNotFoundError(AdoqError):
    code = "CONVERSATION_NOT_FOUND"
    status_code = 404
    default_message = "Conversation not found"

    def __init__(self, conversation_id: str):
        super().__init__()
        self.conversation_id = conversation_id


class ParseError(AdoqError):
    """Language-model output that neither strict validation nor extraction could read."""

    code = "PARSE_ERROR"
    status_code = 502
    default_message = "Could not parse the model response."

    def __init__(self, message: Optional[str] = None, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def format_retry_message(retry_after_seconds: Optional[float]) -> str:
    """Human readable retry hint, rounded up to whole minutes."""
    if not retry_after_seconds or retry_after_seconds <= 0:
        return "Too many requests. Please try again in a moment."
    minutes = max(1, math.ceil(retry_after_seconds / 60))
    unit = "minute" if minutes == 1 else "minutes"
    return f"Too many requests. Please try again in {minutes} {unit}."
