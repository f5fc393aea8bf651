"""Error taxonomy shared by the validator, fetcher, scorer and store.

Every expected failure of an analysis is an ``AnalysisError`` subclass that
knows its structured ``ErrorType`` and how to render itself as the
``success: false`` envelope returned to the client.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    RATE_LIMIT_IP = "RATE_LIMIT_IP"
    RATE_LIMIT_URL = "RATE_LIMIT_URL"
    SITE_UNREACHABLE = "SITE_UNREACHABLE"
    BOT_BLOCKED = "BOT_BLOCKED"
    TIMEOUT = "TIMEOUT"
    API_QUOTA = "API_QUOTA"
    GENERAL_ERROR = "GENERAL_ERROR"


class ValidationErrorKind(str, Enum):
    EMPTY = "EMPTY"
    SPACES = "SPACES"
    MISSING_TLD = "MISSING_TLD"
    DOUBLE_DOT = "DOUBLE_DOT"
    MALFORMED = "MALFORMED"


class FetchErrorKind(str, Enum):
    UNREACHABLE = "UNREACHABLE"
    BOT_BLOCKED = "BOT_BLOCKED"
    TIMEOUT = "TIMEOUT"
    INSUFFICIENT_CONTENT = "INSUFFICIENT_CONTENT"


class ScoringErrorKind(str, Enum):
    MODEL_FAILURE = "MODEL_FAILURE"
    QUOTA = "QUOTA"
    TIMEOUT = "TIMEOUT"


class UrlValidationError(ValueError):
    """Raised by ``normalize_url`` for input that is not a usable website."""

    def __init__(self, kind: ValidationErrorKind, message: str, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.suggestion = suggestion


class AnalysisCancelled(Exception):
    """The caller abandoned the request before the pipeline finished."""


class AnalysisError(Exception):
    """Base for failures reported to the client as a structured envelope."""

    error_type: ErrorType = ErrorType.GENERAL_ERROR
    default_message = "Unable to analyze this website. Please try again."
    default_action = "Try again in a few minutes"

    def __init__(
        self,
        user_message: str | None = None,
        *,
        suggested_action: str | None = None,
        error_code: str | None = None,
        technical_details: str | None = None,
    ) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)
        self.suggested_action = suggested_action or self.default_action
        self.error_code = error_code or f"{self.error_type.value}_{int(time.time() * 1000)}"
        self.technical_details = technical_details

    def extra_fields(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error_type": self.error_type.value,
            "error_code": self.error_code,
            "user_message": self.user_message,
            "suggested_action": self.suggested_action,
        }
        if self.technical_details:
            payload["technical_details"] = self.technical_details
        payload.update({k: v for k, v in self.extra_fields().items() if v is not None})
        return payload


class FetchError(AnalysisError):
    """The target page could not be retrieved or was too sparse to analyze."""

    _TYPES = {
        FetchErrorKind.UNREACHABLE: ErrorType.SITE_UNREACHABLE,
        FetchErrorKind.BOT_BLOCKED: ErrorType.BOT_BLOCKED,
        FetchErrorKind.TIMEOUT: ErrorType.TIMEOUT,
        FetchErrorKind.INSUFFICIENT_CONTENT: ErrorType.SITE_UNREACHABLE,
    }
    _MESSAGES = {
        FetchErrorKind.UNREACHABLE: (
            "We could not connect to this website. Please check that the URL is correct and the site is online.",
            "Verify the URL and try again",
        ),
        FetchErrorKind.BOT_BLOCKED: (
            "This website blocked our analyzer. It may be protected by a firewall or bot challenge.",
            "Allow the FoundIndex-Bot user agent or try a different page",
        ),
        FetchErrorKind.TIMEOUT: (
            "The analysis took too long (over 30 seconds). This usually means the site is very slow or blocking access.",
            "Try again in a few minutes",
        ),
        FetchErrorKind.INSUFFICIENT_CONTENT: (
            "Unable to analyze JavaScript-rendered website. Ensure your content is server-rendered for AI visibility.",
            "Server-render your main content, then test again",
        ),
    }

    def __init__(self, kind: FetchErrorKind, technical_details: str | None = None) -> None:
        self.kind = kind
        self.error_type = self._TYPES[kind]
        message, action = self._MESSAGES[kind]
        error_code = kind.value if kind is FetchErrorKind.INSUFFICIENT_CONTENT else None
        super().__init__(
            message,
            suggested_action=action,
            error_code=error_code,
            technical_details=technical_details,
        )


class ScoringError(AnalysisError):
    """The model call failed or returned something we cannot use."""

    def __init__(self, kind: ScoringErrorKind, technical_details: str | None = None) -> None:
        self.kind = kind
        if kind is ScoringErrorKind.QUOTA:
            self.error_type = ErrorType.API_QUOTA
            message = "Our AI service is temporarily at capacity. Please try again in 2-4 hours."
            action = "Try again later or contact us to get notified when it is back"
        elif kind is ScoringErrorKind.TIMEOUT:
            self.error_type = ErrorType.TIMEOUT
            message = "The AI analysis took too long to respond."
            action = "Try again in a few minutes"
        else:
            self.error_type = ErrorType.GENERAL_ERROR
            message = "AI analysis failed. Please try again."
            action = "Try again in a few minutes"
        super().__init__(message, suggested_action=action, technical_details=technical_details)


class PersistError(AnalysisError):
    """A scored result could not be saved, so it has no reachable test id."""

    default_message = "We analyzed your site but could not save the results. Please try again."


class BlogQuotaExceeded(AnalysisError):
    error_type = ErrorType.RATE_LIMIT_IP
    default_action = "Test homepages (unlimited) or wait until reset date"

    def __init__(self, user_message: str, next_available_time: str, technical_details: str | None = None) -> None:
        super().__init__(user_message, technical_details=technical_details)
        self.next_available_time = next_available_time

    def extra_fields(self) -> dict[str, Any]:
        return {"next_available_time": self.next_available_time}


class UrlCooldownActive(AnalysisError):
    """The URL was analyzed recently; the previous result is offered instead."""

    error_type = ErrorType.RATE_LIMIT_URL
    default_action = "We will show you the previous results. Made changes? Contact us for a priority retest."

    def __init__(
        self,
        user_message: str,
        *,
        cached_test_id: str,
        cached_score: int | None,
        cached_created_at: str,
        next_available_time: str,
    ) -> None:
        super().__init__(user_message)
        self.cached_test_id = cached_test_id
        self.cached_score = cached_score
        self.cached_created_at = cached_created_at
        self.next_available_time = next_available_time

    def extra_fields(self) -> dict[str, Any]:
        return {
            "cached_test_id": self.cached_test_id,
            "cached_score": self.cached_score,
            "cached_created_at": self.cached_created_at,
            "next_available_time": self.next_available_time,
            "test_id": self.cached_test_id,
            "testedAt": self.cached_created_at,
            "canRetestAt": self.next_available_time,
            "attempts_exhausted": False,
        }


class InvalidTestIdError(ValueError):
    pass


class ResultNotFoundError(LookupError):
    pass
