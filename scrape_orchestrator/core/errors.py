"""Error classification for scrape attempts.

Raw failures (exceptions, stderr text, the ``error`` field a scrape script
prints) are mapped onto a small set of categories with a retry verdict.
Classification is an ordered rule table: the first rule whose pattern or
exception type matches wins. Non-retryable rules sit at the top of the table
so a message carrying both an auth marker and a network marker is treated as
a hard failure.

Usage:
    from scrape_orchestrator.core.errors import classify

    error = classify("connect ECONNREFUSED 10.0.0.1:443")
    error.type        # ErrorType.NETWORK
    error.retryable   # True
"""

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from scrape_orchestrator.core.datetime_utils import utc_now


class ErrorType(str, enum.Enum):
    """Failure categories for a scrape attempt."""

    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    UPSTREAM_SYSTEM = "upstream_system"
    SCRIPT = "script"
    UNKNOWN = "unknown"


USER_MESSAGES: dict[ErrorType, str] = {
    ErrorType.AUTHENTICATION: (
        "Could not sign in to the court portal. Check the credential and try again."
    ),
    ErrorType.VALIDATION: "The court portal rejected the request as invalid.",
    ErrorType.NETWORK: "Connection to the court portal failed. The attempt will be retried.",
    ErrorType.TIMEOUT: "The court portal took too long to respond. The attempt will be retried.",
    ErrorType.RATE_LIMIT: (
        "The court portal is throttling requests. The attempt will be retried after a pause."
    ),
    ErrorType.UPSTREAM_SYSTEM: (
        "The court portal is temporarily unavailable. The attempt will be retried."
    ),
    ErrorType.SCRIPT: "The scraper hit an internal error. The support team has been notified.",
    ErrorType.UNKNOWN: "An unexpected error occurred while collecting data.",
}


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table."""

    error_type: ErrorType
    retryable: bool
    patterns: tuple[re.Pattern[str], ...] = ()
    exception_types: tuple[type[BaseException], ...] = ()

    def matches(self, message: str, exc: BaseException | None) -> bool:
        if exc is not None and self.exception_types and isinstance(exc, self.exception_types):
            return True
        return any(p.search(message) for p in self.patterns)


def _patterns(*expressions: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(expr, re.IGNORECASE) for expr in expressions)


def _status(*codes: int) -> tuple[str, ...]:
    # Word boundaries keep "4010 records" from reading as HTTP 401
    return tuple(rf"\b{code}\b" for code in codes)


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    # Non-retryable first
    ClassificationRule(
        error_type=ErrorType.AUTHENTICATION,
        retryable=False,
        patterns=_patterns(
            r"authentication failed",
            r"invalid credentials",
            r"unauthori[sz]ed",
            r"forbidden",
            r"login failed",
            *_status(401, 403),
        ),
    ),
    ClassificationRule(
        error_type=ErrorType.VALIDATION,
        retryable=False,
        patterns=_patterns(
            r"validation error",
            r"invalid input",
            r"bad request",
            *_status(400),
        ),
    ),
    ClassificationRule(
        error_type=ErrorType.SCRIPT,
        retryable=False,
        patterns=_patterns(
            r"SyntaxError",
            r"ReferenceError",
            # "TypeError: fetch failed" is how fetch reports a network failure
            r"TypeError(?!:\s*fetch failed)",
            r"is not defined",
            r"failed to parse script output",
            r"cannot find module",
        ),
    ),
    # Retryable
    ClassificationRule(
        error_type=ErrorType.RATE_LIMIT,
        retryable=True,
        patterns=_patterns(
            r"rate limit",
            r"too many requests",
            r"CloudFront",
            *_status(429),
        ),
    ),
    ClassificationRule(
        error_type=ErrorType.TIMEOUT,
        retryable=True,
        patterns=_patterns(
            r"timeout",
            r"timed out",
            r"ETIMEDOUT",
        ),
        exception_types=(TimeoutError,),
    ),
    ClassificationRule(
        error_type=ErrorType.NETWORK,
        retryable=True,
        patterns=_patterns(
            r"ECONNREFUSED",
            r"ENOTFOUND",
            r"ECONNRESET",
            r"EAI_AGAIN",
            r"socket hang up",
            r"fetch failed",
            r"net::ERR_",
            r"connection refused",
            r"connection reset",
        ),
        exception_types=(ConnectionError,),
    ),
    ClassificationRule(
        error_type=ErrorType.UPSTREAM_SYSTEM,
        retryable=True,
        patterns=_patterns(
            r"temporarily unavailable",
            r"service unavailable",
            r"bad gateway",
            r"internal server error",
            *_status(500, 502, 503, 504),
        ),
    ),
)


@dataclass
class ClassifiedError:
    """A failure mapped to a category, with separate user and technical text."""

    type: ErrorType
    retryable: bool
    user_message: str
    technical_message: str
    timestamp: datetime = field(default_factory=utc_now)
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the execution's error payload."""
        return {
            "type": self.type.value,
            "retryable": self.retryable,
            "user_message": self.user_message,
            "technical_message": self.technical_message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClassifiedError":
        return cls(
            type=ErrorType(data.get("type", ErrorType.UNKNOWN.value)),
            retryable=bool(data.get("retryable", False)),
            user_message=data.get("user_message", USER_MESSAGES[ErrorType.UNKNOWN]),
            technical_message=data.get("technical_message", ""),
            timestamp=datetime.fromisoformat(data["timestamp"])
            if data.get("timestamp")
            else utc_now(),
            context=data.get("context") or {},
        )


class ScrapingError(Exception):
    """Raised when a scrape attempt fails with an already-classified error."""

    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(error.technical_message)
        self.error = error


def _technical_message(raw_error: BaseException | str | None) -> str:
    if raw_error is None:
        return "Unknown error"
    if isinstance(raw_error, BaseException):
        text = str(raw_error)
        name = type(raw_error).__name__
        return f"{name}: {text}" if text else name
    return str(raw_error) or "Unknown error"


def classify(
    raw_error: BaseException | str | None,
    context: dict[str, Any] | None = None,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> ClassifiedError:
    """Map a raw error onto a ClassifiedError using the first matching rule.

    Args:
        raw_error: Exception, error text, or None
        context: Extra data to carry with the result (target, attempt, ...)
        rules: Rule table to evaluate, in order

    Returns:
        ClassifiedError; UNKNOWN and non-retryable when nothing matches
    """
    if isinstance(raw_error, ScrapingError):
        error = raw_error.error
        if context:
            error.context = {**error.context, **context}
        return error

    exc = raw_error if isinstance(raw_error, BaseException) else None
    technical = _technical_message(raw_error)

    error_type, retryable = ErrorType.UNKNOWN, False
    for rule in rules:
        if rule.matches(technical, exc):
            error_type, retryable = rule.error_type, rule.retryable
            break

    return ClassifiedError(
        type=error_type,
        retryable=retryable,
        user_message=USER_MESSAGES[error_type],
        technical_message=technical,
        context=dict(context or {}),
    )


def is_retryable(raw_error: BaseException | str | None) -> bool:
    """Shortcut for classify(raw_error).retryable."""
    return classify(raw_error).retryable
