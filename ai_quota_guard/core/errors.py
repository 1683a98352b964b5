"""
Error taxonomy for AI requests.

Every failure that leaves the orchestration layer is an AIError tagged with
one of a fixed set of types, so callers can decide on messaging and retries
without knowing which provider produced it.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Classification of AI request failures."""
    VALIDATION = "validation"  # Bad or missing local input
    AUTH = "auth"              # Missing or rejected credential
    RATE_LIMIT = "rate_limit"  # Local quota or provider throttling
    NETWORK = "network"        # Transport failure, timeout, server outage
    PARSE = "parse"            # Model text did not match the expected shape
    UNKNOWN = "unknown"        # Anything else


_DEFAULTS: Dict[ErrorType, Dict[str, Any]] = {
    ErrorType.VALIDATION: {
        "message": "Invalid input. Please check your input and try again.",
        "action": "Review your input for missing or malformed values.",
        "retryable": False,
    },
    ErrorType.AUTH: {
        "message": "Authentication failed. Please check your API key.",
        "action": "Verify your API key is correct and has not expired.",
        "retryable": False,
    },
    ErrorType.RATE_LIMIT: {
        "message": "Rate limit exceeded. Please wait before trying again.",
        "action": "Wait a moment and try again, or reduce request frequency.",
        "retryable": True,
    },
    ErrorType.NETWORK: {
        "message": "Network error. Please check your connection.",
        "action": "Check your internet connection and try again.",
        "retryable": True,
    },
    ErrorType.PARSE: {
        "message": "The response could not be read in the expected format.",
        "action": "Try regenerating the response.",
        "retryable": False,
    },
    ErrorType.UNKNOWN: {
        "message": "An unexpected error occurred. Please try again.",
        "action": "Try again or contact support if the issue persists.",
        "retryable": False,
    },
}


class AIError(Exception):
    """Classified failure of an AI request.

    Attributes:
        type: Error classification
        message: Human-readable description
        retryable: Whether resubmitting the same request may succeed
        action: Suggested next step for the user
        retry_after_ms: Suggested wait before retrying, when known
    """

    def __init__(
        self,
        type: ErrorType,
        message: str,
        retryable: bool = False,
        action: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
    ):
        super().__init__(message)
        self.type = type
        self.message = message
        self.retryable = retryable
        self.action = action
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "retryable": self.retryable,
            "action": self.action,
            "retry_after_ms": self.retry_after_ms,
        }

    def __repr__(self) -> str:
        return f"AIError(type={self.type.value!r}, message={self.message!r}, retryable={self.retryable})"


def create_ai_error(
    type: ErrorType,
    message: Optional[str] = None,
    retryable: Optional[bool] = None,
    retry_after_ms: Optional[int] = None,
) -> AIError:
    """Create an AIError, filling unspecified fields from the type's defaults.

    Args:
        type: Error classification
        message: Message override (defaults to the type's generic message)
        retryable: Retryability override
        retry_after_ms: Optional wait hint in milliseconds

    Returns:
        A new AIError
    """
    defaults = _DEFAULTS[type]
    return AIError(
        type=type,
        message=message or defaults["message"],
        retryable=defaults["retryable"] if retryable is None else retryable,
        action=defaults["action"],
        retry_after_ms=retry_after_ms,
    )


def validation_error(message: str) -> AIError:
    return create_ai_error(ErrorType.VALIDATION, message)


def log_error(context: str, error: AIError, **details: Any) -> None:
    """Log an AIError with its classification and any extra context."""
    logger.error(
        "[AI request error] %s: type=%s retryable=%s message=%s %s",
        context,
        error.type.value,
        error.retryable,
        error.message,
        details or "",
    )
