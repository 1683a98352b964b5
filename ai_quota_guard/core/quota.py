"""
Local request quota tracking.

Implements a fixed-size window limiter over two independent dimensions,
requests and tokens per window. The window is reset lazily: every operation
first checks whether the window has expired and, if so, zeroes the counters
and restarts the window at the current time before doing anything else.

The quota is advisory and client-side only. ``record_request`` does not
re-check admission, so a caller that skips ``can_make_request`` (or two
callers racing between check and record) can exceed the configured limits.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import ErrorType, create_ai_error, validation_error
from .token_counter import DEFAULT_CHARS_PER_TOKEN, estimate_tokens
from ai_quota_guard.storage.models import SessionStats, ToolUsage, UsageRecord
from ai_quota_guard.storage.repository import BlobRepository

logger = logging.getLogger(__name__)

USAGE_BLOB_KEY = "ai_tools_usage"


@dataclass(frozen=True)
class QuotaConfig:
    """Limits for the local rate limiter."""
    max_requests_per_minute: int = 20
    max_tokens_per_minute: int = 40000
    window_ms: int = 60000
    warning_threshold: float = 0.8
    token_warning_threshold: int = 10000
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN

    def __post_init__(self):
        """Validate limits are positive and the threshold is a ratio."""
        if self.max_requests_per_minute <= 0:
            raise ValueError("max_requests_per_minute must be > 0")
        if self.max_tokens_per_minute <= 0:
            raise ValueError("max_tokens_per_minute must be > 0")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if not 0 < self.warning_threshold <= 1:
            raise ValueError("warning_threshold must be in (0, 1]")
        if self.token_warning_threshold <= 0:
            raise ValueError("token_warning_threshold must be > 0")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_tokens(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise validation_error(f"{name} must be a non-negative integer")
    return value


class QuotaTracker:
    """Tracks requests and tokens per window, plus session and lifetime usage.

    The tracker owns the persisted usage record and is its only writer.
    """

    def __init__(
        self,
        repository: BlobRepository,
        config: Optional[QuotaConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the tracker.

        Args:
            repository: Blob repository holding the usage record
            config: Rate limit configuration (defaults to QuotaConfig())
            clock: Returns the current time in epoch milliseconds
        """
        self.repository = repository
        self.config = config or QuotaConfig()
        self.clock = clock or _now_ms

    def _coerce(self, raw: Any, now: int) -> UsageRecord:
        if raw is None:
            return UsageRecord.fresh(now)
        record = UsageRecord.from_dict(raw)
        if record is None:
            logger.warning("Usage record is incomplete or malformed; starting fresh")
            return UsageRecord.fresh(now)
        return record

    def _reset_if_expired(self, record: UsageRecord, now: int) -> None:
        window = record.rate_limit
        if now - window.minute_start_time >= self.config.window_ms:
            window.requests_this_minute = 0
            window.tokens_this_minute = 0
            window.minute_start_time = now

    def _transact(self, apply: Callable[[UsageRecord, int], Any]) -> Any:
        """Run one read / reset-if-expired / apply / write cycle on the record."""

        def mutate(raw: Any) -> Tuple[Dict[str, Any], Any]:
            now = self.clock()
            record = self._coerce(raw, now)
            self._reset_if_expired(record, now)
            result = apply(record, now)
            return record.to_dict(), result

        return self.repository.update(USAGE_BLOB_KEY, mutate)

    def _snapshot(self) -> UsageRecord:
        """Read the record without persisting anything."""
        now = self.clock()
        return self._coerce(self.repository.get(USAGE_BLOB_KEY), now)

    def can_make_request(self, estimated_tokens: int = 0) -> bool:
        """Decide whether a request of the given estimated size is admitted.

        Admitted iff fewer than ``max_requests_per_minute`` requests were
        recorded in the window and the estimate fits in the remaining token
        budget. A window reset triggered here is persisted.

        Raises:
            AIError: validation error if estimated_tokens is negative
        """
        estimated_tokens = _check_tokens(estimated_tokens, "estimated_tokens")

        def apply(record: UsageRecord, now: int) -> bool:
            window = record.rate_limit
            under_requests = window.requests_this_minute < self.config.max_requests_per_minute
            under_tokens = window.tokens_this_minute + estimated_tokens <= self.config.max_tokens_per_minute
            return under_requests and under_tokens

        allowed = self._transact(apply)
        logger.debug("Admission for %d estimated tokens: %s", estimated_tokens, allowed)
        return allowed

    def check_admission(self, estimated_tokens: int = 0) -> None:
        """Raise a rate_limit AIError if ``can_make_request`` refuses admission."""
        if self.can_make_request(estimated_tokens):
            return
        wait_ms = self.get_wait_time()
        seconds = -(-wait_ms // 1000)
        raise create_ai_error(
            ErrorType.RATE_LIMIT,
            f"Rate limit reached. Please wait {seconds} seconds.",
            retryable=True,
            retry_after_ms=wait_ms,
        )

    def record_request(self, actual_tokens: int = 0, tool_name: Optional[str] = None) -> None:
        """Record a completed request in the window, session and history.

        Counters are incremented unconditionally; admission must already
        have been checked by the caller.

        Args:
            actual_tokens: Tokens the request actually consumed
            tool_name: Tool to attribute the usage to, if any

        Raises:
            AIError: validation error if actual_tokens is negative
        """
        actual_tokens = _check_tokens(actual_tokens, "actual_tokens")

        def apply(record: UsageRecord, now: int) -> None:
            record.rate_limit.requests_this_minute += 1
            record.rate_limit.tokens_this_minute += actual_tokens
            record.session.requests += 1
            record.session.tokens += actual_tokens
            record.history.total_requests += 1
            record.history.total_tokens += actual_tokens
            if tool_name:
                usage = record.history.by_tool.setdefault(tool_name, ToolUsage())
                usage.requests += 1
                usage.tokens += actual_tokens

        self._transact(apply)

    def get_wait_time(self) -> int:
        """Milliseconds until the current window resets, or 0 if not limited.

        A positive value only means the counters will have reset by then; it
        does not promise admission of any particular token estimate.
        """
        now = self.clock()
        window = self._coerce(self.repository.get(USAGE_BLOB_KEY), now).rate_limit
        elapsed = now - window.minute_start_time
        if elapsed >= self.config.window_ms:
            return 0
        at_request_limit = window.requests_this_minute >= self.config.max_requests_per_minute
        at_token_limit = window.tokens_this_minute >= self.config.max_tokens_per_minute
        if at_request_limit or at_token_limit:
            return self.config.window_ms - elapsed
        return 0

    def estimate_tokens(self, text: Any) -> int:
        return estimate_tokens(text, self.config.chars_per_token)

    def is_approaching_limit(self) -> bool:
        """True if either dimension has reached the warning threshold."""

        def apply(record: UsageRecord, now: int) -> bool:
            window = record.rate_limit
            request_ratio = window.requests_this_minute / self.config.max_requests_per_minute
            token_ratio = window.tokens_this_minute / self.config.max_tokens_per_minute
            threshold = self.config.warning_threshold
            return request_ratio >= threshold or token_ratio >= threshold

        return self._transact(apply)

    def would_exceed_token_warning(self, estimated_tokens: int) -> bool:
        return estimated_tokens > self.config.token_warning_threshold

    def get_usage_stats(self) -> Dict[str, int]:
        """Get window and lifetime counters.

        Returns:
            Dictionary with the current window counters and cumulative totals
        """

        def apply(record: UsageRecord, now: int) -> Dict[str, int]:
            return {
                "requests_this_minute": record.rate_limit.requests_this_minute,
                "tokens_this_minute": record.rate_limit.tokens_this_minute,
                "minute_start_time": record.rate_limit.minute_start_time,
                "total_requests": record.history.total_requests,
                "total_tokens": record.history.total_tokens,
            }

        return self._transact(apply)

    def get_session_stats(self) -> Dict[str, int]:
        session = self._snapshot().session
        stats = asdict(session)
        stats["duration_ms"] = self.clock() - session.start_time
        return stats

    def get_usage_by_tool(self) -> Dict[str, ToolUsage]:
        return dict(self._snapshot().history.by_tool)

    def get_config(self) -> QuotaConfig:
        return self.config

    def reset_stats(self) -> None:
        """Discard all usage, including history; the next access starts a fresh record."""
        self.repository.delete(USAGE_BLOB_KEY)

    def reset_session(self) -> None:
        """Restart session counters, keeping history and the current window."""

        def apply(record: UsageRecord, now: int) -> None:
            record.session = SessionStats(start_time=now)

        self._transact(apply)
