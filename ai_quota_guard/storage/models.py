"""
Data models for storage layer.

Defines the persisted credential and usage records and their blob format.
The blob keys are camelCase so records stay readable by older clients.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

USAGE_RECORD_VERSION = 1


@dataclass(frozen=True)
class CredentialRecord:
    """API key stored for one provider."""
    key: str
    added_at: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "addedAt": self.added_at}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CredentialRecord"]:
        """Build a record from its blob form, or None if the entry is unusable."""
        if not isinstance(data, dict):
            return None
        key = data.get("key")
        if not isinstance(key, str):
            return None
        added_at = data.get("addedAt")
        if not isinstance(added_at, (int, float)):
            added_at = 0
        return cls(key=key, added_at=int(added_at))


@dataclass
class UsageWindow:
    """Request and token counters for the current quota window."""
    requests_this_minute: int = 0
    tokens_this_minute: int = 0
    minute_start_time: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "requestsThisMinute": self.requests_this_minute,
            "tokensThisMinute": self.tokens_this_minute,
            "minuteStartTime": self.minute_start_time,
        }


@dataclass
class SessionStats:
    """Counters for the current session; reset only by explicit request."""
    start_time: int = 0
    requests: int = 0
    tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"startTime": self.start_time, "requests": self.requests, "tokens": self.tokens}


@dataclass
class ToolUsage:
    """Cumulative usage attributed to a single tool."""
    requests: int = 0
    tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"requests": self.requests, "tokens": self.tokens}


@dataclass
class HistoryStats:
    """Cumulative usage, never reset automatically."""
    total_requests: int = 0
    total_tokens: int = 0
    by_tool: Dict[str, ToolUsage] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "totalTokens": self.total_tokens,
            "byTool": {name: usage.to_dict() for name, usage in self.by_tool.items()},
        }


@dataclass
class UsageRecord:
    """Whole persisted usage tree.

    Read and written as one unit; a blob missing any top-level section is
    discarded and replaced by a fresh record.
    """
    session: SessionStats
    history: HistoryStats
    rate_limit: UsageWindow
    version: int = USAGE_RECORD_VERSION

    @classmethod
    def fresh(cls, now_ms: int) -> "UsageRecord":
        return cls(
            session=SessionStats(start_time=now_ms),
            history=HistoryStats(),
            rate_limit=UsageWindow(minute_start_time=now_ms),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "session": self.session.to_dict(),
            "history": self.history.to_dict(),
            "rateLimit": self.rate_limit.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UsageRecord"]:
        """Rebuild a record from its blob form.

        Returns None when the blob is not a complete version-tagged record,
        so the caller can fall back to a fresh one.
        """
        if not isinstance(data, dict):
            return None
        if not data.get("version") or not all(
            isinstance(data.get(section), dict) for section in ("session", "history", "rateLimit")
        ):
            return None

        session = data["session"]
        history = data["history"]
        window = data["rateLimit"]
        try:
            by_tool = {
                str(name): ToolUsage(requests=int(usage.get("requests", 0)), tokens=int(usage.get("tokens", 0)))
                for name, usage in (history.get("byTool") or {}).items()
                if isinstance(usage, dict)
            }
            return cls(
                version=int(data["version"]),
                session=SessionStats(
                    start_time=int(session.get("startTime", 0)),
                    requests=int(session.get("requests", 0)),
                    tokens=int(session.get("tokens", 0)),
                ),
                history=HistoryStats(
                    total_requests=int(history.get("totalRequests", 0)),
                    total_tokens=int(history.get("totalTokens", 0)),
                    by_tool=by_tool,
                ),
                rate_limit=UsageWindow(
                    requests_this_minute=int(window.get("requestsThisMinute", 0)),
                    tokens_this_minute=int(window.get("tokensThisMinute", 0)),
                    minute_start_time=int(window.get("minuteStartTime", 0)),
                ),
            )
        except (TypeError, ValueError, AttributeError):
            return None
