"""
Normalized request and response shapes shared by all providers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ai_quota_guard.core.token_counter import TokenUsage

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class AIRequest:
    """Provider-agnostic completion request."""
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE

    @property
    def text(self) -> str:
        """All prompt text sent to the model, for token estimation."""
        return (self.system_prompt or "") + self.prompt


@dataclass(frozen=True)
class AIResponse:
    """Provider-agnostic completion response."""
    content: str
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    provider: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "tokens_used": self.tokens_used.to_dict(),
            "model": self.model,
            "provider": self.provider,
        }
