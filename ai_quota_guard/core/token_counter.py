"""
Token counting and estimation.

Holds the normalized token accounting shape and the coarse character-based
estimate used for local admission control.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict

DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported for one completed request.

    Provider-specific field names are mapped onto this shape by the adapters.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reported_total: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used; falls back to prompt + completion when unreported."""
        return self.reported_total or (self.prompt_tokens + self.completion_tokens)

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt": self.prompt_tokens,
            "completion": self.completion_tokens,
            "total": self.total_tokens,
        }


def estimate_tokens(text: Any, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate the token count of a piece of text.

    Uses ``ceil(len(text) / chars_per_token)``. Real tokenization is model
    specific; this only needs to be a stable proxy for admission checks.

    Args:
        text: Text to measure; anything that is not a string counts as empty
        chars_per_token: Characters assumed per token

    Returns:
        Estimated number of tokens (0 for empty or non-string input)
    """
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / chars_per_token)
