"""
Tool orchestration.

Runs one AI tool call end to end: credential check, token estimate, local
admission, dispatch, usage recording, response parsing. Multi-step tools
(the writing assistant) chain transform steps strictly in order, each step
consuming the previous step's output.

Admission is checked immediately before each dispatch and usage recorded
immediately after each success. The pair is not locked, so concurrent
callers sharing one usage record can both be admitted.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .credentials import CredentialStore
from .errors import AIError, ErrorType, create_ai_error, log_error
from .prompts import WRITING_SYSTEM_PROMPT, build_writing_prompt
from .quota import QuotaTracker
from ai_quota_guard.config.loader import Settings
from ai_quota_guard.sdk.gateway import ProviderGateway
from ai_quota_guard.sdk.providers import OnChunk, ProviderAdapter
from ai_quota_guard.sdk.types import AIRequest, AIResponse
from ai_quota_guard.storage.db import DEFAULT_DB_PATH
from ai_quota_guard.storage.repository import BlobRepository

logger = logging.getLogger(__name__)

Parser = Callable[[str], Any]


@dataclass(frozen=True)
class TransformStep:
    """One step of a sequential text transformation."""
    name: str
    template: str  # must contain "{input}"
    system_prompt: Optional[str] = None
    max_tokens: int = 2048
    temperature: float = 0.3

    def build_request(self, text: str) -> AIRequest:
        return AIRequest(
            prompt=self.template.replace("{input}", text),
            system_prompt=self.system_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a tool run: the raw response and, if a parser ran, its result."""
    response: AIResponse
    parsed: Any = None


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a sequential run: final text plus every step's response."""
    output: str
    responses: List[AIResponse]

    @property
    def total_tokens(self) -> int:
        return sum(response.tokens_used.total_tokens for response in self.responses)


def writing_steps(actions: Sequence[str]) -> List[TransformStep]:
    """Build writing-assistant steps for the given actions, in order."""
    return [
        TransformStep(
            name=action,
            template=build_writing_prompt(action, "{input}"),
            system_prompt=WRITING_SYSTEM_PROMPT,
        )
        for action in actions
    ]


def create_session(
    db_path: str = DEFAULT_DB_PATH,
    settings: Optional[Settings] = None,
    adapters: Optional[Dict[str, ProviderAdapter]] = None,
    clock: Optional[Callable[[], int]] = None,
) -> "AIToolSession":
    """Wire credentials, quota and gateway over one database.

    The gateway and the quota tracker share ``chars_per_token`` so estimates
    and admission use the same unit.
    """
    settings = settings or Settings()
    repository = BlobRepository(db_path)
    credentials = CredentialStore(repository, clock=clock)
    quota = QuotaTracker(repository, settings.quota, clock=clock)
    gateway = ProviderGateway(
        credentials,
        settings.gateway,
        adapters=adapters,
        chars_per_token=settings.quota.chars_per_token,
    )
    return AIToolSession(credentials, quota, gateway)


class AIToolSession:
    """Orchestrates tool calls over shared credential, quota and gateway state.

    Tracks ``is_loading`` and the last ``error`` for the caller's UI.
    """

    def __init__(self, credentials: CredentialStore, quota: QuotaTracker, gateway: ProviderGateway):
        self.credentials = credentials
        self.quota = quota
        self.gateway = gateway
        self.is_loading = False
        self.error: Optional[AIError] = None

    @property
    def is_configured(self) -> bool:
        return self.gateway.is_available()

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise create_ai_error(
                ErrorType.AUTH,
                f"No API key configured for {self.gateway.get_provider()}. Please add your API key in settings.",
            )

    def _call(self, tool_name: str, request: AIRequest, on_chunk: Optional[OnChunk] = None) -> AIResponse:
        self.quota.check_admission(self.quota.estimate_tokens(request.text))
        if on_chunk is None:
            response = self.gateway.complete(request)
        else:
            response = self.gateway.stream_complete(request, on_chunk)
        self.quota.record_request(response.tokens_used.total_tokens, tool_name)
        return response

    def run(
        self,
        tool_name: str,
        request: AIRequest,
        parser: Optional[Parser] = None,
        on_chunk: Optional[OnChunk] = None,
    ) -> ToolResult:
        """Run one tool request.

        Args:
            tool_name: Name usage is attributed to
            request: Request to send
            parser: Optional response parser applied to the full content
            on_chunk: If given, the reply is streamed and each chunk passed here

        Returns:
            ToolResult with the response and parsed value

        Raises:
            AIError: auth if unconfigured, rate_limit if not admitted, or
                whatever the gateway raised
        """
        self.is_loading = True
        self.error = None
        try:
            self._require_configured()
            response = self._call(tool_name, request, on_chunk)
            parsed = parser(response.content) if parser else None
            return ToolResult(response=response, parsed=parsed)
        except AIError as e:
            self.error = e
            log_error(f"run [{tool_name}]", e)
            raise
        finally:
            self.is_loading = False

    def run_steps(self, tool_name: str, text: str, steps: Sequence[TransformStep]) -> PipelineResult:
        """Apply transform steps one after another.

        Each step's request is built from the previous step's trimmed output;
        a failing step stops the run and nothing after it is sent.
        """
        self.is_loading = True
        self.error = None
        current = text
        responses: List[AIResponse] = []
        try:
            self._require_configured()
            for step in steps:
                response = self._call(tool_name, step.build_request(current))
                responses.append(response)
                current = response.content.strip()
                logger.debug("Step %s of %s finished", step.name, tool_name)
            return PipelineResult(output=current, responses=responses)
        except AIError as e:
            self.error = e
            log_error(f"run_steps [{tool_name}]", e, completed_steps=len(responses))
            raise
        finally:
            self.is_loading = False
