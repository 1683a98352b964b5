"""
Provider gateway.

Single entry point for completions: resolves the provider and its stored
credential, validates the request, dispatches through the provider's adapter
and returns a normalized response. All failures surface as AIError.

The gateway never retries; ``AIError.retryable`` tells the caller whether
resubmitting makes sense.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ai_quota_guard.core.credentials import CredentialStore
from ai_quota_guard.core.errors import AIError, ErrorType, create_ai_error, log_error, validation_error
from ai_quota_guard.core.token_counter import DEFAULT_CHARS_PER_TOKEN, estimate_tokens
from .providers import OnChunk, ProviderAdapter, default_adapters
from .types import AIRequest, AIResponse

logger = logging.getLogger(__name__)

MAX_TEMPERATURE = 2.0


@dataclass(frozen=True)
class GatewayConfig:
    """Provider selection and transport settings."""
    default_provider: str = "openai"
    timeout_seconds: float = 60.0
    models: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate gateway settings."""
        if not self.default_provider or not self.default_provider.strip():
            raise ValueError("default_provider is required and cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


def _validate_request(request: Any) -> AIRequest:
    if not isinstance(request, AIRequest):
        raise validation_error("request must be an AIRequest")
    if not isinstance(request.prompt, str) or not request.prompt.strip():
        raise validation_error("prompt is required and cannot be empty")
    if request.system_prompt is not None and not isinstance(request.system_prompt, str):
        raise validation_error("system_prompt must be a string")
    if isinstance(request.max_tokens, bool) or not isinstance(request.max_tokens, int) or request.max_tokens <= 0:
        raise validation_error("max_tokens must be a positive integer")
    if not isinstance(request.temperature, (int, float)) or not 0 <= request.temperature <= MAX_TEMPERATURE:
        raise validation_error(f"temperature must be between 0 and {MAX_TEMPERATURE}")
    return request


class ProviderGateway:
    """Dispatches normalized requests to the active (or a named) provider."""

    def __init__(
        self,
        credentials: CredentialStore,
        config: Optional[GatewayConfig] = None,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
    ):
        """Initialize the gateway.

        Args:
            credentials: Store the API keys are read from
            config: Gateway configuration (defaults to GatewayConfig())
            adapters: Provider adapters keyed by name (defaults to the built-ins)
            chars_per_token: Estimation constant, shared with the quota tracker

        Raises:
            ValueError: If the configured default provider has no adapter
        """
        self.credentials = credentials
        self.config = config or GatewayConfig()
        self.adapters = adapters if adapters is not None else default_adapters()
        self.chars_per_token = chars_per_token

        provider = self.config.default_provider.strip().lower()
        if provider not in self.adapters:
            raise ValueError(f"Unsupported provider: {self.config.default_provider}")
        self.current_provider = provider
        self.current_model: Optional[str] = None

    def _adapter(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider.strip().lower()) if isinstance(provider, str) else None
        if adapter is None:
            raise validation_error(f"Unsupported provider: {provider}")
        return adapter

    def get_provider(self) -> str:
        return self.current_provider

    def set_provider(self, provider: str) -> None:
        """Make another provider active; its model resets to the configured one."""
        self.current_provider = self._adapter(provider).name
        self.current_model = None

    def get_model(self, provider: Optional[str] = None) -> str:
        adapter = self._adapter(provider or self.current_provider)
        if adapter.name == self.current_provider and self.current_model:
            return self.current_model
        return self.config.models.get(adapter.name) or adapter.default_model

    def set_model(self, model: str) -> None:
        adapter = self._adapter(self.current_provider)
        if model not in adapter.models:
            raise validation_error(f"Model {model!r} is not available for {adapter.name}")
        self.current_model = model

    def get_available_models(self) -> List[str]:
        return list(self._adapter(self.current_provider).models)

    def is_available(self, provider: Optional[str] = None) -> bool:
        """True if the provider (default: active one) has a stored key."""
        return self.credentials.has_key(provider or self.current_provider)

    def estimate_tokens(self, text: Any) -> int:
        return estimate_tokens(text, self.chars_per_token)

    def _prepare(self, request: Any, provider: Optional[str], action: str) -> Tuple[ProviderAdapter, str, str, str]:
        request = _validate_request(request)
        adapter = self._adapter(provider or self.current_provider)
        context = f"{action} [{adapter.name}]"

        api_key = self.credentials.get_key(adapter.name)
        if not api_key:
            error = create_ai_error(
                ErrorType.AUTH,
                f"No API key configured for {adapter.name}. Please add your API key in settings.",
                retryable=False,
            )
            log_error(context, error, reason="missing_api_key")
            raise error
        return adapter, api_key, self.get_model(adapter.name), context

    def _log_completion(self, adapter: ProviderAdapter, response: AIResponse) -> None:
        logger.info(
            "%s completed with %s: %d prompt + %d completion tokens",
            adapter.name,
            response.model,
            response.tokens_used.prompt_tokens,
            response.tokens_used.completion_tokens,
        )

    def complete(self, request: AIRequest, provider: Optional[str] = None) -> AIResponse:
        """Send a completion request and return the normalized response.

        Args:
            request: Normalized request
            provider: Provider to use instead of the active one

        Returns:
            AIResponse with content and normalized token usage

        Raises:
            AIError: validation for a bad request or unknown provider, auth
                when no key is stored, otherwise as classified by the adapter
        """
        adapter, api_key, model, context = self._prepare(request, provider, "complete")
        try:
            response = adapter.dispatch(request, api_key, model, self.config.timeout_seconds)
        except AIError as e:
            log_error(context, e, model=model)
            raise

        self._log_completion(adapter, response)
        return response

    def stream_complete(self, request: AIRequest, on_chunk: OnChunk, provider: Optional[str] = None) -> AIResponse:
        """Stream a completion, passing each content chunk to ``on_chunk``.

        Returns the accumulated response; its token usage keeps the last
        non-zero counts the provider reported. Errors are the same as for
        ``complete``; chunks already delivered stay delivered.
        """
        if not callable(on_chunk):
            raise validation_error("on_chunk must be callable")
        adapter, api_key, model, context = self._prepare(request, provider, "stream_complete")
        try:
            response = adapter.stream(request, api_key, model, self.config.timeout_seconds, on_chunk)
        except AIError as e:
            log_error(context, e, model=model)
            raise

        self._log_completion(adapter, response)
        return response
