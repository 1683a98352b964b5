"""
Provider adapters.

Each adapter turns a normalized AIRequest into the vendor's request shape,
sends it, and maps the vendor reply (content and token accounting) back onto
AIResponse. Transport failures are converted to classified AIErrors here, so
nothing vendor-specific escapes an adapter.

OpenAI goes through the official SDK; Anthropic and Google are plain JSON
over httpx, streamed as server-sent events.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import httpx
from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, OpenAI

from ai_quota_guard.core.errors import AIError, ErrorType, create_ai_error
from ai_quota_guard.core.token_counter import TokenUsage
from .types import AIRequest, AIResponse

logger = logging.getLogger(__name__)

OnChunk = Callable[[str], None]


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(items: Any) -> Dict[str, Any]:
    return _dict(items[0]) if isinstance(items, list) and items else {}


def _error_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return None


def _sse_data(line: str) -> Optional[Dict[str, Any]]:
    """Decode the JSON payload of an SSE ``data:`` line; anything else is None."""
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except ValueError:
        logger.debug("Skipping malformed stream event: %.80s", data)
        return None
    return event if isinstance(event, dict) else None


def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """Convert a Retry-After header in seconds to milliseconds."""
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0, int(float(value) * 1000))
    except (ValueError, OverflowError):
        return None


class ProviderAdapter(ABC):
    """Base class for provider adapters."""

    name: str = ""
    default_model: str = ""
    models: Tuple[str, ...] = ()
    overloaded_status: Tuple[int, ...] = ()

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        """Initialize the adapter.

        Args:
            transport: Optional httpx transport, used instead of the network
        """
        self.transport = transport

    @abstractmethod
    def build_payload(self, request: AIRequest, model: str) -> Dict[str, Any]:
        """Build the vendor request body."""

    @abstractmethod
    def parse_response(self, data: Dict[str, Any], model: str) -> AIResponse:
        """Map a vendor response body onto AIResponse."""

    @abstractmethod
    def dispatch(self, request: AIRequest, api_key: str, model: str, timeout: float) -> AIResponse:
        """Send the request and return the normalized response.

        Raises:
            AIError: For any transport or provider failure
        """

    def parse_stream_event(self, event: Dict[str, Any], model: str) -> Optional[AIResponse]:
        """Map one decoded stream event onto a partial AIResponse.

        The partial carries this event's content chunk and whatever token
        counts it reports; None means the event carries neither.
        """
        raise NotImplementedError(f"{self.name} does not decode stream events")

    def stream(
        self,
        request: AIRequest,
        api_key: str,
        model: str,
        timeout: float,
        on_chunk: OnChunk,
    ) -> AIResponse:
        """Send the request, passing content to ``on_chunk`` as it arrives.

        Adapters without a streaming transport send one ordinary request and
        deliver its whole content as a single chunk.

        Returns:
            The accumulated response

        Raises:
            AIError: For any transport or provider failure
        """
        response = self.dispatch(request, api_key, model, timeout)
        if response.content:
            on_chunk(response.content)
        return response

    def classify_status(
        self,
        status_code: int,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> AIError:
        """Classify a non-success HTTP status into an AIError."""
        detail = _error_message(body)
        label = self.name.capitalize()
        if status_code == 401:
            return create_ai_error(ErrorType.AUTH, f"Invalid API key. Please check your {label} API key.")
        if status_code == 403:
            return create_ai_error(ErrorType.AUTH, "Access denied. Please verify your API key permissions.")
        if status_code == 429 or status_code in self.overloaded_status:
            return create_ai_error(
                ErrorType.RATE_LIMIT,
                detail or f"{label} rate limit exceeded. Please wait before trying again.",
                retryable=True,
                retry_after_ms=parse_retry_after(headers),
            )
        if status_code >= 500:
            return create_ai_error(
                ErrorType.NETWORK,
                f"{label} server error ({status_code}). Please try again.",
                retryable=True,
                retry_after_ms=parse_retry_after(headers),
            )
        return create_ai_error(
            ErrorType.UNKNOWN,
            detail or f"{label} request failed with status {status_code}.",
        )

    def _network_error(self, error: Exception) -> AIError:
        if isinstance(error, (httpx.TimeoutException, APITimeoutError)):
            message = f"Request to {self.name} timed out. Please try again."
        else:
            message = "Network error. Please check your connection and try again."
        return create_ai_error(ErrorType.NETWORK, message, retryable=True)

    def _http_error(self, response: httpx.Response) -> AIError:
        try:
            body = response.json()
        except ValueError:
            body = None
        return self.classify_status(response.status_code, body, response.headers)

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise self._network_error(e) from e

        if response.is_error:
            raise self._http_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise create_ai_error(ErrorType.UNKNOWN, f"{self.name} returned a non-JSON response.") from e
        if not isinstance(data, dict):
            raise create_ai_error(ErrorType.UNKNOWN, f"{self.name} returned an unexpected response body.")
        return data

    def _stream_events(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> Iterator[Dict[str, Any]]:
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                with client.stream("POST", url, json=payload, headers=headers) as response:
                    if response.is_error:
                        response.read()
                        raise self._http_error(response)
                    for line in response.iter_lines():
                        event = _sse_data(line)
                        if event is not None:
                            yield event
        except httpx.RequestError as e:
            raise self._network_error(e) from e

    def _collect(self, events: Iterable[Dict[str, Any]], on_chunk: OnChunk, model: str) -> AIResponse:
        """Accumulate stream events into one response.

        Content chunks are concatenated in arrival order; for each token
        count the last non-zero value reported wins.
        """
        chunks: List[str] = []
        prompt_tokens = completion_tokens = total_tokens = 0
        for event in events:
            partial = self.parse_stream_event(event, model)
            if partial is None:
                continue
            if partial.content:
                chunks.append(partial.content)
                on_chunk(partial.content)
            usage = partial.tokens_used
            prompt_tokens = usage.prompt_tokens or prompt_tokens
            completion_tokens = usage.completion_tokens or completion_tokens
            total_tokens = usage.reported_total or total_tokens
            model = partial.model or model
        return AIResponse(
            content="".join(chunks),
            tokens_used=TokenUsage(prompt_tokens, completion_tokens, total_tokens),
            model=model,
            provider=self.name,
        )

    def _stream_sse(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
        on_chunk: OnChunk,
        model: str,
    ) -> AIResponse:
        events = self._stream_events(url, payload, headers, timeout)
        try:
            return self._collect(events, on_chunk, model)
        finally:
            events.close()


class OpenAIProvider(ProviderAdapter):
    """OpenAI chat completions via the openai SDK."""

    name = "openai"
    default_model = "gpt-4o-mini"
    models = ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo")

    def build_payload(self, request: AIRequest, model: str) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

    def _usage(self, usage: Any) -> TokenUsage:
        usage = _dict(usage)
        return TokenUsage(
            prompt_tokens=_int(usage.get("prompt_tokens")),
            completion_tokens=_int(usage.get("completion_tokens")),
            reported_total=_int(usage.get("total_tokens")),
        )

    def parse_response(self, data: Dict[str, Any], model: str) -> AIResponse:
        message = _dict(_first(data.get("choices")).get("message"))
        return AIResponse(
            content=_str(message.get("content")),
            tokens_used=self._usage(data.get("usage")),
            model=data.get("model") or model,
            provider=self.name,
        )

    def parse_stream_event(self, event: Dict[str, Any], model: str) -> Optional[AIResponse]:
        delta = _dict(_first(event.get("choices")).get("delta"))
        return AIResponse(
            content=_str(delta.get("content")),
            tokens_used=self._usage(event.get("usage")),
            model=event.get("model") or model,
            provider=self.name,
        )

    def _client(self, api_key: str, timeout: float) -> OpenAI:
        # No SDK-level retries.
        http_client = httpx.Client(transport=self.transport) if self.transport else None
        return OpenAI(api_key=api_key, timeout=timeout, max_retries=0, http_client=http_client)

    def _translate(self, error: APIError) -> AIError:
        if isinstance(error, APIStatusError):
            return self.classify_status(error.status_code, error.body, error.response.headers)
        if isinstance(error, APIConnectionError):
            return self._network_error(error)
        return create_ai_error(ErrorType.UNKNOWN, f"{self.name} returned an unexpected response.")

    def dispatch(self, request: AIRequest, api_key: str, model: str, timeout: float) -> AIResponse:
        client = self._client(api_key, timeout)
        try:
            completion = client.chat.completions.create(**self.build_payload(request, model))
        except APIError as e:
            raise self._translate(e) from e
        finally:
            client.close()
        return self.parse_response(completion.model_dump(), model)

    def stream(
        self,
        request: AIRequest,
        api_key: str,
        model: str,
        timeout: float,
        on_chunk: OnChunk,
    ) -> AIResponse:
        client = self._client(api_key, timeout)
        try:
            chunks = client.chat.completions.create(
                **self.build_payload(request, model),
                stream=True,
                stream_options={"include_usage": True},
            )
            return self._collect((chunk.model_dump() for chunk in chunks), on_chunk, model)
        except APIError as e:
            raise self._translate(e) from e
        except httpx.RequestError as e:
            raise self._network_error(e) from e
        finally:
            client.close()


class AnthropicProvider(ProviderAdapter):
    """Anthropic messages API."""

    name = "anthropic"
    default_model = "claude-3-5-haiku-20241022"
    models = (
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    )
    overloaded_status = (529,)
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    def build_payload(self, request: AIRequest, model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    def parse_response(self, data: Dict[str, Any], model: str) -> AIResponse:
        blocks = data.get("content")
        text = "".join(
            _str(block.get("text"))
            for block in (blocks if isinstance(blocks, list) else [])
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        usage = _dict(data.get("usage"))
        return AIResponse(
            content=text,
            tokens_used=TokenUsage(
                prompt_tokens=_int(usage.get("input_tokens")),
                completion_tokens=_int(usage.get("output_tokens")),
            ),
            model=_str(data.get("model")) or model,
            provider=self.name,
        )

    def parse_stream_event(self, event: Dict[str, Any], model: str) -> Optional[AIResponse]:
        kind = event.get("type")
        if kind == "content_block_delta":
            delta = _dict(event.get("delta"))
            return AIResponse(content=_str(delta.get("text")), model=model, provider=self.name)
        if kind == "message_start":
            message = _dict(event.get("message"))
            usage = _dict(message.get("usage"))
            return AIResponse(
                content="",
                tokens_used=TokenUsage(
                    prompt_tokens=_int(usage.get("input_tokens")),
                    completion_tokens=_int(usage.get("output_tokens")),
                ),
                model=_str(message.get("model")) or model,
                provider=self.name,
            )
        if kind == "message_delta":
            usage = _dict(event.get("usage"))
            return AIResponse(
                content="",
                tokens_used=TokenUsage(completion_tokens=_int(usage.get("output_tokens"))),
                model=model,
                provider=self.name,
            )
        if kind == "error":
            error = _dict(event.get("error"))
            message = _str(error.get("message")) or "Anthropic stream failed."
            if error.get("type") == "overloaded_error":
                raise create_ai_error(ErrorType.RATE_LIMIT, message, retryable=True)
            raise create_ai_error(ErrorType.UNKNOWN, message)
        return None

    def dispatch(self, request: AIRequest, api_key: str, model: str, timeout: float) -> AIResponse:
        data = self._post_json(self.api_url, self.build_payload(request, model), self._headers(api_key), timeout)
        return self.parse_response(data, model)

    def stream(
        self,
        request: AIRequest,
        api_key: str,
        model: str,
        timeout: float,
        on_chunk: OnChunk,
    ) -> AIResponse:
        payload = dict(self.build_payload(request, model), stream=True)
        return self._stream_sse(self.api_url, payload, self._headers(api_key), timeout, on_chunk, model)


class GoogleProvider(ProviderAdapter):
    """Google Gemini generateContent API."""

    name = "google"
    default_model = "gemini-1.5-flash"
    models = ("gemini-1.5-flash", "gemini-1.5-pro", "gemini-1.0-pro")
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"

    def endpoint(self, model: str) -> str:
        return f"{self.base_url}/{model}:generateContent"

    def stream_endpoint(self, model: str) -> str:
        return f"{self.base_url}/{model}:streamGenerateContent?alt=sse"

    def build_payload(self, request: AIRequest, model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "maxOutputTokens": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return payload

    def parse_response(self, data: Dict[str, Any], model: str) -> AIResponse:
        parts = _dict(_first(data.get("candidates")).get("content")).get("parts")
        usage = _dict(data.get("usageMetadata"))
        return AIResponse(
            content="".join(_str(part.get("text")) for part in (parts if isinstance(parts, list) else [])
                            if isinstance(part, dict)),
            tokens_used=TokenUsage(
                prompt_tokens=_int(usage.get("promptTokenCount")),
                completion_tokens=_int(usage.get("candidatesTokenCount")),
                reported_total=_int(usage.get("totalTokenCount")),
            ),
            model=_str(data.get("modelVersion")) or model,
            provider=self.name,
        )

    # Each streamed event is a complete GenerateContentResponse.
    parse_stream_event = parse_response

    def classify_status(self, status_code, body=None, headers=None) -> AIError:
        # Gemini reports a bad key as 400 INVALID_ARGUMENT.
        message = _error_message(body) or ""
        if status_code == 400 and "api key" in message.lower():
            return create_ai_error(ErrorType.AUTH, "Invalid API key. Please check your Google AI API key.")
        return super().classify_status(status_code, body, headers)

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"x-goog-api-key": api_key, "content-type": "application/json"}

    def dispatch(self, request: AIRequest, api_key: str, model: str, timeout: float) -> AIResponse:
        data = self._post_json(self.endpoint(model), self.build_payload(request, model), self._headers(api_key), timeout)
        return self.parse_response(data, model)

    def stream(
        self,
        request: AIRequest,
        api_key: str,
        model: str,
        timeout: float,
        on_chunk: OnChunk,
    ) -> AIResponse:
        return self._stream_sse(
            self.stream_endpoint(model),
            self.build_payload(request, model),
            self._headers(api_key),
            timeout,
            on_chunk,
            model,
        )


def default_adapters(transport: Optional[httpx.BaseTransport] = None) -> Dict[str, ProviderAdapter]:
    """Registry of the built-in adapters keyed by provider name."""
    adapters = (OpenAIProvider(transport), AnthropicProvider(transport), GoogleProvider(transport))
    return {adapter.name: adapter for adapter in adapters}
