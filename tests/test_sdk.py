"""
Unit tests for SDK layer.

Tests provider adapters (payload shape, response mapping, error
classification) and the gateway's provider/credential handling.
"""

import json
import os
import tempfile
from unittest.mock import Mock, patch

import httpx
import pytest
from openai import APIConnectionError, APIResponseValidationError, APIStatusError, APITimeoutError

from ai_quota_guard.core.credentials import CredentialStore
from ai_quota_guard.core.errors import AIError, ErrorType
from ai_quota_guard.core.token_counter import TokenUsage
from ai_quota_guard.sdk.gateway import GatewayConfig, ProviderGateway
from ai_quota_guard.sdk.providers import (
    AnthropicProvider,
    GoogleProvider,
    OpenAIProvider,
    ProviderAdapter,
    default_adapters,
    parse_retry_after,
)
from ai_quota_guard.sdk.types import AIRequest, AIResponse
from ai_quota_guard.storage.repository import BlobRepository

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def _status_error(status_code, body=None, headers=None):
    response = httpx.Response(
        status_code,
        headers=headers or {},
        json=body,
        request=httpx.Request("POST", OPENAI_URL),
    )
    return APIStatusError("error", response=response, body=body)


class RecordingTransport:
    """httpx MockTransport that records requests and replays one response."""

    def __init__(self, status_code=200, body=None, raises=None, headers=None):
        self.requests = []
        self.status_code = status_code
        self.body = body
        self.raises = raises
        self.headers = headers or {}
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request):
        self.requests.append(request)
        if self.raises is not None:
            raise self.raises
        if isinstance(self.body, str):
            return httpx.Response(self.status_code, headers=self.headers, text=self.body)
        return httpx.Response(self.status_code, headers=self.headers, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def _sse(*events):
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events)


class StubAdapter(ProviderAdapter):
    """Adapter returning a canned response without any transport."""

    name = "openai"
    default_model = "stub-model"
    models = ("stub-model", "stub-large")

    def __init__(self, response=None, error=None):
        super().__init__()
        self.response = response or AIResponse(content="ok", tokens_used=TokenUsage(3, 2), provider="openai")
        self.error = error
        self.calls = []

    def build_payload(self, request, model):
        return {"prompt": request.prompt, "model": model}

    def parse_response(self, data, model):
        return self.response

    def dispatch(self, request, api_key, model, timeout):
        self.calls.append((request, api_key, model, timeout))
        if self.error is not None:
            raise self.error
        return self.response


class TestRetryAfter:
    """Test Retry-After header parsing."""

    @pytest.mark.parametrize("headers,expected", [
        ({"retry-after": "2"}, 2000),
        ({"retry-after": "0.5"}, 500),
        ({"retry-after": "soon"}, None),
        ({"retry-after": "inf"}, None),
        ({"retry-after": "nan"}, None),
        ({"retry-after": "-3"}, 0),
        ({}, None),
        (None, None),
    ])
    def test_parse(self, headers, expected):
        assert parse_retry_after(headers) == expected


class TestErrorClassification:
    """Test HTTP status mapping shared by all adapters."""

    @pytest.mark.parametrize("status_code,error_type,retryable", [
        (401, ErrorType.AUTH, False),
        (403, ErrorType.AUTH, False),
        (429, ErrorType.RATE_LIMIT, True),
        (500, ErrorType.NETWORK, True),
        (503, ErrorType.NETWORK, True),
        (400, ErrorType.UNKNOWN, False),
        (404, ErrorType.UNKNOWN, False),
    ])
    def test_status_mapping(self, status_code, error_type, retryable):
        error = OpenAIProvider().classify_status(status_code)
        assert error.type == error_type
        assert error.retryable is retryable

    def test_rate_limit_carries_retry_after(self):
        error = AnthropicProvider().classify_status(429, None, {"retry-after": "7"})
        assert error.retry_after_ms == 7000

    def test_provider_message_is_used(self):
        body = {"error": {"message": "Quota exhausted for project"}}
        error = OpenAIProvider().classify_status(429, body)
        assert error.message == "Quota exhausted for project"

    def test_anthropic_overloaded_is_rate_limit(self):
        error = AnthropicProvider().classify_status(529)
        assert error.type == ErrorType.RATE_LIMIT
        assert error.retryable is True
        assert OpenAIProvider().classify_status(529).type == ErrorType.NETWORK

    def test_google_bad_key_is_auth(self):
        body = {"error": {"code": 400, "message": "API key not valid. Please pass a valid API key."}}
        assert GoogleProvider().classify_status(400, body).type == ErrorType.AUTH
        assert GoogleProvider().classify_status(400, {"error": {"message": "bad field"}}).type == ErrorType.UNKNOWN


class TestOpenAIProvider:
    """Test OpenAI adapter through a mocked SDK client."""

    def setup_method(self):
        self.request = AIRequest(prompt="Hello", system_prompt="Be brief", max_tokens=50, temperature=0.2)

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_dispatch_success(self, mock_openai_class):
        completion = Mock()
        completion.model_dump.return_value = {
            "model": "gpt-4o-mini-2024-07-18",
            "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
            "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        }
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = completion
        mock_openai_class.return_value = mock_client

        response = OpenAIProvider().dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert response.content == "Hi there"
        assert response.provider == "openai"
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.tokens_used.to_dict() == {"prompt": 12, "completion": 3, "total": 15}

        _, kwargs = mock_openai_class.call_args
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["timeout"] == 30.0
        assert kwargs["max_retries"] == 0
        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o-mini",
            messages=[
                {"role": "system", "content": "Be brief"},
                {"role": "user", "content": "Hello"},
            ],
            max_tokens=50,
            temperature=0.2,
        )

    def test_payload_without_system_prompt(self):
        payload = OpenAIProvider().build_payload(AIRequest(prompt="Hi"), "gpt-4o")
        assert payload["messages"] == [{"role": "user", "content": "Hi"}]

    def test_missing_usage_maps_to_zero(self):
        response = OpenAIProvider().parse_response({"choices": [{"message": {"content": None}}]}, "gpt-4o")
        assert response.content == ""
        assert response.model == "gpt-4o"
        assert response.tokens_used.total_tokens == 0

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_status_error_is_classified(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = _status_error(
            429, {"error": {"message": "Slow down"}}, {"retry-after": "3"}
        )
        mock_openai_class.return_value = mock_client

        with pytest.raises(AIError) as excinfo:
            OpenAIProvider().dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert excinfo.value.type == ErrorType.RATE_LIMIT
        assert excinfo.value.retry_after_ms == 3000
        assert excinfo.value.message == "Slow down"

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_auth_error_is_classified(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = _status_error(401, {"error": {"message": "bad key"}})
        mock_openai_class.return_value = mock_client

        with pytest.raises(AIError) as excinfo:
            OpenAIProvider().dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert excinfo.value.type == ErrorType.AUTH
        assert excinfo.value.retryable is False

    @pytest.mark.parametrize("error,fragment", [
        (APIConnectionError(request=httpx.Request("POST", OPENAI_URL)), "Network error"),
        (APITimeoutError(request=httpx.Request("POST", OPENAI_URL)), "timed out"),
    ])
    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_connection_errors_are_network(self, mock_openai_class, error, fragment):
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = error
        mock_openai_class.return_value = mock_client

        with pytest.raises(AIError) as excinfo:
            OpenAIProvider().dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert excinfo.value.type == ErrorType.NETWORK
        assert excinfo.value.retryable is True
        assert fragment in excinfo.value.message

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_unexpected_sdk_error_is_unknown(self, mock_openai_class):
        response = httpx.Response(200, request=httpx.Request("POST", OPENAI_URL))
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = APIResponseValidationError(response=response, body=None)
        mock_openai_class.return_value = mock_client

        with pytest.raises(AIError) as excinfo:
            OpenAIProvider().dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert excinfo.value.type == ErrorType.UNKNOWN
        assert isinstance(excinfo.value.__cause__, APIResponseValidationError)
        mock_client.close.assert_called_once()

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_client_closed_after_each_call(self, mock_openai_class):
        completion = Mock()
        completion.model_dump.return_value = {"choices": [{"message": {"content": "Hi"}}]}
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = completion
        mock_openai_class.return_value = mock_client

        adapter = OpenAIProvider()
        adapter.dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)
        adapter.dispatch(self.request, "sk-test", "gpt-4o-mini", 30.0)

        assert mock_client.close.call_count == 2

    @pytest.mark.parametrize("data", [
        {"choices": [None], "usage": 5},
        {"choices": "oops", "usage": {"prompt_tokens": "12"}},
        {"choices": [{"message": ["content"]}]},
    ])
    def test_malformed_body_maps_to_empty(self, data):
        response = OpenAIProvider().parse_response(data, "gpt-4o")
        assert response.content == ""
        assert response.tokens_used.total_tokens == 0

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_stream_accumulates_chunks_and_usage(self, mock_openai_class):
        events = [
            {"model": "gpt-4o-mini-2024-07-18", "choices": [{"delta": {"role": "assistant", "content": ""}}]},
            {"choices": [{"delta": {"content": "Hi"}}]},
            {"choices": [{"delta": {"content": " there"}}]},
            {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}},
        ]
        chunks = []
        for event in events:
            chunk = Mock()
            chunk.model_dump.return_value = event
            chunks.append(chunk)
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = iter(chunks)
        mock_openai_class.return_value = mock_client
        received = []

        response = OpenAIProvider().stream(self.request, "sk-test", "gpt-4o-mini", 30.0, received.append)

        assert received == ["Hi", " there"]
        assert response.content == "Hi there"
        assert response.model == "gpt-4o-mini-2024-07-18"
        assert response.tokens_used.to_dict() == {"prompt": 12, "completion": 3, "total": 15}
        _, kwargs = mock_client.chat.completions.create.call_args
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        mock_client.close.assert_called_once()

    @patch('ai_quota_guard.sdk.providers.OpenAI')
    def test_stream_failure_midway_is_classified(self, mock_openai_class):
        first = Mock()
        first.model_dump.return_value = {"choices": [{"delta": {"content": "Hi"}}]}

        def chunks():
            yield first
            raise APIConnectionError(request=httpx.Request("POST", OPENAI_URL))

        mock_client = Mock()
        mock_client.chat.completions.create.return_value = chunks()
        mock_openai_class.return_value = mock_client
        received = []

        with pytest.raises(AIError) as excinfo:
            OpenAIProvider().stream(self.request, "sk-test", "gpt-4o-mini", 30.0, received.append)

        assert excinfo.value.type == ErrorType.NETWORK
        assert received == ["Hi"]
        mock_client.close.assert_called_once()


class TestAnthropicProvider:
    """Test Anthropic adapter over a mock HTTP transport."""

    def test_dispatch_success(self):
        recorder = RecordingTransport(body={
            "model": "claude-3-5-haiku-20241022",
            "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "world"}],
            "usage": {"input_tokens": 20, "output_tokens": 5},
        })
        adapter = AnthropicProvider(recorder.transport)
        request = AIRequest(prompt="Hi", system_prompt="Sys", max_tokens=100, temperature=0.1)

        response = adapter.dispatch(request, "sk-ant-key", "claude-3-5-haiku-20241022", 10.0)

        assert response.content == "Hello world"
        assert response.provider == "anthropic"
        assert response.tokens_used.to_dict() == {"prompt": 20, "completion": 5, "total": 25}

        sent = recorder.requests[0]
        assert str(sent.url) == AnthropicProvider.api_url
        assert sent.headers["x-api-key"] == "sk-ant-key"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        assert recorder.last_json == {
            "model": "claude-3-5-haiku-20241022",
            "max_tokens": 100,
            "temperature": 0.1,
            "messages": [{"role": "user", "content": "Hi"}],
            "system": "Sys",
        }

    def test_overloaded_response(self):
        recorder = RecordingTransport(529, {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "k", "m", 10.0)
        assert excinfo.value.type == ErrorType.RATE_LIMIT
        assert excinfo.value.message == "Overloaded"

    def test_server_error_is_network(self):
        recorder = RecordingTransport(502, "<html>Bad gateway</html>")
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "k", "m", 10.0)
        assert excinfo.value.type == ErrorType.NETWORK
        assert excinfo.value.retryable is True

    @pytest.mark.parametrize("raised,fragment", [
        (httpx.ConnectError("refused"), "Network error"),
        (httpx.ReadTimeout("slow"), "timed out"),
        (httpx.DecodingError("bad gzip"), "Network error"),
        (httpx.TooManyRedirects("redirect loop"), "Network error"),
    ])
    def test_transport_failure(self, raised, fragment):
        recorder = RecordingTransport(raises=raised)
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "k", "m", 10.0)
        assert excinfo.value.type == ErrorType.NETWORK
        assert fragment in excinfo.value.message

    def test_non_json_success_is_unknown(self):
        recorder = RecordingTransport(200, "not json")
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "k", "m", 10.0)
        assert excinfo.value.type == ErrorType.UNKNOWN

    def test_infinite_retry_after_is_still_rate_limit(self):
        recorder = RecordingTransport(429, {"error": {"message": "Slow down"}}, headers={"retry-after": "inf"})
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "k", "m", 10.0)
        assert excinfo.value.type == ErrorType.RATE_LIMIT
        assert excinfo.value.retry_after_ms is None

    @pytest.mark.parametrize("data", [
        {"content": "Hello", "usage": [20, 5]},
        {"content": [None, {"type": "text", "text": 7}], "usage": None},
        {"model": 3},
    ])
    def test_malformed_body_maps_to_empty(self, data):
        response = AnthropicProvider().parse_response(data, "claude-3-haiku-20240307")
        assert response.content == ""
        assert response.model == "claude-3-haiku-20240307"
        assert response.tokens_used.total_tokens == 0

    def test_stream_accumulates_chunks_and_usage(self):
        recorder = RecordingTransport(200, "event: message_start\n" + _sse(
            {"type": "message_start", "message": {"model": "claude-3-5-haiku-20241022",
                                                  "usage": {"input_tokens": 25, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " world"}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        ) + "data: {not json\n\n")
        received = []

        response = AnthropicProvider(recorder.transport).stream(
            AIRequest(prompt="Hi"), "sk-ant-key", "claude-3-5-haiku-20241022", 10.0, received.append
        )

        assert received == ["Hello", " world"]
        assert response.content == "Hello world"
        assert response.provider == "anthropic"
        assert response.tokens_used.to_dict() == {"prompt": 25, "completion": 7, "total": 32}
        assert recorder.last_json["stream"] is True
        assert recorder.requests[0].headers["x-api-key"] == "sk-ant-key"

    @pytest.mark.parametrize("error,error_type", [
        ({"type": "overloaded_error", "message": "Overloaded"}, ErrorType.RATE_LIMIT),
        ({"type": "api_error", "message": "Internal"}, ErrorType.UNKNOWN),
    ])
    def test_stream_error_event(self, error, error_type):
        recorder = RecordingTransport(200, _sse(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Part"}},
            {"type": "error", "error": error},
        ))
        received = []
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).stream(AIRequest(prompt="Hi"), "k", "m", 10.0, received.append)
        assert excinfo.value.type == error_type
        assert excinfo.value.message == error["message"]
        assert received == ["Part"]

    def test_stream_http_error_is_classified(self):
        recorder = RecordingTransport(401, {"error": {"type": "authentication_error", "message": "invalid x-api-key"}})
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).stream(AIRequest(prompt="Hi"), "k", "m", 10.0, lambda chunk: None)
        assert excinfo.value.type == ErrorType.AUTH

    def test_stream_transport_failure(self):
        recorder = RecordingTransport(raises=httpx.ConnectError("refused"))
        with pytest.raises(AIError) as excinfo:
            AnthropicProvider(recorder.transport).stream(AIRequest(prompt="Hi"), "k", "m", 10.0, lambda chunk: None)
        assert excinfo.value.type == ErrorType.NETWORK


class TestGoogleProvider:
    """Test Gemini adapter over a mock HTTP transport."""

    def test_dispatch_success(self):
        recorder = RecordingTransport(body={
            "candidates": [{"content": {"parts": [{"text": "Bonjour"}], "role": "model"}}],
            "usageMetadata": {"promptTokenCount": 8, "candidatesTokenCount": 2, "totalTokenCount": 10},
            "modelVersion": "gemini-1.5-flash-002",
        })
        adapter = GoogleProvider(recorder.transport)
        request = AIRequest(prompt="Translate hello", system_prompt="Translator", max_tokens=64, temperature=0.4)

        response = adapter.dispatch(request, "AIzaKey", "gemini-1.5-flash", 10.0)

        assert response.content == "Bonjour"
        assert response.model == "gemini-1.5-flash-002"
        assert response.tokens_used.to_dict() == {"prompt": 8, "completion": 2, "total": 10}

        sent = recorder.requests[0]
        assert str(sent.url).endswith("/models/gemini-1.5-flash:generateContent")
        assert sent.headers["x-goog-api-key"] == "AIzaKey"
        assert "key=" not in str(sent.url)
        assert recorder.last_json == {
            "contents": [{"role": "user", "parts": [{"text": "Translate hello"}]}],
            "generationConfig": {"maxOutputTokens": 64, "temperature": 0.4},
            "systemInstruction": {"parts": [{"text": "Translator"}]},
        }

    def test_invalid_key_response(self):
        recorder = RecordingTransport(400, {"error": {"code": 400, "message": "API key not valid.", "status": "INVALID_ARGUMENT"}})
        with pytest.raises(AIError) as excinfo:
            GoogleProvider(recorder.transport).dispatch(AIRequest(prompt="Hi"), "bad", "gemini-1.5-flash", 10.0)
        assert excinfo.value.type == ErrorType.AUTH

    def test_empty_candidates(self):
        response = GoogleProvider().parse_response({"candidates": []}, "gemini-1.5-pro")
        assert response.content == ""
        assert response.model == "gemini-1.5-pro"

    @pytest.mark.parametrize("data", [
        {"candidates": ["oops"], "usageMetadata": "x"},
        {"candidates": [{"content": ["x"]}]},
        {"candidates": [{"content": {"parts": "text"}}], "modelVersion": None},
    ])
    def test_malformed_body_maps_to_empty(self, data):
        response = GoogleProvider().parse_response(data, "gemini-1.5-pro")
        assert response.content == ""
        assert response.model == "gemini-1.5-pro"
        assert response.tokens_used.total_tokens == 0

    def test_stream_accumulates_chunks_and_usage(self):
        recorder = RecordingTransport(200, _sse(
            {"candidates": [{"content": {"parts": [{"text": "Bon"}], "role": "model"}}],
             "usageMetadata": {"promptTokenCount": 8}},
            {"candidates": [{"content": {"parts": [{"text": "jour"}], "role": "model"}}],
             "usageMetadata": {"promptTokenCount": 8, "candidatesTokenCount": 2, "totalTokenCount": 10},
             "modelVersion": "gemini-1.5-flash-002"},
        ))
        received = []

        response = GoogleProvider(recorder.transport).stream(
            AIRequest(prompt="Translate hello"), "AIzaKey", "gemini-1.5-flash", 10.0, received.append
        )

        assert received == ["Bon", "jour"]
        assert response.content == "Bonjour"
        assert response.model == "gemini-1.5-flash-002"
        assert response.tokens_used.to_dict() == {"prompt": 8, "completion": 2, "total": 10}
        sent = recorder.requests[0]
        assert sent.url.path.endswith("/models/gemini-1.5-flash:streamGenerateContent")
        assert sent.url.params["alt"] == "sse"
        assert sent.headers["x-goog-api-key"] == "AIzaKey"


class TestProviderGateway:
    """Test gateway provider selection, validation and dispatch."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.credentials = CredentialStore(BlobRepository(os.path.join(self.temp_dir, "test.db")))
        self.stub = StubAdapter()
        self.recorder = RecordingTransport(body={
            "content": [{"type": "text", "text": "from claude"}],
            "usage": {"input_tokens": 4, "output_tokens": 1},
        })
        self.adapters = {"openai": self.stub, "anthropic": AnthropicProvider(self.recorder.transport)}
        self.gateway = ProviderGateway(self.credentials, GatewayConfig(timeout_seconds=12.5), adapters=self.adapters)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_default_adapters_registry(self):
        assert set(default_adapters()) == {"openai", "anthropic", "google"}

    def test_unknown_default_provider_rejected(self):
        with pytest.raises(ValueError, match="Unsupported provider"):
            ProviderGateway(self.credentials, GatewayConfig(default_provider="mistral"))

    @pytest.mark.parametrize("kwargs", [{"default_provider": " "}, {"timeout_seconds": 0}])
    def test_invalid_gateway_config(self, kwargs):
        with pytest.raises(ValueError):
            GatewayConfig(**kwargs)

    def test_missing_key_is_auth_error(self):
        with pytest.raises(AIError) as excinfo:
            self.gateway.complete(AIRequest(prompt="Hi"))
        assert excinfo.value.type == ErrorType.AUTH
        assert excinfo.value.retryable is False
        assert "openai" in excinfo.value.message
        assert self.stub.calls == []

    def test_complete_uses_stored_key_model_and_timeout(self):
        self.credentials.set_key("openai", "sk-" + "a" * 30)
        response = self.gateway.complete(AIRequest(prompt="Hi"))

        assert response.content == "ok"
        request, api_key, model, timeout = self.stub.calls[0]
        assert request.prompt == "Hi"
        assert api_key == "sk-" + "a" * 30
        assert model == "stub-model"
        assert timeout == 12.5

    def test_complete_with_named_provider(self):
        self.credentials.set_key("anthropic", "sk-ant-" + "b" * 30)
        response = self.gateway.complete(AIRequest(prompt="Hi"), provider="Anthropic")
        assert response.content == "from claude"
        assert response.provider == "anthropic"
        assert self.gateway.get_provider() == "openai"
        assert self.recorder.last_json["model"] == AnthropicProvider.default_model

    def test_provider_error_propagates(self):
        self.stub.error = AIError(ErrorType.NETWORK, "down", retryable=True)
        self.credentials.set_key("openai", "sk-" + "a" * 30)
        with pytest.raises(AIError) as excinfo:
            self.gateway.complete(AIRequest(prompt="Hi"))
        assert excinfo.value is self.stub.error

    @pytest.mark.parametrize("request_obj", [
        AIRequest(prompt=""),
        AIRequest(prompt="   "),
        AIRequest(prompt="Hi", max_tokens=0),
        AIRequest(prompt="Hi", max_tokens=True),
        AIRequest(prompt="Hi", temperature=2.5),
        AIRequest(prompt="Hi", temperature=-0.1),
        AIRequest(prompt="Hi", system_prompt=42),
        "Hi",
    ])
    def test_invalid_request_rejected_before_dispatch(self, request_obj):
        self.credentials.set_key("openai", "sk-" + "a" * 30)
        with pytest.raises(AIError) as excinfo:
            self.gateway.complete(request_obj)
        assert excinfo.value.type == ErrorType.VALIDATION
        assert self.stub.calls == []

    def test_unknown_provider_is_validation_error(self):
        with pytest.raises(AIError) as excinfo:
            self.gateway.complete(AIRequest(prompt="Hi"), provider="mistral")
        assert excinfo.value.type == ErrorType.VALIDATION
        with pytest.raises(AIError):
            self.gateway.set_provider("mistral")

    def test_provider_and_model_selection(self):
        self.gateway.set_model("stub-large")
        assert self.gateway.get_model() == "stub-large"

        self.gateway.set_provider("ANTHROPIC")
        assert self.gateway.get_provider() == "anthropic"
        assert self.gateway.get_model() == AnthropicProvider.default_model
        assert self.gateway.get_available_models() == list(AnthropicProvider.models)

        self.gateway.set_provider("openai")
        assert self.gateway.get_model() == "stub-model"

    def test_set_model_rejects_unknown_model(self):
        with pytest.raises(AIError) as excinfo:
            self.gateway.set_model("gpt-99")
        assert excinfo.value.type == ErrorType.VALIDATION

    def test_configured_model_override(self):
        gateway = ProviderGateway(
            self.credentials,
            GatewayConfig(models={"anthropic": "claude-3-opus-20240229"}),
            adapters=self.adapters,
        )
        assert gateway.get_model("anthropic") == "claude-3-opus-20240229"
        assert gateway.get_model() == "stub-model"

    def test_is_available(self):
        assert self.gateway.is_available() is False
        self.credentials.set_key("anthropic", "sk-ant-" + "b" * 30)
        assert self.gateway.is_available() is False
        assert self.gateway.is_available("anthropic") is True

    def test_estimate_tokens_uses_configured_ratio(self):
        gateway = ProviderGateway(self.credentials, adapters=self.adapters, chars_per_token=2)
        assert gateway.estimate_tokens("abcde") == 3
        assert self.gateway.estimate_tokens("abcde") == 2

    def test_stream_complete_falls_back_to_single_chunk(self):
        self.credentials.set_key("openai", "sk-" + "a" * 30)
        received = []
        response = self.gateway.stream_complete(AIRequest(prompt="Hi"), received.append)
        assert received == ["ok"]
        assert response.content == "ok"
        assert self.stub.calls[0][3] == 12.5

    def test_stream_complete_with_named_provider(self):
        recorder = RecordingTransport(200, _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 4}}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "from "}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "claude"}},
            {"type": "message_delta", "usage": {"output_tokens": 2}},
        ))
        gateway = ProviderGateway(self.credentials, adapters={
            "openai": self.stub, "anthropic": AnthropicProvider(recorder.transport),
        })
        self.credentials.set_key("anthropic", "sk-ant-" + "b" * 30)
        received = []

        response = gateway.stream_complete(AIRequest(prompt="Hi"), received.append, provider="anthropic")

        assert received == ["from ", "claude"]
        assert response.content == "from claude"
        assert response.tokens_used.to_dict() == {"prompt": 4, "completion": 2, "total": 6}
        assert response.model == AnthropicProvider.default_model

    def test_stream_complete_rejects_missing_callback(self):
        self.credentials.set_key("openai", "sk-" + "a" * 30)
        with pytest.raises(AIError) as excinfo:
            self.gateway.stream_complete(AIRequest(prompt="Hi"), None)
        assert excinfo.value.type == ErrorType.VALIDATION
        assert self.stub.calls == []

    def test_stream_complete_missing_key_is_auth_error(self):
        with pytest.raises(AIError) as excinfo:
            self.gateway.stream_complete(AIRequest(prompt="Hi"), lambda chunk: None)
        assert excinfo.value.type == ErrorType.AUTH
