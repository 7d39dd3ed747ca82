"""
Tests for LLM Providers and Completion Parsing

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-06
"""

import json

import httpx
import pytest

from promptlens_core.config import LLMConfig
from promptlens_core.errors import MalformedCompletion, ProviderError
from promptlens_core.llm_client import (
    CompletionOptions,
    OllamaProvider,
    OpenAICompatibleProvider,
    create_provider,
    extract_json_payload,
    parse_candidates,
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestExtractJsonPayload:
    """Tests for extract_json_payload()."""

    def test_plain_array(self):
        """Test a bare JSON array."""
        assert extract_json_payload('["a", "b"]') == ["a", "b"]

    def test_code_fence(self):
        """Test fenced JSON is unwrapped."""
        assert extract_json_payload('```json\n[{"text": "a"}]\n```') == [{"text": "a"}]

    def test_surrounding_prose(self):
        """Test JSON embedded in prose is recovered."""
        text = 'Here are options: [{"text": "blue [hour]"}, {"text": "dusk"}] hope this helps'
        assert extract_json_payload(text) == [{"text": "blue [hour]"}, {"text": "dusk"}]

    def test_no_json(self):
        """Test text without JSON yields None."""
        assert extract_json_payload("sunset, neon, dusk") is None

    def test_deeply_nested_json(self):
        """Test pathologically nested input is treated as no JSON."""
        assert extract_json_payload("[" * 100000 + "]" * 100000) is None
        assert extract_json_payload("ok: " + "{\"a\":" * 50000 + "1" + "}" * 50000) is None


class TestParseCandidates:
    """Tests for parse_candidates()."""

    def test_objects(self):
        """Test {text, category} objects."""
        candidates = parse_candidates('[{"text": "sunset", "category": "lighting.time"}, {"text": "neon"}]')
        assert [c.text for c in candidates] == ["sunset", "neon"]
        assert candidates[0].category == "lighting.time"
        assert candidates[1].category is None

    def test_strings(self):
        """Test a plain list of strings."""
        assert [c.text for c in parse_candidates('["sunset", "neon"]')] == ["sunset", "neon"]

    @pytest.mark.parametrize("key", ["suggestions", "options", "alternatives", "replacements"])
    def test_wrapped_list(self, key):
        """Test JSON mode objects wrapping the list."""
        content = json.dumps({key: [{"text": "sunset"}, "neon"]})
        assert [c.text for c in parse_candidates(content)] == ["sunset", "neon"]

    def test_single_object(self):
        """Test a single suggestion object."""
        assert [c.text for c in parse_candidates('{"text": "sunset"}')] == ["sunset"]

    def test_skips_unusable_items(self):
        """Test items without text are skipped."""
        candidates = parse_candidates('[{"label": "x"}, 3, {"suggestion": "neon"}]')
        assert [c.text for c in candidates] == ["neon"]

    def test_deeply_nested_is_malformed(self):
        """Test nesting past the recursion limit raises MalformedCompletion, not RecursionError."""
        with pytest.raises(MalformedCompletion):
            parse_candidates("[" * 100000 + "]" * 100000)

    @pytest.mark.parametrize("content", ["", "no json here", '{"note": "sorry"}', "42"])
    def test_malformed(self, content):
        """Test unusable completions raise MalformedCompletion."""
        with pytest.raises(MalformedCompletion) as exc:
            parse_candidates(content)
        assert isinstance(exc.value, ProviderError)
        assert exc.value.reason == "malformed_completion"


class TestOllamaProvider:
    """Tests for OllamaProvider over a mocked transport."""

    @pytest.mark.asyncio
    async def test_chat_request(self):
        """Test request payload and completion extraction."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"message": {"content": '["sunset"]'}, "prompt_eval_count": 12, "eval_count": 5},
            )

        provider = OllamaProvider(model="qwen2.5:7b", client=mock_client(handler))
        completion = await provider.complete(
            "system prompt", CompletionOptions(user_message="Suggest 4", temperature=0.4, max_tokens=128)
        )

        assert completion.content == '["sunset"]'
        assert completion.usage == {"prompt_tokens": 12, "completion_tokens": 5}
        assert seen["url"] == "http://localhost:11434/api/chat"
        body = seen["body"]
        assert body["model"] == "qwen2.5:7b"
        assert body["format"] == "json"
        assert body["stream"] is False
        assert body["options"] == {"temperature": 0.4, "num_predict": 128}
        assert body["messages"][0] == {"role": "system", "content": "system prompt"}

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Test HTTP errors become ProviderError with status code."""
        provider = OllamaProvider(client=mock_client(lambda request: httpx.Response(500, text="boom")))
        with pytest.raises(ProviderError) as exc:
            await provider.complete("s", CompletionOptions(user_message="u"))
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_empty_completion(self):
        """Test an empty message is a provider error."""
        provider = OllamaProvider(client=mock_client(lambda request: httpx.Response(200, json={"message": {}})))
        with pytest.raises(ProviderError):
            await provider.complete("s", CompletionOptions(user_message="u"))

    @pytest.mark.asyncio
    async def test_transport_error_retried_once(self):
        """Test a transient connection error is retried."""
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"message": {"content": '["neon"]'}})

        provider = OllamaProvider(client=mock_client(handler))
        completion = await provider.complete("s", CompletionOptions(user_message="u"))
        assert completion.content == '["neon"]'
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_persistent_transport_error(self):
        """Test repeated transport errors become ProviderError."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OllamaProvider(client=mock_client(handler))
        with pytest.raises(ProviderError):
            await provider.complete("s", CompletionOptions(user_message="u"))


class TestOpenAICompatibleProvider:
    """Tests for OpenAICompatibleProvider over a mocked transport."""

    @pytest.mark.asyncio
    async def test_chat_completion(self):
        """Test payload, auth header and content extraction."""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": '{"suggestions": ["dusk"]}'}}],
                    "usage": {"prompt_tokens": 30, "completion_tokens": 8},
                },
            )

        provider = OpenAICompatibleProvider(
            model="gpt-4o-mini", base_url="https://llm.example/", api_key="sk-test", client=mock_client(handler)
        )
        completion = await provider.complete("s", CompletionOptions(user_message="u", temperature=0.6))

        assert seen["url"] == "https://llm.example/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["body"]["temperature"] == 0.6
        assert completion.usage == {"prompt_tokens": 30, "completion_tokens": 8}
        assert [c.text for c in parse_candidates(completion.content)] == ["dusk"]

    @pytest.mark.asyncio
    async def test_missing_choices(self):
        """Test a response without choices is a provider error."""
        provider = OpenAICompatibleProvider(client=mock_client(lambda request: httpx.Response(200, json={})))
        with pytest.raises(ProviderError):
            await provider.complete("s", CompletionOptions(user_message="u"))


class TestCreateProvider:
    """Tests for create_provider()."""

    def test_ollama_default(self):
        """Test the default backend."""
        provider = create_provider(LLMConfig())
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "qwen2.5:7b"

    def test_openai_backend(self):
        """Test the OpenAI-compatible backend."""
        provider = create_provider(
            LLMConfig(backend="openai", model="gpt-4o-mini", base_url="https://api.openai.com",
                      supports_parallel=False)
        )
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.supports_parallel is False
