"""
LLM Client - Completion providers for suggestion generation

Single boundary for all outbound LLM calls. Providers expose a
complete(system_prompt, options) coroutine plus capability flags used to
pick a generation strategy once per request.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from promptlens_core.errors import MalformedCompletion, ProviderError
from promptlens_core.resilience import RetryConfig, retry_async
from promptlens_core.types import Candidate

logger = logging.getLogger(__name__)

TRANSPORT_RETRY = RetryConfig(max_attempts=2, base_delay=0.05, retry_exceptions=(httpx.TransportError,))

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_LIST_KEYS = ("suggestions", "options", "alternatives", "replacements", "items")


@dataclass
class CompletionOptions:
    """Per-call options."""
    user_message: str
    max_tokens: int = 512
    temperature: float = 0.5
    json_mode: bool = True
    timeout_ms: int = 2500


@dataclass
class Completion:
    """Raw completion text plus token usage."""
    content: str
    usage: Dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """
    Abstract completion provider.

    Attributes:
        supports_batch: provider can serve several small sequential calls
            within the latency budget (enables the contrastive strategy)
        supports_parallel: provider accepts concurrent calls
    """

    name: str = "provider"
    supports_batch: bool = True
    supports_parallel: bool = True

    @abstractmethod
    async def complete(self, system_prompt: str, options: CompletionOptions) -> Completion:
        """Run one completion. Raises ProviderError."""
        pass

    async def close(self):
        pass


class _HTTPProvider(LLMProvider):
    """Shared httpx plumbing."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        supports_parallel: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.supports_parallel = supports_parallel
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry_async(TRANSPORT_RETRY)
    async def _post(self, path: str, payload: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        response = await self._client.post(
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers(),
            timeout=timeout_ms / 1000.0,
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned a non-JSON envelope: {e}") from e

    async def _request(self, path: str, payload: Dict[str, Any], timeout_ms: int) -> Dict[str, Any]:
        try:
            return await self._post(path, payload, timeout_ms)
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{self.name} HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e

    async def close(self):
        if self._owns_client:
            await self._client.aclose()


class OllamaProvider(_HTTPProvider):
    """Ollama chat API (/api/chat)."""

    name = "ollama"

    def __init__(self, model: str = "qwen2.5:7b", base_url: str = "http://localhost:11434", **kwargs):
        super().__init__(model, base_url, **kwargs)

    async def complete(self, system_prompt: str, options: CompletionOptions) -> Completion:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": options.user_message},
            ],
            "stream": False,
            "options": {"temperature": options.temperature, "num_predict": options.max_tokens},
        }
        if options.json_mode:
            payload["format"] = "json"

        data = await self._request("/api/chat", payload, options.timeout_ms)
        content = (data.get("message") or {}).get("content", "")
        if not content:
            raise ProviderError("ollama returned an empty completion")
        usage = {
            "prompt_tokens": int(data.get("prompt_eval_count", 0) or 0),
            "completion_tokens": int(data.get("eval_count", 0) or 0),
        }
        return Completion(content=content, usage=usage)


class OpenAICompatibleProvider(_HTTPProvider):
    """OpenAI-compatible chat completions API (/v1/chat/completions)."""

    name = "openai"

    def __init__(self, model: str = "gpt-4o-mini", base_url: str = "https://api.openai.com", **kwargs):
        super().__init__(model, base_url, **kwargs)

    async def complete(self, system_prompt: str, options: CompletionOptions) -> Completion:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": options.user_message},
            ],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._request("/v1/chat/completions", payload, options.timeout_ms)
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"openai response missing choices: {e}") from e
        if not content:
            raise ProviderError("openai returned an empty completion")
        usage = {k: int(v) for k, v in (data.get("usage") or {}).items() if isinstance(v, int)}
        return Completion(content=content, usage=usage)


def create_provider(llm_config: Any) -> LLMProvider:
    """
    Factory function to create a provider from LLMConfig.

    Args:
        llm_config: LLMConfig instance

    Returns:
        Configured LLMProvider
    """
    kwargs = {
        "api_key": llm_config.api_key,
        "supports_parallel": llm_config.supports_parallel,
    }
    if llm_config.backend == "openai":
        return OpenAICompatibleProvider(model=llm_config.model, base_url=llm_config.base_url, **kwargs)
    return OllamaProvider(model=llm_config.model, base_url=llm_config.base_url, **kwargs)


# =============================================================================
# Completion parsing
# =============================================================================

def extract_json_payload(text: str) -> Optional[Any]:
    """
    Extract the first JSON array or object from a text response.

    The model is told to answer with JSON only, but code fences and stray
    prose around the payload are common.
    """
    text = _FENCE_RE.sub("", text.strip())
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        pass

    starts = [i for i in (text.find("["), text.find("{")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    opener = text[start]
    closer = "]" if opener == "[" else "}"

    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(text[start:], start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start:i + 1])
                except (ValueError, RecursionError):
                    return None
    return None


def parse_candidates(content: str) -> List[Candidate]:
    """
    Parse a completion into candidates.

    Accepts a JSON array of strings or {"text", "category"} objects, or an
    object wrapping such an array under a common key.

    Raises:
        MalformedCompletion: when no candidate list can be recovered
    """
    payload = extract_json_payload(content or "")
    if isinstance(payload, dict):
        items = next((payload[k] for k in _LIST_KEYS if isinstance(payload.get(k), list)), None)
        if items is None:
            items = next((v for v in payload.values() if isinstance(v, list)), None)
        if items is None and isinstance(payload.get("text"), str):
            items = [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        items = None

    if items is None:
        raise MalformedCompletion("Completion is not a JSON candidate list", content=content or "")

    candidates = []
    for item in items:
        if isinstance(item, str):
            candidates.append(Candidate(text=item))
        elif isinstance(item, dict):
            text = item.get("text") or item.get("suggestion")
            if isinstance(text, str):
                category = item.get("category")
                candidates.append(Candidate(text=text, category=category if isinstance(category, str) else None))
    logger.debug(f"Parsed {len(candidates)} candidates from {len(items)} items")
    return candidates
