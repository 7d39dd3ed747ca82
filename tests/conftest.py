"""
Pytest Configuration and Fixtures

Scripted LLM provider, in-memory shared cache tier and request builders
shared by the suggestion pipeline tests.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-06
"""

import asyncio
import json
import re
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from promptlens_core.caching import SharedCacheBackend
from promptlens_core.config import PromptLensConfig
from promptlens_core.errors import CacheUnavailable
from promptlens_core.llm_client import Completion, CompletionOptions, LLMProvider
from promptlens_core.pipeline import PipelineContext
from promptlens_core.types import SuggestionRequest

# Neutral vocabulary: no word matches a category term pattern, and no two
# generated phrases share a word within 30 consecutive candidates.
ADJECTIVES = [
    "amber", "brisk", "cobalt", "dusty", "emerald", "faded", "gilded", "hollow",
    "ivory", "jagged", "keen", "lush", "mossy", "narrow", "ornate", "pale",
    "quiet", "rusty", "scarlet", "tangled", "umber", "velvet", "weathered", "young",
    "zesty", "bronze", "crimson", "dense", "elegant", "frosty",
]
NOUNS = [
    "meadow", "harbor", "canyon", "orchard", "lagoon", "terrace", "prairie", "glacier",
    "alley", "bazaar", "chapel", "dune", "estuary", "fjord", "grove", "hamlet",
    "inlet", "jetty", "kiosk", "loft", "marsh", "nook", "oasis", "plaza",
    "quarry", "ravine", "summit", "tundra", "valley", "wharf",
]

_COUNT_RE = re.compile(r"Suggest (\d+) alternatives")


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeProvider(LLMProvider):
    """
    Scripted completion provider.

    Each call consumes the next scripted response: a list of texts (sent
    as a JSON array), a raw string, an exception instance (raised), or a
    callable(system_prompt, options) returning one of those. Once the
    script is exhausted, `default` answers; when `default` is None, fresh
    distinct phrases are generated for the requested count.
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        default: Any = None,
        delay: float = 0.0,
        supports_batch: bool = True,
        supports_parallel: bool = False,
    ):
        self.responses = list(responses or [])
        self.default = default
        self.delay = delay
        self.supports_batch = supports_batch
        self.supports_parallel = supports_parallel
        self.calls: List[Tuple[str, CompletionOptions]] = []
        self.completed = 0
        self.closed = False
        self._counter = 0

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def fresh_phrases(self, count: int) -> List[str]:
        phrases = []
        for _ in range(count):
            k = self._counter % len(ADJECTIVES)
            phrases.append(f"{ADJECTIVES[k]} {NOUNS[k]}")
            self._counter += 1
        return phrases

    async def complete(self, system_prompt: str, options: CompletionOptions) -> Completion:
        self.calls.append((system_prompt, options))
        response = self.responses.pop(0) if self.responses else self.default
        if self.delay:
            await asyncio.sleep(self.delay)
        if callable(response) and not isinstance(response, type):
            response = response(system_prompt, options)
        if response is None:
            match = _COUNT_RE.search(options.user_message)
            response = self.fresh_phrases(int(match.group(1)) if match else 4)
        if isinstance(response, BaseException):
            raise response
        self.completed += 1
        if isinstance(response, str):
            return Completion(content=response)
        return Completion(content=json.dumps(response))

    async def close(self):
        self.closed = True


class InMemorySharedCache(SharedCacheBackend):
    """
    Shared tier kept in a dict, TTLs honoured against an injectable clock.

    set_delay makes every write sleep before storing, like a slow network.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, set_delay: float = 0.0):
        self._clock = clock or time.monotonic
        self.set_delay = set_delay
        self.deletes: List[str] = []
        self.store: Dict[str, Tuple[str, float]] = {}
        self.ttls: Dict[str, float] = {}
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        item = self.store.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self.store[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: float):
        if self.set_delay:
            await asyncio.sleep(self.set_delay)
        self.store[key] = (value, self._clock() + ttl)
        self.ttls[key] = ttl

    async def delete(self, key: str):
        self.deletes.append(key)
        self.store.pop(key, None)

    async def scan_prefix(self, prefix: str) -> List[str]:
        return [k for k in self.store if k.startswith(prefix)]

    async def close(self):
        self.closed = True


class FailingSharedCache(SharedCacheBackend):
    """Shared tier that is always unreachable."""

    def __init__(self):
        self.attempts = 0

    async def _fail(self, *args):
        self.attempts += 1
        raise CacheUnavailable("connection refused")

    async def get(self, key):
        return await self._fail(key)

    async def set(self, key, value, ttl):
        await self._fail(key)

    async def delete(self, key):
        await self._fail(key)

    async def scan_prefix(self, prefix):
        return await self._fail(prefix)


def build_request(**overrides) -> SuggestionRequest:
    """A valid request with sensible defaults."""
    fields = {
        "highlighted_text": "golden hour",
        "context_before": "A woman walks along the pier at ",
        "context_after": ", waves crashing against the pilings.",
        "full_document_fingerprint": "doc-fp-1",
        "semantic_category": "general",
        "document_id": "doc-1",
    }
    fields.update(overrides)
    return SuggestionRequest(**fields)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def provider() -> FakeProvider:
    """Sequential, batch-capable provider answering with fresh phrases."""
    return FakeProvider()


@pytest.fixture
def shared_cache() -> InMemorySharedCache:
    return InMemorySharedCache()


@pytest.fixture
def config() -> PromptLensConfig:
    return PromptLensConfig()


@pytest.fixture
def context(config, provider, shared_cache) -> PipelineContext:
    """Pipeline context wired to the fake provider and in-memory shared tier."""
    return PipelineContext.from_config(config, provider=provider, shared=shared_cache)


@pytest.fixture
def make_request() -> Callable[..., SuggestionRequest]:
    return build_request
