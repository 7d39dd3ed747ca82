"""
Pipeline - Cache read, generation, cascade and cache write for one request

PipelineContext bundles the shared, per-process components (cache,
in-flight registry, engine, cascade, key factory, metrics). It is passed
explicitly to every coordinator and pipeline instead of living in module
globals.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from promptlens_core.cache_keys import CacheKeyFactory
from promptlens_core.caching import FastTierCache, RedisSharedCache, SharedCacheBackend, TieredCache
from promptlens_core.cascade import FallbackCascade
from promptlens_core.config import PromptLensConfig
from promptlens_core.generation import GenerationEngine
from promptlens_core.llm_client import LLMProvider, create_provider
from promptlens_core.errors import SuggestionTimeoutError
from promptlens_core.monitoring import SuggestionMonitor
from promptlens_core.placeholders import is_placeholder_request
from promptlens_core.registry import InFlightRegistry
from promptlens_core.types import (
    Candidate,
    StageEvent,
    StageKind,
    SuggestionRequest,
    SuggestionResult,
    SuggestionSource,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[StageEvent], Awaitable[None]]


@dataclass
class PipelineContext:
    """Shared components of one serving process."""
    cache: TieredCache
    engine: GenerationEngine
    cascade: FallbackCascade
    key_factory: CacheKeyFactory = field(default_factory=CacheKeyFactory)
    registry: InFlightRegistry = field(default_factory=InFlightRegistry)
    monitor: SuggestionMonitor = field(default_factory=SuggestionMonitor)
    config: PromptLensConfig = field(default_factory=PromptLensConfig)

    @classmethod
    def from_config(
        cls,
        config: PromptLensConfig,
        provider: Optional[LLMProvider] = None,
        shared: Optional[SharedCacheBackend] = None,
        monitor: Optional[SuggestionMonitor] = None,
    ) -> "PipelineContext":
        """
        Wire every component from configuration.

        Args:
            config: PromptLensConfig
            provider: LLM provider (built from config.llm if None)
            shared: shared cache tier (Redis from config.cache.redis_url if None)
            monitor: metrics monitor
        """
        monitor = monitor or SuggestionMonitor()
        if shared is None and config.cache.redis_url:
            shared = RedisSharedCache(config.cache.redis_url)
        cache = TieredCache(
            fast=FastTierCache(max_size=config.cache.fast_max_size, default_ttl=config.cache.ttl),
            shared=shared,
            shared_ttl=config.cache.shared_ttl,
            monitor=monitor,
        )
        provider = provider or create_provider(config.llm)
        return cls(
            cache=cache,
            engine=GenerationEngine.from_config(provider, config, monitor=monitor),
            cascade=FallbackCascade.from_config(config, monitor=monitor),
            key_factory=CacheKeyFactory(
                namespace=config.cache.namespace,
                context_window=config.cache.context_window,
            ),
            monitor=monitor,
            config=config,
        )

    async def close(self):
        await self.cache.close()
        await self.engine.provider.close()


class SuggestionPipeline:
    """
    Runs one request end to end: cache read, generate, cascade, cache write.

    Only generated results are written to the cache; canned fallbacks are
    not, so the next request for the same key tries the model again.
    Cancellation while generating means no cache write.
    """

    def __init__(self, context: PipelineContext):
        self.context = context

    async def run(self, req: SuggestionRequest, on_event: Optional[EventSink] = None) -> SuggestionResult:
        ctx = self.context
        start = time.perf_counter()
        key = ctx.key_factory.build_key(req)

        if not req.debug:
            cached, tier = await ctx.cache.get(key)
            if cached is not None:
                result = cached.with_source(
                    SuggestionSource.CACHE,
                    cache_tier=tier,
                    cache_key=key,
                    latency_ms=self._elapsed(start),
                )
                ctx.monitor.record_result(result.source.value, result.diagnostics.latency_ms)
                logger.debug(f"Cache hit ({tier}) for {key}")
                await self._emit(on_event, StageEvent(StageKind.DONE, suggestions=result.suggestions, result=result))
                return result
        else:
            logger.info(f"Debug request, bypassing cache read for {key}")

        async def on_draft(candidates: List[Candidate]):
            draft = ctx.cascade.sanitizer.sanitize(candidates, req.highlighted_text)
            await self._emit(on_event, StageEvent(StageKind.DRAFT, suggestions=tuple(draft)))

        placeholder = is_placeholder_request(req)
        outcome = await ctx.engine.generate(
            req,
            on_draft=on_draft if on_event is not None else None,
            placeholder=placeholder,
        )

        async def regenerate(mode, avoid):
            return await ctx.engine.generate(req, mode=mode, avoid=avoid, placeholder=placeholder)

        result = await ctx.cascade.resolve(req, outcome, regenerate)
        if placeholder:
            result = replace(result, is_placeholder=True)
        result.diagnostics.cache_key = key
        result.diagnostics.latency_ms = self._elapsed(start)
        await self._emit(on_event, StageEvent(StageKind.CANDIDATES, suggestions=result.suggestions))

        if result.source == SuggestionSource.GENERATED and result.suggestions:
            await ctx.cache.set(key, result, ctx.config.cache.ttl)

        latency = result.diagnostics.latency_ms
        ctx.monitor.record_result(result.source.value, latency)
        budget = ctx.config.generation.latency_budget_ms
        if latency > budget:
            logger.warning(f"Suggestion latency {latency}ms exceeded budget {budget}ms ({outcome.strategy})")
        logger.info(
            f"{len(result.suggestions)} suggestions ({result.source.value}) for "
            f"{req.semantic_category} in {latency}ms"
        )
        await self._emit(on_event, StageEvent(StageKind.DONE, suggestions=result.suggestions, result=result))
        return result

    async def stream(self, req: SuggestionRequest, timeout_ms: Optional[int] = None) -> AsyncIterator[StageEvent]:
        """
        Run a request, yielding draft / candidates / done events as they happen.

        The computation goes through the in-flight registry: an identical
        request already running is joined, and only its final event is
        yielded. The whole stream is bounded by timeout_ms (the coordinator
        ceiling by default). Errors from the run are re-raised after
        already-emitted events are yielded. Closing the iterator early
        releases the computation, which is cancelled once nobody waits.

        Raises:
            SuggestionTimeoutError: no final event within timeout_ms
        """
        ctx = self.context
        timeout_ms = ctx.config.coordinator.timeout_ms if timeout_ms is None else timeout_ms
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        queue: "asyncio.Queue[StageEvent]" = asyncio.Queue()
        entry, created = ctx.registry.acquire(
            req.identity(), lambda: asyncio.ensure_future(self.run(req, on_event=queue.put))
        )
        task = entry.task
        if not created:
            logger.debug("Stream joined an in-flight computation")
        getter: Optional[asyncio.Future] = None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    ctx.registry.discard(entry)
                    ctx.monitor.record_error("timeout")
                    logger.warning(f"Suggestion stream timed out after {timeout_ms}ms")
                    raise SuggestionTimeoutError(timeout_ms=timeout_ms)

                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, task}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    event = getter.result()
                    yield event
                    if event.kind == StageKind.DONE:
                        return
                    continue

                getter.cancel()
                if not done:
                    continue
                while not queue.empty():
                    event = queue.get_nowait()
                    yield event
                    if event.kind == StageKind.DONE:
                        return
                result = task.result()
                if not created:
                    yield StageEvent(StageKind.DONE, suggestions=result.suggestions, result=result)
                return
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            ctx.registry.release(entry)

    @staticmethod
    async def _emit(sink: Optional[EventSink], event: StageEvent):
        if sink is not None:
            await sink(event)

    @staticmethod
    def _elapsed(start: float) -> float:
        return round((time.perf_counter() - start) * 1000.0, 1)
