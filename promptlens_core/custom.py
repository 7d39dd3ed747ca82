"""
Custom - Free-text suggestion requests ("make it sound more ominous")

A custom request skips strategy selection and the category cascade: one
completion, then the same sanitize and diversity filters as regular
requests. Identical concurrent requests share one computation through the
in-flight registry, and non-empty results are cached under the document
prefix so invalidation covers them too.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-08
"""

import asyncio
import logging
import time

from promptlens_core.errors import GenerationFailure, ProviderError
from promptlens_core.filters import diversity_metrics
from promptlens_core.llm_client import CompletionOptions, parse_candidates
from promptlens_core.pipeline import PipelineContext
from promptlens_core.prompts import CUSTOM_CATEGORY, build_custom_prompt, build_custom_user_message
from promptlens_core.types import (
    Candidate,
    CustomSuggestionRequest,
    Diagnostics,
    SuggestionResult,
    SuggestionSource,
)

logger = logging.getLogger(__name__)

CUSTOM_COUNT = 12


class CustomSuggestionService:
    """
    Serves CustomSuggestionRequest objects against a PipelineContext.

    Args:
        context: shared pipeline components (provider, filters, cache, registry)
        count: candidates asked from the model
    """

    def __init__(self, context: PipelineContext, count: int = CUSTOM_COUNT):
        self.context = context
        self.count = count

    async def suggest(self, req: CustomSuggestionRequest) -> SuggestionResult:
        """
        Suggestions satisfying req.custom_request.

        Raises:
            ValidationError: malformed request
            GenerationFailure: the provider failed or returned no parsable list
        """
        req.validate()
        registry = self.context.registry
        entry, created = registry.acquire(req.identity(), lambda: asyncio.ensure_future(self._compute(req)))
        if not created:
            logger.debug("Custom request joined an in-flight computation")
        try:
            return await asyncio.shield(entry.task)
        finally:
            registry.release(entry)

    async def _compute(self, req: CustomSuggestionRequest) -> SuggestionResult:
        ctx = self.context
        start = time.perf_counter()
        key = ctx.key_factory.build_custom_key(req)

        cached, tier = await ctx.cache.get(key)
        if cached is not None:
            result = cached.with_source(
                SuggestionSource.CACHE, cache_tier=tier, cache_key=key, latency_ms=self._elapsed(start)
            )
            ctx.monitor.record_result(result.source.value, result.diagnostics.latency_ms)
            return result

        config = ctx.config
        options = CompletionOptions(
            user_message=build_custom_user_message(req, self.count),
            max_tokens=config.llm.max_tokens,
            temperature=config.generation.standard_temperature,
            json_mode=config.llm.json_mode,
            timeout_ms=config.llm.timeout_ms,
        )
        try:
            completion = await ctx.engine.provider.complete(build_custom_prompt(req, self.count), options)
            raw = parse_candidates(completion.content)
        except ProviderError as e:
            ctx.monitor.record_error("custom_generation")
            logger.warning(f"Custom suggestion generation failed: {e}")
            raise GenerationFailure(f"Custom suggestion generation failed: {e}") from e

        cascade = ctx.cascade
        sanitized = cascade.sanitizer.sanitize(raw, req.highlighted_text)
        diverse = cascade.diversity.filter(sanitized)
        suggestions = tuple(Candidate(text=c.text, category=CUSTOM_CATEGORY) for c in diverse[:cascade.max_suggestions])

        diagnostics = Diagnostics(
            strategy="custom",
            stage_counts={"raw": len(raw), "sanitized": len(sanitized), "diverse": len(diverse)},
            cache_key=key,
            latency_ms=self._elapsed(start),
            diversity=diversity_metrics([c.text for c in suggestions]),
        )
        if not suggestions:
            diagnostics.reason = "no_acceptable_candidates"
        result = SuggestionResult(suggestions=suggestions, source=SuggestionSource.GENERATED, diagnostics=diagnostics)

        if suggestions:
            await ctx.cache.set(key, result, config.cache.ttl)
        ctx.monitor.record_result(result.source.value, diagnostics.latency_ms)
        logger.info(f"{len(suggestions)} custom suggestions in {diagnostics.latency_ms}ms")
        return result

    @staticmethod
    def _elapsed(start: float) -> float:
        return round((time.perf_counter() - start) * 1000.0, 1)
