"""
Generation - Contrastive and standard suggestion generation

LLMs sampled repeatedly at one low temperature collapse onto a handful of
near-identical outputs. The contrastive strategy asks for small batches at
increasing temperature, each told to avoid what earlier batches produced.
The standard strategy is a single call and serves as the fallback.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from promptlens_core.errors import GenerationFailure, ProviderError
from promptlens_core.llm_client import CompletionOptions, LLMProvider, parse_candidates
from promptlens_core.prompts import (
    PLACEHOLDER_FILL,
    SPAN_REPLACEMENT,
    NegativeConstraintMode,
    PromptTemplate,
    build_negative_constraint,
    build_system_prompt,
    build_user_message,
    with_negative_constraint,
)
from promptlens_core.types import Candidate, SuggestionRequest

logger = logging.getLogger(__name__)

DraftCallback = Callable[[List[Candidate]], Awaitable[None]]


@dataclass
class GenerationOutcome:
    """Raw candidates plus how they were produced."""
    candidates: List[Candidate]
    strategy: str
    fell_back_to_standard: bool = False
    batch_sizes: List[int] = field(default_factory=list)
    latency_ms: float = 0.0


@dataclass
class CallSettings:
    """Per-call provider settings shared by all strategies."""
    max_tokens: int = 512
    json_mode: bool = True
    timeout_ms: int = 2500


class GenerationStrategy(ABC):
    """A way of turning one request into raw candidates."""

    name: str = "strategy"

    def __init__(self, provider: LLMProvider, settings: CallSettings, template: PromptTemplate = SPAN_REPLACEMENT):
        self.provider = provider
        self.settings = settings
        self.template = template

    async def _call(
        self,
        req: SuggestionRequest,
        count: int,
        temperature: float,
        constraint: Optional[str],
    ) -> List[Candidate]:
        system_prompt = with_negative_constraint(build_system_prompt(req, count, self.template), constraint)
        options = CompletionOptions(
            user_message=build_user_message(req, count),
            max_tokens=self.settings.max_tokens,
            temperature=temperature,
            json_mode=self.settings.json_mode,
            timeout_ms=self.settings.timeout_ms,
        )
        completion = await self.provider.complete(system_prompt, options)
        return parse_candidates(completion.content)[:count]

    @abstractmethod
    async def run(
        self,
        req: SuggestionRequest,
        mode: NegativeConstraintMode,
        avoid: Sequence[str],
        on_draft: Optional[DraftCallback],
    ) -> GenerationOutcome:
        pass


class ContrastiveStrategy(GenerationStrategy):
    """
    Batches at escalating temperature with negative constraints.

    Batch 1 is a hard dependency. With a parallel-capable provider, the
    remaining batches run concurrently, each constrained against batch 1;
    otherwise they run in order, each constrained against all prior batches.
    """

    name = "contrastive"

    def __init__(
        self,
        provider: LLMProvider,
        settings: CallSettings,
        batch_sizes: Sequence[int] = (4, 4, 4),
        temperatures: Sequence[float] = (0.4, 0.5, 0.6),
        template: PromptTemplate = SPAN_REPLACEMENT,
    ):
        super().__init__(provider, settings, template)
        self.batch_sizes = list(batch_sizes)
        self.temperatures = list(temperatures)

    async def run(self, req, mode, avoid, on_draft) -> GenerationOutcome:
        first = await self._call(
            req,
            self.batch_sizes[0],
            self.temperatures[0],
            build_negative_constraint(avoid, mode),
        )
        batches = [first]
        logger.debug(f"Contrastive batch 1: {[c.text for c in first]}")
        if on_draft is not None:
            await on_draft(list(first))

        rest = list(zip(self.batch_sizes[1:], self.temperatures[1:]))
        if self.provider.supports_parallel and len(rest) > 1:
            prior = list(avoid) + [c.text for c in first]
            constraint = build_negative_constraint(prior, mode)
            tasks = [
                asyncio.ensure_future(self._call(req, size, temp, constraint))
                for size, temp in rest
            ]
            try:
                batches.extend(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise
        else:
            for size, temp in rest:
                prior = list(avoid) + [c.text for batch in batches for c in batch]
                batches.append(await self._call(req, size, temp, build_negative_constraint(prior, mode)))

        combined = [c for batch in batches for c in batch]
        return GenerationOutcome(
            candidates=combined,
            strategy=self.name,
            batch_sizes=[len(b) for b in batches],
        )


class StandardStrategy(GenerationStrategy):
    """Single call asking for count (4-8) candidates."""

    name = "standard"

    def __init__(
        self,
        provider: LLMProvider,
        settings: CallSettings,
        count: int = 6,
        temperature: float = 0.7,
        template: PromptTemplate = SPAN_REPLACEMENT,
    ):
        super().__init__(provider, settings, template)
        self.count = count
        self.temperature = temperature

    async def run(self, req, mode, avoid, on_draft) -> GenerationOutcome:
        candidates = await self._call(req, self.count, self.temperature, build_negative_constraint(avoid, mode))
        if on_draft is not None:
            await on_draft(list(candidates))
        return GenerationOutcome(candidates=candidates, strategy=self.name, batch_sizes=[len(candidates)])


class GenerationEngine:
    """
    Produces raw candidates for a request.

    The strategy is chosen once per request from provider capability. A
    contrastive failure (provider error, malformed JSON) falls back to the
    standard strategy; only a standard failure raises GenerationFailure.
    """

    def __init__(
        self,
        provider: LLMProvider,
        settings: Optional[CallSettings] = None,
        contrastive_enabled: bool = True,
        batch_sizes: Sequence[int] = (4, 4, 4),
        temperatures: Sequence[float] = (0.4, 0.5, 0.6),
        standard_count: int = 6,
        standard_temperature: float = 0.7,
        monitor=None,
    ):
        self.provider = provider
        self.settings = settings or CallSettings()
        self.contrastive_enabled = contrastive_enabled
        self.batch_sizes = list(batch_sizes)
        self.temperatures = list(temperatures)
        self.standard_count = standard_count
        self.standard_temperature = standard_temperature
        self.monitor = monitor
        self.invocations = 0

    @classmethod
    def from_config(cls, provider: LLMProvider, config, monitor=None) -> "GenerationEngine":
        """Build from PromptLensConfig."""
        gen = config.generation
        return cls(
            provider,
            settings=CallSettings(
                max_tokens=config.llm.max_tokens,
                json_mode=config.llm.json_mode,
                timeout_ms=config.llm.timeout_ms,
            ),
            contrastive_enabled=gen.contrastive_enabled,
            batch_sizes=gen.batch_sizes,
            temperatures=gen.temperatures,
            standard_count=gen.standard_count,
            standard_temperature=gen.standard_temperature,
            monitor=monitor,
        )

    def select_strategy(self, template: PromptTemplate = SPAN_REPLACEMENT) -> GenerationStrategy:
        if self.contrastive_enabled and self.provider.supports_batch:
            return ContrastiveStrategy(self.provider, self.settings, self.batch_sizes, self.temperatures, template)
        return self._standard(template)

    def _standard(self, template: PromptTemplate = SPAN_REPLACEMENT) -> StandardStrategy:
        return StandardStrategy(
            self.provider, self.settings, self.standard_count, self.standard_temperature, template
        )

    async def generate(
        self,
        req: SuggestionRequest,
        mode: NegativeConstraintMode = NegativeConstraintMode.STRICT,
        avoid: Sequence[str] = (),
        on_draft: Optional[DraftCallback] = None,
        placeholder: bool = False,
    ) -> GenerationOutcome:
        """
        Generate raw candidates.

        Placeholders are asked for concrete values to fill the slot instead
        of rewrites of the phrase.

        Raises:
            GenerationFailure: when both strategies failed
        """
        self.invocations += 1
        start = time.perf_counter()
        template = PLACEHOLDER_FILL if placeholder else SPAN_REPLACEMENT
        strategy = self.select_strategy(template)
        fell_back = False

        if isinstance(strategy, ContrastiveStrategy):
            try:
                outcome = await strategy.run(req, mode, avoid, on_draft)
                return self._finish(outcome, start)
            except ProviderError as e:
                logger.warning(f"Contrastive generation failed ({e.reason}: {e}), falling back to standard")
                if self.monitor is not None:
                    self.monitor.record_fallback("standard")
                strategy = self._standard(template)
                fell_back = True

        try:
            outcome = await strategy.run(req, mode, avoid, on_draft)
        except ProviderError as e:
            logger.error(f"Standard generation failed: {e}")
            raise GenerationFailure(f"Generation failed: {e}") from e
        outcome.fell_back_to_standard = fell_back
        return self._finish(outcome, start)

    def _finish(self, outcome: GenerationOutcome, start: float) -> GenerationOutcome:
        outcome.latency_ms = round((time.perf_counter() - start) * 1000.0, 1)
        logger.info(
            f"Generated {len(outcome.candidates)} raw candidates via {outcome.strategy} "
            f"in {outcome.latency_ms}ms (batches={outcome.batch_sizes})"
        )
        if self.monitor is not None:
            self.monitor.record_generation(outcome.strategy, outcome.latency_ms, len(outcome.candidates))
        return outcome
