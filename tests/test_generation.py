"""
Tests for Prompts and the Generation Engine

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-06
"""

import pytest

from promptlens_core.errors import GenerationFailure, MalformedCompletion, ProviderError
from promptlens_core.generation import (
    ContrastiveStrategy,
    GenerationEngine,
    StandardStrategy,
)
from promptlens_core.monitoring import SuggestionMonitor
from promptlens_core.prompts import (
    PLACEHOLDER_FILL,
    SPAN_REPLACEMENT,
    NegativeConstraintMode,
    build_negative_constraint,
    build_system_prompt,
    build_user_message,
    with_negative_constraint,
)

from conftest import FakeProvider, build_request

BATCH_1 = ["amber meadow", "brisk harbor", "cobalt canyon", "dusty orchard"]
BATCH_2 = ["emerald lagoon", "faded terrace", "gilded prairie", "hollow glacier"]
BATCH_3 = ["ivory alley", "jagged bazaar", "keen chapel", "lush dune"]


def avoid_section(system_prompt: str) -> str:
    marker = "\n\nAVOID: "
    return system_prompt.split(marker, 1)[1] if marker in system_prompt else ""


class TestPrompts:
    """Tests for prompt and constraint builders."""

    def test_system_prompt_content(self):
        """Test the prompt carries highlight, context, slot and count."""
        req = build_request(semantic_category="lighting.time")
        prompt = build_system_prompt(req, 4)
        assert 'HIGHLIGHTED PHRASE TO REPLACE: "golden hour"' in prompt
        assert "[golden hour]" in prompt
        assert "Slot: lighting.time" in prompt
        assert "Provide 4 replacements." in prompt
        assert '"category":"lighting.time"' in prompt

    def test_user_message(self):
        """Test the user turn names count and highlight."""
        assert build_user_message(build_request(), 6) == 'Suggest 6 alternatives for "golden hour" (general).'

    def test_no_constraint_without_history(self):
        """Test nothing to avoid means no constraint."""
        assert build_negative_constraint([]) is None
        assert build_negative_constraint(["", ""]) is None
        assert with_negative_constraint("base", None) == "base"

    def test_strict_constraint(self):
        """Test strict mode forbids similar concepts."""
        constraint = build_negative_constraint(["sunset", "neon"])
        assert constraint == 'Do not use concepts, phrases, or visual approaches similar to: "sunset", "neon"'

    def test_relaxed_constraint(self):
        """Test relaxed mode only forbids exact repeats."""
        constraint = build_negative_constraint(["sunset"], NegativeConstraintMode.RELAXED)
        assert constraint == 'Do not repeat these exact phrases: "sunset"'

    def test_constraint_appended(self):
        """Test constraint is appended as an AVOID block."""
        assert with_negative_constraint("base", "X") == "base\n\nAVOID: X\nGenerate completely different options."


class TestContrastiveStrategy:
    """Tests for contrastive batch generation."""

    @pytest.mark.asyncio
    async def test_sequential_batches_avoid_all_prior_output(self):
        """Test each batch is constrained against every earlier batch."""
        provider = FakeProvider(responses=[BATCH_1, BATCH_2, BATCH_3])
        engine = GenerationEngine(provider)

        outcome = await engine.generate(build_request())

        assert outcome.strategy == "contrastive"
        assert outcome.batch_sizes == [4, 4, 4]
        assert [c.text for c in outcome.candidates] == BATCH_1 + BATCH_2 + BATCH_3
        assert [opts.temperature for _, opts in provider.calls] == [0.4, 0.5, 0.6]

        first, second, third = (prompt for prompt, _ in provider.calls)
        assert avoid_section(first) == ""
        assert all(f'"{t}"' in avoid_section(second) for t in BATCH_1)
        assert all(f'"{t}"' in avoid_section(third) for t in BATCH_1 + BATCH_2)
        assert "Do not use concepts, phrases, or visual approaches similar to" in third

    @pytest.mark.asyncio
    async def test_parallel_batches_avoid_first_batch(self):
        """Test a parallel provider runs batches 2..n against batch 1 only."""
        provider = FakeProvider(responses=[BATCH_1, BATCH_2, BATCH_3], supports_parallel=True)
        outcome = await GenerationEngine(provider).generate(build_request())

        assert len(outcome.candidates) == 12
        second, third = (prompt for prompt, _ in provider.calls[1:])
        for prompt in (second, third):
            assert all(f'"{t}"' in avoid_section(prompt) for t in BATCH_1)
            assert not any(f'"{t}"' in avoid_section(prompt) for t in BATCH_2)

    @pytest.mark.asyncio
    async def test_draft_after_first_batch(self):
        """Test the draft callback fires once with batch 1."""
        drafts = []

        async def on_draft(candidates):
            drafts.append([c.text for c in candidates])

        provider = FakeProvider(responses=[BATCH_1, BATCH_2, BATCH_3])
        await GenerationEngine(provider).generate(build_request(), on_draft=on_draft)
        assert drafts == [BATCH_1]

    @pytest.mark.asyncio
    async def test_batches_truncated_to_requested_size(self):
        """Test a batch over its size is cut."""
        provider = FakeProvider(responses=[BATCH_1 + BATCH_2, BATCH_2, BATCH_3])
        outcome = await GenerationEngine(provider).generate(build_request())
        assert outcome.batch_sizes == [4, 4, 4]

    @pytest.mark.asyncio
    async def test_avoid_applies_to_first_batch(self):
        """Test caller-supplied texts to avoid reach batch 1 in relaxed mode."""
        provider = FakeProvider()
        await GenerationEngine(provider).generate(
            build_request(), mode=NegativeConstraintMode.RELAXED, avoid=["sunset"]
        )
        first_prompt = provider.calls[0][0]
        assert avoid_section(first_prompt).startswith('Do not repeat these exact phrases: "sunset"')


class TestGenerationEngine:
    """Tests for strategy selection and fallback."""

    def test_strategy_selection(self):
        """Test contrastive needs both configuration and provider support."""
        assert isinstance(GenerationEngine(FakeProvider()).select_strategy(), ContrastiveStrategy)
        assert isinstance(
            GenerationEngine(FakeProvider(supports_batch=False)).select_strategy(), StandardStrategy
        )
        assert isinstance(
            GenerationEngine(FakeProvider(), contrastive_enabled=False).select_strategy(), StandardStrategy
        )

    @pytest.mark.asyncio
    async def test_standard_single_call(self):
        """Test the standard strategy asks once for six candidates."""
        provider = FakeProvider(supports_batch=False)
        outcome = await GenerationEngine(provider).generate(build_request())
        assert provider.call_count == 1
        _, options = provider.calls[0]
        assert options.temperature == 0.7
        assert "Suggest 6 alternatives" in options.user_message
        assert outcome.strategy == "standard"
        assert len(outcome.candidates) == 6
        assert not outcome.fell_back_to_standard

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure",
        [ProviderError("HTTP 503", status_code=503), "I cannot help with that."],
    )
    async def test_contrastive_failure_falls_back(self, failure):
        """Test a failed or malformed batch falls back to standard."""
        monitor = SuggestionMonitor()
        provider = FakeProvider(responses=[BATCH_1, failure])
        engine = GenerationEngine(provider, monitor=monitor)

        outcome = await engine.generate(build_request())

        assert outcome.strategy == "standard"
        assert outcome.fell_back_to_standard
        assert provider.call_count == 3
        assert len(outcome.candidates) == 6
        assert monitor.metrics.get_counter("generation_fallback_total", labels={"kind": "standard"}) == 1

    @pytest.mark.asyncio
    async def test_both_strategies_fail(self):
        """Test GenerationFailure when standard fails too."""
        provider = FakeProvider(default=ProviderError("connection refused"))
        engine = GenerationEngine(provider)
        with pytest.raises(GenerationFailure) as exc:
            await engine.generate(build_request())
        assert exc.value.reason == "generation_failed"
        assert isinstance(exc.value.__cause__, ProviderError)
        assert engine.invocations == 1

    @pytest.mark.asyncio
    async def test_standard_malformed_fails(self):
        """Test a malformed standard completion is a generation failure."""
        provider = FakeProvider(default="no json at all", supports_batch=False)
        with pytest.raises(GenerationFailure) as exc:
            await GenerationEngine(provider).generate(build_request())
        assert isinstance(exc.value.__cause__, MalformedCompletion)

    @pytest.mark.asyncio
    async def test_generation_metrics(self):
        """Test latency and candidate counts are recorded per strategy."""
        monitor = SuggestionMonitor()
        await GenerationEngine(FakeProvider(), monitor=monitor).generate(build_request())
        metrics = monitor.metrics
        assert metrics.get_counter("generation_candidates_total", labels={"strategy": "contrastive"}) == 12
        assert metrics.get_histogram_stats("generation_latency_ms", labels={"strategy": "contrastive"})["count"] == 1

    @pytest.mark.asyncio
    async def test_deeply_nested_batch_falls_back(self):
        """Test a pathologically nested batch counts as malformed and falls back."""
        provider = FakeProvider(responses=[BATCH_1, "[" * 100000 + "]" * 100000])
        outcome = await GenerationEngine(provider).generate(build_request())
        assert outcome.strategy == "standard"
        assert outcome.fell_back_to_standard
        assert len(outcome.candidates) == 6

    @pytest.mark.asyncio
    async def test_placeholder_uses_fill_prompt(self):
        """Test placeholder requests are generated with the slot-filling prompt."""
        provider = FakeProvider(supports_batch=False)
        req = build_request(highlighted_text="wooden", context_after=" desk in the corner")
        await GenerationEngine(provider).generate(req, placeholder=True)
        system_prompt, _ = provider.calls[0]
        assert PLACEHOLDER_FILL.role in system_prompt
        assert SPAN_REPLACEMENT.role not in system_prompt

    @pytest.mark.asyncio
    async def test_placeholder_prompt_reaches_every_batch(self):
        """Test the contrastive batches and the fallback share the slot-filling prompt."""
        provider = FakeProvider(responses=[BATCH_1, ProviderError("HTTP 503")])
        req = build_request(highlighted_text="wooden", context_after=" desk in the corner")
        outcome = await GenerationEngine(provider).generate(req, placeholder=True)
        assert outcome.fell_back_to_standard
        assert all(PLACEHOLDER_FILL.role in prompt for prompt, _ in provider.calls)
