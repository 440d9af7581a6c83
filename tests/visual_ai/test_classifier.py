"""Tests for the SmartClassificationClient.

This module tests:
- Cache hits never reach a provider and cost nothing
- Fallback past unavailable, failing and slow providers
- Budget authorization before paid calls
- Degraded assessments when no provider answers
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from src.core.providers.base import (
    ProviderError,
    ProviderUnavailable,
    ResponseParseError,
    VisionProvider,
)
from src.core.providers.openai_provider import OpenAIVisionProvider
from src.services.ai_cost_tracker import BudgetConfig, BudgetExceeded, CostTracker
from src.services.vision_cache import VisionResultCache
from src.visual_ai.classifier import (
    SmartClassificationClient,
    degraded_assessment,
    infer_intent,
    map_ai_severity,
)
from src.visual_ai.models import (
    AISeverity,
    ChangeIntent,
    ClassificationRequest,
    Severity,
    VisionClassification,
)


def answer(severity: AISeverity = AISeverity.MODERATE, reasoning: str = "Header moved") -> VisionClassification:
    return VisionClassification(severity=severity, confidence=0.9, reasoning=reasoning, categories=["layout"])


class FakeProvider(VisionProvider):
    """Scriptable provider recording every classify call."""

    def __init__(
        self,
        provider_id: str,
        model: str,
        result=None,
        error: Exception | None = None,
        available: bool = True,
        delay: float = 0.0,
    ):
        super().__init__(model)
        self.provider_id = provider_id
        self.display_name = provider_id
        self.is_local = provider_id == "ollama"
        self.result = result if result is not None else answer()
        self.error = error
        self.available = available
        self.delay = delay
        self.calls = []
        self.closed = False

    async def is_available(self) -> bool:
        return self.available

    async def classify(self, baseline, current, context=None):
        self.calls.append((baseline, current, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.result):
            return self.result(context)
        return self.result

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def tracker(frozen_clock):
    return CostTracker(
        budget=BudgetConfig(daily_limit=Decimal("10"), monthly_limit=Decimal("200")),
        clock=frozen_clock,
    )


@pytest.fixture
def request_pair(white_png, changed_png):
    return ClassificationRequest(baseline=white_png, current=changed_png, test_name="home_desktop")


def make_client(settings, providers, tracker=None, cache=None):
    return SmartClassificationClient(
        settings=settings,
        providers=providers,
        cache=cache if cache is not None else VisionResultCache(),
        cost_tracker=tracker,
    )


class TestSeverityMapping:
    """Tests for the vision-to-fixed-scale mapping."""

    @pytest.mark.parametrize(
        "ai_severity,expected_severity,expected_intent",
        [
            (AISeverity.NONE, Severity.LOW, ChangeIntent.INTENTIONAL),
            (AISeverity.MINOR, Severity.LOW, ChangeIntent.INTENTIONAL),
            (AISeverity.MODERATE, Severity.MEDIUM, ChangeIntent.REGRESSION),
            (AISeverity.BREAKING, Severity.CRITICAL, ChangeIntent.REGRESSION),
        ],
    )
    def test_mapping(self, ai_severity, expected_severity, expected_intent):
        assert map_ai_severity(ai_severity) == expected_severity
        assert infer_intent(ai_severity) == expected_intent

    def test_degraded_assessment(self):
        assessment = degraded_assessment("nothing answered")

        assert assessment.intent == ChangeIntent.UNKNOWN
        assert assessment.severity == Severity.MEDIUM
        assert assessment.degraded is True
        assert assessment.error == "nothing answered"


class TestAnalyzeChange:
    """Tests for single-pair classification."""

    @pytest.mark.asyncio
    async def test_provider_answer_is_charged_and_mapped(self, test_settings, tracker, request_pair):
        provider = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [provider], tracker)

        assessment = await client.analyze_change(request_pair)

        assert assessment.severity == Severity.MEDIUM
        assert assessment.intent == ChangeIntent.REGRESSION
        assert assessment.provider == "openai"
        assert assessment.model == "gpt-4o"
        assert assessment.cached is False
        assert assessment.cost == pytest.approx(0.002)
        assert tracker.get_stats().total_cost == Decimal("0.002")

    @pytest.mark.asyncio
    async def test_context_carries_test_name(self, test_settings, request_pair):
        provider = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [provider])

        await client.analyze_change(request_pair)

        _, _, context = provider.calls[0]
        assert context.test_name == "home_desktop"

    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self, test_settings, tracker, request_pair):
        provider = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [provider], tracker)

        await client.analyze_change(request_pair)
        second = await client.analyze_change(request_pair)

        assert len(provider.calls) == 1
        assert second.cached is True
        assert second.cost == 0.0
        assert second.severity == Severity.MEDIUM
        stats = tracker.get_stats()
        assert stats.total_cost == Decimal("0.002")
        assert stats.cache_hit_count == 1
        assert stats.operation_count == 2

    @pytest.mark.asyncio
    async def test_swapped_pair_is_a_miss(self, test_settings, white_png, changed_png):
        provider = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [provider])

        await client.analyze_change(ClassificationRequest(baseline=white_png, current=changed_png))
        await client.analyze_change(ClassificationRequest(baseline=changed_png, current=white_png))

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_no_providers(self, test_settings, request_pair):
        client = make_client(test_settings, [])

        assessment = await client.analyze_change(request_pair)

        assert assessment.degraded is True
        assert assessment.error == "No vision providers configured"


class TestFallbackChain:
    """Tests for walking the provider chain."""

    @pytest.mark.asyncio
    async def test_skips_unavailable_and_failing_providers(self, test_settings, tracker, request_pair):
        local = FakeProvider("ollama", "llava", available=False)
        failing = FakeProvider("openai", "gpt-4o", error=ProviderUnavailable("connection refused"))
        claude = FakeProvider("anthropic", "claude-3-5-sonnet-20241022", result=answer(AISeverity.MINOR))
        client = make_client(test_settings, [local, failing, claude], tracker)

        assessment = await client.analyze_change(request_pair)

        assert local.calls == []
        assert len(failing.calls) == 1
        assert assessment.provider == "anthropic"
        assert assessment.severity == Severity.LOW
        assert assessment.intent == ChangeIntent.INTENTIONAL
        # Failed call released its reservation and was never charged
        assert tracker.get_stats().total_cost == Decimal("0.0015")

    @pytest.mark.asyncio
    async def test_fallback_answer_is_cached_under_chain_head(self, test_settings, request_pair):
        local = FakeProvider("ollama", "llava", available=False)
        openai = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [local, openai])

        await client.analyze_change(request_pair)
        second = await client.analyze_change(request_pair)

        assert len(openai.calls) == 1
        assert second.cached is True
        assert second.provider == "ollama"
        assert (await client.get_cache_stats()).memory_size == 2

    @pytest.mark.asyncio
    async def test_unparseable_answer_is_charged_and_degraded(self, test_settings, tracker, request_pair):
        garbled = FakeProvider("openai", "gpt-4o", error=ResponseParseError("No JSON object", raw="hmm"))
        backup = FakeProvider("anthropic", "claude-3-5-sonnet-20241022")
        client = make_client(test_settings, [garbled, backup], tracker)

        assessment = await client.analyze_change(request_pair)

        assert backup.calls == []
        assert assessment.degraded is True
        assert assessment.intent == ChangeIntent.UNKNOWN
        assert assessment.severity == Severity.MEDIUM
        assert assessment.provider == "openai"
        assert assessment.cost == pytest.approx(0.002)
        assert tracker.get_stats().total_cost == Decimal("0.002")

    @pytest.mark.asyncio
    async def test_unparseable_answer_is_not_cached(self, test_settings, request_pair):
        garbled = FakeProvider("openai", "gpt-4o", error=ResponseParseError("No JSON object"))
        client = make_client(test_settings, [garbled])

        await client.analyze_change(request_pair)
        await client.analyze_change(request_pair)

        assert len(garbled.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_advances_chain_and_releases_reservation(
        self, test_settings, frozen_clock, request_pair
    ):
        """A reservation left behind would make the next paid call exceed the budget."""
        test_settings.operation_timeout_ms = 50
        tracker = CostTracker(
            budget=BudgetConfig(daily_limit=Decimal("0.002"), monthly_limit=Decimal("200")),
            clock=frozen_clock,
        )
        slow = FakeProvider("openai", "gpt-4o", delay=1.0)
        claude = FakeProvider("anthropic", "claude-3-5-sonnet-20241022")
        client = make_client(test_settings, [slow, claude], tracker)

        assessment = await client.analyze_change(request_pair)

        assert assessment.provider == "anthropic"
        assert assessment.degraded is False

    @pytest.mark.asyncio
    async def test_exhausted_chain_degrades(self, test_settings, tracker, request_pair):
        providers = [
            FakeProvider("ollama", "llava", available=False),
            FakeProvider("openai", "gpt-4o", error=ProviderError("OpenAI API error (500)")),
        ]
        client = make_client(test_settings, providers, tracker)

        assessment = await client.analyze_change(request_pair)

        assert assessment.degraded is True
        assert assessment.severity == Severity.MEDIUM
        assert assessment.error.startswith("All vision providers failed")
        assert "ollama: unavailable" in assessment.error
        assert "openai: OpenAI API error (500)" in assessment.error
        assert tracker.get_stats().total_cost == Decimal("0")

    @pytest.mark.asyncio
    async def test_budget_refusal_propagates(self, test_settings, frozen_clock, request_pair):
        tracker = CostTracker(
            budget=BudgetConfig(daily_limit=Decimal("0.002"), monthly_limit=Decimal("200")),
            clock=frozen_clock,
        )
        tracker.track_operation("openai", "gpt-4o", was_cached=False)
        provider = FakeProvider("openai", "gpt-4o")
        client = make_client(test_settings, [provider], tracker)

        with pytest.raises(BudgetExceeded):
            await client.analyze_change(request_pair)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_free_provider_ignores_exhausted_budget(self, test_settings, frozen_clock, request_pair):
        tracker = CostTracker(
            budget=BudgetConfig(daily_limit=Decimal("0.002"), monthly_limit=Decimal("200")),
            clock=frozen_clock,
        )
        tracker.track_operation("openai", "gpt-4o", was_cached=False)
        client = make_client(test_settings, [FakeProvider("ollama", "llava")], tracker)

        assessment = await client.analyze_change(request_pair)

        assert assessment.provider == "ollama"
        assert assessment.cost == 0.0

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_reservation(self, test_settings, tracker, request_pair):
        provider = FakeProvider("openai", "gpt-4o", error=RuntimeError("worker shut down"))
        client = make_client(test_settings, [provider], tracker)

        with pytest.raises(RuntimeError):
            await client.analyze_change(request_pair)

        assert tracker.authorize("openai", "gpt-4o").amount == Decimal("0.002")
        assert tracker.get_stats().total_cost == Decimal("0")

    @pytest.mark.asyncio
    async def test_gateway_html_from_real_provider_degrades(self, test_settings, tracker, request_pair):
        provider = OpenAIVisionProvider(
            api_key="sk-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
        )
        client = make_client(test_settings, [provider], tracker)

        assessment = await client.analyze_change(request_pair)

        assert assessment.degraded is True
        assert assessment.severity == Severity.MEDIUM
        assert tracker.get_stats().total_cost == Decimal("0")
        await provider.close()


class TestBatchAnalyze:
    """Tests for bounded-concurrency batches."""

    @pytest.mark.asyncio
    async def test_order_matches_input(self, test_settings, png_factory):
        provider = FakeProvider(
            "openai",
            "gpt-4o",
            result=lambda context: answer(reasoning=context.test_name),
        )
        client = make_client(test_settings, [provider])
        base = png_factory()
        requests = [
            ClassificationRequest(
                baseline=base,
                current=png_factory(color=(i * 40, 0, 0)),
                test_name=f"page_{i}",
            )
            for i in range(5)
        ]

        assessments = await client.batch_analyze(requests)

        assert [a.vision.reasoning for a in assessments] == [f"page_{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self, test_settings, png_factory):
        in_flight = 0
        peak = 0

        class CountingProvider(FakeProvider):
            async def classify(self, baseline, current, context=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    return await super().classify(baseline, current, context)
                finally:
                    in_flight -= 1

        test_settings.ai_batch_concurrency = 3
        client = make_client(test_settings, [CountingProvider("openai", "gpt-4o", delay=0.02)])
        base = png_factory()
        requests = [
            ClassificationRequest(baseline=base, current=png_factory(color=(i * 20, 0, 0)), test_name=f"page_{i}")
            for i in range(10)
        ]

        assessments = await client.batch_analyze(requests)

        assert len(assessments) == 10
        assert 1 < peak <= 3
    @pytest.mark.asyncio
    async def test_budget_refusal_propagates_from_batch(self, test_settings, frozen_clock, png_factory):
        tracker = CostTracker(
            budget=BudgetConfig(daily_limit=Decimal("0.001"), monthly_limit=Decimal("200")),
            clock=frozen_clock,
        )
        client = make_client(test_settings, [FakeProvider("openai", "gpt-4o")], tracker)
        requests = [ClassificationRequest(baseline=png_factory(), current=png_factory(color=(0, 0, 0)))]

        with pytest.raises(BudgetExceeded):
            await client.batch_analyze(requests)


class TestClientLifecycle:
    """Tests for construction from settings and shutdown."""

    @pytest.mark.asyncio
    async def test_components_disabled_by_settings(self, test_settings):
        test_settings.enable_cache = False
        test_settings.enable_cost_tracking = False

        client = SmartClassificationClient(settings=test_settings, providers=[])

        assert client.cache is None
        assert client.cost_tracker is None
        assert await client.get_cache_stats() is None
        assert client.get_cost_stats() is None
        assert client.get_budget_status() is None

    def test_default_components_share_store(self, test_settings):
        client = SmartClassificationClient(settings=test_settings, providers=[])

        assert client.cache is not None
        assert client.cost_tracker.store is client.cache.store
        assert client.timeout == 2.0

    def test_default_chain_from_settings(self, test_settings):
        client = SmartClassificationClient(settings=test_settings)

        assert [p.provider_id for p in client.providers] == ["ollama", "openai", "anthropic"]

    @pytest.mark.asyncio
    async def test_uncached_analysis_costs_nothing_without_tracker(self, test_settings, request_pair):
        test_settings.enable_cost_tracking = False
        client = SmartClassificationClient(settings=test_settings, providers=[FakeProvider("openai", "gpt-4o")])

        assessment = await client.analyze_change(request_pair)

        assert assessment.cost == 0.0
        assert assessment.degraded is False

    @pytest.mark.asyncio
    async def test_close(self, test_settings):
        provider = FakeProvider("openai", "gpt-4o")
        cache = VisionResultCache()
        cache.close = AsyncMock()
        client = make_client(test_settings, [provider], cache=cache)

        await client.close()

        assert provider.closed is True
        cache.close.assert_awaited_once()
