"""Cost-controlled AI classification of visual changes.

The SmartClassificationClient turns a baseline/current screenshot pair into
a ChangeAssessment:

1. Both images are preprocessed and fingerprinted
2. The result cache is consulted; a hit costs nothing
3. On a miss the provider fallback chain is walked in order, free providers
   first. Paid providers must be authorized by the cost tracker before they
   are called, and a refused authorization aborts the request
4. A provider answer is charged, cached and mapped onto the fixed severity
   scale and an intent flag
5. Provider failures advance the chain; an exhausted chain yields a degraded
   unknown/medium assessment instead of an exception
"""

import asyncio
from typing import Optional

import structlog

from src.config import Settings, get_settings
from src.core.providers import build_fallback_chain
from src.core.providers.base import (
    ProviderError,
    ResponseParseError,
    VisionContext,
    VisionProvider,
)
from src.services.ai_cost_tracker import (
    Authorization,
    BudgetConfig,
    BudgetStatus,
    CostStats,
    CostTracker,
)
from src.services.vision_cache import CacheStats, VisionResultCache, generate_key
from src.visual_ai.models import (
    AISeverity,
    ChangeAssessment,
    ChangeIntent,
    ClassificationRequest,
    Severity,
    VisionClassification,
)
from src.visual_ai.preprocessor import ImagePreprocessor, PreprocessedImage, PreprocessorConfig

logger = structlog.get_logger()


_SEVERITY_MAP = {
    AISeverity.NONE: Severity.LOW,
    AISeverity.MINOR: Severity.LOW,
    AISeverity.MODERATE: Severity.MEDIUM,
    AISeverity.BREAKING: Severity.CRITICAL,
}


def map_ai_severity(severity: AISeverity) -> Severity:
    """Map a vision model's severity onto the fixed severity scale."""
    return _SEVERITY_MAP[severity]


def infer_intent(severity: AISeverity) -> ChangeIntent:
    """Small changes are likely intentional, larger ones likely regressions."""
    if severity in (AISeverity.NONE, AISeverity.MINOR):
        return ChangeIntent.INTENTIONAL
    return ChangeIntent.REGRESSION


def degraded_assessment(
    reason: str,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    cost: float = 0.0,
) -> ChangeAssessment:
    """Assessment used when no provider produced a usable answer."""
    return ChangeAssessment(
        intent=ChangeIntent.UNKNOWN,
        severity=Severity.MEDIUM,
        provider=provider,
        model=model,
        cost=cost,
        error=reason,
    )


class SmartClassificationClient:
    """Classifies visual changes through a cached, budgeted provider chain.

    The cache and cost tracker are plain instances owned by whoever builds
    the client; pass the same instances to several clients to share them
    across a run.

    Usage:
        client = SmartClassificationClient(get_settings())
        assessment = await client.analyze_change(
            ClassificationRequest(baseline=baseline_png, current=current_png)
        )
        if assessment.degraded:
            print(f"AI unavailable: {assessment.error}")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        providers: Optional[list[VisionProvider]] = None,
        cache: Optional[VisionResultCache] = None,
        cost_tracker: Optional[CostTracker] = None,
        preprocessor: Optional[ImagePreprocessor] = None,
    ):
        self.settings = settings or get_settings()
        self.providers = list(providers) if providers is not None else build_fallback_chain(self.settings)

        if cache is None and self.settings.enable_cache:
            cache = VisionResultCache.from_settings(self.settings)
        self.cache = cache

        if cost_tracker is None and self.settings.enable_cost_tracking:
            cost_tracker = CostTracker(
                budget=BudgetConfig.from_settings(self.settings),
                store=cache.store if cache is not None else None,
            )
        self.cost_tracker = cost_tracker

        self.preprocessor = preprocessor or ImagePreprocessor(
            PreprocessorConfig.from_settings(self.settings)
        )
        self.timeout = self.settings.operation_timeout_seconds
        self.log = logger.bind(component="classification_client")

    async def analyze_change(self, request: ClassificationRequest) -> ChangeAssessment:
        """Classify one baseline/current pair.

        Raises:
            BudgetExceeded: A paid provider was next in line and the budget
                refused to authorize it
            ImageTooLarge: An input exceeds the preprocessing size limit
            ImageDecodeError: An input is not a readable image
        """
        baseline, current = await self.preprocessor.preprocess_batch(
            [request.baseline, request.current]
        )
        context = self._context_for(request)

        if not self.providers:
            return degraded_assessment("No vision providers configured")

        head = self.providers[0]
        lookup_key = generate_key(baseline.fingerprint, current.fingerprint, head.provider_id, head.model)

        if self.cache is not None:
            hit = await self.cache.get(lookup_key)
            if hit is not None:
                if self.cost_tracker is not None:
                    await self.cost_tracker.record_operation(head.provider_id, head.model, was_cached=True)
                self.log.debug("Classification served from cache", test_name=request.test_name)
                return self._assessment(hit, head, cached=True, cost=0.0)

        return await self._walk_chain(baseline, current, context, lookup_key, request.test_name)

    async def _walk_chain(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: Optional[VisionContext],
        lookup_key: str,
        test_name: Optional[str],
    ) -> ChangeAssessment:
        failures: list[str] = []

        for provider in self.providers:
            if not await provider.is_available():
                failures.append(f"{provider.provider_id}: unavailable")
                self.log.debug("Skipping unavailable provider", provider=provider.provider_id)
                continue

            authorization = self._authorize(provider)
            try:
                result = await asyncio.wait_for(
                    provider.classify(baseline, current, context),
                    timeout=self.timeout,
                )
            except ResponseParseError as e:
                cost = await self._charge(provider, authorization)
                self.log.warning(
                    "Provider returned an unparseable classification",
                    provider=provider.provider_id,
                    error=str(e),
                )
                return degraded_assessment(
                    f"{provider.provider_id}: {e}",
                    provider=provider.provider_id,
                    model=provider.model,
                    cost=cost,
                )
            except asyncio.TimeoutError:
                self._release(authorization)
                failures.append(f"{provider.provider_id}: timed out after {self.timeout:g}s")
                self.log.warning("Provider timed out", provider=provider.provider_id, timeout=self.timeout)
                continue
            except ProviderError as e:
                self._release(authorization)
                failures.append(f"{provider.provider_id}: {e}")
                self.log.warning("Provider failed, trying next", provider=provider.provider_id, error=str(e))
                continue
            except BaseException:
                self._release(authorization)
                raise

            cost = await self._charge(provider, authorization)
            await self._remember(result, provider, baseline, current, lookup_key)
            self.log.info(
                "Change classified",
                test_name=test_name,
                provider=provider.provider_id,
                severity=result.severity.value,
                cost=cost,
            )
            return self._assessment(result, provider, cached=False, cost=cost)

        reason = "; ".join(failures) or "All providers failed"
        self.log.warning("Fallback chain exhausted", test_name=test_name, reason=reason)
        return degraded_assessment(f"All vision providers failed: {reason}")

    async def batch_analyze(self, requests: list[ClassificationRequest]) -> list[ChangeAssessment]:
        """Classify many pairs with bounded concurrency; output order matches input."""
        semaphore = asyncio.Semaphore(self.settings.ai_batch_concurrency)

        async def run(request: ClassificationRequest) -> ChangeAssessment:
            async with semaphore:
                return await self.analyze_change(request)

        return list(await asyncio.gather(*(run(r) for r in requests)))

    def _context_for(self, request: ClassificationRequest) -> Optional[VisionContext]:
        context = VisionContext.coerce(request.context)
        if request.test_name:
            if context is None:
                context = VisionContext(test_name=request.test_name)
            elif context.test_name is None:
                context.test_name = request.test_name
        return context

    def _authorize(self, provider: VisionProvider) -> Optional[Authorization]:
        if self.cost_tracker is None:
            return None
        if not self.cost_tracker.is_paid(provider.provider_id, provider.model):
            return None
        return self.cost_tracker.authorize(provider.provider_id, provider.model)

    def _release(self, authorization: Optional[Authorization]) -> None:
        if authorization is not None and self.cost_tracker is not None:
            self.cost_tracker.release(authorization)

    async def _charge(self, provider: VisionProvider, authorization: Optional[Authorization]) -> float:
        if self.cost_tracker is None:
            return 0.0
        charged = await self.cost_tracker.record_operation(
            provider.provider_id,
            provider.model,
            was_cached=False,
            authorization=authorization,
        )
        return float(charged)

    async def _remember(
        self,
        result: VisionClassification,
        provider: VisionProvider,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        lookup_key: str,
    ) -> None:
        if self.cache is None:
            return
        answered_key = generate_key(
            baseline.fingerprint, current.fingerprint, provider.provider_id, provider.model
        )
        await self.cache.set(answered_key, result, provider.provider_id, provider.model)
        if lookup_key != answered_key:
            await self.cache.set(lookup_key, result, provider.provider_id, provider.model)

    @staticmethod
    def _assessment(
        result: VisionClassification,
        provider: VisionProvider,
        cached: bool,
        cost: float,
    ) -> ChangeAssessment:
        return ChangeAssessment(
            intent=infer_intent(result.severity),
            severity=map_ai_severity(result.severity),
            vision=result,
            provider=provider.provider_id,
            model=provider.model,
            cached=cached,
            cost=cost,
        )

    async def get_cache_stats(self) -> Optional[CacheStats]:
        return await self.cache.get_stats() if self.cache is not None else None

    def get_cost_stats(self) -> Optional[CostStats]:
        return self.cost_tracker.get_stats() if self.cost_tracker is not None else None

    def get_budget_status(self) -> Optional[BudgetStatus]:
        return self.cost_tracker.get_budget_status() if self.cost_tracker is not None else None

    async def close(self) -> None:
        """Close provider clients and the durable cache."""
        for provider in self.providers:
            await provider.close()
        if self.cache is not None:
            await self.cache.close()
