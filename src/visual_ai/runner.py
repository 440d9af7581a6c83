"""Visual regression runs across pages and devices.

A run fans out one task per (page, device) pair. Each task captures a
screenshot through the injected ScreenshotProvider, compares it with the
stored baseline and, on failure, asks the classification client for an AI
assessment. Per-task failures are recorded on that task's result so a single
bad page never aborts the run.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import structlog

from src.config import Settings, get_settings
from src.services.ai_cost_tracker import BudgetExceeded
from src.utils.logging import LogContext, log_operation
from src.visual_ai.baseline import BaselineStore, sanitize_name
from src.visual_ai.classifier import SmartClassificationClient
from src.visual_ai.diff_engine import VisualDiffEngine
from src.visual_ai.models import (
    BaselineMetadata,
    ChangeAssessment,
    ChangeType,
    ClassificationRequest,
    DiffOptions,
    Severity,
)

logger = structlog.get_logger()


DEVICE_VIEWPORTS: dict[str, dict[str, int]] = {
    "desktop": {"width": 1920, "height": 1080},
    "laptop": {"width": 1366, "height": 768},
    "tablet": {"width": 768, "height": 1024},
    "mobile": {"width": 375, "height": 667},
}


def get_device_viewport(device: str) -> dict[str, int]:
    """Viewport for a named device; unknown devices get the desktop size."""
    return dict(DEVICE_VIEWPORTS.get(device, DEVICE_VIEWPORTS["desktop"]))


def build_test_name(page: str, device: str) -> str:
    return sanitize_name(f"{page.replace('/', '_')}_{device}")


@dataclass
class CaptureResult:
    """A captured screenshot and whatever the capturer knows about it."""

    buffer: bytes
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureConfig:
    page: str
    device: str
    viewport: dict[str, int]
    test_name: str


class ScreenshotProvider(Protocol):
    """Captures a page at a viewport. Browser automation lives behind this."""

    async def capture(self, page: str, config: CaptureConfig) -> CaptureResult: ...


@dataclass
class VisualTestResult:
    """Outcome of one (page, device) comparison."""

    test_name: str
    page: str
    device: str
    passed: bool
    threshold: float
    similarity: Optional[float] = None
    pixel_difference: Optional[int] = None
    new_baseline: bool = False
    change_type: Optional[ChangeType] = None
    severity: Optional[Severity] = None
    assessment: Optional[ChangeAssessment] = None
    diff_image: Optional[bytes] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "test_name": self.test_name,
            "page": self.page,
            "device": self.device,
            "passed": self.passed,
            "threshold": self.threshold,
            "similarity": self.similarity,
            "pixel_difference": self.pixel_difference,
            "new_baseline": self.new_baseline,
            "change_type": self.change_type.value if self.change_type else None,
            "severity": self.severity.label if self.severity else None,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "has_diff_image": self.diff_image is not None,
            "error": self.error,
        }


@dataclass
class RunSummary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    new_baselines: int = 0
    errors: int = 0
    severity_counts: dict[str, int] = field(default_factory=dict)
    overall_status: str = "passed"
    ai_disabled: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "new_baselines": self.new_baselines,
            "errors": self.errors,
            "severity_counts": dict(self.severity_counts),
            "overall_status": self.overall_status,
            "ai_disabled": self.ai_disabled,
            "duration_ms": self.duration_ms,
        }


@dataclass
class VisualRunReport:
    summary: RunSummary
    results: list[VisualTestResult]

    def get(self, test_name: str) -> Optional[VisualTestResult]:
        for result in self.results:
            if result.test_name == test_name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _RunState:
    """Mutable state scoped to one call of ``VisualTestRunner.run``."""

    ai_enabled: bool


class VisualTestRunner:
    """Runs visual comparisons for every page on every device.

    The runner holds no per-run state, so one instance may serve concurrent
    runs. The baseline store, diff engine and classification client are
    passed in and may be shared with other runners.

    Usage:
        runner = VisualTestRunner(
            settings,
            capture=playwright_capture,
            baseline_store=BaselineStore(settings.baseline_dir),
            diff_engine=VisualDiffEngine.from_settings(settings),
            classifier=SmartClassificationClient(settings),
        )
        report = await runner.run(["/", "/pricing"], devices=["desktop", "mobile"])
    """

    def __init__(
        self,
        settings: Optional[Settings],
        capture: ScreenshotProvider,
        baseline_store: BaselineStore,
        diff_engine: VisualDiffEngine,
        classifier: Optional[SmartClassificationClient] = None,
    ):
        self.settings = settings or get_settings()
        self.capture = capture
        self.baseline_store = baseline_store
        self.diff_engine = diff_engine
        self.classifier = classifier
        self.diff_options = DiffOptions(threshold=self.settings.threshold)
        self.log = logger.bind(component="visual_test_runner")

    async def run(
        self,
        pages: list[str],
        devices: Optional[list[str]] = None,
        update_baseline: bool = False,
    ) -> VisualRunReport:
        """Compare every page on every device.

        Results come back in (page, device) input order regardless of which
        task finishes first.
        """
        start_time = time.time()
        devices = devices or ["desktop"]
        state = _RunState(ai_enabled=self.classifier is not None)
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        tasks = [(page, device) for page in pages for device in devices]
        # Slots indexed by task position; completion order is irrelevant
        slots: list[Optional[VisualTestResult]] = [None] * len(tasks)

        async def run_one(index: int, page: str, device: str) -> None:
            test_name = build_test_name(page, device)
            async with semaphore:
                with LogContext(test_name=test_name, device=device):
                    slots[index] = await self._run_task(page, device, test_name, update_baseline, state)

        await asyncio.gather(*(run_one(i, page, device) for i, (page, device) in enumerate(tasks)))

        results = [slot for slot in slots if slot is not None]
        summary = self._summarize(results, state)
        summary.duration_ms = int((time.time() - start_time) * 1000)

        self.log.info(
            "Visual run complete",
            total=summary.total,
            passed=summary.passed,
            failed=summary.failed,
            new_baselines=summary.new_baselines,
            errors=summary.errors,
            overall_status=summary.overall_status,
        )
        return VisualRunReport(summary=summary, results=results)

    async def _run_task(
        self,
        page: str,
        device: str,
        test_name: str,
        update_baseline: bool,
        state: _RunState,
    ) -> VisualTestResult:
        threshold = self.diff_options.threshold
        try:
            return await self._compare_page(page, device, test_name, update_baseline, state)
        except Exception as e:
            self.log.error("Visual test failed", page=page, error=str(e), error_type=type(e).__name__)
            return VisualTestResult(
                test_name=test_name,
                page=page,
                device=device,
                passed=False,
                threshold=threshold,
                error=f"{type(e).__name__}: {e}",
            )

    async def _compare_page(
        self,
        page: str,
        device: str,
        test_name: str,
        update_baseline: bool,
        state: _RunState,
    ) -> VisualTestResult:
        viewport = get_device_viewport(device)
        captured = await self.capture.capture(
            page,
            CaptureConfig(page=page, device=device, viewport=viewport, test_name=test_name),
        )

        loaded = None if update_baseline else await self.baseline_store.load(test_name)
        if loaded is None or not loaded.found:
            metadata = dict(captured.metadata)
            metadata.setdefault("url", page)
            metadata.setdefault("viewport", viewport)
            await self.baseline_store.save(test_name, captured.buffer, metadata)
            return VisualTestResult(
                test_name=test_name,
                page=page,
                device=device,
                passed=True,
                threshold=self.diff_options.threshold,
                similarity=1.0,
                pixel_difference=0,
                new_baseline=True,
            )

        with log_operation("compare", logger=self.log, test_name=test_name) as op:
            diff = await asyncio.to_thread(
                self.diff_engine.compare, loaded.image, captured.buffer, self.diff_options
            )
            op["similarity"] = diff.similarity
            op["passed"] = diff.passed
        result = VisualTestResult(
            test_name=test_name,
            page=page,
            device=device,
            passed=diff.passed,
            threshold=diff.threshold,
            similarity=diff.similarity,
            pixel_difference=diff.pixel_difference,
            diff_image=diff.diff_image,
        )
        if diff.passed:
            return result

        result.change_type, result.severity = self.diff_engine.assess(diff)
        result.assessment = await self._classify(
            state, test_name, page, viewport, loaded.image, captured.buffer, loaded.metadata
        )
        if result.assessment is not None and not result.assessment.degraded:
            result.severity = result.assessment.severity
        return result

    async def _classify(
        self,
        state: _RunState,
        test_name: str,
        page: str,
        viewport: dict[str, int],
        baseline: bytes,
        current: bytes,
        baseline_metadata: Optional[BaselineMetadata],
    ) -> Optional[ChangeAssessment]:
        if self.classifier is None or not state.ai_enabled:
            return None
        context = {"url": page, "viewport": viewport}
        if baseline_metadata is not None and baseline_metadata.commit:
            context["baseline_commit"] = baseline_metadata.commit
        try:
            return await self.classifier.analyze_change(
                ClassificationRequest(baseline=baseline, current=current, context=context, test_name=test_name)
            )
        except BudgetExceeded as e:
            # Remaining tasks fall back to deterministic severity
            state.ai_enabled = False
            self.log.warning("AI budget exhausted, disabling classification for this run", error=str(e))
            return None

    def _summarize(self, results: list[VisualTestResult], state: _RunState) -> RunSummary:
        summary = RunSummary(total=len(results), ai_disabled=self.classifier is not None and not state.ai_enabled)
        for result in results:
            if result.passed:
                summary.passed += 1
            else:
                summary.failed += 1
                if result.severity is not None:
                    label = result.severity.label
                    summary.severity_counts[label] = summary.severity_counts.get(label, 0) + 1
            if result.new_baseline:
                summary.new_baselines += 1
            if result.error:
                summary.errors += 1
        summary.overall_status = "failed" if summary.failed else "passed"
        return summary
