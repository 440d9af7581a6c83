"""Visual AI data models for visual regression testing.

This module contains the dataclasses and enums shared by the diff engine,
the baseline store and the classification client: comparison options and
results, connected regions, deterministic and AI-assisted classifications,
and baseline metadata.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ChangeType(Enum):
    """Deterministic classification of a visual difference."""

    LAYOUT = "layout"
    CONTENT = "content"
    STYLING = "styling"
    ANIMATION = "animation"
    UNKNOWN = "unknown"


class ChangeIntent(Enum):
    """Classification of whether a change was intentional or a regression."""

    INTENTIONAL = "intentional"
    REGRESSION = "regression"
    UNKNOWN = "unknown"


class Severity(Enum):
    """Severity levels for visual changes."""

    CRITICAL = 4
    HIGH = 3
    MEDIUM = 2
    LOW = 1

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        return cls[label.upper()]

    def __lt__(self, other: "Severity") -> bool:
        if isinstance(other, Severity):
            return self.value < other.value
        return NotImplemented

    def __le__(self, other: "Severity") -> bool:
        if isinstance(other, Severity):
            return self.value <= other.value
        return NotImplemented

    def __gt__(self, other: "Severity") -> bool:
        if isinstance(other, Severity):
            return self.value > other.value
        return NotImplemented

    def __ge__(self, other: "Severity") -> bool:
        if isinstance(other, Severity):
            return self.value >= other.value
        return NotImplemented


class AISeverity(Enum):
    """Severity scale reported by vision models."""

    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    BREAKING = "breaking"


VISION_CATEGORIES = ("layout", "text", "color", "spacing", "content")


@dataclass(frozen=True)
class DiffOptions:
    """Tuning for one pixel comparison.

    ``threshold`` is the minimum similarity that passes. ``alpha`` is the
    per-pixel color tolerance in [0, 1]; larger values ignore more subtle
    differences. ``diff_color`` is the RGB used to paint differing pixels.
    """

    threshold: float = 0.95
    include_anti_aliasing: bool = False
    alpha: float = 0.1
    diff_color: tuple[int, int, int] = (255, 0, 0)

    def cache_token(self) -> str:
        return (
            f"{self.threshold}:{int(self.include_anti_aliasing)}:"
            f"{self.alpha}:{','.join(str(c) for c in self.diff_color)}"
        )


@dataclass(frozen=True)
class Region:
    """Bounding box of one connected component of differing pixels."""

    x: int
    y: int
    width: int
    height: int
    significance: float
    pixel_count: int = 0

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiffResult:
    """Outcome of comparing a baseline image with a current image."""

    similarity: float
    pixel_difference: int
    passed: bool
    threshold: float
    width: int
    height: int
    regions: list[Region] = field(default_factory=list)
    diff_image: bytes | None = None
    early_exit: bool = False

    @property
    def total_pixels(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "similarity": self.similarity,
            "pixel_difference": self.pixel_difference,
            "passed": self.passed,
            "threshold": self.threshold,
            "width": self.width,
            "height": self.height,
            "regions": [r.to_dict() for r in self.regions],
            "has_diff_image": self.diff_image is not None,
            "early_exit": self.early_exit,
        }


@dataclass(frozen=True)
class DiffAnalysis:
    """Inputs to the deterministic change classifier."""

    similarity: float
    pixel_difference: int
    regions: tuple[Region, ...] = ()
    classification: ChangeType | None = None

    @classmethod
    def from_result(cls, result: DiffResult) -> "DiffAnalysis":
        return cls(
            similarity=result.similarity,
            pixel_difference=result.pixel_difference,
            regions=tuple(result.regions),
        )


@dataclass(frozen=True)
class SSIMResult:
    """Structural similarity score for a pair of images."""

    ssim: float
    width: int
    height: int


@dataclass
class VisionClassification:
    """Classification returned by a vision model."""

    severity: AISeverity
    confidence: float
    reasoning: str
    categories: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "severity": self.severity.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "categories": list(self.categories),
            "suggestions": list(self.suggestions),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VisionClassification":
        """Create instance from dictionary."""
        return cls(
            severity=AISeverity(data["severity"]),
            confidence=float(data.get("confidence", 0.0)),
            reasoning=str(data.get("reasoning", "")),
            categories=list(data.get("categories", [])),
            suggestions=list(data.get("suggestions", [])),
        )


@dataclass
class ChangeAssessment:
    """Merged verdict for one classification request.

    ``vision`` is set when a provider (or the cache) answered. A degraded
    assessment has no vision payload and carries the reason in ``error``.
    """

    intent: ChangeIntent
    severity: Severity
    vision: VisionClassification | None = None
    provider: str | None = None
    model: str | None = None
    cached: bool = False
    cost: float = 0.0
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.vision is None

    @property
    def is_intentional(self) -> bool:
        return self.intent == ChangeIntent.INTENTIONAL

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "intent": self.intent.value,
            "severity": self.severity.label,
            "vision": self.vision.to_dict() if self.vision else None,
            "provider": self.provider,
            "model": self.model,
            "cached": self.cached,
            "cost": self.cost,
            "error": self.error,
        }


@dataclass(frozen=True)
class ClassificationRequest:
    """A baseline/current pair submitted for AI-assisted classification."""

    baseline: bytes | str
    current: bytes | str
    context: Any = None
    test_name: str | None = None


@dataclass
class BaselineMetadata:
    """Metadata stored next to a baseline image."""

    branch: str
    commit: str
    saved_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    url: str | None = None
    viewport: dict[str, int] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BaselineMetadata":
        """Create instance from dictionary."""
        known = {"branch", "commit", "saved_at", "url", "viewport", "extra"}
        extra = dict(data.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in known})
        return cls(
            branch=data.get("branch", ""),
            commit=data.get("commit", ""),
            saved_at=data.get("saved_at", ""),
            url=data.get("url"),
            viewport=data.get("viewport"),
            extra=extra,
        )
