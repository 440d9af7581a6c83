"""Visual AI module for visual regression testing.

Pixel-level comparison, baseline management and image preprocessing live
here. AI-assisted classification and run orchestration are in the
``classifier`` and ``runner`` submodules:

    from src.visual_ai.classifier import SmartClassificationClient
    from src.visual_ai.runner import VisualTestRunner
"""

from .baseline import (
    BaselineCleanupResult,
    BaselineInfo,
    BaselineLoadResult,
    BaselineSaveResult,
    BaselineStore,
)
from .diff_engine import VisualDiffEngine, analyze_regions, classify_change, get_severity
from .errors import (
    BaselineNotFound,
    CacheIOError,
    DimensionMismatch,
    ImageDecodeError,
    ImageTooLarge,
    VisualAIError,
)
from .models import (
    AISeverity,
    BaselineMetadata,
    ChangeAssessment,
    ChangeIntent,
    ChangeType,
    ClassificationRequest,
    DiffAnalysis,
    DiffOptions,
    DiffResult,
    Region,
    Severity,
    SSIMResult,
    VisionClassification,
)
from .preprocessor import ImagePreprocessor, PreprocessedImage, PreprocessorConfig

__all__ = [
    # Models
    "AISeverity",
    "BaselineMetadata",
    "ChangeAssessment",
    "ChangeIntent",
    "ChangeType",
    "ClassificationRequest",
    "DiffAnalysis",
    "DiffOptions",
    "DiffResult",
    "Region",
    "Severity",
    "SSIMResult",
    "VisionClassification",
    # Errors
    "VisualAIError",
    "ImageDecodeError",
    "ImageTooLarge",
    "DimensionMismatch",
    "BaselineNotFound",
    "CacheIOError",
    # Diff engine
    "VisualDiffEngine",
    "analyze_regions",
    "classify_change",
    "get_severity",
    # Baselines
    "BaselineStore",
    "BaselineLoadResult",
    "BaselineSaveResult",
    "BaselineInfo",
    "BaselineCleanupResult",
    # Preprocessing
    "ImagePreprocessor",
    "PreprocessedImage",
    "PreprocessorConfig",
]
