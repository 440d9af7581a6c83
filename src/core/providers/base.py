"""Base provider abstraction for vision model providers.

Every provider in the fallback chain implements the same small capability
interface: report whether it can currently serve a request, and classify a
baseline/current screenshot pair. The chain is an ordered list of these
objects, never a switch on provider names.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from src.visual_ai.models import VISION_CATEGORIES, AISeverity, VisionClassification
from src.visual_ai.preprocessor import PreprocessedImage


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class ProviderUnavailable(ProviderError):
    """Raised when a provider cannot be reached or is not configured."""
    pass


class AuthenticationError(ProviderUnavailable):
    """Raised when API key is invalid or missing."""
    pass


class RateLimitError(ProviderError):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ResponseParseError(ProviderError):
    """Raised when a provider answered but the answer is not a valid classification."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def mask_api_key(api_key: str | None) -> str:
    """Mask an API key for safe logging/display.

    Args:
        api_key: The API key to mask

    Returns:
        Masked string showing only first 4 and last 4 characters
    """
    if not api_key:
        return "<not set>"
    if len(api_key) <= 12:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


@dataclass
class VisionContext:
    """Optional hints about what the screenshots show."""

    url: str | None = None
    selector: str | None = None
    test_name: str | None = None
    notes: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: "VisionContext | dict | str | None") -> "VisionContext | None":
        if value is None or isinstance(value, VisionContext):
            return value
        if isinstance(value, str):
            return cls(notes=value)
        known = {k: value[k] for k in ("url", "selector", "test_name", "notes") if k in value}
        extra = {k: v for k, v in value.items() if k not in known}
        return cls(**known, extra=extra)


SYSTEM_PROMPT = """You are an expert at analyzing visual differences in web UIs for regression testing.

Classify the visual change between a baseline screenshot (first image) and a current screenshot (second image).

Severity:
- "none": no meaningful visual difference
- "minor": small changes that do not affect functionality (slight color shifts, minor spacing)
- "moderate": noticeable changes that need review (text changes, layout shifts)
- "breaking": major changes that likely indicate bugs (missing elements, broken layouts)

Categories: layout, text, color, spacing, content

Respond with JSON only:
{
  "severity": "none" | "minor" | "moderate" | "breaking",
  "confidence": number between 0 and 1,
  "reasoning": string,
  "categories": string[],
  "suggestions": string[]
}"""


def build_user_prompt(context: VisionContext | None) -> str:
    """Describe the comparison, including any context hints."""
    lines = ["Analyze these two screenshots and classify the visual differences."]
    if context is not None:
        lines.append("")
        lines.append("Context:")
        lines.append(f"- URL: {context.url or 'unknown'}")
        lines.append(f"- Element: {context.selector or 'full page'}")
        if context.test_name:
            lines.append(f"- Test: {context.test_name}")
        if context.notes:
            lines.append(f"- Notes: {context.notes}")
    lines.append("")
    lines.append("Compare the baseline (first image) with the current (second image).")
    return "\n".join(lines)


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_vision_response(content: str) -> VisionClassification:
    """Parse a provider's JSON answer, tolerating markdown code fences.

    Raises:
        ResponseParseError: No JSON object, or severity outside the known scale
    """
    text = content or ""
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]

    try:
        data = json.loads(text.strip())
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ResponseParseError("No JSON object in provider response", raw=content)
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Invalid JSON in provider response: {e}", raw=content) from e

    if not isinstance(data, dict):
        raise ResponseParseError("Provider response is not a JSON object", raw=content)

    try:
        severity = AISeverity(str(data.get("severity", "")).lower())
    except ValueError as e:
        raise ResponseParseError(f"Unknown severity: {data.get('severity')!r}", raw=content) from e

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    categories = [
        str(c).lower() for c in data.get("categories") or [] if str(c).lower() in VISION_CATEGORIES
    ]
    suggestions = [str(s) for s in data.get("suggestions") or []]

    return VisionClassification(
        severity=severity,
        confidence=min(max(confidence, 0.0), 1.0),
        reasoning=str(data.get("reasoning") or "No reasoning provided"),
        categories=categories,
        suggestions=suggestions,
    )


class VisionProvider(ABC):
    """Abstract base class for vision providers.

    Example usage:
        ```python
        provider = OllamaVisionProvider(endpoint="http://localhost:11434")
        if await provider.is_available():
            result = await provider.classify(baseline, current, context)
            print(result.severity)
        ```
    """

    # Provider metadata - subclasses must define these
    provider_id: str
    display_name: str

    # Local providers cost nothing and are tried first
    is_local: bool = False

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider is configured and reachable."""
        pass

    @abstractmethod
    async def classify(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: VisionContext | None = None,
    ) -> VisionClassification:
        """Classify the difference between two preprocessed images.

        Raises:
            ProviderUnavailable: Missing credentials or unreachable endpoint
            RateLimitError: Provider throttled the request
            ResponseParseError: The answer could not be parsed
            ProviderError: Any other provider failure
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"
