"""Exceptions raised by the visual comparison pipeline."""


class VisualAIError(Exception):
    """Base exception for visual comparison failures."""


class ImageDecodeError(VisualAIError):
    """Input could not be decoded as an image."""


class ImageTooLarge(VisualAIError):
    """Input exceeds the configured size limit."""

    def __init__(self, size: int, limit: int, unit: str = "bytes"):
        self.size = size
        self.limit = limit
        super().__init__(f"Image too large: {size} {unit} exceeds limit of {limit} {unit}")


class DimensionMismatch(VisualAIError):
    """Baseline and current images have different dimensions."""

    def __init__(self, baseline: tuple[int, int], current: tuple[int, int]):
        self.baseline = baseline
        self.current = current
        super().__init__(
            f"Image dimensions do not match: baseline {baseline[0]}x{baseline[1]}, "
            f"current {current[0]}x{current[1]}"
        )


class BaselineNotFound(VisualAIError):
    """No baseline exists for a test on any candidate branch."""

    def __init__(self, test_name: str, branches: list[str]):
        self.test_name = test_name
        self.branches = branches
        super().__init__(
            f"No baseline found for '{test_name}' on branches: {', '.join(branches)}"
        )


class CacheIOError(VisualAIError):
    """Durable cache tier failed to read or write."""
