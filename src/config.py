"""Configuration management for the visual diff engine."""

from enum import Enum
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class VisionProviderName(str, Enum):
    """Supported vision model providers."""
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class ImageFormat(str, Enum):
    """Output encodings supported by the preprocessor."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # API Keys - paid providers are skipped when their key is missing
    openai_api_key: Optional[SecretStr] = Field(None, description="OpenAI API key (GPT-4o vision)")
    anthropic_api_key: Optional[SecretStr] = Field(None, description="Anthropic API key (Claude vision)")

    # Provider endpoints and models
    ollama_endpoint: str = Field("http://localhost:11434", description="Ollama server base URL")
    openai_base_url: str = Field("https://api.openai.com/v1", description="OpenAI REST base URL")
    openai_model: str = Field("gpt-4o", description="OpenAI vision model")
    anthropic_model: str = Field("claude-3-5-sonnet-20241022", description="Anthropic vision model")
    ollama_model: str = Field("llava", description="Ollama vision model")
    primary_provider: VisionProviderName = Field(
        VisionProviderName.OPENAI,
        description="Provider used when fallback is disabled"
    )

    # Classification pipeline toggles
    enable_cache: bool = Field(True, description="Cache vision classifications")
    enable_cost_tracking: bool = Field(True, description="Track and enforce provider spend")
    enable_fallback: bool = Field(True, description="Walk the provider fallback chain")
    fallback_chain: Annotated[list[VisionProviderName], NoDecode] = Field(
        default_factory=lambda: [
            VisionProviderName.OLLAMA,
            VisionProviderName.OPENAI,
            VisionProviderName.ANTHROPIC,
        ],
        description="Ordered provider chain, free/local providers first"
    )

    # Cost Control
    daily_limit: float = Field(10.0, description="Max vision spend per day in USD")
    monthly_limit: float = Field(200.0, description="Max vision spend per month in USD")
    warning_threshold: float = Field(0.8, description="Budget fraction that raises a warning")
    critical_threshold: float = Field(0.95, description="Budget fraction that raises a critical alert")
    enable_circuit_breaker: bool = Field(True, description="Block paid calls once a budget is spent")

    # Vision Result Cache
    ttl_ms: int = Field(30 * 24 * 60 * 60 * 1000, description="Durable cache TTL in milliseconds")
    max_memory_entries: int = Field(100, description="In-memory cache capacity")
    cache_database_url: Optional[str] = Field(
        "sqlite:///.visual-cache/vision.db",
        description="SQLAlchemy URL for the durable cache and cost ledger"
    )

    # Diff Engine
    threshold: float = Field(0.95, description="Minimum similarity for a comparison to pass")
    max_image_size: int = Field(10 * 1024 * 1024, description="Max encoded image size in bytes")
    max_diff_cache_entries: int = Field(100, description="Memoized comparison capacity")
    diff_memory_threshold: int = Field(
        100 * 1024 * 1024,
        description="Bytes of memoized diff images before the memo is cleared"
    )
    large_image_pixels: int = Field(1920 * 1080, description="Pixel count that enables the sampling pre-pass")
    early_exit_similarity: float = Field(0.7, description="Sampled similarity below which comparison stops")
    min_region_size: int = Field(100, description="Smallest connected region in pixels")

    # Preprocessor
    preprocess_max_width: int = Field(2048, description="Max width sent to vision providers")
    preprocess_max_height: int = Field(2048, description="Max height sent to vision providers")
    preprocess_quality: int = Field(85, description="Lossy encoder quality")
    preprocess_format: ImageFormat = Field(ImageFormat.JPEG, description="Encoding sent to providers")

    # Execution Settings
    operation_timeout_ms: int = Field(30000, description="Timeout for one provider call")
    max_concurrency: int = Field(4, description="Parallel (page x device) tasks")
    ai_batch_concurrency: int = Field(3, description="Parallel outbound provider calls")

    # Baselines
    baseline_dir: str = Field("./visual-baselines", description="Directory for baseline images")
    default_branch: str = Field("main", description="Fallback branch for baseline lookup")

    # Logging
    log_level: str = Field("INFO", description="Log level")
    log_json: bool = Field(False, description="Render logs as JSON")

    @field_validator("fallback_chain", mode="before")
    @classmethod
    def _split_chain(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def operation_timeout_seconds(self) -> float:
        return self.operation_timeout_ms / 1000.0

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_ms / 1000.0


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
