"""Ollama vision provider (llava, bakllava) for self-hosted inference.

Ollama runs locally and costs nothing per call, so it heads the default
fallback chain. Availability is checked through ``/api/tags`` and cached
briefly so every classification does not pay for an extra round trip.
"""

import time

import httpx
import structlog

from src.core.providers.base import (
    SYSTEM_PROMPT,
    ProviderError,
    ProviderUnavailable,
    VisionContext,
    VisionProvider,
    build_user_prompt,
    parse_vision_response,
)
from src.visual_ai.models import VisionClassification
from src.visual_ai.preprocessor import PreprocessedImage

logger = structlog.get_logger()

VISION_MODEL_FAMILIES = ("llava", "bakllava")


class OllamaVisionProvider(VisionProvider):
    """Local vision models served by Ollama."""

    provider_id = "ollama"
    display_name = "Ollama"
    is_local = True

    def __init__(
        self,
        endpoint: str | None = "http://localhost:11434",
        model: str = "llava",
        timeout: float = 120.0,
        availability_ttl: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model)
        self.endpoint = endpoint.rstrip("/") if endpoint else None
        self.timeout = timeout
        self.availability_ttl = availability_ttl
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._available: bool | None = None
        self._checked_at = 0.0
        self.log = logger.bind(component="ollama_vision", model=model)

    def supports_vision(self) -> bool:
        return any(family in self.model for family in VISION_MODEL_FAMILIES)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.endpoint,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def is_available(self) -> bool:
        """Whether Ollama is reachable and has a vision model pulled."""
        if not self.endpoint or not self.supports_vision():
            return False
        now = time.monotonic()
        if self._available is not None and now - self._checked_at < self.availability_ttl:
            return self._available

        available = False
        try:
            client = await self._get_client()
            response = await client.get("/api/tags", timeout=5.0)
            if response.status_code == 200:
                body = response.json()
                models = body.get("models") or [] if isinstance(body, dict) else []
                names = [str(m.get("name", "")) for m in models if isinstance(m, dict)]
                available = any(
                    family in name for name in names for family in VISION_MODEL_FAMILIES
                )
        except (httpx.HTTPError, ValueError) as e:
            self.log.debug("Ollama not reachable", endpoint=self.endpoint, error=str(e))

        self._available = available
        self._checked_at = now
        return available

    async def classify(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: VisionContext | None = None,
    ) -> VisionClassification:
        if not self.endpoint:
            raise ProviderUnavailable("Ollama endpoint not configured")

        client = await self._get_client()
        payload = {
            "model": self.model,
            "prompt": f"{SYSTEM_PROMPT}\n\n{build_user_prompt(context)}",
            "images": [baseline.base64, current.base64],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.1},
        }

        start_time = time.time()
        try:
            response = await client.post("/api/generate", json=payload)
        except httpx.RequestError as e:
            # Force a fresh availability check next time
            self._available = None
            raise ProviderUnavailable(f"Ollama request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"Ollama request failed: {response.status_code} {response.text[:200]}")

        try:
            content = response.json()["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"Unexpected Ollama response shape: {e}") from e
        if not isinstance(content, str):
            raise ProviderError("Ollama response has no text content")

        result = parse_vision_response(content)
        self.log.info(
            "Ollama classification complete",
            severity=result.severity.value,
            latency_ms=int((time.time() - start_time) * 1000),
        )
        return result
