"""OpenAI vision provider (GPT-4o) over the chat completions REST API."""

import asyncio
import time
from typing import Any

import httpx
import structlog

from src.core.providers.base import (
    SYSTEM_PROMPT,
    AuthenticationError,
    ProviderError,
    ProviderUnavailable,
    RateLimitError,
    VisionContext,
    VisionProvider,
    build_user_prompt,
    mask_api_key,
    parse_vision_response,
)
from src.visual_ai.models import VisionClassification
from src.visual_ai.preprocessor import PreprocessedImage

logger = structlog.get_logger()


class OpenAIVisionProvider(VisionProvider):
    """GPT-4 class vision models via ``/chat/completions``."""

    provider_id = "openai"
    display_name = "OpenAI"
    is_local = False

    BASE_URL = "https://api.openai.com/v1"

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o",
        base_url: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(model)
        self.api_key = api_key
        self.base_url = base_url or self.BASE_URL
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.log = logger.bind(component="openai_vision", model=model)

    def supports_vision(self) -> bool:
        return "gpt-4" in self.model or "gpt-5" in self.model

    async def is_available(self) -> bool:
        return bool(self.api_key) and self.supports_vision()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _handle_error_response(self, response: httpx.Response) -> None:
        if response.status_code == 200:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            error = error.get("message")
        error_message = error or response.text or f"HTTP {response.status_code}"

        if response.status_code in (401, 403):
            raise AuthenticationError(f"OpenAI rejected credentials: {error_message}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limit exceeded: {error_message}",
                retry_after=float(retry_after) if retry_after else None,
            )

        raise ProviderError(f"OpenAI API error ({response.status_code}): {error_message}")

    def _build_payload(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: VisionContext | None,
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_user_prompt(context)},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{baseline.media_type};base64,{baseline.base64}",
                                "detail": "high",
                            },
                        },
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{current.media_type};base64,{current.base64}",
                                "detail": "high",
                            },
                        },
                    ],
                },
            ],
            "temperature": 0.1,
            "max_tokens": 1000,
            "response_format": {"type": "json_object"},
        }

    async def classify(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: VisionContext | None = None,
    ) -> VisionClassification:
        if not self.api_key:
            raise AuthenticationError("OpenAI API key not configured")

        client = await self._get_client()
        payload = self._build_payload(baseline, current, context)
        start_time = time.time()

        for attempt in range(self.max_retries):
            try:
                response = await client.post("/chat/completions", json=payload)
                self._handle_error_response(response)
                break
            except RateLimitError as e:
                if attempt >= self.max_retries - 1:
                    raise
                wait_time = e.retry_after or (2 ** attempt)
                self.log.warning("Rate limited, retrying", wait_seconds=wait_time, attempt=attempt + 1)
                await asyncio.sleep(wait_time)
            except httpx.RequestError as e:
                if attempt >= self.max_retries - 1:
                    raise ProviderUnavailable(
                        f"OpenAI request failed after {self.max_retries} attempts: {e}"
                    ) from e
                self.log.warning("Request error, retrying", error=str(e), attempt=attempt + 1)
                await asyncio.sleep(2 ** attempt)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected OpenAI response shape: {e}") from e
        if not isinstance(content, str):
            raise ProviderError("OpenAI response has no text content")

        result = parse_vision_response(content)
        usage = data.get("usage") or {}
        self.log.info(
            "OpenAI classification complete",
            severity=result.severity.value,
            latency_ms=int((time.time() - start_time) * 1000),
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            api_key=mask_api_key(self.api_key),
        )
        return result
