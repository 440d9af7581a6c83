"""Anthropic vision provider (Claude) through the official SDK."""

import time

import anthropic
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
    parse_vision_response,
)
from src.visual_ai.models import VisionClassification
from src.visual_ai.preprocessor import PreprocessedImage

logger = structlog.get_logger()


class AnthropicVisionProvider(VisionProvider):
    """Claude 3+ models with base64 image blocks."""

    provider_id = "anthropic"
    display_name = "Anthropic"
    is_local = False

    def __init__(
        self,
        api_key: str | None,
        model: str = "claude-3-5-sonnet-20241022",
        timeout: float = 60.0,
        max_retries: int = 2,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        super().__init__(model)
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = client
        self.log = logger.bind(component="anthropic_vision", model=model)

    def supports_vision(self) -> bool:
        return self.model.startswith("claude-")

    async def is_available(self) -> bool:
        return bool(self.api_key) and self.supports_vision()

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def classify(
        self,
        baseline: PreprocessedImage,
        current: PreprocessedImage,
        context: VisionContext | None = None,
    ) -> VisionClassification:
        if not self.api_key:
            raise AuthenticationError("Anthropic API key not configured")

        client = self._get_client()
        start_time = time.time()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=1000,
                temperature=0.1,
                system=SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": build_user_prompt(context)},
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": baseline.media_type,
                                    "data": baseline.base64,
                                },
                            },
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": current.media_type,
                                    "data": current.base64,
                                },
                            },
                        ],
                    }
                ],
            )
        except anthropic.AuthenticationError as e:
            raise AuthenticationError(f"Anthropic rejected credentials: {e}") from e
        except anthropic.RateLimitError as e:
            raise RateLimitError(f"Rate limit exceeded: {e}") from e
        except anthropic.APIConnectionError as e:
            raise ProviderUnavailable(f"Anthropic unreachable: {e}") from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}") from e

        text_blocks = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        if not text_blocks:
            raise ProviderError("Unexpected response type from Anthropic")

        result = parse_vision_response("".join(text_blocks))
        self.log.info(
            "Anthropic classification complete",
            severity=result.severity.value,
            latency_ms=int((time.time() - start_time) * 1000),
            input_tokens=getattr(response.usage, "input_tokens", None),
            output_tokens=getattr(response.usage, "output_tokens", None),
        )
        return result
