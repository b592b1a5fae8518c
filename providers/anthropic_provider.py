"""
Anthropic vision provider — Claude via the messages API.

Unlike the JSON providers, Claude is asked for a section-by-section written
assessment with "Confidence: NN%" figures; the normalizer reads it as free
text. The image travels as a base64 source block with an explicit media type.

Why Claude is a useful second opinion:
  - Reads fine print on window stickers and labels well
  - Tends to explain condition issues in more detail
"""
from __future__ import annotations

import base64
import logging

import anthropic

import config
from errors import TransientProviderError
from models import AnalysisRequest
from providers.base import (
    NARRATIVE_SYSTEM_PROMPT, build_narrative_prompt,
    AnalysisProvider,
)

logger = logging.getLogger(__name__)

_TRANSIENT_TYPES = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


class AnthropicProvider(AnalysisProvider):

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022"):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    def translate_request(self, request: AnalysisRequest) -> dict:
        media_type = self.check_payload(request.payload)
        b64 = base64.b64encode(request.payload).decode()
        return {
            "model": self.model_id,
            "max_tokens": config.MAX_OUTPUT_TOKENS,
            "temperature": config.TEMPERATURE,
            "system": NARRATIVE_SYSTEM_PROMPT,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": build_narrative_prompt(request)},
                    ],
                }
            ],
        }

    async def _send(self, translated: dict) -> str:
        message = await self._client.messages.create(**translated)
        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        if not text.strip():
            raise TransientProviderError(self.name, "empty message content")
        logger.debug(
            "[%s] tokens in=%d out=%d",
            self.full_name, message.usage.input_tokens, message.usage.output_tokens,
        )
        return text

    def is_transient_failure(self, exc: BaseException) -> bool:
        if isinstance(exc, _TRANSIENT_TYPES):
            return True
        if isinstance(exc, anthropic.APIStatusError):
            # 529 = API overloaded
            return exc.status_code in (408, 429, 529) or exc.status_code >= 500
        return "overloaded_error" in str(exc)

    def is_connectivity_failure(self, exc: BaseException) -> bool:
        if isinstance(exc, anthropic.APITimeoutError):
            return False
        return isinstance(exc, anthropic.APIConnectionError) or super().is_connectivity_failure(exc)
