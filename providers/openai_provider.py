"""
OpenAI vision provider — gpt-4o / gpt-4o-mini via chat completions.

Wire shape: a system prompt plus one multimodal user message; the image is
embedded as a data URL (data:image/jpeg;base64,...). The model is asked for a
JSON object (response_format=json_object).

Failure signals come back as typed SDK exceptions carrying the HTTP status.
"""
from __future__ import annotations

import base64
import logging

import openai
from openai import AsyncOpenAI

import config
from errors import TransientProviderError
from models import AnalysisRequest
from providers.base import (
    STRUCTURED_SYSTEM_PROMPT, build_user_prompt,
    AnalysisProvider,
)

logger = logging.getLogger(__name__)

_TRANSIENT_TYPES = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class OpenAIProvider(AnalysisProvider):

    def __init__(self, api_key: str, model: str = "gpt-4o"):
        self.name = "openai"
        self.model_id = model
        # Retries are owned by RetryExecutor, not the SDK
        self._client = AsyncOpenAI(api_key=api_key, max_retries=0)

    def translate_request(self, request: AnalysisRequest) -> dict:
        media_type = self.check_payload(request.payload)
        b64 = base64.b64encode(request.payload).decode()
        return {
            "model": self.model_id,
            "max_tokens": config.MAX_OUTPUT_TOKENS,
            "temperature": config.TEMPERATURE,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": STRUCTURED_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_user_prompt(request)},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{media_type};base64,{b64}",
                                "detail": "high",
                            },
                        },
                    ],
                },
            ],
        }

    async def _send(self, translated: dict) -> str:
        response = await self._client.chat.completions.create(**translated)
        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            raise TransientProviderError(self.name, "empty completion")
        usage = response.usage
        if usage:
            logger.debug(
                "[%s] tokens in=%d out=%d",
                self.full_name, usage.prompt_tokens, usage.completion_tokens,
            )
        return raw

    def is_transient_failure(self, exc: BaseException) -> bool:
        # A 429 for an exhausted billing quota will not clear on retry
        if "insufficient_quota" in str(exc):
            return False
        if isinstance(exc, _TRANSIENT_TYPES):
            return True
        if isinstance(exc, openai.APIStatusError):
            return exc.status_code in (408, 409, 429) or exc.status_code >= 500
        return False

    def is_connectivity_failure(self, exc: BaseException) -> bool:
        # APITimeoutError subclasses APIConnectionError but means the host answered too slowly
        if isinstance(exc, openai.APITimeoutError):
            return False
        return isinstance(exc, openai.APIConnectionError) or super().is_connectivity_failure(exc)
