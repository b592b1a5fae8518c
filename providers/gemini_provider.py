"""
Google Gemini vision provider — uses the google-genai SDK (v1 API).

Wire shape: image bytes travel as an inline Part with their MIME type, the
JSON schema instruction goes in system_instruction. A response blocked by the
safety filter carries no text and is not retried.
"""
from __future__ import annotations

import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

import config
from errors import PermanentProviderError
from models import AnalysisRequest
from providers.base import (
    STRUCTURED_SYSTEM_PROMPT, build_user_prompt,
    AnalysisProvider,
)

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = ("RESOURCE_EXHAUSTED", "UNAVAILABLE", "DEADLINE_EXCEEDED")


class GeminiProvider(AnalysisProvider):

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.name     = "gemini"
        self.model_id = model
        self._client  = genai.Client(api_key=api_key, http_options={"api_version": "v1"})

    def translate_request(self, request: AnalysisRequest) -> dict:
        mime = self.check_payload(request.payload)
        return {
            "model": self.model_id,
            "contents": [
                genai_types.Part.from_bytes(data=request.payload, mime_type=mime),
                build_user_prompt(request),
            ],
            "config": genai_types.GenerateContentConfig(
                system_instruction=STRUCTURED_SYSTEM_PROMPT,
                temperature=config.TEMPERATURE,
                max_output_tokens=config.MAX_OUTPUT_TOKENS,
            ),
        }

    async def _send(self, translated: dict) -> str:
        response = await self._client.aio.models.generate_content(**translated)
        raw = response.text
        if not raw:
            raise PermanentProviderError(self.name, "response blocked or empty (safety filter)")
        return raw

    def is_transient_failure(self, exc: BaseException) -> bool:
        if isinstance(exc, genai_errors.ServerError):
            return True
        if isinstance(exc, genai_errors.APIError):
            return exc.code in (408, 429)
        return any(marker in str(exc) for marker in _TRANSIENT_MARKERS)
