"""
Google Cloud Vision provider — label + object detection over REST.

Endpoint: POST https://vision.googleapis.com/v1/images:annotate?key=API_KEY
Features: LABEL_DETECTION and OBJECT_LOCALIZATION.

This is not a language model: it returns scored labels ("Casement window",
"Wood", "Sash window" ...) which the normalizer turns into the same canonical
fields as the LLM providers. Scores arrive as 0–1 fractions.

Errors surface two ways:
  • HTTP status on the whole call (429 / 5xx transient, other 4xx permanent)
  • a per-image "error" object inside a 200 response, carrying a gRPC code
"""
from __future__ import annotations

import base64
import json
import logging

import aiohttp

from models import AnalysisRequest
from providers.base import AnalysisProvider, ProviderHTTPError

logger = logging.getLogger(__name__)

ANNOTATE_URL = "https://vision.googleapis.com/v1/images:annotate"

# gRPC status codes that clear on retry
# 4 DEADLINE_EXCEEDED, 8 RESOURCE_EXHAUSTED, 13 INTERNAL, 14 UNAVAILABLE
_TRANSIENT_RPC_CODES = {4, 8, 13, 14}


class VisionAnnotateError(Exception):
    """Typed error payload returned for an individual image."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Vision error {code}: {message}")
        self.code = code
        self.message = message


class GoogleVisionProvider(AnalysisProvider):

    def __init__(self, api_key: str, max_labels: int = 15):
        self.name = "google-vision"
        self.model_id = "images-annotate-v1"
        self._key = api_key
        self._max_labels = max_labels

    def translate_request(self, request: AnalysisRequest) -> dict:
        self.check_payload(request.payload)
        return {
            "requests": [
                {
                    "image": {"content": base64.b64encode(request.payload).decode()},
                    "features": [
                        {"type": "LABEL_DETECTION",     "maxResults": self._max_labels},
                        {"type": "OBJECT_LOCALIZATION", "maxResults": self._max_labels},
                    ],
                }
            ]
        }

    async def _send(self, translated: dict) -> str:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                ANNOTATE_URL,
                params={"key": self._key},
                json=translated,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise ProviderHTTPError(resp.status, text)

        data = json.loads(text)
        responses = data.get("responses") or [{}]
        error = responses[0].get("error")
        if error:
            raise VisionAnnotateError(int(error.get("code", 2)), error.get("message", ""))
        return text

    def is_transient_failure(self, exc: BaseException) -> bool:
        if isinstance(exc, ProviderHTTPError):
            return exc.status in (408, 429) or exc.status >= 500
        if isinstance(exc, VisionAnnotateError):
            return exc.code in _TRANSIENT_RPC_CODES
        # dropped connections, DNS hiccups, server disconnects
        return isinstance(exc, aiohttp.ClientConnectionError)
