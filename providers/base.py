"""
Shared prompts, media helpers and the base class for all analysis providers.

Every provider implements the same three-part capability:

  translate_request(request) -> dict     canonical request → provider wire shape
  invoke(translated, timeout) -> str     one network call, raw response text
  is_transient_failure(exc) -> bool      provider-specific retry signal

The retry executor only ever talks to this interface.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp

import config
from errors import PermanentProviderError
from models import AnalysisRequest

logger = logging.getLogger(__name__)

# ── Prompts (shared across the language-model providers) ──────────────────────

STRUCTURED_SYSTEM_PROMPT = """You are an expert window replacement estimator.
Analyse the window photo and return ONLY a valid JSON object — no markdown, no prose.

JSON schema:
{
  "window_type":     "double-hung | single-hung | casement | sliding | picture | bay | bow | awning | hopper | garden | unknown",
  "material":        "vinyl | wood | aluminum | composite | fiberglass | unknown",
  "condition":       "excellent | good | fair | poor | unknown",
  "width_inches":    number or null,
  "height_inches":   number or null,
  "recommendations": ["short actionable recommendations"],
  "confidence":      integer 0-100,
  "notes":           "brief note on what limited the analysis"
}

Rules:
- Only estimate dimensions when a reference object makes it possible
- Use "unknown" rather than guessing
"""

NARRATIVE_SYSTEM_PROMPT = """You are an expert window replacement consultant.
You assess window photos for homeowners in cold climates where energy
efficiency matters. Always give a confidence score (0-100) for each
assessment and acknowledge the limits of measuring from a photo."""

_NARRATIVE_TEMPLATE = """Please analyse this window image.

1. Window Type: casement, double-hung, sliding, picture, bay, awning, etc.
2. Material: frame material (vinyl, wood, aluminum, composite, fiberglass)
3. Condition: excellent, good, fair or poor, with visible issues
4. Measurements: estimated width x height in inches if possible
5. Recommendations: replacement and energy-efficiency recommendations

Give a confidence score for each item as "Confidence: NN%".
Locale: {locale}
Session: {session}"""


def build_user_prompt(request: AnalysisRequest) -> str:
    """Short instruction for the JSON-returning providers."""
    if request.custom_prompt:
        return request.custom_prompt
    return (
        "Analyse this window photo and return the JSON. "
        f"Write recommendations in the language of locale {request.locale}."
    )


def build_narrative_prompt(request: AnalysisRequest) -> str:
    """Section-by-section instruction for the free-text providers."""
    if request.custom_prompt:
        return request.custom_prompt
    return _NARRATIVE_TEMPLATE.format(
        locale=request.locale,
        session=request.session_id or "unknown",
    )


def parse_json_response(raw: str, provider_name: str) -> Any:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = raw.strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.debug("[%s] Non-JSON response: %s", provider_name, raw[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


# ── Media helpers ─────────────────────────────────────────────────────────────

def detect_media_type(payload: bytes) -> Optional[str]:
    """Sniff the image type from magic bytes. None if it is not a supported image."""
    if payload[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if payload[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if payload[:4] == b"GIF8":
        return "image/gif"
    if payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    return None


class ProviderHTTPError(Exception):
    """Non-2xx HTTP status from a REST provider."""

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


# ── Abstract base ──────────────────────────────────────────────────────────────

class AnalysisProvider(ABC):
    """Base class all analysis providers must implement."""

    name: str           # provider id used in requests, e.g. "openai"
    model_id: str       # e.g. "gpt-4o"

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    def check_payload(self, payload: bytes) -> str:
        """Return the payload's media type, or raise PermanentProviderError."""
        if not payload:
            raise PermanentProviderError(self.name, "unsupported payload: empty image")
        if len(payload) > config.MAX_IMAGE_BYTES:
            raise PermanentProviderError(
                self.name,
                f"unsupported payload: image is {len(payload) / 1024 / 1024:.1f}MB "
                f"(max {config.MAX_IMAGE_BYTES / 1024 / 1024:.0f}MB)",
            )
        media_type = detect_media_type(payload)
        if media_type is None:
            raise PermanentProviderError(self.name, "unsupported payload: not a PNG/JPEG/GIF/WEBP image")
        return media_type

    @abstractmethod
    def translate_request(self, request: AnalysisRequest) -> dict:
        """Build the provider-specific request body. Must not touch the network."""
        ...

    @abstractmethod
    async def _send(self, translated: dict) -> str:
        """Perform the network call and return the raw response text."""
        ...

    async def invoke(self, translated: dict, timeout: float) -> str:
        """One bounded call. asyncio.TimeoutError is treated as transient upstream."""
        return await asyncio.wait_for(self._send(translated), timeout=timeout)

    @abstractmethod
    def is_transient_failure(self, exc: BaseException) -> bool:
        ...

    def is_connectivity_failure(self, exc: BaseException) -> bool:
        """True if exc means the network is unreachable, not that the provider refused."""
        return isinstance(exc, (ConnectionError, aiohttp.ClientConnectionError))
