"""
Provider Manager — builds the registry of enabled analysis providers.

Keys are read from key_store (cache → DB → .env fallback) when the registry
is first built; reset() drops the registry so a rotated key is picked up on
the next build.

The registry is keyed by provider id ("openai", "anthropic", "gemini",
"google-vision"), which is what AnalysisRequest.providers refers to.

Per-provider enable/disable via environment variables (all default to true):
  ENABLE_OPENAI=true/false
  ENABLE_ANTHROPIC=true/false
  ENABLE_GEMINI=true/false
  ENABLE_GOOGLE_VISION=true/false
"""
from __future__ import annotations

import logging
import os

import config
from providers.base import AnalysisProvider

logger = logging.getLogger(__name__)

# Module-level cache; reset() clears it when a key changes
_providers: dict[str, AnalysisProvider] = {}


def _model_enabled(env_key: str, default: bool = True) -> bool:
    """
    Check whether a provider is enabled via an environment variable.
    Default is True; pass default=False to require explicit opt-in.
    """
    raw = os.getenv(env_key, "true" if default else "false")
    return raw.strip().lower() not in ("false", "0", "no")


def _add(providers: dict[str, AnalysisProvider], factory, env_flag: str, provider_id: str) -> None:
    if not _model_enabled(env_flag):
        logger.info("Skipped provider %s (disabled by %s)", provider_id, env_flag)
        return
    try:
        p = factory()
    except Exception as exc:
        logger.warning("Could not load %s: %s", provider_id, exc)
        return
    providers[p.name] = p
    logger.info("Loaded provider: %s", p.full_name)


async def _build_providers() -> dict[str, AnalysisProvider]:
    """
    Instantiate every provider whose API key is available (DB or .env)
    AND whose enable toggle is on.
    """
    import key_store
    providers: dict[str, AnalysisProvider] = {}

    # ── OpenAI ────────────────────────────────────────────────────────────────
    openai_key = await key_store.get("openai_api_key")
    if openai_key:
        from providers.openai_provider import OpenAIProvider
        _add(providers, lambda: OpenAIProvider(openai_key, config.OPENAI_MODEL),
             "ENABLE_OPENAI", "openai")

    # ── Anthropic ─────────────────────────────────────────────────────────────
    anthropic_key = await key_store.get("anthropic_api_key")
    if anthropic_key:
        from providers.anthropic_provider import AnthropicProvider
        _add(providers, lambda: AnthropicProvider(anthropic_key, config.ANTHROPIC_MODEL),
             "ENABLE_ANTHROPIC", "anthropic")

    # ── Google Gemini ─────────────────────────────────────────────────────────
    google_key = await key_store.get("google_api_key")
    if google_key:
        from providers.gemini_provider import GeminiProvider
        _add(providers, lambda: GeminiProvider(google_key, config.GEMINI_MODEL),
             "ENABLE_GEMINI", "gemini")

    # ── Google Cloud Vision ───────────────────────────────────────────────────
    vision_key = await key_store.get("google_vision_api_key")
    if vision_key:
        from providers.google_vision_provider import GoogleVisionProvider
        _add(providers, lambda: GoogleVisionProvider(vision_key),
             "ENABLE_GOOGLE_VISION", "google-vision")

    if not providers:
        raise RuntimeError(
            "No analysis providers available.\n"
            "Set at least one key in .env or with key_store.set():\n"
            "  • OPENAI_API_KEY\n"
            "  • ANTHROPIC_API_KEY\n"
            "  • GOOGLE_API_KEY (Gemini)\n"
            "  • GOOGLE_VISION_API_KEY"
        )

    return providers


async def get_providers() -> dict[str, AnalysisProvider]:
    global _providers
    if not _providers:
        _providers = await _build_providers()
    return _providers


def reset() -> None:
    global _providers
    _providers = {}
