"""
key_store.py — single source of truth for provider credentials.

Priority order for every key:
  1. Database (written by set()) — takes precedence
  2. Environment variable / .env file        — fallback / bootstrap

A resolved credential is cached for the lifetime of the process, so each
provider looks its key up once rather than on every call. set() and delete()
drop the cached entry, so a rotated key is picked up on the next lookup.

Key names (stored in DB as-is, env vars are the uppercase equivalent):
  openai_api_key         →  OPENAI_API_KEY
  anthropic_api_key      →  ANTHROPIC_API_KEY
  google_api_key         →  GOOGLE_API_KEY           (Gemini)
  google_vision_api_key  →  GOOGLE_VISION_API_KEY
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from errors import CredentialNotFound

logger = logging.getLogger(__name__)

KNOWN_KEYS = [
    "openai_api_key",
    "anthropic_api_key",
    "google_api_key",
    "google_vision_api_key",
]

# Lazy import to avoid circular dependency at module load time
_db = None

_cache: dict[str, str] = {}


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


async def get(key_name: str) -> Optional[str]:
    """
    Return the value for key_name, checking the cache, then DB, then env.
    Returns None if not set anywhere. Misses are not cached.
    """
    if key_name in _cache:
        return _cache[key_name]

    value: Optional[str] = None
    try:
        value = await _get_db().get_api_key(key_name)
    except Exception as exc:
        logger.warning("key_store: DB lookup failed for %s: %s", key_name, exc)

    if not value:
        value = os.getenv(key_name.upper()) or None
    if value:
        _cache[key_name] = value
    return value


async def require(key_name: str) -> str:
    """Like get(), but raises CredentialNotFound when the key is missing."""
    value = await get(key_name)
    if value is None:
        raise CredentialNotFound(key_name)
    return value


async def set(key_name: str, value: str, admin_id: int = 0) -> None:
    """Save a key to the DB (overrides .env for all future lookups)."""
    await _get_db().set_api_key(key_name, value, admin_id)
    _cache.pop(key_name, None)


async def delete(key_name: str) -> None:
    """Remove a key from DB (falls back to the .env value if present)."""
    await _get_db().delete_api_key(key_name)
    _cache.pop(key_name, None)


def clear_cache() -> None:
    _cache.clear()


async def get_all_keys() -> dict[str, Optional[str]]:
    """Return all known keys with their current values."""
    return {name: await get(name) for name in KNOWN_KEYS}


def mask(value: Optional[str]) -> str:
    """Return a masked version safe to show in logs."""
    if not value:
        return "not set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
