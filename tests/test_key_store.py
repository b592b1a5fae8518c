"""
Tests for key_store.py.

Covers:
  - get(): DB first → env var fallback → None
  - get(): resolved values cached, misses not cached
  - set() / delete(): write through to the DB and drop the cached value
  - require(): CredentialNotFound when missing
  - get_all_keys(): returns all known key names
  - mask(): various masking scenarios
"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

import database as db
import key_store
from errors import CredentialNotFound


@pytest_asyncio.fixture(autouse=True)
async def init_db(tmp_data_dir):
    await db.init_db()


# ── get() ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestGet:
    async def test_db_value_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        await db.set_api_key("openai_api_key", "sk-db", admin_id=1)
        result = await key_store.get("openai_api_key")
        assert result == "sk-db"

    async def test_env_var_used_as_fallback(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        result = await key_store.get("openai_api_key")
        assert result == "sk-from-env"

    async def test_returns_none_when_not_set(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        result = await key_store.get("openai_api_key")
        assert result is None

    async def test_env_var_name_is_uppercased(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_VISION_API_KEY", "vision-key-value")
        result = await key_store.get("google_vision_api_key")
        assert result == "vision-key-value"

    async def test_db_error_falls_back_to_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
        with patch.object(db, "get_api_key", AsyncMock(side_effect=OSError("disk gone"))):
            assert await key_store.get("anthropic_api_key") == "sk-ant-env"


# ── Caching ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCache:
    async def test_value_looked_up_once(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        lookup = AsyncMock(return_value=None)
        with patch.object(db, "get_api_key", lookup):
            await key_store.get("openai_api_key")
            await key_store.get("openai_api_key")
        assert lookup.await_count == 1

    async def test_cached_value_survives_env_change(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-first")
        await key_store.get("openai_api_key")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-second")
        assert await key_store.get("openai_api_key") == "sk-first"

    async def test_miss_is_not_cached(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        assert await key_store.get("google_api_key") is None
        monkeypatch.setenv("GOOGLE_API_KEY", "g-late")
        assert await key_store.get("google_api_key") == "g-late"

    async def test_clear_cache(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-first")
        await key_store.get("openai_api_key")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-second")
        key_store.clear_cache()
        assert await key_store.get("openai_api_key") == "sk-second"


# ── require() ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestRequire:
    async def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        assert await key_store.require("openai_api_key") == "sk-env"

    async def test_missing_raises(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(CredentialNotFound) as exc_info:
            await key_store.require("openai_api_key")
        assert exc_info.value.name == "openai_api_key"
        assert "openai_api_key" in str(exc_info.value)


# ── set() ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSetKey:
    async def test_saves_to_db(self):
        await key_store.set("openai_api_key", "sk-test", admin_id=1)
        db_val = await db.get_api_key("openai_api_key")
        assert db_val == "sk-test"

    async def test_overrides_env_value(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        await key_store.set("openai_api_key", "sk-db", admin_id=1)
        result = await key_store.get("openai_api_key")
        assert result == "sk-db"

    async def test_rotation_invalidates_cache(self):
        await key_store.set("openai_api_key", "sk-old")
        assert await key_store.get("openai_api_key") == "sk-old"
        await key_store.set("openai_api_key", "sk-new")
        assert await key_store.get("openai_api_key") == "sk-new"


# ── delete() ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDeleteKey:
    async def test_removes_from_db(self):
        await key_store.set("openai_api_key", "sk-test", admin_id=1)
        await key_store.delete("openai_api_key")
        db_val = await db.get_api_key("openai_api_key")
        assert db_val is None

    async def test_falls_back_to_env_after_delete(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env-fallback")
        await key_store.set("openai_api_key", "sk-db", admin_id=1)
        assert await key_store.get("openai_api_key") == "sk-db"
        await key_store.delete("openai_api_key")
        result = await key_store.get("openai_api_key")
        assert result == "sk-env-fallback"


# ── get_all_keys() ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestGetAllKeys:
    async def test_returns_all_known_keys(self):
        keys = await key_store.get_all_keys()
        assert list(keys) == [
            "openai_api_key",
            "anthropic_api_key",
            "google_api_key",
            "google_vision_api_key",
        ]

    async def test_set_key_appears_in_get_all(self):
        await key_store.set("openai_api_key", "sk-all-test", admin_id=1)
        keys = await key_store.get_all_keys()
        assert keys["openai_api_key"] == "sk-all-test"


# ── mask() ────────────────────────────────────────────────────────────────────

class TestMask:
    def test_none_shows_not_set(self):
        assert key_store.mask(None) == "not set"

    def test_empty_shows_not_set(self):
        assert key_store.mask("") == "not set"

    def test_short_key_shows_stars(self):
        assert key_store.mask("sk-ab") == "****"

    def test_long_key_shows_partial(self):
        result = key_store.mask("sk-1234567890abcdef")
        # First 4 chars visible
        assert result.startswith("sk-1")
        # Last 4 chars visible
        assert result.endswith("cdef")
        # Middle is masked
        assert "567890" not in result
        assert len(result) == len("sk-1234567890abcdef")

    def test_exactly_8_chars_shows_stars(self):
        assert key_store.mask("abcdefgh") == "****"
