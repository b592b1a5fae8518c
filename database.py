"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  analysis_results  — one row per request id: status, request metadata and the
                      synthesized result JSON (the idempotent-resubmission store)
  analysis_events   — audit trail fed by the event bus (one row per event)
  api_keys          — provider credentials set at runtime (override .env values)

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

from events import AnalysisEvent
from models import AnalysisRequest, RequestStatus, SynthesizedResult

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "analysis.db")
_lock = asyncio.Lock()          # serialise schema migrations


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS analysis_results (
    request_id   TEXT PRIMARY KEY,
    status       TEXT NOT NULL DEFAULT 'pending',
    session_id   TEXT,
    providers    TEXT NOT NULL DEFAULT '[]',     -- JSON list of requested ids
    locale       TEXT NOT NULL DEFAULT 'en-US',
    payload_size INTEGER NOT NULL DEFAULT 0,
    result_json  TEXT,
    error        TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL,
    resolved_at  TEXT
);
CREATE INDEX IF NOT EXISTS idx_results_created ON analysis_results (created_at);

-- Audit trail written by the event bus subscriber
CREATE TABLE IF NOT EXISTS analysis_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id  TEXT NOT NULL,
    kind        TEXT NOT NULL,
    provider_id TEXT,
    detail      TEXT NOT NULL DEFAULT '{}',
    ts          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_request ON analysis_events (request_id);
CREATE INDEX IF NOT EXISTS idx_events_ts      ON analysis_events (ts);

-- Provider credentials set at runtime (override .env values)
CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_by INTEGER NOT NULL,
    updated_at TEXT    NOT NULL
);
"""


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Analysis results ──────────────────────────────────────────────────────────

async def save_result(request: AnalysisRequest, result: SynthesizedResult) -> None:
    """Store the synthesized result and mark the request resolved."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO analysis_results
               (request_id, status, session_id, providers, locale, payload_size,
                result_json, created_at, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(request_id) DO UPDATE SET
                 status      = excluded.status,
                 result_json = excluded.result_json,
                 error       = '',
                 resolved_at = excluded.resolved_at""",
            (
                request.request_id,
                RequestStatus.RESOLVED.value,
                request.session_id,
                json.dumps(list(request.providers)),
                request.locale,
                len(request.payload),
                json.dumps(result.to_dict()),
                request.created_at.isoformat(),
                result.resolved_at.isoformat(),
            ),
        )
        await db.commit()


async def load_result(request_id: str) -> Optional[SynthesizedResult]:
    """Return the stored result for request_id, or None if not resolved."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT result_json FROM analysis_results WHERE request_id = ? AND result_json IS NOT NULL",
            (request_id,),
        ) as cur:
            row = await cur.fetchone()
    if not row:
        return None
    return SynthesizedResult.from_dict(json.loads(row[0]))


async def set_status(request_id: str, status: RequestStatus, error: str = "") -> None:
    """Insert or update the status row for request_id."""
    now = datetime.now(timezone.utc).isoformat()
    resolved_at = None if status is RequestStatus.PENDING else now
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO analysis_results (request_id, status, error, created_at, resolved_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(request_id) DO UPDATE SET
                 status      = excluded.status,
                 error       = excluded.error,
                 resolved_at = COALESCE(excluded.resolved_at, analysis_results.resolved_at)""",
            (request_id, status.value, error[:500], now, resolved_at),
        )
        await db.commit()


async def get_status(request_id: str) -> Optional[RequestStatus]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT status FROM analysis_results WHERE request_id = ?", (request_id,)
        ) as cur:
            row = await cur.fetchone()
    return RequestStatus(row[0]) if row else None


async def get_error(request_id: str) -> Optional[str]:
    """Return the failure reason recorded for a failed request."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT error FROM analysis_results WHERE request_id = ?", (request_id,)
        ) as cur:
            row = await cur.fetchone()
    return row[0] if row and row[0] else None


# ── Audit events ──────────────────────────────────────────────────────────────

async def record_event(event: AnalysisEvent) -> None:
    """Event bus subscriber: append one audit row."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO analysis_events (request_id, kind, provider_id, detail, ts)
               VALUES (?, ?, ?, ?, ?)""",
            (
                event.request_id,
                event.kind.value,
                event.provider_id,
                json.dumps(event.detail, default=str),
                event.at.isoformat(),
            ),
        )
        await db.commit()


async def get_events(request_id: str) -> list[dict]:
    """Return the audit trail for one request, oldest first."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            """SELECT kind, provider_id, detail, ts FROM analysis_events
               WHERE request_id = ? ORDER BY id""",
            (request_id,),
        ) as cur:
            rows = await cur.fetchall()
    return [
        {"kind": r[0], "provider_id": r[1], "detail": json.loads(r[2]), "ts": r[3]}
        for r in rows
    ]


async def purge_expired(ttl_days: int) -> int:
    """Delete results and events older than ttl_days. Returns rows removed."""
    cutoff = (datetime.now(timezone.utc) - timedelta(days=ttl_days)).isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        cur_results = await db.execute(
            "DELETE FROM analysis_results WHERE created_at < ?", (cutoff,)
        )
        cur_events = await db.execute(
            "DELETE FROM analysis_events WHERE ts < ?", (cutoff,)
        )
        await db.commit()
        removed = cur_results.rowcount + cur_events.rowcount
    if removed:
        logger.info("Purged %d audit rows older than %d days", removed, ttl_days)
    return removed


async def get_stats() -> dict:
    """Request counts per status plus provider failure counts from the audit trail."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT status, COUNT(*) FROM analysis_results GROUP BY status"
        ) as cur:
            per_status = {r[0]: r[1] for r in await cur.fetchall()}
        async with db.execute(
            """SELECT provider_id, COUNT(*) FROM analysis_events
               WHERE kind IN ('provider_failed', 'provider_timed_out', 'rate_limited')
               GROUP BY provider_id ORDER BY COUNT(*) DESC"""
        ) as cur:
            failures = {r[0]: r[1] for r in await cur.fetchall()}
    return {
        "requests": per_status,
        "total_requests": sum(per_status.values()),
        "provider_failures": failures,
    }


# ── API key operations ────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    """Return DB-stored value for key_name, or None if not set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str, admin_id: int) -> None:
    """Insert or replace an API key in the DB."""
    now = datetime.now(timezone.utc).isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_by, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                 key_value=excluded.key_value,
                 updated_by=excluded.updated_by,
                 updated_at=excluded.updated_at""",
            (key_name, key_value, admin_id, now),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    """Remove a key from DB (falls back to the .env value)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()


async def get_all_api_keys() -> dict[str, str]:
    """Return all DB-stored API keys as {key_name: key_value}."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT key_name, key_value FROM api_keys") as cur:
            rows = await cur.fetchall()
    return {r[0]: r[1] for r in rows}
