"""
Central configuration — reads from .env file.

API keys are NOT read here; they go through key_store.py (DB → .env fallback)
and are looked up once per provider per process.

Per-provider enable toggles (ENABLE_OPENAI, ENABLE_ANTHROPIC, ENABLE_GEMINI,
ENABLE_GOOGLE_VISION) are read by providers/manager.py.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _limits(raw: str) -> dict[str, int]:
    """Parse "openai=20,anthropic=10" into {"openai": 20, "anthropic": 10}."""
    out: dict[str, int] = {}
    for item in _csv(raw):
        name, _, value = item.partition("=")
        if value.strip().isdigit():
            out[name.strip()] = int(value)
    return out


# ── Storage ───────────────────────────────────────────────────────────────────
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))

# Completed requests are kept this long for auditing, then purged
AUDIT_TTL_DAYS: int = int(os.getenv("AUDIT_TTL_DAYS", "30"))

# ── HTTP surface ──────────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8080"))

# ── Providers ─────────────────────────────────────────────────────────────────
# Providers run for a request when the caller does not name any
DEFAULT_PROVIDERS: list[str] = _csv(
    os.getenv("DEFAULT_PROVIDERS", "openai,anthropic,gemini,google-vision")
)

# Categorical fields are taken from the first provider in this order that
# reported a value; dimensions fall back to it on confidence ties.
PROVIDER_PRIORITY: list[str] = _csv(
    os.getenv("PROVIDER_PRIORITY", "anthropic,openai,gemini,google-vision")
)

OPENAI_MODEL: str    = os.getenv("OPENAI_MODEL", "gpt-4o")
ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
GEMINI_MODEL: str    = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

MAX_OUTPUT_TOKENS: int = int(os.getenv("MAX_OUTPUT_TOKENS", "1024"))
TEMPERATURE: float     = float(os.getenv("TEMPERATURE", "0.3"))

# Images above this size are rejected before any provider is called (10 MB)
MAX_IMAGE_BYTES: int = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

# ── Resilience ────────────────────────────────────────────────────────────────
MAX_RETRIES: int        = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))

RATE_LIMIT_PER_MINUTE: int     = int(os.getenv("RATE_LIMIT_PER_MINUTE", "50"))
RATE_LIMIT_WINDOW_SECS: float  = float(os.getenv("RATE_LIMIT_WINDOW_SECS", "60"))
PROVIDER_RATE_LIMITS: dict[str, int] = _limits(os.getenv("PROVIDER_RATE_LIMITS", ""))

PROVIDER_TIMEOUT_SECS: float = float(os.getenv("PROVIDER_TIMEOUT_SECS", "30"))
REQUEST_DEADLINE_SECS: float = float(os.getenv("REQUEST_DEADLINE_SECS", "60"))

# Polled with a HEAD request to detect the link coming back; empty disables the check
CONNECTIVITY_CHECK_URL: str    = os.getenv("CONNECTIVITY_CHECK_URL", "https://www.google.com/generate_204")
CONNECTIVITY_CHECK_SECS: float = float(os.getenv("CONNECTIVITY_CHECK_SECS", "30"))
