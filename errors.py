"""
errors.py — error taxonomy for provider calls and analysis requests.

Per-provider errors (everything derived from ProviderError) are recovered
inside the orchestrator: logged, recorded and excluded from synthesis.
AllProvidersFailed is the only error a caller of submit() ever sees.
"""
from __future__ import annotations

from typing import Iterable, Optional


class AnalysisError(Exception):
    """Base class for every error raised by the analysis core."""


# ── Per-provider errors ───────────────────────────────────────────────────────

class ProviderError(AnalysisError):
    """A single provider failed to contribute to a request."""

    def __init__(
        self,
        provider_id: str,
        message: str,
        attempts: Optional[list] = None,
    ) -> None:
        super().__init__(f"[{provider_id}] {message}")
        self.provider_id = provider_id
        self.message = message
        self.attempts = attempts if attempts is not None else []


class TransientProviderError(ProviderError):
    """Timeout, provider-side rate limit or server error. Retried."""

    def __init__(self, provider_id: str, message: str, *, timeout: bool = False,
                 attempts: Optional[list] = None) -> None:
        super().__init__(provider_id, message, attempts)
        self.timeout = timeout


class PermanentProviderError(ProviderError):
    """Bad credentials, malformed request or unsupported payload. Never retried."""


class RateLimited(ProviderError):
    """The local per-provider call budget is exhausted."""

    def __init__(self, provider_id: str, retry_after: float = 0.0) -> None:
        super().__init__(provider_id, f"local rate limit reached (retry in {retry_after:.1f}s)")
        self.retry_after = retry_after


class ProviderExhausted(ProviderError):
    """Every allowed attempt failed transiently."""


# ── Request-level errors ──────────────────────────────────────────────────────

class AllProvidersFailed(AnalysisError):
    """No provider contributed a usable result for the request."""

    def __init__(
        self,
        request_id: str,
        failures: Optional[dict[str, str]] = None,
        unreachable: Iterable[str] = (),
    ) -> None:
        self.request_id = request_id
        self.failures = dict(failures or {})
        # providers whose last failure was a lost connection rather than a provider error
        self.unreachable = frozenset(unreachable)
        detail = "; ".join(f"{p}: {reason}" for p, reason in sorted(self.failures.items()))
        super().__init__(
            f"All providers failed for request {request_id}"
            + (f" ({detail})" if detail else "")
        )

    @property
    def connectivity_lost(self) -> bool:
        """True when every failed provider was unreachable, i.e. the network is down."""
        return bool(self.failures) and set(self.failures) <= self.unreachable


class CredentialNotFound(KeyError):
    """Raised by key_store.require() when a secret is not configured anywhere."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Credential '{self.name}' is not set (DB or environment)"
