"""
retry.py — bounded exponential-backoff retry around one provider call.

Only transient failures are retried. The delay before retry n (n = index of
the failed attempt, starting at 0) is base_delay * 2**n; there is no other
cap than max_retries. Every attempt is appended to the caller's attempt list
as a ProviderCallAttempt.

Outcomes:
  success            → the call's return value
  permanent failure  → PermanentProviderError after exactly one attempt
  retries exhausted  → ProviderExhausted after max_retries + 1 attempts
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import config
from errors import PermanentProviderError, ProviderExhausted, TransientProviderError
from models import CallOutcome, ProviderCallAttempt

logger = logging.getLogger(__name__)


def _never_transient(exc: BaseException) -> bool:
    return False


def classify_failure(
    exc: BaseException,
    is_transient: Callable[[BaseException], bool] = _never_transient,
) -> CallOutcome:
    if isinstance(exc, asyncio.TimeoutError):
        return CallOutcome.TIMEOUT
    if isinstance(exc, TransientProviderError):
        return CallOutcome.TIMEOUT if exc.timeout else CallOutcome.TRANSIENT_FAILURE
    if isinstance(exc, PermanentProviderError):
        return CallOutcome.PERMANENT_FAILURE
    if is_transient(exc):
        return CallOutcome.TRANSIENT_FAILURE
    return CallOutcome.PERMANENT_FAILURE


class RetryExecutor:

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = config.RETRY_BASE_DELAY if base_delay is None else base_delay
        self._sleep = sleep

    def delay_for(self, attempt_index: int) -> float:
        return self.base_delay * (2 ** attempt_index)

    async def execute(
        self,
        provider_id: str,
        call: Callable[[], Awaitable[Any]],
        is_transient: Callable[[BaseException], bool] = _never_transient,
        attempts: Optional[list[ProviderCallAttempt]] = None,
    ) -> Any:
        """
        Run `call` until it succeeds, fails permanently, or retries run out.
        `is_transient` is the provider adapter's own failure predicate.
        """
        if attempts is None:
            attempts = []

        for index in range(self.max_retries + 1):
            started_at = datetime.now(timezone.utc)
            t0 = time.monotonic()
            try:
                response = await call()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                latency_ms = int((time.monotonic() - t0) * 1000)
                outcome = classify_failure(exc, is_transient)
                attempts.append(ProviderCallAttempt(
                    provider_id=provider_id,
                    attempt=index + 1,
                    started_at=started_at,
                    outcome=outcome,
                    latency_ms=latency_ms,
                    error=str(exc) or type(exc).__name__,
                ))

                if outcome is CallOutcome.PERMANENT_FAILURE:
                    logger.error("[%s] Permanent failure: %s", provider_id, exc)
                    raise PermanentProviderError(
                        provider_id, str(exc) or type(exc).__name__, attempts
                    ) from exc

                if index >= self.max_retries:
                    logger.error(
                        "[%s] Giving up after %d attempts: %s",
                        provider_id, index + 1, exc,
                    )
                    raise ProviderExhausted(
                        provider_id,
                        f"retries exhausted after {index + 1} attempts ({str(exc) or type(exc).__name__})",
                        attempts,
                    ) from exc

                delay = self.delay_for(index)
                logger.warning(
                    "[%s] %s on attempt %d/%d, retrying in %.1fs",
                    provider_id, outcome.value, index + 1, self.max_retries + 1, delay,
                )
                await self._sleep(delay)
                continue

            latency_ms = int((time.monotonic() - t0) * 1000)
            attempts.append(ProviderCallAttempt(
                provider_id=provider_id,
                attempt=index + 1,
                started_at=started_at,
                outcome=CallOutcome.SUCCESS,
                latency_ms=latency_ms,
                raw_response=response if isinstance(response, str) else None,
            ))
            return response
