"""
orchestrator.py — fans one AnalysisRequest out to every requested provider.

Per provider, one asyncio task runs:

  rate limiter → (one wait-and-retry if the request opted in)
               → translate_request → RetryExecutor(invoke) → normalize

All tasks are joined with asyncio.wait(), so one provider failing never
cancels another. The request deadline bounds the join; tasks still running
at the deadline are cancelled, recorded as timeouts and their results are
never used. Per-provider errors are logged, emitted as events and excluded;
only AllProvidersFailed reaches the caller.

submit() adds the idempotency layer on top of analyze(): a request id that
has already resolved returns the stored result, and concurrent submissions
of the same id share a single in-flight computation.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

import config
from errors import (
    AllProvidersFailed,
    PermanentProviderError,
    ProviderError,
    RateLimited,
)
from events import AnalysisEvent, EventBus, EventKind
from models import (
    AnalysisRequest,
    CallOutcome,
    NormalizedResult,
    ProviderCallAttempt,
    RequestStatus,
    SynthesizedResult,
)
from normalizer import normalize
from providers.base import AnalysisProvider
from rate_limiter import RateLimiter
from retry import RetryExecutor
from synthesizer import synthesize

logger = logging.getLogger(__name__)

# Resolved results kept in memory for fast idempotent resubmission
RESULT_CACHE_SIZE = 256


class AnalysisOrchestrator:

    def __init__(
        self,
        providers: dict[str, AnalysisProvider],
        rate_limiter: Optional[RateLimiter] = None,
        retry_executor: Optional[RetryExecutor] = None,
        store: Any = None,
        events: Optional[EventBus] = None,
        priority: Optional[Sequence[str]] = None,
        provider_timeout: Optional[float] = None,
        deadline_secs: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry_executor or RetryExecutor()
        # Anything with database.py's save_result / load_result / set_status / get_status
        self.store = store
        self.events = events or EventBus()
        self.priority = list(priority if priority is not None else config.PROVIDER_PRIORITY)
        self.provider_timeout = (
            config.PROVIDER_TIMEOUT_SECS if provider_timeout is None else provider_timeout
        )
        self.deadline_secs = config.REQUEST_DEADLINE_SECS if deadline_secs is None else deadline_secs
        self._sleep = sleep

        self._results: OrderedDict[str, SynthesizedResult] = OrderedDict()
        self._failed: dict[str, str] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    # ── Fan-out ───────────────────────────────────────────────────────────────

    def _remaining(self, request: AnalysisRequest) -> float:
        if request.deadline is None:
            return self.deadline_secs
        remaining = (request.deadline - datetime.now(timezone.utc)).total_seconds()
        return max(0.0, remaining)

    async def _acquire(self, request: AnalysisRequest, provider_id: str) -> None:
        if self.rate_limiter.try_acquire(provider_id):
            return
        retry_after = self.rate_limiter.retry_after(provider_id)
        if not request.wait_on_rate_limit:
            raise RateLimited(provider_id, retry_after)
        logger.info("[%s] Rate limited, waiting %.1fs once", provider_id, retry_after)
        await self._sleep(retry_after)
        if not self.rate_limiter.try_acquire(provider_id):
            raise RateLimited(provider_id, self.rate_limiter.retry_after(provider_id))

    async def _run_provider(
        self,
        request: AnalysisRequest,
        provider_id: str,
        attempts: list[ProviderCallAttempt],
    ) -> NormalizedResult:
        provider = self.providers.get(provider_id)
        if provider is None:
            raise PermanentProviderError(provider_id, "provider is not configured")

        await self._acquire(request, provider_id)

        try:
            translated = provider.translate_request(request)
        except ProviderError:
            raise
        except Exception as exc:
            raise PermanentProviderError(provider_id, f"could not build request: {exc}") from exc

        raw = await self.retry.execute(
            provider_id,
            lambda: provider.invoke(translated, self.provider_timeout),
            provider.is_transient_failure,
            attempts,
        )
        return normalize(provider_id, raw)

    def _emit(self, kind: EventKind, request_id: str, provider_id: Optional[str] = None,
              **detail: Any) -> None:
        self.events.emit(AnalysisEvent(kind, request_id, provider_id, detail))

    async def analyze(self, request: AnalysisRequest) -> SynthesizedResult:
        """Run every requested provider concurrently and synthesize what succeeded."""
        self._emit(EventKind.REQUEST_STARTED, request.request_id,
                   providers=list(request.providers))

        attempts: dict[str, list[ProviderCallAttempt]] = {pid: [] for pid in request.providers}
        tasks: dict[str, asyncio.Task] = {
            pid: asyncio.ensure_future(self._run_provider(request, pid, attempts[pid]))
            for pid in request.providers
        }
        timeout = self._remaining(request)
        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)

        results: list[NormalizedResult] = []
        failures: dict[str, str] = {}
        unreachable: set[str] = set()

        for pid, task in tasks.items():
            if task in pending:
                task.cancel()
                attempts[pid].append(ProviderCallAttempt(
                    provider_id=pid,
                    attempt=len(attempts[pid]) + 1,
                    started_at=datetime.now(timezone.utc),
                    outcome=CallOutcome.TIMEOUT,
                    latency_ms=int(timeout * 1000),
                    error="request deadline elapsed",
                ))
                failures[pid] = "timeout: request deadline elapsed"
                logger.warning("[%s] Abandoned at request deadline (%.1fs)", pid, timeout)
                self._emit(EventKind.PROVIDER_TIMED_OUT, request.request_id, pid,
                           attempts=[a.to_dict() for a in attempts[pid]])
                continue

            exc = task.exception()
            if exc is None:
                result = task.result()
                results.append(result)
                self._emit(EventKind.PROVIDER_SUCCEEDED, request.request_id, pid,
                           confidence=result.confidence,
                           quality_score=result.quality_score,
                           attempts=[a.to_dict() for a in attempts[pid]])
                continue

            if isinstance(exc, RateLimited):
                logger.warning("[%s] Skipped: %s", pid, exc.message)
                failures[pid] = f"rate_limited: {exc.message}"
                self._emit(EventKind.RATE_LIMITED, request.request_id, pid,
                           retry_after=exc.retry_after)
                continue

            if isinstance(exc, ProviderError):
                logger.warning("[%s] Excluded: %s", pid, exc.message)
                failures[pid] = exc.message
            else:
                logger.error("[%s] Unexpected error: %s", pid, exc, exc_info=exc)
                failures[pid] = f"unexpected error: {exc}"
            if self._lost_connection(pid, exc):
                unreachable.add(pid)
            self._emit(EventKind.PROVIDER_FAILED, request.request_id, pid,
                       error=failures[pid], error_type=type(exc).__name__,
                       attempts=[a.to_dict() for a in attempts[pid]])

        try:
            return synthesize(
                results,
                request_id=request.request_id,
                requested=request.providers,
                priority=self.priority,
                failures=failures,
            )
        except AllProvidersFailed as exc:
            failed = AllProvidersFailed(request.request_id, exc.failures, unreachable=unreachable)
            logger.error("%s%s", failed, " (no provider reachable)" if failed.connectivity_lost else "")
            self._emit(EventKind.REQUEST_FAILED, request.request_id, failures=failed.failures,
                       connectivity_lost=failed.connectivity_lost)
            raise failed from None

    def _lost_connection(self, provider_id: str, exc: BaseException) -> bool:
        """Whether exc, or anything it was raised from, is a connection failure."""
        provider = self.providers.get(provider_id)
        if provider is None:
            return False
        seen: set[int] = set()
        while exc is not None and id(exc) not in seen:
            if provider.is_connectivity_failure(exc):
                return True
            seen.add(id(exc))
            exc = exc.__cause__ or exc.__context__
        return False

    # ── Idempotent entry point ────────────────────────────────────────────────

    def _remember(self, result: SynthesizedResult) -> None:
        self._results[result.request_id] = result
        self._results.move_to_end(result.request_id)
        while len(self._results) > RESULT_CACHE_SIZE:
            self._results.popitem(last=False)

    async def get_result(self, request_id: str) -> Optional[SynthesizedResult]:
        """Resolved result for request_id from memory or the store, else None."""
        if request_id in self._results:
            return self._results[request_id]
        if self.store is None:
            return None
        stored = await self.store.load_result(request_id)
        if stored is not None:
            self._remember(stored)
        return stored

    async def submit(self, request: AnalysisRequest) -> SynthesizedResult:
        """
        Analyse a request exactly once per request id.

        Raises AllProvidersFailed when no provider contributed.
        """
        existing = await self.get_result(request.request_id)
        if existing is not None:
            logger.info("Request %s already resolved, returning stored result", request.request_id)
            return existing

        future = self._inflight.get(request.request_id)
        if future is None:
            future = asyncio.ensure_future(self._resolve(request))
            self._inflight[request.request_id] = future
            future.add_done_callback(
                lambda _f, rid=request.request_id: self._inflight.pop(rid, None)
            )
        else:
            logger.info("Request %s already in flight, joining it", request.request_id)
        return await asyncio.shield(future)

    async def _resolve(self, request: AnalysisRequest) -> SynthesizedResult:
        self._failed.pop(request.request_id, None)
        await self._store_status(request.request_id, RequestStatus.PENDING)
        try:
            result = await self.analyze(request)
        except AllProvidersFailed as exc:
            self._failed[request.request_id] = str(exc)
            await self._store_status(request.request_id, RequestStatus.FAILED, str(exc))
            raise

        self._remember(result)
        if self.store is not None:
            try:
                await self.store.save_result(request, result)
            except Exception as exc:
                logger.warning("Could not persist result for %s: %s", request.request_id, exc)
        self._emit(EventKind.REQUEST_RESOLVED, request.request_id,
                   confidence=result.confidence, partial=result.partial,
                   contributing=result.contributing_providers)
        return result

    async def _store_status(self, request_id: str, status: RequestStatus, error: str = "") -> None:
        if self.store is None:
            return
        try:
            await self.store.set_status(request_id, status, error)
        except Exception as exc:
            logger.warning("Could not record status %s for %s: %s", status.value, request_id, exc)

    async def get_status(self, request_id: str) -> Optional[RequestStatus]:
        """pending / resolved / failed, or None for an unknown request id."""
        if request_id in self._inflight:
            return RequestStatus.PENDING
        if request_id in self._results:
            return RequestStatus.RESOLVED
        if request_id in self._failed:
            return RequestStatus.FAILED
        if self.store is None:
            return None
        return await self.store.get_status(request_id)
