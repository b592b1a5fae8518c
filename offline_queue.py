"""
offline_queue.py — parks requests while the transport is offline.

Online, submit() passes straight through to the wrapped submit function
(normally AnalysisOrchestrator.submit). Offline, or when an online submission
fails with a connectivity error, the request is queued instead and a
QueuedRequest is returned. The queue is ordered by enqueue time and keyed by
request id; re-queuing an id replaces the earlier entry in place.

An AllProvidersFailed in which no provider was reachable counts as a lost
connection too.

When connectivity comes back, set_online(True) replays the queue strictly in
enqueue order, one request at a time. Each replayed request gets its own
attempt counter, bounded by max_retries, with the same exponential backoff as
provider calls. Going offline again mid-replay stops the replay; whatever has
not been replayed stays queued.

monitor_connectivity() polls a URL with check_connectivity() and feeds the
answer to set_online(), so a returning link replays the queue by itself.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp

import config
from errors import AllProvidersFailed, TransientProviderError
from events import AnalysisEvent, EventBus, EventKind
from models import AnalysisRequest, QueuedRequest, SynthesizedResult

logger = logging.getLogger(__name__)

# Errors that mean "the network is gone", not "the request is bad"
CONNECTIVITY_ERRORS = (ConnectionError, aiohttp.ClientConnectionError)
# Errors worth another replay attempt
TRANSIENT_REPLAY_ERRORS = CONNECTIVITY_ERRORS + (asyncio.TimeoutError, TransientProviderError)

SubmitFn = Callable[[AnalysisRequest], Awaitable[SynthesizedResult]]


def _lost_connection(exc: BaseException) -> bool:
    if isinstance(exc, CONNECTIVITY_ERRORS):
        return True
    return isinstance(exc, AllProvidersFailed) and exc.connectivity_lost


@dataclass
class ReplayReport:
    resolved: dict[str, SynthesizedResult] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    remaining: list[str] = field(default_factory=list)


class OfflineRequestQueue:

    def __init__(
        self,
        submit: SubmitFn,
        *,
        online: bool = True,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._submit = submit
        self._online = online
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = config.RETRY_BASE_DELAY if base_delay is None else base_delay
        self.events = events or EventBus()
        self._sleep = sleep
        self._queue: OrderedDict[str, QueuedRequest] = OrderedDict()
        self._replay_lock = asyncio.Lock()

    @property
    def online(self) -> bool:
        return self._online

    def pending(self) -> list[QueuedRequest]:
        """Snapshot of the queue in replay order."""
        return list(self._queue.values())

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, request: AnalysisRequest) -> QueuedRequest:
        item = QueuedRequest(request=request)
        replaced = request.request_id in self._queue
        # Assigning to an existing key keeps its position in the OrderedDict
        self._queue[request.request_id] = item
        logger.info(
            "Queued request %s (%s, %d waiting)",
            request.request_id, "replaced" if replaced else "new", len(self._queue),
        )
        self.events.emit(AnalysisEvent(
            EventKind.REQUEST_QUEUED, request.request_id,
            detail={"replaced": replaced, "queue_length": len(self._queue)},
        ))
        return item

    async def submit(self, request: AnalysisRequest) -> Union[SynthesizedResult, QueuedRequest]:
        if not self._online:
            return self.enqueue(request)
        try:
            return await self._submit(request)
        except Exception as exc:
            if not _lost_connection(exc):
                raise
            logger.warning("Lost connectivity submitting %s: %s, going offline",
                           request.request_id, exc)
        self._online = False
        return self.enqueue(request)

    async def set_online(self, online: bool) -> Optional[ReplayReport]:
        """Record a connectivity change; coming online replays the queue."""
        was_online, self._online = self._online, online
        if was_online != online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
        if online and self._queue:
            return await self.replay()
        return None

    def _delay_for(self, attempt_index: int) -> float:
        return self.base_delay * (2 ** attempt_index)

    async def replay(self) -> ReplayReport:
        """Replay queued requests in enqueue order until the queue is empty or we go offline."""
        report = ReplayReport()
        async with self._replay_lock:
            while self._queue and self._online:
                request_id, item = next(iter(self._queue.items()))
                outcome = await self._replay_one(item)
                if outcome is None:
                    # Went offline while backing off; keep this and everything after it
                    break
                # A newer snapshot of this id enqueued during the replay stays queued
                if self._queue.get(request_id) is item:
                    del self._queue[request_id]
                if isinstance(outcome, SynthesizedResult):
                    report.resolved[request_id] = outcome
                else:
                    report.failed[request_id] = outcome
                self.events.emit(AnalysisEvent(
                    EventKind.REQUEST_REPLAYED, request_id,
                    detail={
                        "attempts": item.attempts,
                        "outcome": "resolved" if isinstance(outcome, SynthesizedResult) else "failed",
                        "error": None if isinstance(outcome, SynthesizedResult) else outcome,
                    },
                ))
        report.remaining = list(self._queue)
        if report.remaining:
            logger.info("Replay paused with %d request(s) still queued", len(report.remaining))
        return report

    async def _replay_one(self, item: QueuedRequest) -> Union[SynthesizedResult, str, None]:
        """Result on success, an error string when dropped, None when interrupted."""
        item.attempts = 0
        while True:
            item.attempts += 1
            try:
                result = await self._submit(item.request)
            except Exception as exc:
                if not (isinstance(exc, TRANSIENT_REPLAY_ERRORS) or _lost_connection(exc)):
                    logger.error("Replay of %s failed permanently: %s", item.request_id, exc)
                    return str(exc) or type(exc).__name__
                if item.attempts > self.max_retries:
                    logger.error("Replay of %s gave up after %d attempts: %s",
                                 item.request_id, item.attempts, exc)
                    return f"retries exhausted: {exc}"
                delay = self._delay_for(item.attempts - 1)
                logger.warning("Replay of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                               item.request_id, item.attempts, self.max_retries + 1, delay, exc)
                await self._sleep(delay)
                if not self._online:
                    return None
                continue
            logger.info("Replayed %s after %d attempt(s)", item.request_id, item.attempts)
            return result


async def check_connectivity(url: str, timeout: float = 5.0) -> bool:
    """True if url answers a HEAD request at all; the status code does not matter."""
    try:
        async with aiohttp.ClientSession() as session:
            async with session.head(
                url,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ):
                return True
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.debug("Connectivity check against %s failed: %s", url, exc)
        return False


async def monitor_connectivity(
    queue: OfflineRequestQueue,
    stop_event: asyncio.Event,
    *,
    url: Optional[str] = None,
    interval: Optional[float] = None,
    check: Callable[[str], Awaitable[bool]] = check_connectivity,
) -> None:
    """Poll url until stop_event is set, reporting each answer to queue.set_online()."""
    url = config.CONNECTIVITY_CHECK_URL if url is None else url
    interval = config.CONNECTIVITY_CHECK_SECS if interval is None else interval
    while not stop_event.is_set():
        report = await queue.set_online(await check(url))
        if report is not None:
            logger.info("Replayed %d queued request(s), %d dropped, %d still queued",
                        len(report.resolved), len(report.failed), len(report.remaining))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
