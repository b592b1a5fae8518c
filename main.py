"""
main.py — Single entry point.

Runs the analysis HTTP API, a periodic audit purge and a connectivity
monitor in the same asyncio event loop, with no threads or subprocesses.

Architecture:
  asyncio event loop
    ├── aiohttp web server  (POST /analyze, GET /status, GET /results)
    │     └── OfflineRequestQueue → AnalysisOrchestrator → providers
    ├── purge loop          (drops audit rows older than AUDIT_TTL_DAYS)
    └── connectivity loop   (HEAD-checks CONNECTIVITY_CHECK_URL, replays the queue)
"""
import asyncio
import logging
import signal
import sys

import config

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
config.DATA_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(config.DATA_DIR / "analysis.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECS = 6 * 60 * 60


async def _purge_loop(stop_event: asyncio.Event) -> None:
    import database as _db
    while not stop_event.is_set():
        try:
            await _db.purge_expired(config.AUDIT_TTL_DAYS)
        except Exception as exc:
            logger.error("Audit purge failed: %s", exc)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=PURGE_INTERVAL_SECS)
        except asyncio.TimeoutError:
            pass


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as _db
    try:
        await _db.init_db()
        logger.info("Database ready at %s", _db.DB_PATH)
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    # ── Providers, orchestrator, offline queue ────────────────────────────────
    from events import EventBus
    from offline_queue import OfflineRequestQueue, monitor_connectivity
    from orchestrator import AnalysisOrchestrator
    from providers.manager import get_providers
    from rate_limiter import RateLimiter
    from retry import RetryExecutor

    providers = await get_providers()

    events = EventBus()
    events.subscribe(_db.record_event)

    orchestrator = AnalysisOrchestrator(
        providers,
        rate_limiter=RateLimiter(),
        retry_executor=RetryExecutor(),
        store=_db,
        events=events,
    )
    queue = OfflineRequestQueue(orchestrator.submit, events=events)

    # ── HTTP API ──────────────────────────────────────────────────────────────
    from analysis_server import start_server
    web_runner = await start_server(orchestrator, queue)

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    purge_task = asyncio.create_task(_purge_loop(stop_event))
    monitor_task = None
    if config.CONNECTIVITY_CHECK_URL:
        monitor_task = asyncio.create_task(monitor_connectivity(queue, stop_event))
    else:
        logger.info("CONNECTIVITY_CHECK_URL is empty, offline detection relies on failed calls only")
    logger.info("Analysis service is running with %d provider(s). Press Ctrl+C to stop.",
                len(providers))

    # Block until signal received
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    # Graceful shutdown
    logger.info("Shutting down…")
    stop_event.set()
    await purge_task
    if monitor_task is not None:
        await monitor_task
    await web_runner.cleanup()
    await events.drain()
    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
