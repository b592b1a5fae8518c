"""
analysis_server.py — HTTP surface for the analysis orchestrator.

Runs as an aiohttp web server in the process's asyncio event loop.

Endpoints:
  POST /analyze              → analyse one photo, returns the synthesized result
                               (multipart with an "image" file part, or JSON with
                               a base64 / data-URL "image" field)
  GET  /status/{request_id}  → {"request_id": ..., "status": pending|resolved|failed}
  GET  /results/{request_id} → stored result JSON
  GET  /health               → plain-text health check (for uptime monitors)

Optional request fields (form fields or JSON keys):
  providers           comma list / JSON list, defaults to DEFAULT_PROVIDERS
  request_id          client-chosen id, makes resubmission idempotent
  session_id, locale, prompt
  deadline_secs       overall time budget for this request
  wait_on_rate_limit  "true" to wait once for the local rate-limit window

Status codes:
  200 resolved (possibly partial)   202 queued while offline
  400 bad input                     404 unknown request id
  502 every provider failed
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from aiohttp import web

import config
from errors import AllProvidersFailed
from models import AnalysisRequest, QueuedRequest
from offline_queue import OfflineRequestQueue
from orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", AnalysisOrchestrator)
QUEUE_KEY = web.AppKey("queue", OfflineRequestQueue)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _provider_list(value: Any) -> list[str]:
    if not value:
        return list(config.DEFAULT_PROVIDERS)
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return [str(p).strip() for p in value if str(p).strip()]


def _build_request(payload: Optional[bytes], image_b64: Optional[str], fields: dict) -> AnalysisRequest:
    """Validate the inbound fields; raises ValueError on bad input."""
    kwargs: dict[str, Any] = {}
    if fields.get("request_id"):
        kwargs["request_id"] = str(fields["request_id"])
    if fields.get("session_id"):
        kwargs["session_id"] = str(fields["session_id"])
    if fields.get("locale"):
        kwargs["locale"] = str(fields["locale"])
    if fields.get("prompt"):
        kwargs["custom_prompt"] = str(fields["prompt"])
    if fields.get("deadline_secs"):
        try:
            secs = float(fields["deadline_secs"])
        except (TypeError, ValueError):
            raise ValueError("deadline_secs must be a number") from None
        if secs <= 0:
            raise ValueError("deadline_secs must be positive")
        kwargs["deadline"] = datetime.now(timezone.utc) + timedelta(seconds=secs)
    kwargs["wait_on_rate_limit"] = _truthy(fields.get("wait_on_rate_limit", False))

    providers = _provider_list(fields.get("providers"))
    if payload is not None:
        if not payload:
            raise ValueError("image is empty")
        return AnalysisRequest(payload=payload, providers=tuple(providers), **kwargs)
    if not image_b64:
        raise ValueError("missing image")
    return AnalysisRequest.from_data_url(image_b64, providers, **kwargs)


async def _read_request(request: web.Request) -> AnalysisRequest:
    if request.content_type.startswith("multipart/"):
        payload: Optional[bytes] = None
        fields: dict[str, str] = {}
        reader = await request.multipart()
        async for part in reader:
            if part.name == "image":
                payload = bytes(await part.read())
            elif part.name:
                fields[part.name] = await part.text()
        if payload is None:
            raise ValueError("multipart body has no 'image' part")
        return _build_request(payload, None, fields)

    try:
        body = await request.json()
    except ValueError:
        raise ValueError("body must be multipart/form-data or JSON") from None
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return _build_request(None, body.get("image"), body)


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_analyze(request: web.Request) -> web.Response:
    try:
        analysis_request = await _read_request(request)
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": str(exc)}),
            content_type="application/json",
        )

    queue = request.app.get(QUEUE_KEY)
    submit = queue.submit if queue is not None else request.app[ORCHESTRATOR_KEY].submit
    try:
        outcome = await submit(analysis_request)
    except AllProvidersFailed as exc:
        return web.json_response(
            {"request_id": exc.request_id, "error": str(exc), "failures": exc.failures},
            status=502,
        )

    if isinstance(outcome, QueuedRequest):
        return web.json_response(
            {
                "request_id": outcome.request_id,
                "status": "queued",
                "enqueued_at": outcome.enqueued_at.isoformat(),
            },
            status=202,
        )
    return web.json_response(outcome.to_dict())


async def handle_status(request: web.Request) -> web.Response:
    request_id = request.match_info["request_id"]
    # Queued wins: a request that failed for lack of connectivity is waiting for replay
    queue = request.app.get(QUEUE_KEY)
    if queue is not None and any(q.request_id == request_id for q in queue.pending()):
        return web.json_response({"request_id": request_id, "status": "queued"})
    status = await request.app[ORCHESTRATOR_KEY].get_status(request_id)
    if status is None:
        raise web.HTTPNotFound(text="Request not found.")
    return web.json_response({"request_id": request_id, "status": status.value})


async def handle_result(request: web.Request) -> web.Response:
    request_id = request.match_info["request_id"]
    result = await request.app[ORCHESTRATOR_KEY].get_result(request_id)
    if result is None:
        raise web.HTTPNotFound(text="Result not found.")
    return web.json_response(result.to_dict())


async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 OK. Use with uptime monitors."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    queue = request.app.get(QUEUE_KEY)
    queued = len(queue) if queue is not None else 0
    return web.Response(
        text=f"OK, providers: {', '.join(sorted(orchestrator.providers)) or 'none'}; queued: {queued}",
        content_type="text/plain",
    )


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(
    orchestrator: AnalysisOrchestrator,
    queue: Optional[OfflineRequestQueue] = None,
) -> web.Application:
    app = web.Application(client_max_size=config.MAX_IMAGE_BYTES * 2)
    app[ORCHESTRATOR_KEY] = orchestrator
    if queue is not None:
        app[QUEUE_KEY] = queue
    app.router.add_post("/analyze",               handle_analyze)
    app.router.add_get("/status/{request_id}",    handle_status)
    app.router.add_get("/results/{request_id}",   handle_result)
    app.router.add_get("/health",                 handle_health)
    return app


async def start_server(
    orchestrator: AnalysisOrchestrator,
    queue: Optional[OfflineRequestQueue] = None,
) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app    = build_web_app(orchestrator, queue)
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, config.SERVER_HOST, config.SERVER_PORT)
    await site.start()
    logger.info(
        "Analysis API listening on %s:%d  (providers: %s)",
        config.SERVER_HOST, config.SERVER_PORT, ", ".join(sorted(orchestrator.providers)),
    )
    return runner
