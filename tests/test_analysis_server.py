"""
Tests for analysis_server.py.

Covers:
  - POST /analyze: JSON (data URL / bare base64) and multipart bodies
  - 400 on bad input, 502 when every provider failed, 202 when queued offline
    or when no provider could be reached
  - GET /status and GET /results, including 404s
  - GET /health
"""
from __future__ import annotations

import base64
import json

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import test_utils

from analysis_server import _build_request, build_web_app
from errors import PermanentProviderError
from offline_queue import OfflineRequestQueue
from orchestrator import AnalysisOrchestrator
from providers.base import AnalysisProvider
from rate_limiter import RateLimiter
from retry import RetryExecutor

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PNG_B64 = base64.b64encode(PNG_BYTES).decode()
CASEMENT = json.dumps({"window_type": "casement", "material": "vinyl", "confidence": 90})


class CannedProvider(AnalysisProvider):
    def __init__(self, name: str, response):
        self.name = name
        self.model_id = "canned"
        self.response = response
        self.seen: list[dict] = []

    def translate_request(self, request):
        return {"mime": self.check_payload(request.payload), "locale": request.locale}

    async def _send(self, translated):
        self.seen.append(translated)
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response

    def is_transient_failure(self, exc):
        return False


async def _no_sleep(_delay):
    return None


def make_orchestrator(**providers) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        {name: CannedProvider(name, response) for name, response in providers.items()},
        rate_limiter=RateLimiter(default_limit=100, window_secs=60, limits={}),
        retry_executor=RetryExecutor(max_retries=0, base_delay=0, sleep=_no_sleep),
        priority=["openai", "gemini"],
        provider_timeout=5,
        deadline_secs=5,
    )


@pytest_asyncio.fixture
async def make_client():
    clients = []

    async def factory(orchestrator, queue=None) -> test_utils.TestClient:
        client = test_utils.TestClient(test_utils.TestServer(build_web_app(orchestrator, queue)))
        await client.start_server()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


# ── _build_request ────────────────────────────────────────────────────────────

class TestBuildRequest:
    def test_data_url(self):
        req = _build_request(None, f"data:image/png;base64,{PNG_B64}", {"providers": "openai"})
        assert req.payload == PNG_BYTES
        assert req.providers == ("openai",)

    def test_defaults_to_configured_providers(self, monkeypatch):
        monkeypatch.setattr("config.DEFAULT_PROVIDERS", ["openai", "gemini"])
        req = _build_request(PNG_BYTES, None, {})
        assert req.providers == ("openai", "gemini")

    def test_optional_fields(self):
        req = _build_request(PNG_BYTES, None, {
            "providers": ["openai"], "request_id": "client-1", "locale": "he-IL",
            "deadline_secs": "15", "wait_on_rate_limit": "true",
        })
        assert req.request_id == "client-1"
        assert req.locale == "he-IL"
        assert req.deadline is not None
        assert req.wait_on_rate_limit is True

    @pytest.mark.parametrize("payload, image_b64, fields", [
        (None, None, {}),
        (None, "not base64!!", {}),
        (b"", None, {}),
        (PNG_BYTES, None, {"deadline_secs": "soon"}),
        (PNG_BYTES, None, {"deadline_secs": "-1"}),
    ])
    def test_bad_input(self, payload, image_b64, fields):
        with pytest.raises(ValueError):
            _build_request(payload, image_b64, fields)


# ── POST /analyze ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAnalyze:
    async def test_json_body(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT))
        resp = await client.post("/analyze", json={
            "image": f"data:image/png;base64,{PNG_B64}",
            "providers": ["openai"],
            "request_id": "req_a",
        })
        assert resp.status == 200
        data = await resp.json()
        assert data["request_id"] == "req_a"
        assert data["category"] == {"value": "casement", "provider_id": "openai"}
        assert data["partial"] is False

    async def test_multipart_body(self, make_client):
        orch = make_orchestrator(openai=CASEMENT)
        client = await make_client(orch)
        form = aiohttp.FormData()
        form.add_field("image", PNG_BYTES, filename="window.png", content_type="image/png")
        form.add_field("providers", "openai")
        form.add_field("locale", "fr-FR")

        resp = await client.post("/analyze", data=form)

        assert resp.status == 200
        assert orch.providers["openai"].seen[0]["locale"] == "fr-FR"

    async def test_partial_result(self, make_client):
        client = await make_client(make_orchestrator(
            openai=CASEMENT, gemini=PermanentProviderError("gemini", "invalid api key"),
        ))
        resp = await client.post("/analyze", json={"image": PNG_B64, "providers": "openai,gemini"})
        data = await resp.json()
        assert resp.status == 200
        assert data["partial"] is True
        assert "invalid api key" in data["failed_providers"]["gemini"]

    async def test_bad_base64_is_400(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT))
        resp = await client.post("/analyze", json={"image": "%%%", "providers": ["openai"]})
        assert resp.status == 400
        assert "base64" in (await resp.json())["error"]

    async def test_non_json_body_is_400(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT))
        resp = await client.post("/analyze", data="hello", headers={"Content-Type": "text/plain"})
        assert resp.status == 400

    async def test_all_failed_is_502(self, make_client):
        client = await make_client(make_orchestrator(
            openai=PermanentProviderError("openai", "invalid api key"),
        ))
        resp = await client.post("/analyze", json={"image": PNG_B64, "providers": ["openai"]})
        assert resp.status == 502
        data = await resp.json()
        assert "openai" in data["failures"]

    async def test_queued_when_offline_is_202(self, make_client):
        orch = make_orchestrator(openai=CASEMENT)
        queue = OfflineRequestQueue(orch.submit, online=False, sleep=_no_sleep)
        client = await make_client(orch, queue)

        resp = await client.post("/analyze", json={
            "image": PNG_B64, "providers": ["openai"], "request_id": "req_q",
        })

        assert resp.status == 202
        assert (await resp.json())["status"] == "queued"
        status = await client.get("/status/req_q")
        assert (await status.json())["status"] == "queued"

    async def test_network_outage_is_queued_not_502(self, make_client):
        orch = make_orchestrator(openai=aiohttp.ClientConnectionError("network down"))
        queue = OfflineRequestQueue(orch.submit, sleep=_no_sleep)
        client = await make_client(orch, queue)

        resp = await client.post("/analyze", json={
            "image": PNG_B64, "providers": ["openai"], "request_id": "req_down",
        })

        assert resp.status == 202
        assert queue.online is False
        status = await client.get("/status/req_down")
        assert (await status.json())["status"] == "queued"


# ── GET /status, /results, /health ────────────────────────────────────────────

@pytest.mark.asyncio
class TestLookups:
    async def test_status_and_result_after_analysis(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT))
        await client.post("/analyze", json={"image": PNG_B64, "providers": ["openai"],
                                            "request_id": "req_s"})

        status = await client.get("/status/req_s")
        assert (await status.json()) == {"request_id": "req_s", "status": "resolved"}

        result = await client.get("/results/req_s")
        assert result.status == 200
        assert (await result.json())["category"]["value"] == "casement"

    async def test_unknown_ids_are_404(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT))
        assert (await client.get("/status/nope")).status == 404
        assert (await client.get("/results/nope")).status == 404

    async def test_health(self, make_client):
        client = await make_client(make_orchestrator(openai=CASEMENT, gemini=CASEMENT))
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK, providers: gemini, openai; queued: 0"
