"""
tests/test_routes.py — HTTP surface: health, auth, reserve, run, cache checks.

The app's lifespan is not run; each test builds an engine on the in-memory
database with a mocked posts API and the fake LLM.

Run with:  pytest tests/test_routes.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import routers.scans as scans_router
from conftest import FakeLLM
from database import get_db
from main import app
from security import create_access_token, limiter
from src.integrations.twitter_client import TwitterClient
from src.services.engine import build_engine
from src.services.kv_store import MemoryKVStore
from src.utils.errors import ErrorKind, UpstreamError
from src.utils.hashing import prompt_hash


def _posts_api(request: httpx.Request) -> httpx.Response:
    account = request.url.params["userName"]
    if account == "ghost":
        return httpx.Response(200, json={"status": "error", "message": "User not found"})
    if account == "bob":
        return httpx.Response(500)
    now = datetime.now(timezone.utc)
    # two posts inside a one-day range, one outside it
    tweets = [
        {
            "id": f"{account}{i}",
            "createdAt": (now - timedelta(hours=hours)).isoformat(),
            "text": f"$NVDA update {i}",
            "author": {"userName": account},
        }
        for i, hours in enumerate((1, 2, 30))
    ]
    return httpx.Response(
        200, json={"status": "success", "data": {"tweets": tweets, "has_next_page": False}}
    )


@pytest.fixture
def llm():
    return FakeLLM()


@pytest_asyncio.fixture
async def client(session_factory, llm):
    twitter = TwitterClient(
        api_key="test-key",
        http=httpx.AsyncClient(transport=httpx.MockTransport(_posts_api), base_url="https://posts.test"),
        page_delay=0.0,
        retry_base_delay=0.0,
    )
    engine = build_engine(session_factory, twitter=twitter, llm=llm, store=MemoryKVStore())
    engine.scanner.backoff_scale = 0.0
    app.state.engine = engine

    async def _get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _get_db
    limiter.reset()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        await engine.aclose()


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


# ═════════════════════════════════════════════
# HEALTH + AUTH
# ═════════════════════════════════════════════

class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_database(self, client):
        resp = await client.get("/health/database")
        assert resp.json()["services"]["database"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_database_down(self, client):
        broken = AsyncMock()
        broken.execute = AsyncMock(side_effect=ConnectionError("refused"))
        app.dependency_overrides[get_db] = lambda: broken

        resp = await client.get("/health/database")
        body = resp.json()
        assert body["status"] == "degraded"
        assert body["services"]["database"]["status"] == "error"


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        resp = await client.get("/api/scans")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        resp = await client.get("/api/scans", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user(self, client, make_user):
        user = await make_user(is_active=False)
        resp = await client.get("/api/scans", headers=_auth(user))
        assert resp.status_code == 401


# ═════════════════════════════════════════════
# RESERVE
# ═════════════════════════════════════════════

class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_ok(self, client, make_user):
        user = await make_user(credits_balance=10)
        resp = await client.post(
            "/api/scans/reserve", json={"accounts_count": 2, "range_days": 1}, headers=_auth(user)
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["ok"] and data["reservation_id"]
        assert data["credits_needed"] == 2

    @pytest.mark.asyncio
    async def test_reserve_refused(self, client, make_user):
        user = await make_user(credits_balance=1)
        resp = await client.post(
            "/api/scans/reserve", json={"accounts_count": 5, "range_days": 7}, headers=_auth(user)
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "INSUFFICIENT_CREDITS"

    @pytest.mark.asyncio
    async def test_validation_error_envelope(self, client, make_user):
        user = await make_user()
        resp = await client.post("/api/scans/reserve", json={"accounts_count": 0}, headers=_auth(user))
        assert resp.status_code == 422
        assert resp.json()["status"] == "error"


# ═════════════════════════════════════════════
# RUN
# ═════════════════════════════════════════════

class TestRunScan:
    @pytest.mark.asyncio
    async def test_run_saves_and_bills(self, client, make_user, llm):
        user = await make_user(credits_balance=10)
        body = {"accounts": ["alice", "bob"], "range_days": 1, "prompt": "find trades"}

        resp = await client.post("/api/scans/run", json=body, headers=_auth(user))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["scan_id"]
        result = data["result"]
        assert len(result["signals"]) == 2
        assert result["total_posts"] == 2
        assert result["failed_accounts"] == ["bob"]
        assert result["warnings"] == ["Errors: bob"]
        assert len(llm.calls) == 1

        history = (await client.get("/api/scans", headers=_auth(user))).json()["data"]
        assert history["count"] == 1
        assert history["scans"][0]["credits_used"] == 2

        balance = await app.state.engine.ledger.get_balance(user.id)
        assert balance == 8

    @pytest.mark.asyncio
    async def test_repeat_run_hits_scan_cache(self, client, make_user, llm):
        user = await make_user(credits_balance=10)
        body = {"accounts": ["alice"], "prompt": "find trades"}
        await client.post("/api/scans/run", json=body, headers=_auth(user))
        resp = await client.post("/api/scans/run", json=body, headers=_auth(user))
        assert resp.json()["data"]["result"]["from_cache"] is True
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_no_posts_is_404(self, client, make_user):
        user = await make_user()
        resp = await client.post(
            "/api/scans/run", json={"accounts": ["ghost"], "prompt": "p"}, headers=_auth(user)
        )
        assert resp.status_code == 404
        assert resp.json()["code"] == "NO_POSTS"
        assert len(app.state.engine.ledger.book) == 0

    @pytest.mark.asyncio
    async def test_provider_auth_error_maps_to_502(self, client, make_user, llm):
        llm.responder = lambda call: UpstreamError(ErrorKind.AUTH, "bad key")
        user = await make_user()
        resp = await client.post(
            "/api/scans/run", json={"accounts": ["alice"], "prompt": "p"}, headers=_auth(user)
        )
        assert resp.status_code == 502
        assert resp.json()["code"] == "AUTH"
        assert await app.state.engine.ledger.get_balance(user.id) == 100

    @pytest.mark.asyncio
    async def test_refused_without_credits(self, client, make_user, llm):
        user = await make_user(credits_balance=0, last_free_scan_at=datetime.now(timezone.utc))
        resp = await client.post(
            "/api/scans/run", json={"accounts": ["alice"], "prompt": "p"}, headers=_auth(user)
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "NO_FREE_SCANS"
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_byok_client_is_closed_after_the_scan(self, client, make_user, llm, monkeypatch):
        byok_llm = FakeLLM()
        monkeypatch.setattr(scans_router, "AnthropicClient", lambda api_key=None: byok_llm)
        user = await make_user(credits_balance=10)

        resp = await client.post(
            "/api/scans/run",
            json={"accounts": ["alice"], "prompt": "p"},
            headers={**_auth(user), "X-Anthropic-Key": "sk-ant-own-key"},
        )

        assert resp.status_code == 200
        assert len(byok_llm.calls) == 1 and llm.calls == []
        assert byok_llm.closed
        assert not llm.closed
        assert await app.state.engine.ledger.get_balance(user.id) == 10


# ═════════════════════════════════════════════
# CACHE CHECKS
# ═════════════════════════════════════════════

class TestCacheChecks:
    @pytest.mark.asyncio
    async def test_scan_cache_check(self, client, make_user):
        user = await make_user()
        model = "claude-sonnet-4-20250514"
        body = {"accounts": ["alice"], "prompt": "find trades", "model": model}
        check = {"accounts": ["alice"], "range_days": 1, "prompt_hash": prompt_hash("find trades", model)}

        before = await client.post("/api/scans/cache/check", json=check, headers=_auth(user))
        assert before.json()["data"] == {"hit": False}

        await client.post("/api/scans/run", json=body, headers=_auth(user))
        after = (await client.post("/api/scans/cache/check", json=check, headers=_auth(user))).json()
        assert after["data"]["hit"] is True
        assert after["data"]["total_posts"] == 2

    @pytest.mark.asyncio
    async def test_analysis_cache_check(self, client, make_user):
        user = await make_user()
        model = "claude-sonnet-4-20250514"
        await client.post(
            "/api/scans/run",
            json={"accounts": ["alice"], "prompt": "find trades", "model": model},
            headers=_auth(user),
        )
        resp = await client.post(
            "/api/analysis-cache/check",
            json={
                "prompt_hash": prompt_hash("find trades", model),
                "post_urls": ["https://x.com/alice/status/alice0", "https://x.com/bob/status/1"],
            },
            headers=_auth(user),
        )
        data = resp.json()["data"]
        assert data["count"] == 1
        assert list(data["hits"]) == ["https://x.com/alice/status/alice0"]


# ═════════════════════════════════════════════
# SHUTDOWN
# ═════════════════════════════════════════════

class TestEngineShutdown:
    @pytest.mark.asyncio
    async def test_aclose_closes_clients(self, session_factory, llm):
        http = httpx.AsyncClient(transport=httpx.MockTransport(_posts_api), base_url="https://posts.test")
        twitter = TwitterClient(api_key="test-key", http=http)
        engine = build_engine(session_factory, twitter=twitter, llm=llm, store=MemoryKVStore())

        await engine.aclose()

        assert llm.closed
        assert http.is_closed
