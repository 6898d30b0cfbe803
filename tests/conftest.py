"""
tests/conftest.py — Shared pytest configuration and fixtures.

Env setup:
  Tests read .env.test if present, else .env. None of the unit tests need
  real credentials; upstreams are faked with httpx.MockTransport and an
  in-process LLM stub, and the database is in-memory SQLite.

Markers:
  @pytest.mark.live      — requires real API keys; skipped unless explicitly enabled

Run without live tests (unit only):
    pytest tests/ -m "not live" -v
"""

import json
import os
import re
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

# ─── Path setup ──────────────────────────────────────────────────────────────
# Ensure the project root is on sys.path so imports resolve correctly
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

_env_test = ROOT / ".env.test"
_env_main = ROOT / ".env"
_env_file = _env_test if _env_test.exists() else _env_main

from dotenv import load_dotenv  # noqa: E402
load_dotenv(_env_file, override=True)

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database import create_tables, make_session_factory  # noqa: E402
from models import User  # noqa: E402
from schemas import Post  # noqa: E402
from src.integrations.anthropic_client import Completion  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


# ─── Marker registration ─────────────────────────────────────────────────────
def pytest_configure(config):
    config.addinivalue_line("markers", "live: marks test as a live integration test requiring real API keys")


def _skip_if_missing(*env_vars: str, reason_prefix: str = ""):
    """Return a pytest.mark.skip if any env var is empty."""
    missing = [v for v in env_vars if not os.getenv(v)]
    if missing:
        label = reason_prefix or "Test"
        return pytest.mark.skip(reason=f"{label} skipped: missing env vars: {', '.join(missing)}")
    return None


# ─── Environment-level skip fixtures ─────────────────────────────────────────
@pytest.fixture
def require_claude():
    skip = _skip_if_missing("ANTHROPIC_API_KEY", reason_prefix="Claude")
    if skip:
        pytest.skip(skip.kwargs["reason"])


@pytest.fixture
def require_posts_api():
    skip = _skip_if_missing("TWITTER_API_KEY", reason_prefix="Posts API")
    if skip:
        pytest.skip(skip.kwargs["reason"])


# ─── Settings override for tests ─────────────────────────────────────────────
@pytest.fixture(autouse=True)
def reload_settings():
    """Force settings to reload from env on each test (avoids cached stale values)."""
    from config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ─── Database ────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def make_user(session_factory):
    """Insert a User row and return it."""

    async def _make(**overrides) -> User:
        fields = {"email": f"{uuid.uuid4().hex[:8]}@example.com", "credits_balance": 100}
        fields.update(overrides)
        async with session_factory() as db:
            user = User(**fields)
            db.add(user)
            await db.commit()
            return user

    return _make


# ─── Posts ───────────────────────────────────────────────────────────────────
def make_post(author: str, post_id: str, text: str = "", minutes_ago: int = 30, **extra) -> Post:
    return Post(
        id=post_id,
        author=author,
        created_at=NOW - timedelta(minutes=minutes_ago),
        text=text or f"post {post_id} by {author}",
        **extra,
    )


def post_url(author: str, post_id: str) -> str:
    return f"https://x.com/{author}/status/{post_id}"


@pytest.fixture
def post_factory():
    return make_post


# ─── LLM stub ────────────────────────────────────────────────────────────────
_POST_URL_LINE = re.compile(r"^post_url: (\S+)$", re.MULTILINE)


def one_signal_per_post(content: str) -> str:
    """Fake model output: one signal for every post_url in the batch text."""
    urls = _POST_URL_LINE.findall(content)
    return json.dumps(
        [
            {
                "title": f"Signal for {url.rsplit('/', 1)[-1]}",
                "summary": f"Read from {url}",
                "category": "Trade",
                "source": url.split("/")[3],
                "tickers": [{"symbol": "NVDA", "action": "buy"}],
                "post_url": url,
                "links": [],
            }
            for url in urls
        ]
    )


class FakeLLM:
    """LLMClient stand-in.

    `responder(call)` returns response text, a Completion, or an exception
    instance to raise. `call` has model, system, content and image_urls.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda call: one_signal_per_post(call.content))
        self.calls: list[SimpleNamespace] = []
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    async def resolve_model(self, requested: str) -> str:
        return requested

    async def complete(
        self,
        *,
        model,
        system,
        content,
        image_urls,
        max_tokens,
        timeout,
        cancel=None,
        on_progress=None,
    ):
        call = SimpleNamespace(model=model, system=system, content=content, image_urls=image_urls)
        self.calls.append(call)
        out = self.responder(call)
        if isinstance(out, Exception):
            raise out
        if isinstance(out, Completion):
            return out
        if on_progress is not None:
            on_progress(len(out))
        return Completion(text=out, input_tokens=1000, output_tokens=200)


@pytest.fixture
def fake_llm():
    return FakeLLM()
