"""
schemas.py — Pydantic schemas for SignalDesk.

Two groups live here:
  - Domain value types passed between the scan engine's components
    (Post, AccountPosts, Signal, ScanRequest, ScanResult, ...)
  - Request/response bodies of the HTTP API

They are intentionally separate from the SQLAlchemy models so the engine can
run without a database session.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)

from src.utils.hashing import prompt_hash as _prompt_hash

logger = logging.getLogger(__name__)

CATEGORIES = ("Trade", "Insight", "Tool", "Resource")
# Legacy category names still found in older cached results
CATEGORY_MIGRATIONS = {"Investment Idea": "Trade", "Tool / Product": "Tool"}
ACTIONS = ("buy", "sell", "hold", "watch", "mixed")

_TWITTER_DATE_FORMAT = "%a %b %d %H:%M:%S %z %Y"


def parse_post_timestamp(value: Any) -> datetime | None:
    """Parse either Twitter's "Tue Dec 10 07:00:30 +0000 2024" or ISO-8601."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, _TWITTER_DATE_FORMAT)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ─────────────────────────────────────────────
# Generic / Envelope
# ─────────────────────────────────────────────

class SuccessResponse(BaseModel):
    """Standard success envelope."""

    status: str = "success"
    message: str | None = None
    data: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    status: str = "error"
    error: str
    code: str | None = None


# ─────────────────────────────────────────────
# Posts
# ─────────────────────────────────────────────

class QuotedPost(BaseModel):
    model_config = ConfigDict(frozen=True)

    author: str = "unknown"
    text: str = ""


class PostLink(BaseModel):
    """A shortened link in the post body and what it expands to."""

    model_config = ConfigDict(frozen=True)

    short: str
    expanded: str


class Post(BaseModel):
    """One post as returned by the posts API, reduced to what analysis needs."""

    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    created_at: datetime
    text: str = ""
    like_count: int = 0
    repost_count: int = 0
    view_count: int = 0
    url: str | None = None
    media_url: str | None = None
    quoted: QuotedPost | None = None
    is_reply: bool = False
    in_reply_to: str | None = None
    links: tuple[PostLink, ...] = ()

    @property
    def canonical_url(self) -> str:
        """Stable URL used as the cache-key component for this post."""
        if self.id:
            return f"https://x.com/{self.author}/status/{self.id}"
        return self.url or ""

    @classmethod
    def from_api(cls, raw: dict, account: str) -> "Post | None":
        """Build a Post from a posts-API payload; None when it has no timestamp."""
        created_at = parse_post_timestamp(raw.get("createdAt") or raw.get("created_at"))
        if created_at is None:
            return None

        author = (raw.get("author") or {}).get("userName") or account

        media = (
            (raw.get("extendedEntities") or {}).get("media")
            or (raw.get("entities") or {}).get("media")
            or raw.get("media")
            or []
        )
        media_url = None
        for item in media:
            if item.get("type") in ("photo", "image"):
                media_url = item.get("media_url_https") or item.get("url")
                break

        links = tuple(
            PostLink(short=u["url"], expanded=u["expanded_url"])
            for u in (raw.get("entities") or {}).get("urls") or []
            if u.get("url") and u.get("expanded_url")
        )

        quoted = None
        if raw.get("quoted_tweet"):
            q = raw["quoted_tweet"]
            quoted = QuotedPost(
                author=(q.get("author") or {}).get("userName") or "unknown",
                text=q.get("text") or "",
            )

        return cls(
            id=str(raw.get("id") or ""),
            author=author,
            created_at=created_at,
            text=raw.get("text") or "",
            like_count=int(raw.get("likeCount") or 0),
            repost_count=int(raw.get("retweetCount") or 0),
            view_count=int(raw.get("viewCount") or 0),
            url=raw.get("url"),
            media_url=media_url,
            quoted=quoted,
            is_reply=bool(raw.get("isReply")),
            in_reply_to=raw.get("inReplyToUsername"),
            links=links,
        )


class AccountPosts(BaseModel):
    """Fetch result for one account. `error` is set when nothing was gathered."""

    account: str
    posts: list[Post] = Field(default_factory=list)
    error: str | None = None


# ─────────────────────────────────────────────
# Signals
# ─────────────────────────────────────────────

class Ticker(BaseModel):
    symbol: str
    action: str = "watch"

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> str:
        action = str(v or "").strip().lower()
        return action if action in ACTIONS else "watch"


class Signal(BaseModel):
    """A structured trading insight extracted from exactly one post."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    summary: str = ""
    category: str = "Insight"
    source: str = ""
    tickers: list[Ticker] = Field(default_factory=list)
    post_url: str = Field(
        default="",
        validation_alias=AliasChoices("post_url", "tweet_url"),
    )
    links: list[str] = Field(default_factory=list)

    @field_validator("title", "summary", "source", "post_url", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("category", mode="before")
    @classmethod
    def migrate_category(cls, v: Any) -> str:
        category = CATEGORY_MIGRATIONS.get(str(v or ""), str(v or ""))
        return category if category in CATEGORIES else "Insight"

    @field_validator("links", mode="before")
    @classmethod
    def keep_string_links(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [link for link in v if isinstance(link, str) and link]

    @field_validator("tickers", mode="before")
    @classmethod
    def drop_bad_tickers(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [t for t in v if isinstance(t, dict) and t.get("symbol")]

    @property
    def is_valid(self) -> bool:
        return bool(self.title.strip() or self.summary.strip())

    @property
    def dedup_key(self) -> str:
        """Post URL when present, else the (title, summary) pair."""
        if self.post_url:
            return self.post_url
        return f"{self.title}\x1f{self.summary}"


# ─────────────────────────────────────────────
# Scans
# ─────────────────────────────────────────────

class ScanRequest(BaseModel):
    accounts: list[str] = Field(..., min_length=1)
    range_days: int = Field(1, ge=1, le=30)
    prompt: str = Field(..., min_length=1)
    model: str = "claude-sonnet-4-20250514"

    @field_validator("accounts")
    @classmethod
    def normalize_accounts(cls, v: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for account in v:
            name = account.strip().lstrip("@").lower()
            if name:
                seen.setdefault(name, None)
        if not seen:
            raise ValueError("at least one account is required")
        return list(seen)

    @computed_field
    @property
    def prompt_hash(self) -> str:
        return _prompt_hash(self.prompt, self.model)


class ScanStats(BaseModel):
    cached_posts: int = 0
    analyzed_posts: int = 0
    batches: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class ScanResult(BaseModel):
    signals: list[Signal] = Field(default_factory=list)
    total_posts: int = 0
    accounts: list[str] = Field(default_factory=list)
    range_days: int = 1
    from_cache: bool = False
    warnings: list[str] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)
    failed_batches: list[str] = Field(default_factory=list)
    post_meta: dict[str, dict] = Field(default_factory=dict)
    stats: ScanStats = Field(default_factory=ScanStats)


# ─────────────────────────────────────────────
# Credits
# ─────────────────────────────────────────────

class ReservationResult(BaseModel):
    ok: bool
    reservation_id: str | None = None
    credits_needed: int = 0
    balance: int = 0
    free_tier: bool = False
    code: str | None = None
    error: str | None = None


class ReserveRequest(BaseModel):
    """Payload for POST /api/scans/reserve."""

    accounts_count: int = Field(..., ge=1)
    range_days: int = Field(1, ge=1, le=30)
    model: str | None = None


# ─────────────────────────────────────────────
# HTTP: Scans
# ─────────────────────────────────────────────

class RunScanRequest(BaseModel):
    """Payload for POST /api/scans/run."""

    accounts: list[str] = Field(..., min_length=1)
    range_days: int = Field(1, ge=1, le=30)
    prompt: str | None = None
    model: str | None = None
    reservation_id: str | None = None


class ScanCacheCheckRequest(BaseModel):
    """Payload for POST /api/scans/cache/check."""

    accounts: list[str] = Field(..., min_length=1)
    range_days: int = Field(1, ge=1, le=30)
    prompt_hash: str


class AnalysisCacheCheckRequest(BaseModel):
    """Payload for POST /api/analysis-cache/check."""

    prompt_hash: str
    post_urls: list[str] = Field(..., max_length=500)


class ScanResponse(BaseModel):
    scan_id: str | None = None
    result: ScanResult


class ScanSummary(BaseModel):
    id: str
    range_label: str
    accounts: list[str]
    total_posts: int
    signal_count: int
    credits_used: int
    scheduled: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ─────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────

class ServiceStatus(BaseModel):
    status: Literal["healthy", "error"]
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    services: dict[str, ServiceStatus] | None = None
