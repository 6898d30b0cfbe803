"""
models.py — SQLAlchemy ORM models for SignalDesk.

Rows that the scan engine reads and writes: users and their credit balance,
scan history, the credit ledger, scheduled scans, the cross-user analysis
cache and the durable key-value cache.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# USER
# ─────────────────────────────────────────────────────────────────────────────

class User(Base):
    """Registered user and their credit balance.

    A zero balance puts the user on the free tier (one small scan per UTC day).
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )

    credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_free_scan_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Analysis preferences used by scheduled scans
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    analyst_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_accounts: Mapped[list | None] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────────────
    scans: Mapped[list["Scan"]] = relationship(
        "Scan", back_populates="user", cascade="all, delete-orphan"
    )
    schedules: Mapped[list["ScheduledScan"]] = relationship(
        "ScheduledScan", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} credits={self.credits_balance}>"


# ─────────────────────────────────────────────────────────────────────────────
# SCAN HISTORY
# ─────────────────────────────────────────────────────────────────────────────

class Scan(Base):
    """A completed scan as shown in the user's history."""

    __tablename__ = "scans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    accounts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    range_label: Mapped[str] = mapped_column(String(120), nullable=False)
    range_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    signal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    signals: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    post_meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # one scan per reservation; a replayed settle finds the existing row
    reservation_id: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="scans")

    __table_args__ = (
        Index("ix_scans_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Scan id={self.id} user_id={self.user_id} signals={self.signal_count}>"


# ─────────────────────────────────────────────────────────────────────────────
# CREDIT LEDGER
# ─────────────────────────────────────────────────────────────────────────────

class CreditTransaction(Base):
    """Append-only ledger row; one per balance change.

    idempotency_key is unique so that replaying a settlement never debits twice.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="scan")  # scan | purchase | refund
    amount: Mapped[int] = mapped_column(Integer, nullable=False)   # negative for spends
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<CreditTransaction user_id={self.user_id} amount={self.amount}>"


# ─────────────────────────────────────────────────────────────────────────────
# SCHEDULED SCANS
# ─────────────────────────────────────────────────────────────────────────────

class ScheduledScan(Base):
    """A recurring scan the cron loop runs on the user's behalf.

    days holds weekday numbers with Sunday = 0; an empty list means every day.
    """

    __tablename__ = "scheduled_scans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    label: Mapped[str] = mapped_column(String(120), nullable=False, default="Scan")
    time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    accounts: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    range_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_run_status: Mapped[str] = mapped_column(
        String(10), nullable=False, default="none"  # none | running | success | error
    )
    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_run_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="schedules")

    __table_args__ = (
        Index("ix_scheduled_scans_enabled", "enabled"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledScan id={self.id} time={self.time} status={self.last_run_status}>"


# ─────────────────────────────────────────────────────────────────────────────
# CACHES
# ─────────────────────────────────────────────────────────────────────────────

class AnalysisCacheEntry(Base):
    """Cross-user cache of per-post analysis results.

    An empty signals list means "analysed, nothing found" and is still a hit.
    """

    __tablename__ = "analysis_cache"

    prompt_hash: Mapped[str] = mapped_column(String(32), primary_key=True)
    post_url: Mapped[str] = mapped_column(String(512), primary_key=True)
    signals: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<AnalysisCacheEntry {self.prompt_hash}:{self.post_url}>"


class CacheEntry(Base):
    """Durable key-value cache row (scan results, fetched posts)."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[dict | list] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<CacheEntry key={self.key}>"


# ─────────────────────────────────────────────────────────────────────────────
# USAGE
# ─────────────────────────────────────────────────────────────────────────────

class UsageLog(Base):
    """Per-call usage telemetry. Written best-effort, never read by the engine."""

    __tablename__ = "usage_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # fetch | analyze
    accounts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    posts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_llm: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<UsageLog action={self.action} user_id={self.user_id}>"
