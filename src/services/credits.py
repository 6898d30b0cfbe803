"""
src/services/credits.py — Credit pricing, reservations and the ledger.

Protocol for a paid scan:

  1. reserve()       check balance / free tier, hold an in-memory reservation
  2. the scan runs   (minutes; may fail or be cancelled)
  3. settle_scan()   save the scan FIRST, then consume the reservation, then
                     debit through deduct_credits() with an idempotency key

Reservations are advisory: they live in this process only, are swept after
ten minutes and do not lower the stored balance. Two concurrent reserve()
calls can both pass; the ledger debit is what actually guards the balance,
and an insufficient balance at settle time is logged rather than undoing
a scan the user has already seen.
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from models import CreditTransaction, Scan, UsageLog, User, as_utc
from schemas import ReservationResult, ScanResult

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = -1

_MODEL_MULTIPLIERS = {"haiku": 0.25, "sonnet": 1.0, "opus": 5.0}
# USD per million (input, output) tokens
_TOKEN_PRICES = {"haiku": (0.8, 4.0), "sonnet": (3.0, 15.0), "opus": (15.0, 75.0)}


# ─────────────────────────────────────────────
# Pricing
# ─────────────────────────────────────────────

def range_multiplier(range_days: int) -> int:
    if range_days <= 1:
        return 1
    if range_days <= 3:
        return 2
    if range_days <= 7:
        return 3
    if range_days <= 14:
        return 5
    if range_days <= 30:
        return 8
    return 10


def model_multiplier(model: str | None) -> float:
    name = (model or "").lower()
    for tier, mult in _MODEL_MULTIPLIERS.items():
        if tier in name:
            return mult
    return 1.0


def calculate_scan_credits(accounts_count: int, range_days: int, model: str | None = None) -> int:
    return math.ceil(accounts_count * range_multiplier(range_days) * model_multiplier(model))


def llm_cost(model: str | None, input_tokens: int, output_tokens: int) -> float:
    name = (model or "").lower()
    prices = next((p for tier, p in _TOKEN_PRICES.items() if tier in name), _TOKEN_PRICES["sonnet"])
    return (input_tokens * prices[0] + output_tokens * prices[1]) / 1_000_000


def range_label(range_days: int) -> str:
    if range_days <= 1:
        return "Today"
    if range_days <= 7:
        return "Week"
    if range_days <= 30:
        return "Month"
    return f"{range_days} days"


# ─────────────────────────────────────────────
# Reservations
# ─────────────────────────────────────────────

@dataclass
class Reservation:
    id: str
    user_id: str
    credits: int
    created_at: float
    free_tier: bool = False


class ReservationBook:
    """Process-local reservation map with lazy expiry."""

    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] = time.time):
        self.ttl = ttl_seconds or settings.reservation_ttl_seconds
        self._clock = clock
        self._items: dict[str, Reservation] = {}

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        expired = [rid for rid, r in self._items.items() if r.created_at < cutoff]
        for rid in expired:
            del self._items[rid]
        return len(expired)

    def add(self, user_id: str, credits: int, free_tier: bool = False) -> Reservation:
        self.sweep()
        reservation = Reservation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            credits=credits,
            created_at=self._clock(),
            free_tier=free_tier,
        )
        self._items[reservation.id] = reservation
        return reservation

    def get(self, reservation_id: str | None, user_id: str) -> Reservation | None:
        if not reservation_id:
            return None
        reservation = self._items.get(reservation_id)
        if reservation is None or reservation.user_id != user_id:
            return None
        return reservation

    def take(self, reservation_id: str | None, user_id: str) -> Reservation | None:
        """Remove and return the reservation if it exists and belongs to user_id."""
        reservation = self.get(reservation_id, user_id)
        if reservation is not None:
            del self._items[reservation.id]
        return reservation

    def __contains__(self, reservation_id: str) -> bool:
        return reservation_id in self._items

    def __len__(self) -> int:
        return len(self._items)


# ─────────────────────────────────────────────
# Ledger
# ─────────────────────────────────────────────

def _free_scan_used_today(user: User) -> bool:
    last_free = as_utc(user.last_free_scan_at)
    return last_free is not None and last_free.date() == datetime.now(timezone.utc).date()


class CreditLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        book: ReservationBook | None = None,
    ):
        self._sessions = session_factory
        self.book = book or ReservationBook()
        self._settle_locks: dict[str, asyncio.Lock] = {}

    async def get_balance(self, user_id: str) -> int:
        async with self._sessions() as db:
            user = await db.get(User, user_id)
            return user.credits_balance if user else 0

    async def evaluate(
        self, user_id: str, accounts_count: int, range_days: int, model: str | None = None
    ) -> ReservationResult:
        """Decide whether the user may run this scan, without holding anything."""
        if accounts_count > settings.max_accounts_per_scan:
            return ReservationResult(
                ok=False,
                code="TOO_MANY_ACCOUNTS",
                error=f"Maximum {settings.max_accounts_per_scan} accounts per scan",
            )

        credits_needed = calculate_scan_credits(accounts_count, range_days, model)
        async with self._sessions() as db:
            user = await db.get(User, user_id)
        if user is None or not user.is_active:
            return ReservationResult(ok=False, code="USER_NOT_FOUND", error="User not found")

        balance = user.credits_balance
        if balance <= 0:
            if _free_scan_used_today(user):
                return ReservationResult(
                    ok=False, balance=0, free_tier=True, credits_needed=credits_needed,
                    code="NO_FREE_SCANS",
                    error="Free scan already used today. Buy credits to keep scanning.",
                )
            if accounts_count > settings.free_tier_max_accounts:
                return ReservationResult(
                    ok=False, balance=0, free_tier=True, credits_needed=credits_needed,
                    code="FREE_TIER_LIMIT",
                    error=f"Free scans are limited to {settings.free_tier_max_accounts} accounts",
                )
            return ReservationResult(ok=True, balance=0, free_tier=True, credits_needed=0)

        if balance < credits_needed:
            return ReservationResult(
                ok=False, balance=balance, credits_needed=credits_needed,
                code="INSUFFICIENT_CREDITS",
                error=f"This scan needs {credits_needed} credits; you have {balance}",
            )
        return ReservationResult(ok=True, balance=balance, credits_needed=credits_needed)

    async def reserve(
        self, user_id: str, accounts_count: int, range_days: int, model: str | None = None
    ) -> ReservationResult:
        result = await self.evaluate(user_id, accounts_count, range_days, model)
        if not result.ok:
            logger.info("Reservation refused for user %s: %s", user_id, result.code)
            return result
        reservation = self.book.add(user_id, result.credits_needed, free_tier=result.free_tier)
        return result.model_copy(update={"reservation_id": reservation.id})

    async def deduct_credits(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        details: dict | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """Debit `amount` atomically. Returns the new balance, or -1 if short.

        Replaying a key that was already applied returns the recorded balance
        without debiting again.
        """
        async with self._sessions() as db:
            if idempotency_key:
                prior = (
                    await db.execute(
                        select(CreditTransaction).where(
                            CreditTransaction.idempotency_key == idempotency_key
                        )
                    )
                ).scalar_one_or_none()
                if prior is not None:
                    logger.info("Deduction %s already applied", idempotency_key)
                    return prior.balance_after

            user = (
                await db.execute(select(User).where(User.id == user_id).with_for_update())
            ).scalar_one_or_none()
            if user is None or user.credits_balance < amount:
                return INSUFFICIENT_BALANCE

            user.credits_balance -= amount
            db.add(
                CreditTransaction(
                    user_id=user_id,
                    type="scan",
                    amount=-amount,
                    balance_after=user.credits_balance,
                    description=description,
                    details=details,
                    idempotency_key=idempotency_key,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                # a concurrent settle with the same key won the race
                await db.rollback()
                prior = (
                    await db.execute(
                        select(CreditTransaction).where(
                            CreditTransaction.idempotency_key == idempotency_key
                        )
                    )
                ).scalar_one()
                return prior.balance_after
            return user.credits_balance

    async def save_scan(
        self,
        user_id: str,
        result: ScanResult,
        *,
        label: str,
        credits_used: int,
        scheduled: bool = False,
        reservation_id: str | None = None,
    ) -> str:
        async with self._sessions() as db:
            scan = Scan(
                user_id=user_id,
                accounts=result.accounts,
                range_label=label,
                range_days=result.range_days,
                total_posts=result.total_posts,
                signal_count=len(result.signals),
                signals=[s.model_dump(mode="json") for s in result.signals],
                post_meta=result.post_meta or None,
                credits_used=credits_used,
                scheduled=scheduled,
                reservation_id=reservation_id,
            )
            db.add(scan)
            await db.commit()
            return scan.id

    async def record_usage(self, user_id: str, result: ScanResult, model: str | None) -> None:
        """Best-effort usage row for one analysed scan."""
        try:
            async with self._sessions() as db:
                db.add(
                    UsageLog(
                        user_id=user_id,
                        action="analyze",
                        accounts_count=len(result.accounts),
                        posts_count=result.total_posts,
                        input_tokens=result.stats.input_tokens,
                        output_tokens=result.stats.output_tokens,
                        cost_llm=llm_cost(model, result.stats.input_tokens, result.stats.output_tokens),
                        details={"model": model, "cached_posts": result.stats.cached_posts},
                    )
                )
                await db.commit()
        except Exception as exc:
            logger.warning("Usage log write failed for user %s: %s", user_id, exc)

    async def _mark_free_scan(self, user_id: str) -> None:
        async with self._sessions() as db:
            user = await db.get(User, user_id)
            if user is not None:
                user.last_free_scan_at = datetime.now(timezone.utc)
                await db.commit()

    async def _scan_for_reservation(self, user_id: str, reservation_id: str) -> str | None:
        async with self._sessions() as db:
            return (
                await db.execute(
                    select(Scan.id).where(
                        Scan.reservation_id == reservation_id, Scan.user_id == user_id
                    )
                )
            ).scalar_one_or_none()

    async def _free_scan_available(self, user_id: str) -> bool:
        async with self._sessions() as db:
            user = await db.get(User, user_id)
        return user is not None and user.credits_balance <= 0 and not _free_scan_used_today(user)

    async def settle_scan(
        self,
        user_id: str,
        result: ScanResult,
        *,
        reservation_id: str | None = None,
        model: str | None = None,
        label: str | None = None,
        scheduled: bool = False,
        byok: bool = False,
    ) -> str:
        """Persist the scan, then bill for it. Returns the scan id.

        A reservation settles once. Repeating the call with the same
        reservation_id, concurrently or later, returns the first scan id
        and neither saves nor bills again.

        Raises only if saving the scan fails; billing problems are logged.
        """
        if not reservation_id:
            return await self._settle(user_id, result, None, model, label, scheduled, byok)

        lock = self._settle_locks.setdefault(reservation_id, asyncio.Lock())
        try:
            async with lock:
                return await self._settle(
                    user_id, result, reservation_id, model, label, scheduled, byok
                )
        finally:
            if not lock.locked():
                self._settle_locks.pop(reservation_id, None)

    async def _settle(
        self,
        user_id: str,
        result: ScanResult,
        reservation_id: str | None,
        model: str | None,
        label: str | None,
        scheduled: bool,
        byok: bool,
    ) -> str:
        if reservation_id:
            existing = await self._scan_for_reservation(user_id, reservation_id)
            if existing is not None:
                logger.info("Reservation %s already settled as scan %s", reservation_id, existing)
                self.book.take(reservation_id, user_id)
                return existing

        reservation = self.book.get(reservation_id, user_id)
        if reservation is not None:
            credits = reservation.credits
            free_tier = reservation.free_tier
        else:
            # lapsed or never reserved: price it now and re-check the free tier
            credits = calculate_scan_credits(len(result.accounts), result.range_days, model)
            free_tier = not byok and await self._free_scan_available(user_id)
        if byok:
            credits = 0

        try:
            scan_id = await self.save_scan(
                user_id,
                result,
                label=label or range_label(result.range_days),
                credits_used=0 if free_tier else credits,
                scheduled=scheduled,
                reservation_id=reservation_id,
            )
        except IntegrityError:
            # another worker saved this reservation first
            existing = await self._scan_for_reservation(user_id, reservation_id) if reservation_id else None
            if existing is None:
                raise
            logger.info("Reservation %s already settled as scan %s", reservation_id, existing)
            self.book.take(reservation_id, user_id)
            return existing

        self.book.take(reservation_id, user_id)
        if not result.from_cache:
            await self.record_usage(user_id, result, model)

        if byok:
            return scan_id
        try:
            if free_tier:
                await self._mark_free_scan(user_id)
                return scan_id
            new_balance = await self.deduct_credits(
                user_id,
                credits,
                description=f"Scan: {len(result.accounts)} accounts, {result.range_days}d",
                details={"scan_id": scan_id, "model": model, "scheduled": scheduled},
                idempotency_key=reservation_id or scan_id,
            )
            if new_balance == INSUFFICIENT_BALANCE:
                logger.warning(
                    "User %s could not cover %d credits for scan %s", user_id, credits, scan_id
                )
        except Exception as exc:
            logger.error("Billing failed for scan %s (user %s): %s", scan_id, user_id, exc)
        return scan_id
