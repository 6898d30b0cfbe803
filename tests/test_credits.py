"""
tests/test_credits.py — Pricing, reservations and the credit ledger.

Run with:  pytest tests/test_credits.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from models import CreditTransaction, Scan, UsageLog, User, as_utc
from schemas import ScanResult, ScanStats, Signal
from src.services.credits import (
    INSUFFICIENT_BALANCE,
    CreditLedger,
    ReservationBook,
    calculate_scan_credits,
    llm_cost,
    model_multiplier,
    range_label,
    range_multiplier,
)


def _result(accounts=("alice", "bob"), range_days=1, from_cache=False) -> ScanResult:
    return ScanResult(
        signals=[Signal(title="NVDA breakout", summary="s", post_url="https://x.com/alice/status/1")],
        total_posts=12,
        accounts=list(accounts),
        range_days=range_days,
        from_cache=from_cache,
        stats=ScanStats(input_tokens=2000, output_tokens=400),
    )


async def _rows(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(model))).scalars().all()


async def _user(session_factory, user_id) -> User:
    async with session_factory() as db:
        return await db.get(User, user_id)


# ═════════════════════════════════════════════
# PRICING
# ═════════════════════════════════════════════

class TestPricing:
    @pytest.mark.parametrize(
        "days,mult", [(1, 1), (2, 2), (3, 2), (7, 3), (14, 5), (30, 8), (90, 10)]
    )
    def test_range_multiplier(self, days, mult):
        assert range_multiplier(days) == mult

    def test_model_multiplier(self):
        assert model_multiplier("claude-haiku-4-5") == 0.25
        assert model_multiplier("claude-opus-4-1") == 5.0
        assert model_multiplier("claude-sonnet-4-20250514") == 1.0
        assert model_multiplier(None) == 1.0

    def test_calculate_rounds_up(self):
        assert calculate_scan_credits(3, 1, "claude-haiku-4-5") == 1
        assert calculate_scan_credits(10, 7, "claude-sonnet-4") == 30
        assert calculate_scan_credits(2, 1, "claude-opus-4-1") == 10

    def test_llm_cost(self):
        assert llm_cost("claude-sonnet-4", 1_000_000, 0) == pytest.approx(3.0)
        assert llm_cost("claude-haiku-4-5", 0, 1_000_000) == pytest.approx(4.0)
        assert llm_cost("unknown", 1_000_000, 1_000_000) == pytest.approx(18.0)

    def test_range_label(self):
        assert range_label(1) == "Today"
        assert range_label(3) == "Week"
        assert range_label(30) == "Month"


# ═════════════════════════════════════════════
# RESERVATION BOOK
# ═════════════════════════════════════════════

class TestReservationBook:
    def test_take_is_owner_scoped(self):
        book = ReservationBook()
        r = book.add("u1", 5)
        assert book.take(r.id, "u2") is None
        assert r.id in book
        assert book.take(r.id, "u1") is r
        assert r.id not in book

    def test_expired_reservations_swept(self):
        now = {"t": 1000.0}
        book = ReservationBook(ttl_seconds=600, clock=lambda: now["t"])
        r = book.add("u1", 5)
        now["t"] += 601
        assert book.sweep() == 1
        assert book.get(r.id, "u1") is None


# ═════════════════════════════════════════════
# RESERVE
# ═════════════════════════════════════════════

class TestReserve:
    @pytest.mark.asyncio
    async def test_paid_reservation(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        ledger = CreditLedger(session_factory)
        result = await ledger.reserve(user.id, 5, 7, "claude-sonnet-4")
        assert result.ok and result.credits_needed == 15
        assert result.reservation_id in ledger.book
        # reservations do not lower the stored balance
        assert await ledger.get_balance(user.id) == 50

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, session_factory, make_user):
        user = await make_user(credits_balance=10)
        result = await CreditLedger(session_factory).reserve(user.id, 5, 7)
        assert not result.ok
        assert result.code == "INSUFFICIENT_CREDITS"
        assert result.reservation_id is None

    @pytest.mark.asyncio
    async def test_free_tier(self, session_factory, make_user):
        user = await make_user(credits_balance=0)
        result = await CreditLedger(session_factory).reserve(user.id, 3, 1)
        assert result.ok and result.free_tier and result.credits_needed == 0

    @pytest.mark.asyncio
    async def test_free_tier_used_today(self, session_factory, make_user):
        user = await make_user(credits_balance=0, last_free_scan_at=datetime.now(timezone.utc))
        result = await CreditLedger(session_factory).reserve(user.id, 3, 1)
        assert result.code == "NO_FREE_SCANS"

    @pytest.mark.asyncio
    async def test_free_tier_yesterday_is_fine(self, session_factory, make_user):
        yesterday = datetime.now(timezone.utc) - timedelta(days=1, minutes=1)
        user = await make_user(credits_balance=0, last_free_scan_at=yesterday)
        assert (await CreditLedger(session_factory).reserve(user.id, 3, 1)).ok

    @pytest.mark.asyncio
    async def test_free_tier_account_cap(self, session_factory, make_user):
        user = await make_user(credits_balance=0)
        result = await CreditLedger(session_factory).reserve(user.id, 11, 1)
        assert result.code == "FREE_TIER_LIMIT"

    @pytest.mark.asyncio
    async def test_too_many_accounts(self, session_factory, make_user):
        user = await make_user()
        result = await CreditLedger(session_factory).reserve(user.id, 1001, 1)
        assert result.code == "TOO_MANY_ACCOUNTS"

    @pytest.mark.asyncio
    async def test_unknown_user(self, session_factory):
        result = await CreditLedger(session_factory).reserve("nobody", 1, 1)
        assert result.code == "USER_NOT_FOUND"


# ═════════════════════════════════════════════
# DEDUCT
# ═════════════════════════════════════════════

class TestDeduct:
    @pytest.mark.asyncio
    async def test_idempotent(self, session_factory, make_user):
        user = await make_user(credits_balance=20)
        ledger = CreditLedger(session_factory)
        assert await ledger.deduct_credits(user.id, 5, idempotency_key="k1") == 15
        assert await ledger.deduct_credits(user.id, 5, idempotency_key="k1") == 15
        assert await ledger.get_balance(user.id) == 15
        assert len(await _rows(session_factory, CreditTransaction)) == 1

    @pytest.mark.asyncio
    async def test_insufficient(self, session_factory, make_user):
        user = await make_user(credits_balance=3)
        ledger = CreditLedger(session_factory)
        assert await ledger.deduct_credits(user.id, 5) == INSUFFICIENT_BALANCE
        assert await ledger.get_balance(user.id) == 3


# ═════════════════════════════════════════════
# SETTLE
# ═════════════════════════════════════════════

class TestSettle:
    @pytest.mark.asyncio
    async def test_paid_scan_saved_then_debited(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        ledger = CreditLedger(session_factory)
        reservation = await ledger.reserve(user.id, 2, 1, "claude-sonnet-4")

        scan_id = await ledger.settle_scan(
            user.id, _result(), reservation_id=reservation.reservation_id, model="claude-sonnet-4"
        )

        [scan] = await _rows(session_factory, Scan)
        assert scan.id == scan_id
        assert scan.credits_used == 2 and scan.range_label == "Today"
        assert scan.signal_count == 1
        assert await ledger.get_balance(user.id) == 48
        [txn] = await _rows(session_factory, CreditTransaction)
        assert txn.idempotency_key == reservation.reservation_id
        assert reservation.reservation_id not in ledger.book

    @pytest.mark.asyncio
    async def test_usage_logged_for_fresh_analysis_only(self, session_factory, make_user):
        user = await make_user()
        ledger = CreditLedger(session_factory)
        await ledger.settle_scan(user.id, _result(), model="claude-sonnet-4")
        await ledger.settle_scan(user.id, _result(from_cache=True), model="claude-sonnet-4")

        [usage] = await _rows(session_factory, UsageLog)
        assert usage.input_tokens == 2000
        assert usage.cost_llm == pytest.approx(llm_cost("claude-sonnet-4", 2000, 400))

    @pytest.mark.asyncio
    async def test_free_tier_marks_the_day(self, session_factory, make_user):
        user = await make_user(credits_balance=0)
        ledger = CreditLedger(session_factory)
        reservation = await ledger.reserve(user.id, 2, 1)
        await ledger.settle_scan(user.id, _result(), reservation_id=reservation.reservation_id)

        refreshed = await _user(session_factory, user.id)
        assert as_utc(refreshed.last_free_scan_at).date() == datetime.now(timezone.utc).date()
        assert refreshed.credits_balance == 0
        [scan] = await _rows(session_factory, Scan)
        assert scan.credits_used == 0
        assert await _rows(session_factory, CreditTransaction) == []

    @pytest.mark.asyncio
    async def test_byok_is_not_billed(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        ledger = CreditLedger(session_factory)
        await ledger.settle_scan(user.id, _result(), byok=True)
        assert await ledger.get_balance(user.id) == 50
        assert (await _rows(session_factory, Scan))[0].credits_used == 0

    @pytest.mark.asyncio
    async def test_short_balance_still_saves_scan(self, session_factory, make_user):
        user = await make_user(credits_balance=1)
        ledger = CreditLedger(session_factory)
        scan_id = await ledger.settle_scan(user.id, _result(range_days=7), model="claude-sonnet-4")
        assert scan_id
        assert await ledger.get_balance(user.id) == 1


# ═════════════════════════════════════════════
# REPEATED SETTLEMENT
# ═════════════════════════════════════════════

class TestSettleOnce:
    @pytest.mark.asyncio
    async def test_sequential_repeat_bills_once(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        ledger = CreditLedger(session_factory)
        reservation = await ledger.reserve(user.id, 2, 1, "claude-sonnet-4")
        rid = reservation.reservation_id

        first = await ledger.settle_scan(user.id, _result(), reservation_id=rid, model="claude-sonnet-4")
        second = await ledger.settle_scan(user.id, _result(), reservation_id=rid, model="claude-sonnet-4")

        assert first == second
        assert len(await _rows(session_factory, Scan)) == 1
        [txn] = await _rows(session_factory, CreditTransaction)
        assert txn.amount == -2 and txn.idempotency_key == rid
        assert await ledger.get_balance(user.id) == 48

    @pytest.mark.asyncio
    async def test_concurrent_repeat_bills_once(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        ledger = CreditLedger(session_factory)
        reservation = await ledger.reserve(user.id, 2, 1, "claude-sonnet-4")
        rid = reservation.reservation_id

        ids = await asyncio.gather(
            ledger.settle_scan(user.id, _result(), reservation_id=rid, model="claude-sonnet-4"),
            ledger.settle_scan(user.id, _result(), reservation_id=rid, model="claude-sonnet-4"),
        )

        assert ids[0] == ids[1]
        assert len(await _rows(session_factory, Scan)) == 1
        assert len(await _rows(session_factory, CreditTransaction)) == 1
        assert await ledger.get_balance(user.id) == 48

    @pytest.mark.asyncio
    async def test_lapsed_reservation_keys_on_reservation_id(self, session_factory, make_user):
        user = await make_user(credits_balance=50)
        now = {"t": 1000.0}
        ledger = CreditLedger(session_factory, ReservationBook(ttl_seconds=600, clock=lambda: now["t"]))
        reservation = await ledger.reserve(user.id, 2, 1, "claude-sonnet-4")
        now["t"] += 601
        ledger.book.sweep()

        await ledger.settle_scan(
            user.id, _result(), reservation_id=reservation.reservation_id, model="claude-sonnet-4"
        )

        [txn] = await _rows(session_factory, CreditTransaction)
        assert txn.idempotency_key == reservation.reservation_id

    @pytest.mark.asyncio
    async def test_lapsed_free_reservation_still_uses_the_free_scan(self, session_factory, make_user):
        user = await make_user(credits_balance=0)
        now = {"t": 1000.0}
        ledger = CreditLedger(session_factory, ReservationBook(ttl_seconds=600, clock=lambda: now["t"]))
        reservation = await ledger.reserve(user.id, 2, 1)
        assert reservation.free_tier
        now["t"] += 601
        ledger.book.sweep()

        await ledger.settle_scan(user.id, _result(), reservation_id=reservation.reservation_id)

        refreshed = await _user(session_factory, user.id)
        assert as_utc(refreshed.last_free_scan_at).date() == datetime.now(timezone.utc).date()
        [scan] = await _rows(session_factory, Scan)
        assert scan.credits_used == 0
        assert await _rows(session_factory, CreditTransaction) == []

        again = await ledger.evaluate(user.id, 2, 1)
        assert not again.ok and again.code == "NO_FREE_SCANS"
