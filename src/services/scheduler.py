"""
src/services/scheduler.py — Scheduled scans: due-time evaluation and execution.

The cron loop wakes once a minute and:

  1. resets schedules stuck in "running" for more than the stale threshold
  2. loads enabled schedules and keeps the ones that are due
  3. runs due schedules a few at a time, each under a hard timeout

A schedule is due when, in its own timezone, today passes the day filter
and the local time is 0–2 minutes past the scheduled HH:MM (with midnight
wrap-around), unless it already ran within the last ~55 minutes.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from models import ScheduledScan, User, as_utc
from schemas import ScanRequest
from src.services.credits import CreditLedger, range_label
from src.services.prompts import DEFAULT_ANALYST_PROMPT
from src.services.scanner import Scanner
from src.utils.cancellation import CancelToken, ScanCancelled

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_STATUS_WRITE_ATTEMPTS = 3
STALE_MESSAGE = "Scan timed out — will retry at next scheduled time"


class ScheduleError(Exception):
    """A scheduled scan could not run (no accounts, no credits, no posts)."""


@dataclass(frozen=True)
class LocalTime:
    hour: int
    minute: int
    weekday: int  # 0 = Sunday

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute


# ─────────────────────────────────────────────
# Due-time evaluation
# ─────────────────────────────────────────────

def now_in_timezone(tz_name: str | None, now: datetime | None = None) -> LocalTime:
    """Wall-clock time in `tz_name`; unknown zones fall back to UTC."""
    now = now or datetime.now(timezone.utc)
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone %r, using UTC", tz_name)
        tz = timezone.utc
    local = now.astimezone(tz)
    # isoweekday: Mon=1 .. Sun=7 → Sun=0 .. Sat=6
    return LocalTime(local.hour, local.minute, local.isoweekday() % 7)


def parse_hhmm(value: str | None) -> tuple[int, int] | None:
    match = _TIME_RE.match((value or "").strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def is_schedule_due(
    schedule: Any,
    now: datetime | None = None,
    *,
    window_minutes: int | None = None,
    min_gap_minutes: int | None = None,
) -> bool:
    """Whether `schedule` (anything with time, timezone, days, last_run_at) is due."""
    now = now or datetime.now(timezone.utc)
    window = settings.scheduled_due_window_minutes if window_minutes is None else window_minutes
    gap = settings.scheduled_min_gap_minutes if min_gap_minutes is None else min_gap_minutes

    target = parse_hhmm(schedule.time)
    if target is None:
        return False

    local = now_in_timezone(schedule.timezone, now)
    days = [d for d in (schedule.days or []) if isinstance(d, int)]
    if days and local.weekday not in days:
        return False

    diff = local.minutes - (target[0] * 60 + target[1])
    if diff < -720:
        diff += 1440
    elif diff > 720:
        diff -= 1440
    if not 0 <= diff <= window:
        return False

    last_run = as_utc(schedule.last_run_at)
    if last_run is not None and now - last_run < timedelta(minutes=gap):
        return False
    return True


# ─────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────

class ScheduleRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scanner: Scanner,
        ledger: CreditLedger,
        *,
        scan_timeout: float | None = None,
        max_concurrent: int | None = None,
        status_retry_delay: float = 1.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._sessions = session_factory
        self.scanner = scanner
        self.ledger = ledger
        self.scan_timeout = scan_timeout or settings.scheduled_scan_timeout
        self.max_concurrent = max_concurrent or settings.scheduler_max_concurrent
        self.status_retry_delay = status_retry_delay
        self._clock = clock

    async def reset_stale_runs(self, now: datetime | None = None) -> int:
        """Move schedules stuck in "running" to "error".

        The WHERE clause re-checks status and age, so a run that finished
        between our read and this write is left alone.
        """
        now = now or self._clock()
        threshold = now - timedelta(minutes=settings.scheduled_stale_minutes)
        async with self._sessions() as db:
            result = await db.execute(
                update(ScheduledScan)
                .where(
                    ScheduledScan.last_run_status == "running",
                    ScheduledScan.last_run_at < threshold,
                )
                .values(last_run_status="error", last_run_message=STALE_MESSAGE)
            )
            await db.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("Reset %d stale scheduled scans", count)
        return count

    async def due_schedules(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        async with self._sessions() as db:
            rows = (
                await db.execute(
                    select(ScheduledScan).where(
                        ScheduledScan.enabled.is_(True),
                        ScheduledScan.last_run_status != "running",
                    )
                )
            ).scalars().all()
        return [row.id for row in rows if is_schedule_due(row, now)]

    async def claim(self, schedule_ids: list[str], now: datetime) -> list[str]:
        """Mark schedules "running" before any of them starts.

        A later tick overlapping this one skips every claimed schedule,
        including those still waiting for a free slot.
        """
        claimed = []
        async with self._sessions() as db:
            for schedule_id in schedule_ids:
                result = await db.execute(
                    update(ScheduledScan)
                    .where(
                        ScheduledScan.id == schedule_id,
                        ScheduledScan.last_run_status != "running",
                    )
                    .values(last_run_status="running", last_run_at=now, last_run_message=None)
                )
                if result.rowcount:
                    claimed.append(schedule_id)
            await db.commit()
        return claimed

    async def run_due(self, now: datetime | None = None) -> list[str]:
        """One cron tick. Returns the ids of the schedules that were started."""
        now = now or self._clock()
        await self.reset_stale_runs(now)
        due = await self.claim(await self.due_schedules(now), now)
        if not due:
            return []
        logger.info("Running %d scheduled scans", len(due))
        for start in range(0, len(due), self.max_concurrent):
            chunk = due[start: start + self.max_concurrent]
            results = await asyncio.gather(
                *(self.execute(schedule_id) for schedule_id in chunk),
                return_exceptions=True,
            )
            for schedule_id, outcome in zip(chunk, results):
                if isinstance(outcome, Exception):
                    logger.error("[sched:%s] crashed: %s", schedule_id[:8], outcome)
        return due

    async def execute(self, schedule_id: str) -> None:
        tag = f"[sched:{schedule_id[:8]}]"
        async with self._sessions() as db:
            schedule = await db.get(ScheduledScan, schedule_id)
            if schedule is None:
                return
            user = await db.get(User, schedule.user_id)
            schedule.last_run_status = "running"
            schedule.last_run_at = self._clock()
            schedule.last_run_message = None
            await db.commit()

        if user is None:
            await self.write_status(schedule_id, "error", "User not found")
            return

        cancel = CancelToken()
        try:
            message = await asyncio.wait_for(
                self._run(schedule, user, cancel, tag), timeout=self.scan_timeout
            )
        except asyncio.TimeoutError:
            cancel.cancel("Scheduled scan timed out")
            minutes = int(self.scan_timeout // 60)
            logger.error("%s timed out after %ds", tag, int(self.scan_timeout))
            await self.write_status(schedule_id, "error", f"Scan timed out after {minutes} minutes")
            return
        except ScanCancelled as exc:
            await self.write_status(schedule_id, "error", exc.reason)
            return
        except Exception as exc:
            logger.error("%s failed: %s", tag, exc)
            await self.write_status(schedule_id, "error", str(exc)[:500] or type(exc).__name__)
            return

        logger.info("%s %s", tag, message)
        await self.write_status(schedule_id, "success", message)

    async def _run(self, schedule: ScheduledScan, user: User, cancel: CancelToken, tag: str) -> str:
        accounts = list(schedule.accounts or []) or list(user.default_accounts or [])
        if not accounts:
            raise ScheduleError("No accounts configured for this schedule")
        prompt = user.analyst_prompt or DEFAULT_ANALYST_PROMPT
        model = user.model or settings.anthropic_model

        check = await self.ledger.evaluate(user.id, len(accounts), schedule.range_days, model)
        if not check.ok or check.free_tier:
            raise ScheduleError(check.error or "Insufficient credits for scheduled scan")

        request = ScanRequest(
            accounts=accounts, range_days=schedule.range_days, prompt=prompt, model=model
        )
        notices: list[str] = []
        result = await self.scanner.run_scan(
            request,
            cancel,
            on_status=lambda msg: logger.debug("%s %s", tag, msg),
            on_notice=lambda level, msg: notices.append(msg),
        )
        if result is None:
            raise ScheduleError(notices[0] if notices else "No posts found")

        await self.ledger.settle_scan(
            user.id,
            result,
            model=model,
            label=f"{range_label(schedule.range_days)} (scheduled: {schedule.label})",
            scheduled=True,
        )

        message = f"{len(result.signals)} signals from {result.total_posts} posts"
        if result.failed_batches:
            message += f" ({len(result.failed_batches)} batches failed)"
        if result.failed_accounts:
            message += f" ({len(result.failed_accounts)} accounts unreachable)"
        return message

    async def write_status(self, schedule_id: str, status: str, message: str) -> bool:
        """Persist the run outcome, retrying so a schedule never stays "running"."""
        for attempt in range(_STATUS_WRITE_ATTEMPTS):
            try:
                async with self._sessions() as db:
                    await db.execute(
                        update(ScheduledScan)
                        .where(ScheduledScan.id == schedule_id)
                        .values(last_run_status=status, last_run_message=message)
                    )
                    await db.commit()
                return True
            except Exception as exc:
                logger.warning(
                    "[sched:%s] status write %d/%d failed: %s",
                    schedule_id[:8], attempt + 1, _STATUS_WRITE_ATTEMPTS, exc,
                )
                if attempt < _STATUS_WRITE_ATTEMPTS - 1:
                    await asyncio.sleep(self.status_retry_delay * (attempt + 1))
        logger.error("[sched:%s] could not record status %s", schedule_id[:8], status)
        return False


# ─────────────────────────────────────────────
# Cron loop
# ─────────────────────────────────────────────

async def _tick(runner: ScheduleRunner) -> None:
    try:
        await runner.run_due()
    except Exception as exc:
        logger.error("Scheduler tick failed: %s", exc)


async def scheduler_loop(runner: ScheduleRunner, interval: float = 60.0) -> None:
    """Start runner.run_due() at the top of every minute until cancelled.

    Each tick runs as its own task so a long scan never delays the next
    minute. In-flight ticks are cancelled and awaited on shutdown.
    """
    logger.info("Scan scheduler started (every %.0fs)", interval)
    ticks: set[asyncio.Task] = set()
    try:
        while True:
            now = datetime.now(timezone.utc)
            delay = interval - (now.second + now.microsecond / 1e6) % interval
            await asyncio.sleep(delay)
            task = asyncio.create_task(_tick(runner), name="scheduler_tick")
            ticks.add(task)
            task.add_done_callback(ticks.discard)
    except asyncio.CancelledError:
        pending = list(ticks)
        if pending:
            logger.info("Scan scheduler stopping; cancelling %d running ticks", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise
