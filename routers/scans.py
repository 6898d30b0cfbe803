"""
routers/scans.py — Scan endpoints for SignalDesk.

Endpoints:
    POST /api/scans/reserve          — Check credits and hold a reservation
    POST /api/scans/run              — Run a scan and persist the result
    POST /api/scans/cache/check      — Is a whole-scan result cached?
    POST /api/analysis-cache/check   — Which posts already have analysis?
    GET  /api/scans                  — Scan history for the current user

A request that disconnects mid-scan cancels the scan; batches finished by
then stay cached.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models import Scan, User
from schemas import (
    AnalysisCacheCheckRequest,
    ReserveRequest,
    RunScanRequest,
    ScanCacheCheckRequest,
    ScanRequest,
    ScanResponse,
    ScanSummary,
)
from security import get_current_user, limiter
from src.integrations.anthropic_client import AnthropicClient, LLMClient
from src.services.engine import ScanEngine, get_engine
from src.services.prompts import DEFAULT_ANALYST_PROMPT
from src.services.scanner import Scanner
from src.utils.cancellation import CancelToken, ScanCancelled
from src.utils.errors import ErrorKind, ScanFailed, UpstreamError
from src.utils.hashing import scan_cache_key, scan_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Scans"])

# Provider errors the caller can fix by changing the request
_CLIENT_KINDS = frozenset(
    {ErrorKind.INVALID_REQUEST, ErrorKind.INPUT_TOO_LARGE, ErrorKind.MODEL_NOT_FOUND}
)


def _error(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    content = {"status": "error", "error": message}
    if code:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


async def _watch_disconnect(request: Request, cancel: CancelToken, interval: float = 1.0) -> None:
    while not cancel.cancelled:
        if await request.is_disconnected():
            cancel.cancel("Client disconnected")
            return
        await asyncio.sleep(interval)


# ─────────────────────────────────────────────
# POST /api/scans/reserve
# ─────────────────────────────────────────────

@router.post("/scans/reserve")
async def reserve_scan(
    body: ReserveRequest,
    current_user: User = Depends(get_current_user),
    engine: ScanEngine = Depends(get_engine),
):
    """Check the balance (or free-tier quota) and hold a reservation."""
    model = body.model or current_user.model or settings.anthropic_model
    result = await engine.ledger.reserve(
        current_user.id, body.accounts_count, body.range_days, model
    )
    if not result.ok:
        return _error(status.HTTP_403_FORBIDDEN, result.error or "Scan not allowed", result.code)
    return {"status": "success", "data": result.model_dump()}


# ─────────────────────────────────────────────
# POST /api/scans/run
# ─────────────────────────────────────────────

@router.post("/scans/run")
@limiter.limit(settings.rate_limit_scan)
async def run_scan(
    request: Request,
    body: RunScanRequest,
    current_user: User = Depends(get_current_user),
    engine: ScanEngine = Depends(get_engine),
    x_anthropic_key: str | None = Header(None),
):
    """Run a scan end to end, save it, and bill for it.

    With an X-Anthropic-Key header the scan uses the caller's own key and
    skips the credit ledger.
    """
    byok = bool(x_anthropic_key)
    llm = AnthropicClient(api_key=x_anthropic_key) if byok else engine.llm
    try:
        return await _run_scan(request, body, current_user, engine, llm, byok)
    finally:
        if byok:
            await llm.aclose()


async def _run_scan(
    request: Request,
    body: RunScanRequest,
    current_user: User,
    engine: ScanEngine,
    llm: LLMClient,
    byok: bool,
):
    model = await llm.resolve_model(body.model or current_user.model or settings.anthropic_model)
    prompt = body.prompt or current_user.analyst_prompt or DEFAULT_ANALYST_PROMPT

    try:
        scan_request = ScanRequest(
            accounts=body.accounts, range_days=body.range_days, prompt=prompt, model=model
        )
    except ValidationError as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc.errors()[0]["msg"])

    reservation_id = body.reservation_id
    if not byok and engine.ledger.book.get(reservation_id, current_user.id) is None:
        reservation = await engine.ledger.reserve(
            current_user.id, len(scan_request.accounts), scan_request.range_days, model
        )
        if not reservation.ok:
            return _error(
                status.HTTP_403_FORBIDDEN, reservation.error or "Scan not allowed", reservation.code
            )
        reservation_id = reservation.reservation_id

    scanner = engine.scanner
    if byok:
        scanner = Scanner(fetch=engine.scanner.fetch, llm=llm, caches=engine.caches)

    notices: list[tuple[str, str]] = []
    cancel = CancelToken()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        result = await scanner.run_scan(
            scan_request,
            cancel,
            on_notice=lambda level, msg: notices.append((level, msg)),
        )
    except ScanCancelled as exc:
        logger.info("Scan for user %s cancelled: %s", current_user.id, exc.reason)
        engine.ledger.book.take(reservation_id, current_user.id)
        return JSONResponse(status_code=499, content={"status": "cancelled"})
    except ScanFailed as exc:
        logger.warning("Scan for user %s failed: %s", current_user.id, exc)
        engine.ledger.book.take(reservation_id, current_user.id)
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc), "SCAN_FAILED")
    except UpstreamError as exc:
        logger.warning("Scan for user %s hit %s: %s", current_user.id, exc.kind.value, exc.detail)
        engine.ledger.book.take(reservation_id, current_user.id)
        code = status.HTTP_400_BAD_REQUEST if exc.kind in _CLIENT_KINDS else status.HTTP_502_BAD_GATEWAY
        return _error(code, exc.message, exc.kind.value.upper())
    finally:
        cancel.cancel("Request finished")
        watcher.cancel()

    if result is None:
        engine.ledger.book.take(reservation_id, current_user.id)
        errors = [msg for level, msg in notices if level == "error"]
        return _error(
            status.HTTP_404_NOT_FOUND, errors[0] if errors else "No posts found", "NO_POSTS"
        )

    scan_id = await engine.ledger.settle_scan(
        current_user.id,
        result,
        reservation_id=reservation_id,
        model=model,
        byok=byok,
    )
    return {
        "status": "success",
        "data": ScanResponse(scan_id=scan_id, result=result).model_dump(mode="json"),
    }


# ─────────────────────────────────────────────
# POST /api/scans/cache/check
# ─────────────────────────────────────────────

@router.post("/scans/cache/check")
async def check_scan_cache(
    body: ScanCacheCheckRequest,
    current_user: User = Depends(get_current_user),
    engine: ScanEngine = Depends(get_engine),
):
    key = scan_cache_key(body.accounts, body.range_days, body.prompt_hash)
    identity = scan_identity(body.accounts, body.range_days, body.prompt_hash)
    cached = await engine.caches.scans.get(key, identity)
    if cached is None:
        return {"status": "success", "data": {"hit": False}}
    return {
        "status": "success",
        "data": {
            "hit": True,
            "signals": [s.model_dump(mode="json") for s in cached["signals"]],
            "total_posts": cached["total_posts"],
            "ts": cached["ts"],
        },
    }


# ─────────────────────────────────────────────
# POST /api/analysis-cache/check
# ─────────────────────────────────────────────

@router.post("/analysis-cache/check")
async def check_analysis_cache(
    body: AnalysisCacheCheckRequest,
    current_user: User = Depends(get_current_user),
    engine: ScanEngine = Depends(get_engine),
):
    """Return the shared per-post results for whichever URLs are cached."""
    hits = {}
    if engine.caches.shared is not None and body.post_urls:
        hits = await engine.caches.shared.get_many(body.prompt_hash, body.post_urls)
    return {
        "status": "success",
        "data": {
            "count": len(hits),
            "hits": {
                url: [s.model_dump(mode="json") for s in signals]
                for url, signals in hits.items()
            },
        },
    }


# ─────────────────────────────────────────────
# GET /api/scans
# ─────────────────────────────────────────────

@router.get("/scans")
async def list_scans(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """Return the user's scan history, newest first."""
    result = await db.execute(
        select(Scan)
        .where(Scan.user_id == current_user.id)
        .order_by(Scan.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    scans = result.scalars().all()
    return {
        "status": "success",
        "data": {
            "count": len(scans),
            "scans": [ScanSummary.model_validate(s).model_dump(mode="json") for s in scans],
        },
    }
