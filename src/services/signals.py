"""
src/services/signals.py — Signal validation, ticker normalisation and dedup.

All functions are pure: lists in, new lists out.
"""

import logging
import re
from typing import Iterable

from pydantic import ValidationError

from schemas import Signal, Ticker

logger = logging.getLogger(__name__)

# Company-word tickers the model keeps emitting for Korean listings
TICKER_ALIASES = {
    "HYNIX": "000660.KS",
    "SKHYNIX": "000660.KS",
    "SK HYNIX": "000660.KS",
    "SK-HYNIX": "000660.KS",
    "KRX:000660": "000660.KS",
    "000660": "000660.KS",
}

_SK_HYNIX_TEXT = (
    (re.compile(r"\$SK\s+\$HYNIX\b", re.IGNORECASE), "$000660.KS"),
    (re.compile(r"\$SK[-_ ]?HYNIX\b", re.IGNORECASE), "$000660.KS"),
    (re.compile(r"\$HYNIX\b", re.IGNORECASE), "$000660.KS"),
)


def _strip_dollar(symbol: str) -> str:
    return (symbol or "").strip().lstrip("$").upper()


def canonical_symbol(symbol: str) -> str:
    clean = _strip_dollar(symbol)
    return TICKER_ALIASES.get(clean, clean)


def _fix_text(text: str) -> str:
    for pattern, replacement in _SK_HYNIX_TEXT:
        text = pattern.sub(replacement, text)
    return text


# ─────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────

def coerce_signals(raw_items: Iterable[dict], source_hint: str = "") -> list[Signal]:
    """Validate raw dicts from the model, dropping anything without a title or summary."""
    signals: list[Signal] = []
    for item in raw_items:
        try:
            signal = Signal.model_validate(item)
        except ValidationError as exc:
            logger.debug("Dropping malformed signal%s: %s", f" ({source_hint})" if source_hint else "", exc)
            continue
        if signal.is_valid:
            signals.append(signal)
    return signals


# ─────────────────────────────────────────────
# Normalisation
# ─────────────────────────────────────────────

def normalize_tickers(tickers: list[Ticker]) -> list[Ticker]:
    """Canonical `$SYMBOL`s, one per symbol; conflicting actions become "mixed"."""
    raw = [_strip_dollar(t.symbol) for t in tickers]
    has_sk = "SK" in raw
    has_hynix = "HYNIX" in raw
    collapse = has_sk and has_hynix

    split_actions = {t.action for t, s in zip(tickers, raw) if s in ("SK", "HYNIX")}
    if len(split_actions) == 1:
        split_action = next(iter(split_actions))
    else:
        split_action = "mixed" if split_actions else "watch"

    by_symbol: dict[str, Ticker] = {}

    def _add(symbol: str, action: str) -> None:
        if not symbol:
            return
        symbol = symbol if symbol.startswith("$") else f"${symbol}"
        existing = by_symbol.get(symbol)
        if existing is None:
            by_symbol[symbol] = Ticker(symbol=symbol, action=action)
        elif existing.action != action and existing.action != "mixed":
            by_symbol[symbol] = Ticker(symbol=symbol, action="mixed")

    for ticker, symbol in zip(tickers, raw):
        if not symbol or (collapse and symbol in ("SK", "HYNIX")):
            continue
        _add(canonical_symbol(symbol), ticker.action)

    if collapse:
        _add("000660.KS", split_action)

    return list(by_symbol.values())


def normalize_signal(signal: Signal) -> Signal:
    return signal.model_copy(
        update={
            "title": _fix_text(signal.title),
            "summary": _fix_text(signal.summary),
            "tickers": normalize_tickers(signal.tickers),
        }
    )


def normalize_signals(signals: Iterable[Signal]) -> list[Signal]:
    return [normalize_signal(s) for s in signals]


# ─────────────────────────────────────────────
# Dedup / grouping
# ─────────────────────────────────────────────

def dedupe_signals(signals: Iterable[Signal]) -> list[Signal]:
    """Keep one signal per post URL; URL-less signals dedupe on (title, summary).

    A URL-less signal whose (title, summary) matches a signal already kept is
    dropped; if the URL-less one came first it is replaced by the attributed one.
    """
    out: list[Signal | None] = []
    seen_urls: set[str] = set()
    by_pair: dict[tuple[str, str], int] = {}

    for signal in signals:
        pair = (signal.title, signal.summary)
        if signal.post_url:
            if signal.post_url in seen_urls:
                continue
            seen_urls.add(signal.post_url)
            idx = by_pair.get(pair)
            if idx is not None and out[idx] is not None and not out[idx].post_url:
                out[idx] = signal
                continue
            by_pair.setdefault(pair, len(out))
            out.append(signal)
        else:
            if pair in by_pair:
                continue
            by_pair[pair] = len(out)
            out.append(signal)

    return [s for s in out if s is not None]


def group_by_post(signals: Iterable[Signal], post_urls: Iterable[str]) -> dict[str, list[Signal]]:
    """Map every covered post URL to its signals; posts with none get []."""
    grouped: dict[str, list[Signal]] = {url: [] for url in post_urls}
    for signal in signals:
        if signal.post_url in grouped:
            grouped[signal.post_url].append(signal)
    return grouped
