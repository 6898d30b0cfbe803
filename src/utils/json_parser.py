"""
src/utils/json_parser.py — Defensive parsing of LLM signal output.

The model is asked for a bare JSON array, but in practice returns:
  - Markdown code fences around the array (```json ... ```)
  - Prose before or after the array
  - Trailing commas before ] or }
  - Raw control characters / broken surrogates inside string values

Repair is a fixed pipeline of pure str -> str stages. After each stage we try
json.loads; the first success wins. Nothing here raises on bad input:
`parse_signal_array` returns [] when every stage fails.
"""

import json
import logging
import re
from typing import Any, Callable

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufffd]")
_LONE_SURROGATES = re.compile(r"[\ud800-\udfff]")
_TRAILING_COMMA = re.compile(r",\s*([\]}])")


def sanitize_text(value: str) -> str:
    """Strip control characters and unpaired surrogates from user-visible text."""
    if not value:
        return ""
    return _LONE_SURROGATES.sub("", _CONTROL_CHARS.sub("", value))


# ─────────────────────────────────────────────
# Repair stages
# ─────────────────────────────────────────────

def strip_markdown_fences(raw: str) -> str:
    raw = raw.strip()
    raw = re.sub(r"^```[a-zA-Z]*\s*\n?", "", raw)
    raw = re.sub(r"\n?```\s*$", "", raw)
    return raw.strip()


def extract_array(raw: str) -> str:
    """Cut out the first balanced [...] block, ignoring brackets inside strings.

    Falls back to first "[" .. last "]" when the array is unterminated.
    """
    start = raw.find("[")
    if start == -1:
        return raw
    depth = 0
    in_string = False
    escape_next = False
    for i, ch in enumerate(raw[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return raw[start: i + 1]
    end = raw.rfind("]")
    return raw[start: end + 1] if end > start else raw


def remove_trailing_commas(raw: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", raw)


def escape_control_chars_in_strings(raw: str) -> str:
    """Escape literal newlines/tabs that appear inside JSON string values."""
    result: list[str] = []
    in_string = False
    escape_next = False

    for ch in raw:
        if escape_next:
            result.append(ch)
            escape_next = False
            continue
        if ch == "\\" and in_string:
            result.append(ch)
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            result.append(ch)
            continue
        if in_string and ord(ch) < 0x20:
            if ch == "\n":
                result.append("\\n")
            elif ch == "\r":
                result.append("\\r")
            elif ch == "\t":
                result.append("\\t")
            else:
                result.append(f"\\u{ord(ch):04x}")
            continue
        result.append(ch)

    return "".join(result)


def strip_control_chars(raw: str) -> str:
    return sanitize_text(raw)


REPAIR_PIPELINE: tuple[Callable[[str], str], ...] = (
    strip_markdown_fences,
    extract_array,
    remove_trailing_commas,
    escape_control_chars_in_strings,
    strip_control_chars,
)


# ─────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────

def parse_llm_json(raw: str, context: str = "") -> Any | None:
    """Run the repair pipeline, returning the first value json.loads accepts.

    Returns None when every stage fails.
    """
    if not raw or not raw.strip():
        return None

    text = raw
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    for stage in REPAIR_PIPELINE:
        text = stage(text)
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            continue
        if context:
            logger.debug("parse_llm_json[%s]: recovered after %s", context, stage.__name__)
        return value

    logger.warning(
        "parse_llm_json[%s] all repair stages failed. raw[:300]=%r",
        context or "-", raw[:300],
    )
    return None


def parse_signal_array(raw: str, context: str = "") -> list[dict]:
    """Parse a model completion into a list of raw signal dicts.

    Non-array results and non-dict elements are dropped.
    """
    value = parse_llm_json(raw, context)
    if isinstance(value, dict):
        # some completions wrap the array: {"signals": [...]}
        value = value.get("signals")
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
