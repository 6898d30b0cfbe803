"""
src/utils/hashing.py — Stable hashes used in cache keys.

prompt_hash is djb2 over UTF-16 code units, rendered as unsigned hex, so
per-post keys written by browser clients and by the server line up.
Scan keys use SHA-256: the scan cache is shared across users and a 32-bit
key collides well within its working set.
"""

import hashlib


def djb2_hex(text: str) -> str:
    h = 5381
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) + h + unit) & 0xFFFFFFFF
    return format(h, "x")


def prompt_hash(prompt: str, model: str) -> str:
    """Identity of an (analyst prompt, model) pair.

    Editing either one changes every per-post cache key derived from it.
    """
    return djb2_hex(f"{model}\n{prompt}")


def scan_identity(accounts: list[str], range_days: int, p_hash: str) -> dict:
    """What a scan-cache entry answers; stored beside the result and checked on read."""
    return {
        "accounts": sorted(a.lower() for a in accounts),
        "range_days": range_days,
        "prompt_hash": p_hash,
    }


def scan_cache_key(accounts: list[str], range_days: int, p_hash: str) -> str:
    """Layer-1 key: order-insensitive over accounts, case-insensitive."""
    normalized = ",".join(sorted(a.lower() for a in accounts))
    digest = hashlib.sha256(f"{normalized}:{range_days}:{p_hash}".encode("utf-8")).hexdigest()
    return "scan:" + digest[:32]
