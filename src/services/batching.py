"""
src/services/batching.py — Post formatting and batch packing for analysis.

Each account's posts are rendered into one text blob, then blobs are packed
into as few LLM requests as possible with first-fit decreasing:

  - blobs sorted largest-first (stable on ties)
  - a blob goes into the first batch with room for it plus the separator
  - a new batch starts at prompt_chars + blob size

The character budget drops when any account has images, since image tokens
count against the same context window.
"""

import logging
import re
from dataclasses import dataclass, field

from schemas import AccountPosts, Post
from src.utils.json_parser import sanitize_text

logger = logging.getLogger(__name__)

MAX_BATCH_CHARS = 640_000
MAX_BATCH_CHARS_WITH_IMAGES = 400_000
MAX_IMAGES_PER_BATCH = 5
BATCH_SEPARATOR = "\n\n======\n\n"
POST_SEPARATOR = "\n---\n"
_QUOTED_MAX_CHARS = 2000

_INTERNAL_LINK = re.compile(r"^https?://(twitter\.com|x\.com|t\.co)/", re.IGNORECASE)


@dataclass
class Batch:
    """One LLM request worth of posts. Consumed exactly once."""

    index: int
    text: str
    size: int
    post_urls: list[str] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    accounts: list[str] = field(default_factory=list)


@dataclass
class _Blob:
    account: str
    text: str
    post_urls: list[str]
    image_urls: list[str]

    @property
    def size(self) -> int:
        return len(self.text)


# ─────────────────────────────────────────────
# Formatting
# ─────────────────────────────────────────────

def format_post(post: Post) -> str:
    """Render one post the way the analyst prompt expects to read it."""
    when = post.created_at.strftime("%Y-%m-%d %H:%M")
    text = sanitize_text(post.text)
    external: list[str] = []
    for link in post.links:
        expanded = sanitize_text(link.expanded)
        text = text.replace(link.short, expanded)
        if not _INTERNAL_LINK.match(expanded):
            external.append(expanded)

    parts = [
        f"[{when}] {text}",
        f"engagement: {post.like_count}♥ {post.repost_count}↻ {post.view_count}👁",
        f"post_url: {post.canonical_url}",
    ]
    if external:
        parts.append(f"external_links: {', '.join(external)}")
    if post.is_reply:
        parts.append(f"(reply to @{post.in_reply_to or 'unknown'})")
    if post.quoted is not None:
        quoted_text = sanitize_text(post.quoted.text)[:_QUOTED_MAX_CHARS]
        parts.append(
            f"--- QUOTED POST from @{post.quoted.author} ---\n"
            f"{quoted_text}\n"
            f"--- END QUOTED POST ---"
        )
    return "\n".join(parts)


def format_account(account: str, posts: list[Post]) -> str:
    header = f"=== @{account} ({len(posts)} posts) ==="
    return header + "\n" + POST_SEPARATOR.join(format_post(p) for p in posts)


def _images(posts: list[Post]) -> list[str]:
    # oldest first, so the cap keeps the earliest charts of a thread
    ordered = sorted(posts, key=lambda p: p.created_at)
    return [p.media_url for p in ordered if p.media_url]


def _blob_for(account: str, posts: list[Post]) -> _Blob:
    return _Blob(
        account=account,
        text=format_account(account, posts),
        post_urls=[p.canonical_url for p in posts],
        image_urls=_images(posts),
    )


def _split_oversize(blob_posts: list[Post], account: str, budget: int) -> list[_Blob]:
    """Split one account's posts into blobs that each fit `budget`."""
    blobs: list[_Blob] = []
    current: list[Post] = []
    for post in blob_posts:
        candidate = current + [post]
        if current and len(format_account(account, candidate)) > budget:
            blobs.append(_blob_for(account, current))
            current = [post]
        else:
            current = candidate
    if current:
        blobs.append(_blob_for(account, current))

    fitted: list[_Blob] = []
    for blob in blobs:
        if blob.size > budget:
            # a single post larger than the whole budget: keep its head
            logger.warning("Truncating oversize post blob for @%s (%d chars)", account, blob.size)
            blob.text = blob.text[:budget]
        fitted.append(blob)
    return fitted


# ─────────────────────────────────────────────
# Packing
# ─────────────────────────────────────────────

def batch_budget(account_posts: list[AccountPosts]) -> int:
    has_images = any(p.media_url for a in account_posts for p in a.posts)
    return MAX_BATCH_CHARS_WITH_IMAGES if has_images else MAX_BATCH_CHARS


def build_batches(account_posts: list[AccountPosts], prompt_chars: int) -> list[Batch]:
    """Pack accounts with posts into budget-respecting batches.

    Deterministic for a given input order. Accounts without posts are skipped.
    """
    budget = batch_budget(account_posts)
    room = max(budget - prompt_chars, 1)

    blobs: list[_Blob] = []
    for entry in account_posts:
        if not entry.posts:
            continue
        blob = _blob_for(entry.account, entry.posts)
        if blob.size > room:
            blobs.extend(_split_oversize(entry.posts, entry.account, room))
        else:
            blobs.append(blob)

    blobs.sort(key=lambda b: b.size, reverse=True)

    open_batches: list[tuple[int, list[_Blob]]] = []  # (size, blobs)
    sep = len(BATCH_SEPARATOR)
    for blob in blobs:
        for i, (size, members) in enumerate(open_batches):
            if size + sep + blob.size <= budget:
                members.append(blob)
                open_batches[i] = (size + sep + blob.size, members)
                break
        else:
            open_batches.append((prompt_chars + blob.size, [blob]))

    batches: list[Batch] = []
    for index, (size, members) in enumerate(open_batches):
        post_urls: list[str] = []
        images: list[str] = []
        accounts: list[str] = []
        for blob in members:
            for url in blob.post_urls:
                if url not in post_urls:
                    post_urls.append(url)
            for url in blob.image_urls:
                if url not in images and len(images) < MAX_IMAGES_PER_BATCH:
                    images.append(url)
            if blob.account not in accounts:
                accounts.append(blob.account)
        batches.append(
            Batch(
                index=index,
                text=BATCH_SEPARATOR.join(b.text for b in members),
                size=size,
                post_urls=post_urls,
                image_urls=images,
                accounts=accounts,
            )
        )

    logger.debug(
        "Packed %d account blobs into %d batches (budget %d chars)",
        len(blobs), len(batches), budget,
    )
    return batches
