"""
src/utils/errors.py — Tagged upstream errors.

Every failure coming back from the posts API or the LLM provider is turned
into an UpstreamError exactly once, at the client boundary. Everything above
the boundary branches on `kind`, never on message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    OVERLOADED = "overloaded"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    INPUT_TOO_LARGE = "input_too_large"
    MODEL_NOT_FOUND = "model_not_found"
    BILLING = "billing"


RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.OVERLOADED,
    ErrorKind.QUOTA,
    ErrorKind.TIMEOUT,
    ErrorKind.TRANSIENT,
})

_USER_MESSAGES = {
    ErrorKind.RATE_LIMIT: "Rate limited by the provider. Try again in a minute.",
    ErrorKind.OVERLOADED: "The AI provider is overloaded. Try again shortly.",
    ErrorKind.QUOTA: "Provider quota exhausted. Try again later.",
    ErrorKind.TIMEOUT: "The request timed out.",
    ErrorKind.TRANSIENT: "Temporary upstream error.",
    ErrorKind.AUTH: "Invalid API key. Check the key in your settings.",
    ErrorKind.INVALID_REQUEST: "The provider rejected the request.",
    ErrorKind.INPUT_TOO_LARGE: "Too much content for one request. Try fewer accounts or a shorter range.",
    ErrorKind.MODEL_NOT_FOUND: "The selected model is not available. Pick another model in settings.",
    ErrorKind.BILLING: "The AI provider account has a billing problem (out of credits).",
}


class UpstreamError(Exception):
    """An upstream call failed; `kind` says how callers should react."""

    def __init__(
        self,
        kind: ErrorKind,
        detail: str = "",
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ):
        self.kind = kind
        self.detail = detail
        self.status = status
        self.retry_after = retry_after
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def message(self) -> str:
        base = _USER_MESSAGES[self.kind]
        return f"{base} ({self.detail})" if self.detail else base

    def __repr__(self) -> str:
        return f"<UpstreamError kind={self.kind.value} status={self.status}>"


def kind_for_status(status: int, body: str = "") -> ErrorKind:
    """Map an HTTP status (and error body) to an ErrorKind."""
    text = body.lower()
    if status in (401, 403):
        return ErrorKind.AUTH
    if status == 429 or "rate_limit" in text:
        return ErrorKind.QUOTA if "quota" in text else ErrorKind.RATE_LIMIT
    if status == 529 or "overloaded" in text:
        return ErrorKind.OVERLOADED
    if status == 402 or "credit balance" in text or "billing" in text:
        return ErrorKind.BILLING
    if status == 413 or "prompt is too long" in text:
        return ErrorKind.INPUT_TOO_LARGE
    if status == 404:
        return ErrorKind.MODEL_NOT_FOUND
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status >= 500 or status < 400:
        # < 400 only happens for errors delivered mid-stream
        return ErrorKind.TRANSIENT
    return ErrorKind.INVALID_REQUEST


class ScanFailed(Exception):
    """Analysis produced nothing and every batch failed."""

    def __init__(self, message: str, failures: list[str] | None = None):
        super().__init__(message)
        self.failures = failures or []
