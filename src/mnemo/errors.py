"""Error taxonomy. Every error carries a machine-readable code."""

from __future__ import annotations

from typing import Any

from mnemo.types import FallbackReason


class MnemoError(Exception):
    """Base error with a stable code and structured details."""

    code = "MNEMO_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ContextTooLargeError(MnemoError):
    """Content exceeds a provider's usable context ceiling."""

    code = "CONTEXT_TOO_LARGE"

    def __init__(self, token_count: int, limit: int, *, provider: str = "") -> None:
        super().__init__(
            f"Content too large for {provider or 'provider'}: "
            f"{token_count} tokens exceeds {limit} limit",
            details={"token_count": token_count, "limit": limit, "provider": provider},
        )
        self.token_count = token_count
        self.limit = limit


class TokenLimitError(MnemoError):
    code = "TOKEN_LIMIT_EXCEEDED"

    def __init__(self, token_count: int, limit: int) -> None:
        super().__init__(
            f"Source has ~{token_count} tokens, exceeds loader limit of {limit}",
            details={"token_count": token_count, "limit": limit},
        )
        self.token_count = token_count
        self.limit = limit


class FallbackDeniedError(MnemoError):
    code = "FALLBACK_DENIED"

    def __init__(self, reason: FallbackReason) -> None:
        super().__init__(
            f"Fallback to the expandable-context provider was denied. Reason: {reason.value}",
            details={"reason": reason.value},
        )
        self.reason = reason


class CacheNotFoundError(MnemoError):
    code = "CACHE_NOT_FOUND"

    def __init__(self, alias: str, message: str | None = None) -> None:
        super().__init__(message or f"Cache not found: {alias}", details={"alias": alias})
        self.alias = alias


class UpstreamError(MnemoError):
    """Provider returned a non-success HTTP response or failed in transport."""

    code = "UPSTREAM_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"provider": provider, "status": status, "body": body},
        )
        self.provider = provider
        self.status = status
        self.body = body


class ProviderTimeoutError(MnemoError):
    code = "PROVIDER_TIMEOUT"

    def __init__(self, provider: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{provider} request timed out after {timeout_seconds:g}s",
            details={"provider": provider, "timeout_seconds": timeout_seconds},
        )
        self.provider = provider
        self.timeout_seconds = timeout_seconds


class SourceLoadError(MnemoError):
    code = "LOAD_ERROR"

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Failed to load {source}: {reason}", details={"source": source})
        self.source = source


class RetrievalUnavailableError(MnemoError):
    code = "RETRIEVAL_UNAVAILABLE"
