from __future__ import annotations

from typing import Any


class SyncProviderError(Exception):
    """Upstream pull failure. Every instance consumes one retry attempt."""

    def __init__(
        self,
        message: str,
        *,
        category: str = "upstream_error",
        retryable: bool = True,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.rate_limited = rate_limited


class SyncRateLimitedError(SyncProviderError):
    def __init__(self, message: str = "429 rate limited by upstream provider.") -> None:
        super().__init__(message, category="rate_limited", retryable=True, rate_limited=True)


def provider_error_detail(*, provider: str, operation: str, exc: SyncProviderError) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "rate_limited": exc.rate_limited,
        "message": str(exc),
    }
