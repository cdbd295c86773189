from __future__ import annotations

from typing import Any

from inspired_portfolio.adapters.binance_client import ExchangeApiError

DEFAULT_RATE_LIMIT_RETRY_MS = 60_000
TIMESTAMP_RETRY_MS = 5_000
DEFAULT_TIMEOUT_RETRY_MS = 10_000


class PortfolioError(Exception):
    """Failure with a ready HTTP status and JSON body ({"error": ..., ...})."""

    def __init__(self, status: int, error: str, **extra: Any) -> None:
        super().__init__(error)
        self.status = status
        self.payload: dict[str, Any] = {"error": error, **extra}


class CredentialsNotFound(Exception):
    pass


class CredentialsUnavailable(Exception):
    """Stored credentials exist but cannot be decrypted."""


class EncryptionKeyError(RuntimeError):
    pass


def classify_exchange_error(err: ExchangeApiError) -> tuple[int, dict[str, Any]]:
    """Map an exchange failure to (status, payload) so callers can pick a backoff."""
    if err.is_rate_limit:
        return 429, {
            "error": "Rate limit exceeded. Please wait a moment and try again.",
            "code": err.code,
            "isRateLimit": True,
            "retryAfterMs": err.retry_after_ms if err.retry_after_ms is not None else DEFAULT_RATE_LIMIT_RETRY_MS,
        }
    if err.is_timestamp_error:
        return 400, {
            "error": "Time synchronization issue. Please try again in a moment.",
            "code": err.code,
            "isTimestampError": True,
            "retryAfterMs": TIMESTAMP_RETRY_MS,
        }
    if err.is_timeout:
        return 408, {
            "error": err.message,
            "code": err.code,
            "isTimeoutError": True,
            "retryAfterMs": err.retry_after_ms or DEFAULT_TIMEOUT_RETRY_MS,
        }
    status = err.status if err.status and err.status >= 400 else 500
    return status, {
        "error": err.message,
        "code": err.code,
        "isRateLimit": False,
        "retryAfterMs": None,
    }
