# inspired_portfolio/adapters/binance_client.py
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import math
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Generic, TypeVar
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)

# --- Config ------------------------------------------------------------------

DEFAULT_MAINNET_BASE_URL = "https://api.binance.com"
DEFAULT_TESTNET_BASE_URL = "https://testnet.binance.vision"
DEFAULT_RECV_WINDOW_MS = 60_000
DEFAULT_DEADLINE_SECONDS = 15.0

TIMEOUT = "TIMEOUT"
CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
INVALID_SYMBOL = -1121
TIMESTAMP_OUTSIDE_RECV_WINDOW = -1021

T = TypeVar("T")

# --- Types -------------------------------------------------------------------


@dataclass(frozen=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str
    use_testnet: bool = False
    label: str | None = None
    passphrase: str | None = None

    def __repr__(self) -> str:
        return f"ExchangeCredentials(use_testnet={self.use_testnet}, label={self.label!r})"


@dataclass(frozen=True)
class RateLimitInfo:
    used_weight_1m: float | None = None
    order_count_10s: float | None = None
    order_count_1m: float | None = None
    raw_headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiResponse(Generic[T]):
    data: T
    rate_limit: RateLimitInfo


@dataclass(frozen=True)
class AccountBalance:
    asset: str
    free: str
    locked: str


@dataclass(frozen=True)
class AccountSnapshot:
    balances: list[AccountBalance]
    update_time: int | None = None


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: str


@dataclass(frozen=True)
class KlinePoint:
    open_time: int
    close_time: int
    close_price: float


class ExchangeApiError(Exception):
    """Any failed exchange call: HTTP errors, exchange error codes and client-side timeouts."""

    def __init__(
        self,
        message: str,
        *,
        status: int,
        code: int | str | None = None,
        data: Any = None,
        is_rate_limit: bool = False,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.data = data
        self.is_rate_limit = is_rate_limit
        self.retry_after_ms = retry_after_ms

    @property
    def is_timeout(self) -> bool:
        return self.code in (TIMEOUT, CONNECTION_TIMEOUT)

    @property
    def is_timestamp_error(self) -> bool:
        return (
            self.code == TIMESTAMP_OUTSIDE_RECV_WINDOW
            or "recvWindow" in self.message
            or "timestamp" in self.message
        )

    @property
    def is_unsupported_symbol(self) -> bool:
        return self.code == INVALID_SYMBOL


# --- Helpers -----------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def _trim_trailing_slash(url: str) -> str:
    return url.rstrip("/")


def resolve_base_url(credentials: ExchangeCredentials, base_url: str | None = None) -> str:
    if base_url:
        return _trim_trailing_slash(base_url)
    env_base = os.getenv("BINANCE_API_BASE_URL")
    if env_base:
        return _trim_trailing_slash(env_base)
    return DEFAULT_TESTNET_BASE_URL if credentials.use_testnet else DEFAULT_MAINNET_BASE_URL


def sign_query(secret: str, query_string: str) -> str:
    return hmac.new(secret.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_retry_after(headers: Mapping[str, str]) -> int | None:
    """Retry-After as milliseconds; accepts delta-seconds or an HTTP date."""
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return int(float(raw) * 1000)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta_ms = (when - datetime.now(timezone.utc)).total_seconds() * 1000
    return max(int(delta_ms), 0)


def _to_number(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitInfo:
    raw = {k.lower(): v for k, v in headers.items() if k.lower().startswith("x-mbx")}
    return RateLimitInfo(
        used_weight_1m=_to_number(raw.get("x-mbx-used-weight-1m")),
        order_count_10s=_to_number(raw.get("x-mbx-order-count-10s")),
        order_count_1m=_to_number(raw.get("x-mbx-order-count-1m")),
        raw_headers=raw,
    )


def _safe_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _query_params(params: Mapping[str, Any]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            raise ValueError(f"Array values are not supported for Binance query param '{key}'")
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        else:
            out[key] = str(value)
    return out


# --- Client ------------------------------------------------------------------


class BinanceClient:
    """
    Binance spot REST client (signed + public).

    Signed requests carry timestamp and recvWindow, then
      signature = hex(HMAC_SHA256(api_secret, query_string))
    appended as the last query parameter. Every call runs under a client-side
    deadline that surfaces as ExchangeApiError(code="TIMEOUT").
    """

    def __init__(
        self,
        credentials: ExchangeCredentials,
        *,
        base_url: str | None = None,
        recv_window_ms: int = DEFAULT_RECV_WINDOW_MS,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = credentials.api_key
        self._api_secret = credentials.api_secret
        self.base_url = resolve_base_url(credentials, base_url)
        self.recv_window_ms = int(recv_window_ms)
        self.deadline_seconds = float(deadline_seconds)

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-MBX-APIKEY"] = self._api_key

        # transport timeout stays above the deadline so the deadline is what fires
        self._http = httpx.AsyncClient(
            timeout=self.deadline_seconds + 5.0,
            headers=headers,
            transport=transport,
        )

    # --- housekeeping ---------------------------------------------------------

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> BinanceClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.aclose()

    # --- API surface ----------------------------------------------------------

    async def get_account_information(self) -> ApiResponse[AccountSnapshot]:
        raw = await self._request("GET", "/api/v3/account", signed=True)
        payload = raw.data if isinstance(raw.data, Mapping) else {}
        balances = [
            AccountBalance(
                asset=str(item.get("asset") or ""),
                free=str(item.get("free") or "0"),
                locked=str(item.get("locked") or "0"),
            )
            for item in payload.get("balances") or []
            if isinstance(item, Mapping) and item.get("asset")
        ]
        snapshot = AccountSnapshot(balances=balances, update_time=payload.get("updateTime"))
        return ApiResponse(data=snapshot, rate_limit=raw.rate_limit)

    async def get_ticker_prices(self, symbols: list[str] | None = None) -> ApiResponse[list[PriceQuote]]:
        params: dict[str, Any] = {}
        if symbols:
            params["symbols"] = json.dumps([s.upper() for s in symbols], separators=(",", ":"))
        raw = await self._request("GET", "/api/v3/ticker/price", params=params)

        data = raw.data
        if isinstance(data, Mapping):
            data = [data]
        quotes = [
            PriceQuote(symbol=str(item["symbol"]).upper(), price=str(item["price"]))
            for item in data or []
            if isinstance(item, Mapping) and "symbol" in item and "price" in item
        ]
        return ApiResponse(data=quotes, rate_limit=raw.rate_limit)

    async def get_klines(self, symbol: str, interval: str, limit: int) -> ApiResponse[list[KlinePoint]]:
        raw = await self._request(
            "GET",
            "/api/v3/klines",
            params={"symbol": symbol, "interval": interval, "limit": limit},
        )
        # positional rows: [openTime, open, high, low, close, volume, closeTime, ...]
        points = [
            KlinePoint(open_time=int(row[0]), close_time=int(row[6]), close_price=float(row[4]))
            for row in raw.data or []
            if isinstance(row, (list, tuple)) and len(row) > 6
        ]
        return ApiResponse(data=points, rate_limit=raw.rate_limit)

    # --- HTTP signing + request ----------------------------------------------

    def build_url(self, path: str, params: Mapping[str, Any] | None = None, *, signed: bool = False) -> str:
        query = _query_params(params or {})
        if signed:
            query["timestamp"] = str(_now_ms())
            query["recvWindow"] = str(self.recv_window_ms)

        query_string = urlencode(query)
        url = f"{self.base_url}{path}"
        if signed:
            signature = sign_query(self._api_secret, query_string)
            return f"{url}?{query_string}&signature={signature}" if query_string else f"{url}?signature={signature}"
        return f"{url}?{query_string}" if query_string else url

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        signed: bool = False,
    ) -> ApiResponse[Any]:
        if signed and not self._api_secret:
            raise ExchangeApiError("Binance signed request requires an API secret", status=401)

        url = self.build_url(path, params, signed=signed)
        try:
            resp = await asyncio.wait_for(
                self._http.request(method, url),
                timeout=self.deadline_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Binance %s %s exceeded %.1fs deadline", method, path, self.deadline_seconds)
            raise ExchangeApiError(
                "Request timeout - Binance API is not responding",
                status=408,
                code=TIMEOUT,
                retry_after_ms=5000,
            ) from e
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            logger.warning("Binance %s %s connect failure: %s", method, path, e.__class__.__name__)
            raise ExchangeApiError(
                "Connection timeout - Please check your internet connection",
                status=408,
                code=CONNECTION_TIMEOUT,
                retry_after_ms=10000,
            ) from e
        except httpx.TimeoutException as e:
            raise ExchangeApiError(
                "Request timeout - Binance API is not responding",
                status=408,
                code=TIMEOUT,
                retry_after_ms=5000,
            ) from e

        rate_limit = parse_rate_limit_headers(resp.headers)

        if not resp.is_success:
            parsed = _safe_json(resp.text)
            code = parsed.get("code") if isinstance(parsed, Mapping) else None
            msg = parsed.get("msg") if isinstance(parsed, Mapping) else None
            if not msg:
                suffix = f" (code {code})" if code else ""
                msg = f"Binance API responded with status {resp.status_code}{suffix}."

            is_rate_limit = resp.status_code in (418, 429)
            retry_after_ms = parse_retry_after(resp.headers) if is_rate_limit else None
            logger.info("Binance %s %s -> %s code=%s", method, path, resp.status_code, code)
            raise ExchangeApiError(
                str(msg),
                status=resp.status_code,
                code=code,
                data=parsed,
                is_rate_limit=is_rate_limit,
                retry_after_ms=retry_after_ms,
            )

        return ApiResponse(data=_safe_json(resp.text), rate_limit=rate_limit)
