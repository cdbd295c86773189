"""
Portfolio value over time, reconstructed from candlesticks.

Current quantities are replayed against historical closes of the largest
priced holdings; stablecoins add a constant amount at every point. Series of
different pairs are merged by position from the most recent candle backward,
not by timestamp equality.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from inspired_portfolio.adapters.binance_client import (
    AccountSnapshot,
    ApiResponse,
    ExchangeApiError,
    KlinePoint,
    PriceQuote,
)
from inspired_portfolio.core.assets import STABLECOINS, is_stable, parse_quantity, price_symbol
from inspired_portfolio.core.models import ChartDatum
from inspired_portfolio.core.ranges import RangeConfig
from inspired_portfolio.services.prices import MAX_SYMBOLS_PER_REQUEST, resolve_prices

logger = logging.getLogger(__name__)

MAX_ASSETS = 6
DUST_THRESHOLD = 0.001
KLINE_STAGGER_SECONDS = 0.05
ALIGNMENT_TOLERANCE = 0.01


class HistorySource(Protocol):
    async def get_account_information(self) -> ApiResponse[AccountSnapshot]: ...

    async def get_ticker_prices(self, symbols: list[str] | None = None) -> ApiResponse[list[PriceQuote]]: ...

    async def get_klines(self, symbol: str, interval: str, limit: int) -> ApiResponse[list[KlinePoint]]: ...


@dataclass(frozen=True)
class Position:
    asset: str
    quantity: float


@dataclass(frozen=True)
class KlineSeries:
    position: Position
    klines: list[KlinePoint]


@dataclass
class HistoryReport:
    data: list[ChartDatum]
    metadata: dict[str, Any] = field(default_factory=dict)


def extract_positions(account: AccountSnapshot, dust_threshold: float = DUST_THRESHOLD) -> list[Position]:
    totals: dict[str, float] = {}
    for balance in account.balances:
        asset = balance.asset.upper()
        totals[asset] = totals.get(asset, 0.0) + parse_quantity(balance.free) + parse_quantity(balance.locked)
    return [Position(asset, qty) for asset, qty in totals.items() if qty > dust_threshold]


def generate_timeline(config: RangeConfig, now_ms: int | None = None) -> list[int]:
    """Evenly spaced timestamps, one step apart, the last one step before now."""
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return [now - (config.limit - i) * config.step_ms for i in range(config.limit)]


def merge_tail_aligned(values: list[float], klines: list[KlinePoint], quantity: float) -> None:
    """Add quantity * close onto values, pairing the last candle with the last slot."""
    if not values or not klines or quantity <= 0:
        return
    overlap = min(len(values), len(klines))
    base_start = len(values) - overlap
    kline_start = len(klines) - overlap
    for i in range(overlap):
        close = klines[kline_start + i].close_price
        if not math.isfinite(close):
            continue
        values[base_start + i] += quantity * close


def align_to_current_value(
    data: list[ChartDatum],
    current_value: float | None,
    tolerance: float = ALIGNMENT_TOLERANCE,
) -> tuple[list[ChartDatum], float | None]:
    """
    Rescale the whole series so its last point equals current_value.

    Approximation: a uniform ratio only corrects a constant proportional error
    between candle closes and live prices. Returns (series, ratio applied or None).
    """
    if not data or not current_value or current_value <= 0:
        return data, None
    last = data[-1].value
    if last <= 0:
        return data, None
    ratio = current_value / last
    if abs(ratio - 1) <= tolerance:
        return data, None
    logger.info("Rescaling history by %.4f to match current value %s (was %s)", ratio, current_value, last)
    return [ChartDatum(label=d.label, value=round(d.value * ratio, 2)) for d in data], ratio


async def _fetch_series(
    client: HistorySource,
    position: Position,
    config: RangeConfig,
    delay: float,
) -> KlineSeries | None:
    if delay > 0:
        await asyncio.sleep(delay)
    symbol = price_symbol(position.asset)
    try:
        resp = await client.get_klines(symbol, config.interval, config.limit)
    except ExchangeApiError as e:
        if e.is_unsupported_symbol:
            logger.info("No kline data for %s", symbol)
            return None
        raise
    return KlineSeries(position=position, klines=resp.data)


async def build_history(
    client: HistorySource,
    range_key: str,
    config: RangeConfig,
    current_value: float | None = None,
    *,
    stablecoins: frozenset[str] = STABLECOINS,
    max_assets: int = MAX_ASSETS,
    dust_threshold: float = DUST_THRESHOLD,
    stagger_seconds: float = KLINE_STAGGER_SECONDS,
    batch_size: int = MAX_SYMBOLS_PER_REQUEST,
    now_ms: int | None = None,
) -> HistoryReport:
    account = (await client.get_account_information()).data
    positions = extract_positions(account, dust_threshold)
    if not positions:
        return HistoryReport(data=[], metadata={"range": range_key, "assetsProcessed": 0})

    stable = [p for p in positions if is_stable(p.asset, stablecoins)]
    priced = [p for p in positions if not is_stable(p.asset, stablecoins)]
    stable_total = sum(p.quantity for p in stable)

    # rank by notional value; assets without a spot price cannot have candles either
    top: list[Position] = []
    if priced:
        lookup = await resolve_prices(client, [price_symbol(p.asset) for p in priced], batch_size=batch_size)
        prices = lookup.prices
        ranked = [p for p in priced if price_symbol(p.asset) in prices]
        ranked.sort(key=lambda p: p.quantity * prices[price_symbol(p.asset)], reverse=True)
        top = ranked[:max_assets]

    timeline: list[int] = []
    values: list[float] = []
    failures: list[BaseException] = []

    if top:
        outcomes = await asyncio.gather(
            *(
                _fetch_series(client, position, config, stagger_seconds if index > 0 else 0.0)
                for index, position in enumerate(top)
            ),
            return_exceptions=True,
        )
        series: list[KlineSeries] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                failures.append(outcome)
            elif outcome is not None and outcome.klines:
                series.append(outcome)

        if series:
            base = series[0]
            timeline = [k.close_time for k in base.klines]
            values = [base.position.quantity * k.close_price for k in base.klines]
            for other in series[1:]:
                merge_tail_aligned(values, other.klines, other.position.quantity)
            if failures:
                logger.warning("Kline fetch failed for %d of %d assets", len(failures), len(top))
        elif failures:
            first = failures[0]
            logger.warning("All kline fetches failed for range %s: %s", range_key, first)
            if isinstance(first, Exception):
                raise first
            raise RuntimeError("kline fetch failed") from first
        else:
            logger.warning("No kline data for range %s; using generated timeline", range_key)

    if not timeline:
        timeline = generate_timeline(config, now_ms)
        values = [0.0] * len(timeline)

    values = [v + stable_total for v in values]

    raw = [ChartDatum(label=config.label(ts), value=round(v, 2)) for ts, v in zip(timeline, values)]
    data = [d for d in raw if math.isfinite(d.value) and d.value >= 0]

    metadata: dict[str, Any] = {
        "range": range_key,
        "originalDataPoints": len(raw),
        "validDataPoints": len(data),
        "assetsProcessed": len(positions),
        "priceAssets": len(top),
        "stableAssets": len(stable),
        "failedAssets": len(failures),
        "targetCurrentValue": current_value,
    }
    if not data:
        return HistoryReport(data=[], metadata=metadata)

    unaligned_last = data[-1].value
    data, ratio = align_to_current_value(data, current_value)
    metadata.update(
        {
            "lastChartValue": data[-1].value,
            "unalignedLastValue": unaligned_last,
            "alignmentApplied": ratio is not None,
            "alignmentRatio": ratio,
        }
    )
    return HistoryReport(data=data, metadata=metadata)
