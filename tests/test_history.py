import asyncio

import httpx
import pytest

from conftest import FakeBinance, series
from inspired_portfolio.adapters.binance_client import ExchangeApiError, KlinePoint
from inspired_portfolio.core.models import ChartDatum
from inspired_portfolio.core.ranges import RANGE_CONFIG
from inspired_portfolio.services.history import (
    KLINE_STAGGER_SECONDS,
    align_to_current_value,
    build_history,
    generate_timeline,
    merge_tail_aligned,
)


def _history(binance: FakeBinance, range_key: str = "1M", current_value=None, **kwargs):
    kwargs.setdefault("stagger_seconds", 0)

    async def run():
        async with binance.client() as client:
            return await build_history(client, range_key, RANGE_CONFIG[range_key], current_value, **kwargs)

    return asyncio.run(run())


def _points(values):
    return [ChartDatum(label=str(i), value=v) for i, v in enumerate(values)]


def test_series_length_matches_range(binance: FakeBinance):
    binance.hold("BTC", "1")
    binance.prices = {"BTCUSDT": 100}
    binance.klines["BTCUSDT"] = series([100.0] * 60)

    for range_key, expected in (("1M", 30), ("1Y", 52), ("1D", 24)):
        report = _history(binance, range_key)
        assert len(report.data) == expected


def test_values_combine_priced_and_stable_holdings(binance: FakeBinance):
    binance.hold("BTC", "2")
    binance.hold("ETH", "1")
    binance.hold("USDT", "50")
    binance.prices = {"BTCUSDT": 10, "ETHUSDT": 5}
    binance.klines["BTCUSDT"] = series([10.0, 11.0, 12.0])
    binance.klines["ETHUSDT"] = series([5.0, 6.0, 7.0])

    report = _history(binance)

    assert [d.value for d in report.data] == [75.0, 78.0, 81.0]
    assert report.metadata["stableAssets"] == 1
    assert report.metadata["priceAssets"] == 2


def test_shorter_series_is_aligned_from_the_tail(binance: FakeBinance):
    binance.hold("BTC", "1")
    binance.hold("NEW", "1")
    binance.prices = {"BTCUSDT": 100, "NEWUSDT": 1}
    binance.klines["BTCUSDT"] = series([100.0, 100.0, 100.0, 100.0])
    binance.klines["NEWUSDT"] = series([1.0, 2.0])

    report = _history(binance)

    assert [d.value for d in report.data] == [100.0, 100.0, 101.0, 102.0]


def test_merge_tail_aligned_handles_longer_series():
    values = [0.0, 0.0]
    klines = [KlinePoint(0, t, float(t)) for t in (1, 2, 3)]
    merge_tail_aligned(values, klines, 2.0)
    assert values == [4.0, 6.0]


def test_top_holdings_ranked_by_notional_value(binance: FakeBinance):
    # SHIB has the largest quantity but the smallest value
    binance.hold("SHIB", "1000000")
    binance.hold("BTC", "1")
    binance.hold("ETH", "1")
    binance.prices = {"SHIBUSDT": 0.00001, "BTCUSDT": 60000, "ETHUSDT": 3000}
    for symbol in binance.prices:
        binance.klines[symbol] = series([binance.prices[symbol]] * 3)

    _history(binance, max_assets=2)

    fetched = {r.url.params["symbol"] for r in binance.calls("/api/v3/klines")}
    assert fetched == {"BTCUSDT", "ETHUSDT"}


def test_dust_is_ignored(binance: FakeBinance):
    binance.hold("BTC", "0.0005")
    report = _history(binance)
    assert report.data == []
    assert binance.calls("/api/v3/klines") == []


def test_unsupported_kline_symbol_is_excluded(binance: FakeBinance):
    binance.hold("BTC", "1")
    binance.hold("ODD", "3")
    binance.prices = {"BTCUSDT": 10, "ODDUSDT": 50}
    binance.klines["BTCUSDT"] = series([10.0, 20.0])
    binance.kline_errors["ODDUSDT"] = lambda: httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})

    report = _history(binance)

    assert [d.value for d in report.data] == [10.0, 20.0]


def test_stable_only_uses_generated_timeline(binance: FakeBinance):
    binance.hold("USDC", "250")

    report = _history(binance, "1W", now_ms=1_700_000_000_000)

    assert len(report.data) == 42
    assert {d.value for d in report.data} == {250.0}


def test_all_kline_fetches_failing_raises(binance: FakeBinance):
    binance.hold("BTC", "1")
    binance.hold("ETH", "1")
    binance.prices = {"BTCUSDT": 10, "ETHUSDT": 5}
    for symbol in binance.prices:
        binance.kline_errors[symbol] = lambda: httpx.Response(500, json={"code": -1000, "msg": "Internal error"})

    with pytest.raises(ExchangeApiError):
        _history(binance, "1W")


def test_alignment_scales_by_ratio():
    aligned, ratio = align_to_current_value(_points([250.0, 500.0]), 1000)
    assert ratio == 2.0
    assert [d.value for d in aligned] == [500.0, 1000.0]


def test_alignment_within_tolerance_is_skipped():
    original = _points([400.0, 995.0])
    aligned, ratio = align_to_current_value(original, 1000)
    assert ratio is None
    assert aligned == original


def test_alignment_requires_positive_values():
    assert align_to_current_value(_points([0.0]), 1000)[1] is None
    assert align_to_current_value(_points([10.0]), None)[1] is None
    assert align_to_current_value(_points([10.0]), -5)[1] is None


def test_alignment_metadata_reports_both_values(binance: FakeBinance):
    binance.hold("BTC", "1")
    binance.prices = {"BTCUSDT": 500}
    binance.klines["BTCUSDT"] = series([250.0, 500.0])

    report = _history(binance, current_value=1000.0)

    assert [d.value for d in report.data] == [500.0, 1000.0]
    assert report.metadata["alignmentApplied"] is True
    assert report.metadata["unalignedLastValue"] == 500.0
    assert report.metadata["alignmentRatio"] == 2.0


def test_generate_timeline_ends_one_step_before_now():
    config = RANGE_CONFIG["1Hr"]
    timeline = generate_timeline(config, now_ms=10_000_000)
    assert len(timeline) == 12
    assert timeline[-1] == 10_000_000 - config.step_ms
    assert timeline[1] - timeline[0] == config.step_ms


def test_range_labels():
    # 2023-11-14 22:13:20 UTC, a Tuesday
    ts = 1_700_000_000_000
    assert RANGE_CONFIG["1D"].label(ts) == "10:13 PM"
    assert RANGE_CONFIG["1W"].label(ts) == "Tue, 10 PM"
    assert RANGE_CONFIG["1M"].label(ts) == "Nov 14"
    assert RANGE_CONFIG["1Y"].label(ts) == "Nov 2023"


def test_kline_fetches_after_the_first_are_staggered(binance: FakeBinance, monkeypatch: pytest.MonkeyPatch):
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def record_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", record_sleep)
    binance.prices = {"BTCUSDT": 100, "ETHUSDT": 50, "SOLUSDT": 10}
    for symbol in binance.prices:
        binance.hold(symbol.removesuffix("USDT"), "1")
        binance.klines[symbol] = series([binance.prices[symbol]] * 3)

    report = _history(binance, stagger_seconds=KLINE_STAGGER_SECONDS)

    assert len(binance.calls("/api/v3/klines")) == 3
    assert delays == [KLINE_STAGGER_SECONDS, KLINE_STAGGER_SECONDS]
    assert [d.value for d in report.data] == [160.0, 160.0, 160.0]
