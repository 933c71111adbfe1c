import math
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from yield_engine.errors import TransientUpstreamError
from yield_engine.main import app
from yield_engine.models import (
    BoostReport,
    Lookup,
    LookupStatus,
    MorphoMarketList,
    MorphoMarketView,
    OpportunityScan,
    ScanFilters,
    ScanStatus,
    TradeSide,
    YtArbitrageOpportunity,
)
from yield_engine.services.looping import build_looping_strategy
from yield_engine.services.metavault import build_metavault_strategy

from conftest import FakeClock, make_pt

MARKET_KEY = "0x" + "ab" * 32


def _yt_opportunity(**overrides):
    fields = dict(
        chain="base",
        pt_address="0xpt",
        pool_address="0xpool",
        pt_name="PT-sUSDe",
        yt_price_usd=0.04,
        yt_price_underlying=0.04,
        yt_leverage=25.0,
        ibt_current_apr=4.0,
        yt_implied_rate=4.0,
        spread_pct=0.0,
        maturity_timestamp=1_800_000_000,
        days_to_maturity=365,
        tvl_usd=1_000_000.0,
        pool_liquidity_usd=1_000_000.0,
        entry_impact_pct=0.5,
        capacity_usd=100_000.0,
        break_even_days=math.inf,
        underlying="USDC",
        ibt_symbol="sUSDC",
        ibt_protocol="Ethena",
    )
    fields.update(overrides)
    return YtArbitrageOpportunity(**fields)


@pytest.fixture
def engine():
    stub = MagicMock()
    stub.scan_fixed_yield_opportunities = AsyncMock(
        return_value=OpportunityScan(opportunities=[], status=ScanStatus.EMPTY, message="No opportunities found")
    )
    stub.scan_yt_arbitrage_opportunities = AsyncMock(return_value=OpportunityScan(opportunities=[_yt_opportunity()]))
    stub.best_fixed_yields = AsyncMock(return_value=OpportunityScan(opportunities=[]))
    stub.looping_strategy = AsyncMock(
        return_value=build_looping_strategy(make_pt(), "sonic", Lookup(status=LookupStatus.UNSUPPORTED_CHAIN), clock=FakeClock())
    )
    stub.boost_info = AsyncMock(return_value=BoostReport(total_supply=1_000_000.0))
    stub.quote_trade = AsyncMock(return_value=Lookup(status=LookupStatus.NOT_FOUND, detail="No PT found"))
    stub.compare_yield = AsyncMock(return_value=None)
    stub.model_metavault_strategy = MagicMock(side_effect=build_metavault_strategy)
    stub.morpho_markets = AsyncMock(return_value=MorphoMarketList(status=LookupStatus.NOT_FOUND))
    stub.morpho_rate = AsyncMock(return_value=Lookup(value=MorphoMarketView(unique_key=MARKET_KEY, lltv=0.86)))
    return stub


@pytest.fixture
def client(engine):
    app.state.engine = engine
    with TestClient(app) as c:
        yield c
    app.state.engine = None


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_fixed_yield_scan_forwards_filters(client, engine):
    resp = client.post("/api/scan/fixed-yield", json={"capital_usd": 25_000, "asset_symbol_filter": "usdc", "top_n": 3})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "empty"
    assert body["opportunities"] == []
    capital, filters = engine.scan_fixed_yield_opportunities.await_args.args
    assert capital == 25_000
    assert isinstance(filters, ScanFilters)
    assert (filters.asset_symbol_filter, filters.top_n, filters.min_tvl_usd) == ("usdc", 3, 10_000)


def test_fixed_yield_scan_requires_positive_capital(client):
    assert client.post("/api/scan/fixed-yield", json={"capital_usd": 0}).status_code == 422
    assert client.post("/api/scan/fixed-yield", json={}).status_code == 422


def test_yt_arbitrage_infinite_break_even_is_null(client, engine):
    resp = client.post("/api/scan/yt-arbitrage", json={"capital_usd": 10_000, "min_spread_pct": 0})

    assert resp.status_code == 200
    (opp,) = resp.json()["opportunities"]
    assert opp["break_even_days"] is None
    capital, min_spread, _filters = engine.scan_yt_arbitrage_opportunities.await_args.args
    assert (capital, min_spread) == (10_000, 0)


def test_best_yields_validates_sort_key(client, engine):
    assert client.get("/api/yields/best", params={"sort_by": "vibes"}).status_code == 422
    assert client.get("/api/yields/best", params={"sort_by": "tvl", "asset": "eth"}).status_code == 200
    filters, sort_by = engine.best_fixed_yields.await_args.args
    assert (filters.asset_symbol_filter, sort_by) == ("eth", "tvl")


def test_looping_endpoint(client, engine):
    resp = client.get("/api/looping/sonic/0xpt", params={"max_loops": 3})

    assert resp.status_code == 200
    assert resp.json()["ltv_source"] == "default"
    engine.looping_strategy.assert_awaited_once_with("sonic", "0xpt", None, None, 3, reference_capital_usd=10_000.0)


def test_looping_endpoint_errors(client, engine):
    assert client.get("/api/looping/solana/0xpt").status_code == 400

    engine.looping_strategy.return_value = None
    assert client.get("/api/looping/base/0xnope").status_code == 404

    engine.looping_strategy.side_effect = TransientUpstreamError("spectra down")
    assert client.get("/api/looping/base/0xpt").status_code == 502


def test_boost_endpoint(client, engine):
    resp = client.get("/api/boost", params={"balance": 5_000})

    assert resp.status_code == 200
    assert resp.json()["total_supply"] == 1_000_000.0
    engine.boost_info.assert_awaited_once_with(5_000, None, None, None)


def test_boost_endpoint_rpc_failure(client, engine):
    engine.boost_info.side_effect = TransientUpstreamError("rpc down")
    assert client.get("/api/boost").status_code == 502


def test_quote_endpoint(client, engine):
    assert client.get("/api/quote/base/0xpt", params={"amount": 100, "side": "hold"}).status_code == 422
    assert client.get("/api/quote/base/0xpt", params={"amount": 0, "side": "buy"}).status_code == 422

    resp = client.get("/api/quote/base/0xpt", params={"amount": 100, "side": "sell"})

    assert resp.status_code == 404
    assert resp.json()["detail"] == "No PT found"
    engine.quote_trade.assert_awaited_once_with("base", "0xpt", 100, TradeSide.SELL, 0.5)


def test_compare_endpoint_missing_pt(client, engine):
    assert client.get("/api/compare/base/0xpt", params={"ve_balance": 10}).status_code == 404
    engine.compare_yield.assert_awaited_once_with("base", "0xpt", 10_000.0, 10)


def test_metavault_endpoint(client):
    resp = client.post("/api/metavault/model", json={"base_apy": 12, "morpho_ltv": 0.5, "max_loops": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert [r["loop"] for r in body["rows"]] == [0, 1, 2]
    assert body["net_vault_apy"] == pytest.approx(10.8)
    assert client.post("/api/metavault/model", json={"base_apy": 12, "morpho_ltv": 1.2}).status_code == 422


def test_morpho_markets_endpoint(client, engine):
    assert client.get("/api/morpho/markets", params={"sort_by": "tvl"}).status_code == 422
    assert client.get("/api/morpho/markets", params={"chain": "solana"}).status_code == 400

    resp = client.get("/api/morpho/markets", params={"chain": "base", "pt_symbol": "USDC", "sort_by": "borrow_apy"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "not_found"
    engine.morpho_markets.assert_awaited_once_with("base", "USDC", 0.0, "borrow_apy", 10)


def test_morpho_rate_endpoint(client, engine):
    assert client.get("/api/morpho/markets/base/0x1234").status_code == 422

    resp = client.get(f"/api/morpho/markets/base/{MARKET_KEY}")
    assert resp.status_code == 200
    assert resp.json()["lltv"] == 0.86

    engine.morpho_rate.return_value = Lookup(status=LookupStatus.UNSUPPORTED_CHAIN, detail="Morpho not tracked on sonic")
    assert client.get(f"/api/morpho/markets/sonic/{MARKET_KEY}").status_code == 400
