from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Path, Query
from fastapi.responses import JSONResponse

from yield_engine.config import SUPPORTED_CHAINS, get_settings
from yield_engine.errors import UpstreamError, UpstreamRejectedError
from yield_engine.http import HttpClient
from yield_engine.models import (
    BoostReport,
    FixedYieldOpportunity,
    FixedYieldScanRequest,
    Lookup,
    LookupStatus,
    LoopingStrategy,
    MetavaultStrategy,
    MetavaultStrategyRequest,
    MorphoMarketList,
    MorphoMarketView,
    OpportunityScan,
    PoolSummary,
    ScanFilters,
    TradeQuote,
    TradeSide,
    YieldComparison,
    YtArbitrageOpportunity,
    YtArbitrageScanRequest,
)
from yield_engine.services.engine import OpportunityEngine
from yield_engine.utils.logging import setup_logging

app = FastAPI(title="Spectra Yield Engine", version="1.0.0")

logger = logging.getLogger(__name__)


def _get_engine() -> OpportunityEngine:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine


def _check_chain(chain: str) -> None:
    if chain.strip().lower() not in SUPPORTED_CHAINS:
        raise HTTPException(status_code=400, detail=f"Unsupported chain: {chain}")


def _upstream_failure(e: UpstreamError) -> HTTPException:
    if isinstance(e, UpstreamRejectedError) and e.status_code == 404:
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=502, detail=f"Upstream unavailable: {e}")


def _value_or_error(lookup: Lookup):
    if lookup.value is not None:
        return lookup.value
    status = 400 if lookup.status == LookupStatus.UNSUPPORTED_CHAIN else 404
    raise HTTPException(status_code=status, detail=lookup.detail or lookup.status.value)


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    # tests may inject their own engine before startup
    if getattr(app.state, "engine", None) is None:
        app.state.http = HttpClient(settings)
        app.state.engine = OpportunityEngine(app.state.http, settings)
    logger.info(f"Yield engine ready ({settings.ENV})")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/scan/fixed-yield", response_model=OpportunityScan[FixedYieldOpportunity])
async def post_scan_fixed_yield(req: FixedYieldScanRequest):
    filters = ScanFilters(**req.model_dump(exclude={"capital_usd"}))
    return await _get_engine().scan_fixed_yield_opportunities(req.capital_usd, filters)


@app.post("/api/scan/yt-arbitrage", response_model=OpportunityScan[YtArbitrageOpportunity])
async def post_scan_yt_arbitrage(req: YtArbitrageScanRequest):
    filters = ScanFilters(**req.model_dump(exclude={"capital_usd", "min_spread_pct"}))
    scan = await _get_engine().scan_yt_arbitrage_opportunities(req.capital_usd, req.min_spread_pct, filters)
    # dumped directly: break_even_days may be infinite and only the JSON form maps it to null
    return JSONResponse(content=scan.model_dump(mode="json"))


@app.get("/api/yields/best", response_model=OpportunityScan[PoolSummary])
async def get_best_yields(
    min_tvl_usd: float = Query(10_000.0, ge=0.0),
    min_liquidity_usd: float = Query(5_000.0, ge=0.0),
    asset: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("implied_apy", pattern="^(implied_apy|tvl|lp_apy|maturity)$"),
    top_n: int = Query(10),
):
    filters = ScanFilters(
        min_tvl_usd=min_tvl_usd,
        min_liquidity_usd=min_liquidity_usd,
        asset_symbol_filter=asset,
        top_n=top_n,
        include_leverage_lookup=False,
    )
    return await _get_engine().best_fixed_yields(filters, sort_by)


@app.get("/api/looping/{chain}/{pt_address}", response_model=LoopingStrategy)
async def get_looping_strategy(
    chain: str,
    pt_address: str,
    ltv: Optional[float] = Query(None, gt=0.0, lt=1.0),
    borrow_rate_pct: Optional[float] = Query(None, ge=0.0),
    max_loops: int = Query(5, ge=0, le=10),
    capital_usd: float = Query(10_000.0, gt=0.0),
):
    _check_chain(chain)
    try:
        strategy = await _get_engine().looping_strategy(
            chain, pt_address, ltv, borrow_rate_pct, max_loops, reference_capital_usd=capital_usd
        )
    except UpstreamError as e:
        raise _upstream_failure(e) from e
    if strategy is None:
        raise HTTPException(status_code=404, detail=f"No PT with a pool at {pt_address} on {chain}")
    return strategy


@app.get("/api/boost", response_model=BoostReport)
async def get_boost(
    balance: Optional[float] = Query(None, ge=0.0),
    capital_usd: Optional[float] = Query(None, gt=0.0),
    chain: Optional[str] = None,
    pt_address: Optional[str] = None,
):
    if chain:
        _check_chain(chain)
    try:
        return await _get_engine().boost_info(balance, capital_usd, chain, pt_address)
    except UpstreamError as e:
        raise _upstream_failure(e) from e


@app.get("/api/quote/{chain}/{pt_address}", response_model=TradeQuote)
async def get_trade_quote(
    chain: str,
    pt_address: str,
    amount: float = Query(..., gt=0.0),
    side: TradeSide = Query(...),
    slippage_pct: float = Query(0.5, ge=0.0, le=50.0),
):
    _check_chain(chain)
    try:
        lookup = await _get_engine().quote_trade(chain, pt_address, amount, side, slippage_pct)
    except UpstreamError as e:
        raise _upstream_failure(e) from e
    return _value_or_error(lookup)


@app.get("/api/compare/{chain}/{pt_address}", response_model=YieldComparison)
async def get_yield_comparison(
    chain: str,
    pt_address: str,
    capital_usd: float = Query(10_000.0, gt=0.0),
    ve_balance: Optional[float] = Query(None, ge=0.0),
):
    _check_chain(chain)
    try:
        comparison = await _get_engine().compare_yield(chain, pt_address, capital_usd, ve_balance)
    except UpstreamError as e:
        raise _upstream_failure(e) from e
    if comparison is None:
        raise HTTPException(status_code=404, detail=f"No PT with a pool at {pt_address} on {chain}")
    return comparison


@app.post("/api/metavault/model", response_model=MetavaultStrategy)
async def post_metavault_model(req: MetavaultStrategyRequest):
    return _get_engine().model_metavault_strategy(req)


@app.get("/api/morpho/markets", response_model=MorphoMarketList)
async def get_morpho_markets(
    chain: Optional[str] = None,
    pt_symbol: Optional[str] = Query(None, max_length=100),
    min_supply_usd: float = Query(0.0, ge=0.0),
    sort_by: str = Query("supply", pattern="^(supply|borrow_apy|utilization)$"),
    top_n: int = Query(10, ge=1, le=50),
):
    if chain:
        _check_chain(chain)
    try:
        return await _get_engine().morpho_markets(chain, pt_symbol, min_supply_usd, sort_by, top_n)
    except UpstreamError as e:
        raise _upstream_failure(e) from e


@app.get("/api/morpho/markets/{chain}/{market_key}", response_model=MorphoMarketView)
async def get_morpho_rate(chain: str, market_key: str = Path(..., pattern="^0x[a-fA-F0-9]{64}$")):
    _check_chain(chain)
    try:
        lookup = await _get_engine().morpho_rate(chain, market_key)
    except UpstreamError as e:
        raise _upstream_failure(e) from e
    return _value_or_error(lookup)
