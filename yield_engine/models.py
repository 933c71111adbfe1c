from __future__ import annotations

import math
from enum import Enum
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

T = TypeVar("T")


class WireModel(BaseModel):
    """Upstream record: accepts camelCase wire names, ignores unknown fields, never mutated."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Spectra pool listings
# ---------------------------------------------------------------------------


class UsdValue(WireModel):
    usd: Optional[float] = None


class TokenPrice(WireModel):
    usd: Optional[float] = None
    underlying: Optional[float] = None


class GaugeRange(WireModel):
    min: Optional[float] = 0.0
    max: Optional[float] = 0.0


class LpApyDetails(WireModel):
    fees: Optional[float] = None
    pt: Optional[float] = None
    ibt: Optional[float] = None
    rewards: Dict[str, Optional[float]] = Field(default_factory=dict)
    boosted_rewards: Dict[str, GaugeRange] = Field(default_factory=dict, alias="boostedRewards")


class LpApy(WireModel):
    total: Optional[float] = None
    details: Optional[LpApyDetails] = None
    boosted_total: Optional[float] = Field(default=None, alias="boostedTotal")


class Pool(WireModel):
    address: Optional[str] = None
    implied_apy: Optional[float] = Field(default=None, alias="impliedApy")
    pt_price: Optional[TokenPrice] = Field(default=None, alias="ptPrice")
    yt_price: Optional[TokenPrice] = Field(default=None, alias="ytPrice")
    liquidity: Optional[UsdValue] = None
    lp_apy: Optional[LpApy] = Field(default=None, alias="lpApy")
    yt_leverage: Optional[float] = Field(default=None, alias="ytLeverage")

    @property
    def liquidity_usd(self) -> float:
        return (self.liquidity.usd if self.liquidity else None) or 0.0

    @property
    def pt_price_underlying(self) -> float:
        return (self.pt_price.underlying if self.pt_price else None) or 0.0


class Underlying(WireModel):
    symbol: Optional[str] = None
    name: Optional[str] = None


class IbtApr(WireModel):
    total: Optional[float] = None


class Ibt(WireModel):
    symbol: Optional[str] = None
    name: Optional[str] = None
    protocol: Optional[str] = None
    decimals: Optional[int] = None
    apr: Optional[IbtApr] = None


class PrincipalToken(WireModel):
    """One fixed-maturity PT listing with every AMM pool it trades in."""

    name: str
    address: str
    maturity: float  # unix seconds
    decimals: Optional[int] = None
    tvl: Optional[UsdValue] = None
    pools: List[Pool] = Field(default_factory=list)
    underlying: Optional[Underlying] = None
    ibt: Optional[Ibt] = None

    @property
    def tvl_usd(self) -> float:
        return (self.tvl.usd if self.tvl else None) or 0.0

    @property
    def variable_apr(self) -> float:
        if self.ibt and self.ibt.apr:
            return self.ibt.apr.total or 0.0
        return 0.0

    @property
    def underlying_symbol(self) -> str:
        return (self.underlying.symbol if self.underlying else None) or "?"


# ---------------------------------------------------------------------------
# Morpho lending markets
# ---------------------------------------------------------------------------


class MarketAsset(WireModel):
    address: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    decimals: Optional[int] = None


class MarketState(WireModel):
    borrow_apy: Optional[float] = Field(default=None, alias="borrowApy")
    supply_apy: Optional[float] = Field(default=None, alias="supplyApy")
    borrow_assets_usd: Optional[float] = Field(default=None, alias="borrowAssetsUsd")
    supply_assets_usd: Optional[float] = Field(default=None, alias="supplyAssetsUsd")
    collateral_assets_usd: Optional[float] = Field(default=None, alias="collateralAssetsUsd")
    liquidity_assets_usd: Optional[float] = Field(default=None, alias="liquidityAssetsUsd")
    utilization: Optional[float] = None
    fee: Optional[float] = None
    timestamp: Optional[int] = None


class MarketChain(WireModel):
    id: Optional[int] = None
    network: Optional[str] = None


class MorphoBlue(WireModel):
    chain: Optional[MarketChain] = None


class MarketWarning(WireModel):
    type: Optional[str] = None
    level: Optional[str] = None


class Market(WireModel):
    unique_key: str = Field(alias="uniqueKey")
    lltv: Optional[str] = None  # 1e18 fixed-point integer string
    listed: bool = False
    collateral_asset: Optional[MarketAsset] = Field(default=None, alias="collateralAsset")
    loan_asset: Optional[MarketAsset] = Field(default=None, alias="loanAsset")
    morpho_blue: Optional[MorphoBlue] = Field(default=None, alias="morphoBlue")
    state: Optional[MarketState] = None
    warnings: List[MarketWarning] = Field(default_factory=list)

    @field_validator("lltv", mode="before")
    @classmethod
    def _lltv_as_string(cls, v):
        return None if v is None else str(v)

    @property
    def borrow_rate_pct(self) -> float:
        return ((self.state.borrow_apy if self.state else None) or 0.0) * 100.0

    @property
    def supply_usd(self) -> float:
        return (self.state.supply_assets_usd if self.state else None) or 0.0

    @property
    def liquidity_usd(self) -> float:
        return (self.state.liquidity_assets_usd if self.state else None) or 0.0


# ---------------------------------------------------------------------------
# Degraded lookups
# ---------------------------------------------------------------------------


class LookupStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNSUPPORTED_CHAIN = "unsupported_chain"
    FAILED = "failed"


class Lookup(BaseModel, Generic[T]):
    """Outcome of a best-effort external lookup.

    Callers only branch on whether ``value`` is usable; ``status`` and ``detail``
    tell "none exists" apart from "could not ask".
    """

    model_config = ConfigDict(frozen=True)

    value: Optional[T] = None
    status: LookupStatus = LookupStatus.OK
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == LookupStatus.OK


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class Candidate(Snapshot):
    """A single PT x pool pair found by a multi-chain scan."""

    pt: PrincipalToken
    pool: Pool
    chain: str


class ScanCriteria(Snapshot):
    min_tvl_usd: float = 0.0
    min_liquidity_usd: float = 0.0
    asset_symbol: Optional[str] = None


class ChainScanResult(Snapshot):
    candidates: List[Candidate] = Field(default_factory=list)
    failed_chains: List[str] = Field(default_factory=list)


class ScanFilters(BaseModel):
    min_tvl_usd: float = Field(default=10_000.0, ge=0)
    min_liquidity_usd: float = Field(default=5_000.0, ge=0)
    asset_symbol_filter: Optional[str] = Field(default=None, max_length=100)
    max_price_impact_pct: float = Field(default=5.0, ge=0, le=100)
    top_n: int = Field(default=10)
    include_leverage_lookup: bool = True
    boost_balance: Optional[float] = Field(default=None, ge=0)

    def criteria(self) -> ScanCriteria:
        return ScanCriteria(
            min_tvl_usd=self.min_tvl_usd,
            min_liquidity_usd=self.min_liquidity_usd,
            asset_symbol=self.asset_symbol_filter or None,
        )


# ---------------------------------------------------------------------------
# Opportunity records
# ---------------------------------------------------------------------------


class BoostInfo(Snapshot):
    multiplier: float = 1.0
    fraction: float = 0.0


class LpBreakdown(Snapshot):
    fees: float = 0.0
    pt: float = 0.0
    ibt: float = 0.0
    rewards: Dict[str, float] = Field(default_factory=dict)
    boosted_rewards: Dict[str, GaugeRange] = Field(default_factory=dict)


class LpYield(Snapshot):
    lp_apy: float = 0.0
    lp_apy_boosted_total: float = 0.0
    lp_apy_at_boost: float = 0.0
    breakdown: LpBreakdown = Field(default_factory=LpBreakdown)


class LoopingStatus(str, Enum):
    AVAILABLE = "available"
    UNPROFITABLE = "unprofitable"
    NO_MARKET = "no_market"
    UNSUPPORTED_CHAIN = "unsupported_chain"
    LOOKUP_FAILED = "lookup_failed"
    INVALID_LLTV = "invalid_lltv"
    NOT_REQUESTED = "not_requested"


class LoopingProjection(Snapshot):
    market_key: str
    lltv: float
    borrow_rate_pct: float
    optimal_loops: int
    optimal_leverage: float
    optimal_net_apy: float
    optimal_effective_net_apy: float
    cumulative_entry_impact_pct: float
    market_liquidity_usd: float


class FixedYieldOpportunity(Snapshot):
    chain: str
    pt_address: str
    pool_address: str
    pt_name: str

    implied_apy: float
    variable_apr: float
    fixed_vs_variable_spread: float

    maturity_timestamp: float
    days_to_maturity: int

    tvl_usd: float
    pool_liquidity_usd: float

    entry_impact_pct: float
    effective_apy: float
    capacity_usd: float

    looping: Optional[LoopingProjection] = None
    looping_status: LoopingStatus = LoopingStatus.NOT_REQUESTED

    lp: LpYield = Field(default_factory=LpYield)
    boost: Optional[BoostInfo] = None

    sort_apy: float

    underlying: str
    ibt_symbol: str
    ibt_protocol: str
    warnings: List[str] = Field(default_factory=list)


class YtArbitrageOpportunity(Snapshot):
    chain: str
    pt_address: str
    pool_address: str
    pt_name: str

    yt_price_usd: float
    yt_price_underlying: float
    yt_leverage: float
    ibt_current_apr: float
    yt_implied_rate: float
    spread_pct: float

    maturity_timestamp: float
    days_to_maturity: int

    tvl_usd: float
    pool_liquidity_usd: float

    entry_impact_pct: float
    capacity_usd: float
    break_even_days: float

    lp: LpYield = Field(default_factory=LpYield)
    boost: Optional[BoostInfo] = None

    underlying: str
    ibt_symbol: str
    ibt_protocol: str
    warnings: List[str] = Field(default_factory=list)

    @field_serializer("break_even_days", when_used="json")
    def _finite_break_even(self, v: float) -> Optional[float]:
        # JSON has no Infinity; a zero spread never breaks even
        return v if math.isfinite(v) else None


class ScanStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"  # results, but some chains failed
    EMPTY = "empty"  # every chain answered, nothing survived the filters
    UNAVAILABLE = "unavailable"  # no chain answered


class OpportunityScan(Snapshot, Generic[T]):
    opportunities: List[T] = Field(default_factory=list)
    failed_chains: List[str] = Field(default_factory=list)
    status: ScanStatus = ScanStatus.OK
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Single-pool strategy views
# ---------------------------------------------------------------------------


class LoopRow(Snapshot):
    loop: int
    leverage: float
    gross_apy: float
    net_apy: float
    entry_cost_pct: float
    liquidation_margin_pct: float


class LoopingStrategy(Snapshot):
    chain: str
    pt_address: str
    pt_name: str
    base_apy: float
    pt_discount_pct: float
    days_to_maturity: int
    pool_liquidity_usd: float
    market: Optional[Market] = None
    market_status: LookupStatus
    ltv: float
    ltv_source: str  # "market" | "override" | "default"
    borrow_rate_pct: float
    borrow_rate_source: str
    reference_capital_usd: float
    rows: List[LoopRow] = Field(default_factory=list)
    optimal_loops: int = 0
    optimal_net_apy: float = 0.0
    optimal_entry_cost_pct: float = 0.0
    annualized_entry_drag_pct: float = 0.0
    warnings: List[str] = Field(default_factory=list)


class BoostReport(Snapshot):
    total_supply: float
    balance: Optional[float] = None
    share_pct: Optional[float] = None
    capital_usd: Optional[float] = None
    chain: Optional[str] = None
    pt_address: Optional[str] = None
    pool_tvl_usd: Optional[float] = None
    boost: Optional[BoostInfo] = None
    needed_for_max_boost: Optional[float] = None
    lp_apy: Optional[float] = None
    lp_apy_max_boost: Optional[float] = None
    lp_apy_at_boost: Optional[float] = None


class PoolSummary(Snapshot):
    chain: str
    pt_address: str
    pool_address: str
    pt_name: str
    underlying: str
    implied_apy: float
    tvl_usd: float
    pool_liquidity_usd: float
    lp_apy: float
    maturity_timestamp: float
    days_to_maturity: int


# ---------------------------------------------------------------------------
# Market listings, quotes and strategy models
# ---------------------------------------------------------------------------


class MorphoMarketView(Snapshot):
    """Flattened Morpho market state, rates and amounts in percent and USD."""

    unique_key: str
    chain: Optional[str] = None
    chain_id: Optional[int] = None
    collateral_symbol: str = "?"
    collateral_address: Optional[str] = None
    loan_symbol: str = "?"
    listed: bool = False
    lltv: float = 0.0
    borrow_rate_pct: float = 0.0
    supply_apy_pct: float = 0.0
    utilization_pct: float = 0.0
    supply_usd: float = 0.0
    borrow_usd: float = 0.0
    liquidity_usd: float = 0.0
    collateral_usd: float = 0.0
    fee_pct: float = 0.0
    is_spectra_pt: Optional[bool] = None
    warnings: List[str] = Field(default_factory=list)


class MorphoMarketList(Snapshot):
    markets: List[MorphoMarketView] = Field(default_factory=list)
    total: int = 0
    spectra_count: int = 0
    other_count: int = 0
    status: LookupStatus = LookupStatus.OK
    message: Optional[str] = None


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeQuote(Snapshot):
    side: TradeSide
    input_token: str
    output_token: str
    amount_in: float
    expected_out: float
    spot_rate: float
    effective_rate: float
    price_impact_pct: float
    min_out: float
    slippage_tolerance_pct: float
    pool_liquidity_usd: float


class YieldVerdict(str, Enum):
    FIXED_FAVORABLE = "fixed_favorable"  # beats variable even after entry cost
    FIXED_NARROWED = "fixed_narrowed"  # beats variable only before entry cost
    VARIABLE_FAVORABLE = "variable_favorable"


class YieldComparison(Snapshot):
    chain: str
    pt_address: str
    pt_name: str
    underlying: str
    ibt_symbol: str
    fixed_apy: float
    variable_apr: float
    spread_pct: float
    maturity_timestamp: float
    days_to_maturity: int
    pt_discount_pct: float
    capital_usd: float
    pool_liquidity_usd: float
    entry_impact_pct: float
    annualized_entry_cost_pct: float
    effective_fixed_apy: float
    verdict: YieldVerdict
    lp: LpYield = Field(default_factory=LpYield)
    boost: Optional[BoostInfo] = None
    ve_total_supply: Optional[float] = None
    needed_for_max_boost: Optional[float] = None
    yt_leverage: float = 0.0


class MetavaultLoopRow(Snapshot):
    loop: int
    leverage: float
    gross_apy: float
    net_apy: float
    effective_margin_pct: float


class CuratorEconomics(Snapshot):
    capital_usd: float
    external_deposits_usd: float
    own_tvl: float
    total_tvl: float
    additional_tvl_from_looping: float
    curator_fee_revenue_usd: float
    own_yield_usd: float
    effective_curator_apy: float


class RolloverAdvantage(Snapshot):
    gap_days: float
    cycles_per_year: float
    idle_days_per_year: float
    yield_lost_pct: float


class MetavaultStrategy(Snapshot):
    gross_vault_apy: float
    net_vault_apy: float
    rows: List[MetavaultLoopRow] = Field(default_factory=list)
    optimal_loop: int = 0
    optimal_net_apy: float = 0.0
    optimal_leverage: float = 1.0
    curator: Optional[CuratorEconomics] = None
    compare_pt_apy: Optional[float] = None
    compare_pt_rows: Optional[List[MetavaultLoopRow]] = None
    compare_pt_optimal_loop: Optional[int] = None
    compare_pt_optimal_net_apy: Optional[float] = None
    double_loop_premium_pct: Optional[float] = None
    rollover: Optional[RolloverAdvantage] = None


# ---------------------------------------------------------------------------
# Service request bodies
# ---------------------------------------------------------------------------


class FixedYieldScanRequest(ScanFilters):
    capital_usd: float = Field(..., gt=0, description="Capital to deploy, in USD")


class YtArbitrageScanRequest(ScanFilters):
    capital_usd: float = Field(..., gt=0, description="Capital to deploy, in USD")
    min_spread_pct: float = Field(default=1.0, ge=0)


class MetavaultStrategyRequest(BaseModel):
    base_apy: float = Field(..., description="Base LP APY the vault targets, in percent")
    yt_compounding_apy: float = 0.0
    curator_fee_pct: float = Field(default=10.0, ge=0, le=100)
    morpho_ltv: float = Field(default=0.86, gt=0, lt=1)
    borrow_rate_pct: float = 5.0
    max_loops: int = Field(default=5, ge=1, le=20)
    capital_usd: Optional[float] = Field(default=None, gt=0)
    external_deposits_usd: float = Field(default=0.0, ge=0)
    days_to_maturity: float = Field(default=90.0, gt=0)
    compare_pt_apy: Optional[float] = None
