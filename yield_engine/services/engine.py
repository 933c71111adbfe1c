from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from yield_engine.clients.spectra import fetch_pt
from yield_engine.config import API_NETWORKS, Settings, get_settings, resolve_network
from yield_engine.errors import UpstreamRejectedError
from yield_engine.http import HttpClient
from yield_engine.models import (
    BoostReport,
    FixedYieldOpportunity,
    Lookup,
    LookupStatus,
    LoopingStrategy,
    MetavaultStrategy,
    MetavaultStrategyRequest,
    MorphoMarketList,
    MorphoMarketView,
    OpportunityScan,
    PoolSummary,
    PrincipalToken,
    ScanFilters,
    TradeQuote,
    TradeSide,
    YieldComparison,
    YtArbitrageOpportunity,
)
from yield_engine.services import yield_math
from yield_engine.services.boost import boost_for, resolve_total_supply
from yield_engine.services.cache import ChainPoolCache, VeSupplyCache
from yield_engine.services.compare import build_yield_comparison
from yield_engine.services.fixed_yield import FixedYieldScanner
from yield_engine.services.looping import REFERENCE_CAPITAL_USD, build_looping_strategy
from yield_engine.services.markets import MarketResolver
from yield_engine.services.metavault import build_metavault_strategy
from yield_engine.services.quote import build_quote
from yield_engine.services.results import build_scan
from yield_engine.services.scanner import MultiChainScanner
from yield_engine.services.yt_arbitrage import YtArbitrageScanner

logger = logging.getLogger(__name__)

SORT_KEYS = {
    "implied_apy": (lambda s: s.implied_apy, True),
    "tvl": (lambda s: s.tvl_usd, True),
    "lp_apy": (lambda s: s.lp_apy, True),
    "maturity": (lambda s: s.maturity_timestamp, False),
}


class OpportunityEngine:
    """Entry point for callers: owns the shared caches and wires the scanners to them."""

    def __init__(
        self,
        http: HttpClient,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        ttl_clock: Callable[[], float] = time.monotonic,
        networks: Optional[List[str]] = None,
    ):
        self.http = http
        self.settings = settings or get_settings()
        self.clock = clock
        self.pool_cache = ChainPoolCache(http, self.settings, ttl_clock)
        self.supply_cache = VeSupplyCache(http, self.settings, ttl_clock)
        self.resolver = MarketResolver(http, self.settings)
        self.scanner = MultiChainScanner(self.pool_cache, networks if networks is not None else API_NETWORKS, clock)
        self.fixed_yield = FixedYieldScanner(self.scanner, self.resolver, self.supply_cache, self.settings, clock)
        self.yt_arbitrage = YtArbitrageScanner(self.scanner, self.supply_cache, self.settings, clock)

    async def scan_fixed_yield_opportunities(
        self, capital_usd: float, filters: ScanFilters | None = None
    ) -> OpportunityScan[FixedYieldOpportunity]:
        return await self.fixed_yield.scan(capital_usd, filters)

    async def scan_yt_arbitrage_opportunities(
        self, capital_usd: float, min_spread_pct: float = 1.0, filters: ScanFilters | None = None
    ) -> OpportunityScan[YtArbitrageOpportunity]:
        return await self.yt_arbitrage.scan(capital_usd, min_spread_pct, filters)

    async def best_fixed_yields(
        self, filters: ScanFilters | None = None, sort_by: str = "implied_apy"
    ) -> OpportunityScan[PoolSummary]:
        """Raw implied-APY ranking across chains; ignores capital size entirely."""
        filters = filters or ScanFilters()
        if sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown sort key {sort_by!r}; expected one of {sorted(SORT_KEYS)}")
        scan = await self.scanner.scan(filters.criteria())
        now = self.clock()
        summaries = [
            PoolSummary(
                chain=c.chain,
                pt_address=c.pt.address,
                pool_address=c.pool.address or "",
                pt_name=c.pt.name,
                underlying=c.pt.underlying_symbol,
                implied_apy=c.pool.implied_apy or 0.0,
                tvl_usd=c.pt.tvl_usd,
                pool_liquidity_usd=c.pool.liquidity_usd,
                lp_apy=(c.pool.lp_apy.total if c.pool.lp_apy else None) or 0.0,
                maturity_timestamp=c.pt.maturity,
                days_to_maturity=yield_math.days_to_maturity(c.pt.maturity, now),
            )
            for c in scan.candidates
        ]
        key, descending = SORT_KEYS[sort_by]
        summaries.sort(key=key, reverse=descending)
        top = summaries[: yield_math.clamp_top_n(filters.top_n, self.settings.TOP_N_MAX)]
        return build_scan(top, scan.failed_chains, len(self.scanner.networks), "No active pools match the filters.")

    async def get_pt(self, chain: str, pt_address: str) -> Optional[PrincipalToken]:
        try:
            return await fetch_pt(self.http, self.settings, resolve_network(chain), pt_address)
        except UpstreamRejectedError as e:
            if e.status_code == 404:
                logger.info(f"PT {pt_address} not found on {chain}")
                return None
            raise

    async def looping_strategy(
        self,
        chain: str,
        pt_address: str,
        ltv: Optional[float] = None,
        borrow_rate_pct: Optional[float] = None,
        max_loops: Optional[int] = None,
        reference_capital_usd: float = REFERENCE_CAPITAL_USD,
    ) -> Optional[LoopingStrategy]:
        """None when the PT does not exist or has no pool."""
        pt = await self.get_pt(chain, pt_address)
        if pt is None or not pt.pools:
            return None
        market = await self.resolver.find_market(pt_address, chain)
        return build_looping_strategy(
            pt,
            chain,
            market,
            ltv=ltv,
            borrow_rate_pct=borrow_rate_pct,
            max_loops=max_loops if max_loops is not None else self.settings.MAX_LOOPS,
            reference_capital_usd=reference_capital_usd,
            clock=self.clock,
        )

    async def boost_info(
        self,
        balance: Optional[float] = None,
        capital_usd: Optional[float] = None,
        chain: Optional[str] = None,
        pt_address: Optional[str] = None,
    ) -> BoostReport:
        """Live veSPECTRA supply plus, given a pool and deposit, the caller's exact boost.

        Unlike the scans this does not degrade: with no supply figure there is nothing to report.
        """
        total_supply = await self.supply_cache.get()
        report = {"total_supply": total_supply, "balance": balance, "capital_usd": capital_usd}
        if balance is not None and balance > 0 and total_supply > 0:
            report["share_pct"] = balance / total_supply * 100

        if balance and capital_usd and chain and pt_address:
            pt = await self.get_pt(chain, pt_address)
            pool = pt.pools[0] if pt and pt.pools else None
            report.update(chain=chain, pt_address=pt_address)
            if pt is not None and pool is not None and pt.tvl_usd > 0:
                boost = yield_math.boost_multiplier(balance, total_supply, pt.tvl_usd, capital_usd)
                lp = yield_math.extract_lp_yield(pool, boost.fraction)
                report.update(
                    pool_tvl_usd=pt.tvl_usd,
                    boost=boost,
                    needed_for_max_boost=yield_math.ve_needed_for_max_boost(total_supply, pt.tvl_usd, capital_usd),
                    lp_apy=lp.lp_apy,
                    lp_apy_max_boost=lp.lp_apy_boosted_total,
                    lp_apy_at_boost=lp.lp_apy_at_boost,
                )
        return BoostReport(**report)

    async def quote_trade(
        self, chain: str, pt_address: str, amount: float, side: TradeSide, slippage_pct: float = 0.5
    ) -> Lookup[TradeQuote]:
        """Estimated output for a PT trade in the PT's first pool."""
        pt = await self.get_pt(chain, pt_address)
        if pt is None:
            return Lookup(status=LookupStatus.NOT_FOUND, detail=f"No PT found at {pt_address} on {chain}")
        if not pt.pools:
            return Lookup(status=LookupStatus.NOT_FOUND, detail=f"No active pool for PT {pt.name}")
        quote = build_quote(pt, pt.pools[0], amount, side, slippage_pct)
        if quote is None:
            return Lookup(
                status=LookupStatus.NOT_FOUND,
                detail=f"Cannot quote: PT price data unavailable for {pt.name}. The pool may have no liquidity.",
            )
        return Lookup(value=quote)

    async def compare_yield(
        self,
        chain: str,
        pt_address: str,
        capital_usd: float = 10_000.0,
        ve_balance: Optional[float] = None,
    ) -> Optional[YieldComparison]:
        """None when the PT does not exist or has no pool. A failed supply read only drops the boost."""
        pt = await self.get_pt(chain, pt_address)
        if pt is None or not pt.pools:
            return None
        supply = await resolve_total_supply(self.supply_cache, ve_balance)
        return build_yield_comparison(
            pt,
            pt.pools[0],
            chain,
            capital_usd,
            boost=boost_for(ve_balance, supply, pt.tvl_usd, capital_usd),
            ve_total_supply=supply.value,
            clock=self.clock,
        )

    def model_metavault_strategy(self, req: MetavaultStrategyRequest) -> MetavaultStrategy:
        return build_metavault_strategy(req)

    async def morpho_markets(
        self,
        chain: Optional[str] = None,
        pt_symbol: Optional[str] = None,
        min_supply_usd: float = 0.0,
        sort_by: str = "supply",
        top_n: int = 10,
    ) -> MorphoMarketList:
        """Morpho markets that take a Spectra PT as collateral."""
        return await self.resolver.list_markets(
            chain, pt_symbol, min_supply_usd, sort_by, top_n, pt_index=self.scanner.collect_pt_addresses
        )

    async def morpho_rate(self, chain: str, market_key: str) -> Lookup[MorphoMarketView]:
        return await self.resolver.market_rate(chain, market_key)
