"""Capital-aware fixed-yield scan with optional Morpho looping.

Pipeline:
  1. multi-chain candidate scan (shared cache)
  2. per-candidate entry impact, effective APY, capacity, LP yield at boost
  3. batched lending-market lookups for the survivors, optimal loop selection
  4. drop negative results, rank, truncate
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from yield_engine.config import Settings, get_settings, resolve_network
from yield_engine.models import (
    BoostInfo,
    Candidate,
    FixedYieldOpportunity,
    Lookup,
    LookupStatus,
    LoopingProjection,
    LoopingStatus,
    Market,
    OpportunityScan,
    ScanFilters,
)
from yield_engine.services import yield_math
from yield_engine.services.boost import SupplySource, boost_for, resolve_total_supply
from yield_engine.services.markets import MarketMap, MarketResolver
from yield_engine.services.results import build_scan, format_pct, format_usd
from yield_engine.services.scanner import MultiChainScanner

logger = logging.getLogger(__name__)

LOW_LIQUIDITY_USD = 50_000
LOW_TVL_USD = 50_000
HIGH_IMPACT_PCT = 2.0

_LOOKUP_TO_LOOPING = {
    LookupStatus.NOT_FOUND: LoopingStatus.NO_MARKET,
    LookupStatus.UNSUPPORTED_CHAIN: LoopingStatus.UNSUPPORTED_CHAIN,
    LookupStatus.FAILED: LoopingStatus.LOOKUP_FAILED,
    LookupStatus.OK: LoopingStatus.NO_MARKET,
}


def fixed_yield_warnings(days: int, pool_liq_usd: float, impact_pct: float, tvl_usd: float, effective_apy: float) -> List[str]:
    warnings = yield_math.maturity_warnings(days)
    if pool_liq_usd < LOW_LIQUIDITY_USD:
        warnings.append("Low pool liquidity (<$50K)")
    if impact_pct > HIGH_IMPACT_PCT:
        warnings.append(f"Significant entry impact ({format_pct(impact_pct)})")
    if tvl_usd < LOW_TVL_USD:
        warnings.append("Low TVL (<$50K)")
    if effective_apy < 0:
        warnings.append("Effective APY negative after entry cost")
    return warnings


def project_looping(
    opp: FixedYieldOpportunity,
    market: Market,
    capital_usd: float,
    max_loops: int,
) -> Tuple[Optional[LoopingProjection], LoopingStatus]:
    lltv = yield_math.normalize_lltv(market.lltv)
    if not yield_math.is_valid_lltv(lltv):
        return None, LoopingStatus.INVALID_LLTV

    borrow_pct = market.borrow_rate_pct
    best = yield_math.optimal_loop(opp.implied_apy, lltv, borrow_pct, max_loops)
    if best.loops == 0:
        return None, LoopingStatus.UNPROFITABLE

    cost = yield_math.looping_entry_cost(capital_usd, opp.pool_liquidity_usd, lltv, best.loops)
    drag = yield_math.annualize_entry_cost(cost.blended_impact_pct, opp.days_to_maturity)
    projection = LoopingProjection(
        market_key=market.unique_key,
        lltv=lltv,
        borrow_rate_pct=borrow_pct,
        optimal_loops=best.loops,
        optimal_leverage=best.leverage,
        optimal_net_apy=best.net_apy,
        optimal_effective_net_apy=best.net_apy - drag,
        cumulative_entry_impact_pct=cost.blended_impact_pct,
        market_liquidity_usd=market.liquidity_usd,
    )
    return projection, LoopingStatus.AVAILABLE


class FixedYieldScanner:
    def __init__(
        self,
        scanner: MultiChainScanner,
        resolver: MarketResolver,
        supply: SupplySource,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.scanner = scanner
        self.resolver = resolver
        self.supply = supply
        self.settings = settings or get_settings()
        self.clock = clock

    def evaluate(
        self,
        candidate: Candidate,
        capital_usd: float,
        max_impact_frac: float,
        boost: Optional[BoostInfo],
    ) -> Optional[FixedYieldOpportunity]:
        """Unleveraged metrics for one candidate, or None when entry impact is over the limit."""
        pt, pool = candidate.pt, candidate.pool
        implied = pool.implied_apy or 0.0
        variable = pt.variable_apr
        liq = pool.liquidity_usd
        tvl = pt.tvl_usd
        days = yield_math.days_to_maturity(pt.maturity, self.clock())

        impact = yield_math.price_impact(capital_usd, liq)
        if impact > max_impact_frac:
            return None
        impact_pct = impact * 100
        effective = implied - yield_math.annualize_entry_cost(impact_pct, days)
        lp = yield_math.extract_lp_yield(pool, boost.fraction if boost else 0.0)

        return FixedYieldOpportunity(
            chain=candidate.chain,
            pt_address=pt.address,
            pool_address=pool.address or "",
            pt_name=pt.name,
            implied_apy=implied,
            variable_apr=variable,
            fixed_vs_variable_spread=implied - variable,
            maturity_timestamp=pt.maturity,
            days_to_maturity=days,
            tvl_usd=tvl,
            pool_liquidity_usd=liq,
            entry_impact_pct=impact_pct,
            effective_apy=effective,
            capacity_usd=yield_math.capacity_usd(max_impact_frac, liq),
            lp=lp,
            boost=boost,
            sort_apy=effective,
            underlying=pt.underlying_symbol,
            ibt_symbol=(pt.ibt.symbol if pt.ibt else None) or "?",
            ibt_protocol=(pt.ibt.protocol if pt.ibt else None) or "Unknown",
            warnings=fixed_yield_warnings(days, liq, impact_pct, tvl, effective),
        )

    async def _attach_looping(self, opportunities: List[FixedYieldOpportunity], capital_usd: float) -> List[FixedYieldOpportunity]:
        by_chain: Dict[str, List[int]] = {}
        result = list(opportunities)
        for i, opp in enumerate(opportunities):
            network = resolve_network(opp.chain)
            if not self.resolver.supports(network):
                result[i] = opp.model_copy(update={"looping_status": LoopingStatus.UNSUPPORTED_CHAIN})
                continue
            by_chain.setdefault(network, []).append(i)

        if not by_chain:
            return result

        lookups: Dict[str, Lookup[MarketMap]] = await self.resolver.resolve_batches(
            {chain: [opportunities[i].pt_address for i in idxs] for chain, idxs in by_chain.items()}
        )

        for chain, idxs in by_chain.items():
            lookup = lookups.get(chain) or Lookup(value={}, status=LookupStatus.FAILED)
            markets = lookup.value or {}
            for i in idxs:
                opp = opportunities[i]
                market = markets.get(opp.pt_address.lower())
                if market is None:
                    status = _LOOKUP_TO_LOOPING[lookup.status]
                    result[i] = opp.model_copy(update={"looping_status": status})
                    continue
                projection, status = project_looping(opp, market, capital_usd, self.settings.MAX_LOOPS)
                update = {"looping_status": status}
                if projection is not None:
                    update["looping"] = projection
                    update["sort_apy"] = projection.optimal_effective_net_apy
                result[i] = opp.model_copy(update=update)
        return result

    async def scan(self, capital_usd: float, filters: ScanFilters | None = None) -> OpportunityScan[FixedYieldOpportunity]:
        filters = filters or ScanFilters()
        top_n = yield_math.clamp_top_n(filters.top_n, self.settings.TOP_N_MAX)
        max_impact_frac = filters.max_price_impact_pct / 100

        supply = await resolve_total_supply(self.supply, filters.boost_balance)
        scan = await self.scanner.scan(filters.criteria())

        opportunities: List[FixedYieldOpportunity] = []
        for candidate in scan.candidates:
            boost = boost_for(filters.boost_balance, supply, candidate.pt.tvl_usd, capital_usd)
            opp = self.evaluate(candidate, capital_usd, max_impact_frac, boost)
            if opp is not None:
                opportunities.append(opp)

        if filters.include_leverage_lookup and opportunities:
            opportunities = await self._attach_looping(opportunities, capital_usd)

        ranked = sorted((o for o in opportunities if o.sort_apy >= 0), key=lambda o: o.sort_apy, reverse=True)
        top = ranked[:top_n]
        logger.info(
            f"Fixed-yield scan: {len(scan.candidates)} candidates, {len(ranked)} viable, "
            f"returning {len(top)} (failed chains: {scan.failed_chains or 'none'})"
        )

        empty = (
            f"No opportunities found matching criteria (capital: {format_usd(capital_usd)}, "
            f"max impact: {format_pct(filters.max_price_impact_pct)})."
        )
        if filters.asset_symbol_filter:
            empty += f" Asset filter: {filters.asset_symbol_filter}."
        empty += " Try lowering min_tvl_usd/min_liquidity_usd or increasing max_price_impact_pct."
        return build_scan(top, scan.failed_chains, len(self.scanner.networks), empty)
