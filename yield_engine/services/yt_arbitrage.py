"""YT-rate arbitrage scan.

Compares what the IBT is earning right now against the rate the market prices
into the yield token (YT = 1 - PT, in underlying terms):

  * positive spread: IBT earns more than the YT price implies
  * negative spread: IBT earns less than the YT price implies

Break-even assumes the spread persists; real variable rates move.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from yield_engine.config import Settings, get_settings
from yield_engine.models import BoostInfo, Candidate, OpportunityScan, ScanFilters, YtArbitrageOpportunity
from yield_engine.services import yield_math
from yield_engine.services.boost import SupplySource, boost_for, resolve_total_supply
from yield_engine.services.results import build_scan, format_pct, format_usd
from yield_engine.services.scanner import MultiChainScanner

logger = logging.getLogger(__name__)


def yt_implied_rate(pt_price_underlying: float, fractional_days: float) -> float:
    """Annualised rate, in percent, that the YT price implies."""
    return (1 - pt_price_underlying) * (yield_math.DAYS_PER_YEAR / fractional_days) * 100


class YtArbitrageScanner:
    def __init__(
        self,
        scanner: MultiChainScanner,
        supply: SupplySource,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.scanner = scanner
        self.supply = supply
        self.settings = settings or get_settings()
        self.clock = clock

    def evaluate(
        self,
        candidate: Candidate,
        capital_usd: float,
        min_spread_pct: float,
        max_impact_frac: float,
        boost: Optional[BoostInfo],
    ) -> Optional[YtArbitrageOpportunity]:
        pt, pool = candidate.pt, candidate.pool
        now = self.clock()
        pt_price = pool.pt_price_underlying
        frac_days = yield_math.fractional_days_to_maturity(pt.maturity, now)

        # maturity-adjacent or unpriced pools carry no usable signal
        if pt_price <= 0 or pt_price >= 1 or frac_days <= 0:
            return None

        implied = yt_implied_rate(pt_price, frac_days)
        ibt_apr = pt.variable_apr
        spread = ibt_apr - implied
        if abs(spread) < min_spread_pct:
            return None

        liq = pool.liquidity_usd
        impact = yield_math.price_impact(capital_usd, liq)
        if impact > max_impact_frac:
            return None
        impact_pct = impact * 100

        days = yield_math.days_to_maturity(pt.maturity, now)
        break_even = yield_math.break_even_days(impact_pct, spread)

        warnings = yield_math.maturity_warnings(days)
        if liq < 50_000:
            warnings.append("Low pool liquidity (<$50K)")
        if impact_pct > 2:
            warnings.append(f"Significant entry impact ({format_pct(impact_pct)})")
        if ibt_apr == 0:
            warnings.append("IBT APR is 0 (possibly stale data)")
        if break_even > days:
            warnings.append("Break-even exceeds maturity")

        return YtArbitrageOpportunity(
            chain=candidate.chain,
            pt_address=pt.address,
            pool_address=pool.address or "",
            pt_name=pt.name,
            yt_price_usd=(pool.yt_price.usd if pool.yt_price else None) or 0.0,
            yt_price_underlying=1 - pt_price,
            yt_leverage=pool.yt_leverage or 0.0,
            ibt_current_apr=ibt_apr,
            yt_implied_rate=implied,
            spread_pct=spread,
            maturity_timestamp=pt.maturity,
            days_to_maturity=days,
            tvl_usd=pt.tvl_usd,
            pool_liquidity_usd=liq,
            entry_impact_pct=impact_pct,
            capacity_usd=yield_math.capacity_usd(max_impact_frac, liq),
            break_even_days=break_even,
            lp=yield_math.extract_lp_yield(pool, boost.fraction if boost else 0.0),
            boost=boost,
            underlying=pt.underlying_symbol,
            ibt_symbol=(pt.ibt.symbol if pt.ibt else None) or "?",
            ibt_protocol=(pt.ibt.protocol if pt.ibt else None) or "Unknown",
            warnings=warnings,
        )

    async def scan(
        self,
        capital_usd: float,
        min_spread_pct: float = 1.0,
        filters: ScanFilters | None = None,
    ) -> OpportunityScan[YtArbitrageOpportunity]:
        filters = filters or ScanFilters()
        top_n = yield_math.clamp_top_n(filters.top_n, self.settings.TOP_N_MAX)
        max_impact_frac = filters.max_price_impact_pct / 100

        supply = await resolve_total_supply(self.supply, filters.boost_balance)
        scan = await self.scanner.scan(filters.criteria())

        opportunities: List[YtArbitrageOpportunity] = []
        for candidate in scan.candidates:
            boost = boost_for(filters.boost_balance, supply, candidate.pt.tvl_usd, capital_usd)
            opp = self.evaluate(candidate, capital_usd, min_spread_pct, max_impact_frac, boost)
            if opp is not None:
                opportunities.append(opp)

        opportunities.sort(key=lambda o: abs(o.spread_pct), reverse=True)
        top = opportunities[:top_n]
        logger.info(f"YT arbitrage scan: {len(scan.candidates)} candidates, {len(opportunities)} above spread, returning {len(top)}")

        empty = (
            f"No YT arbitrage opportunities found above {format_pct(min_spread_pct)} spread "
            f"(capital: {format_usd(capital_usd)}, max impact: {format_pct(filters.max_price_impact_pct)})."
        )
        if filters.asset_symbol_filter:
            empty += f" Asset filter: {filters.asset_symbol_filter}."
        empty += " Try lowering min_spread_pct or min_tvl_usd/min_liquidity_usd."
        return build_scan(top, scan.failed_chains, len(self.scanner.networks), empty)
