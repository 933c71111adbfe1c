from __future__ import annotations

import time
from typing import Callable, Optional

from yield_engine.models import BoostInfo, Pool, PrincipalToken, YieldComparison, YieldVerdict
from yield_engine.services import yield_math


def build_yield_comparison(
    pt: PrincipalToken,
    pool: Pool,
    chain: str,
    capital_usd: float = 10_000.0,
    boost: Optional[BoostInfo] = None,
    ve_total_supply: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> YieldComparison:
    """Fixed (buy PT) versus variable (hold the IBT) versus LP, for one pool at one deposit size."""
    fixed = pool.implied_apy or 0.0
    variable = pt.variable_apr
    days = yield_math.days_to_maturity(pt.maturity, clock())

    impact = yield_math.price_impact(capital_usd, pool.liquidity_usd)
    annualized = yield_math.annualize_entry_cost(impact * 100, days)
    effective = fixed - annualized
    if effective > variable:
        verdict = YieldVerdict.FIXED_FAVORABLE
    elif fixed > variable:
        verdict = YieldVerdict.FIXED_NARROWED
    else:
        verdict = YieldVerdict.VARIABLE_FAVORABLE

    needed = None
    if ve_total_supply is not None and pt.tvl_usd > 0:
        needed = yield_math.ve_needed_for_max_boost(ve_total_supply, pt.tvl_usd, capital_usd)

    discount_basis = (pool.pt_price.underlying if pool.pt_price else None) or 1.0
    return YieldComparison(
        chain=chain,
        pt_address=pt.address,
        pt_name=pt.name,
        underlying=pt.underlying_symbol,
        ibt_symbol=(pt.ibt.symbol if pt.ibt else None) or "IBT",
        fixed_apy=fixed,
        variable_apr=variable,
        spread_pct=fixed - variable,
        maturity_timestamp=pt.maturity,
        days_to_maturity=days,
        pt_discount_pct=(1 - discount_basis) * 100,
        capital_usd=capital_usd,
        pool_liquidity_usd=pool.liquidity_usd,
        entry_impact_pct=impact * 100,
        annualized_entry_cost_pct=annualized,
        effective_fixed_apy=effective,
        verdict=verdict,
        lp=yield_math.extract_lp_yield(pool, boost.fraction if boost else 0.0),
        boost=boost,
        ve_total_supply=ve_total_supply,
        needed_for_max_boost=needed,
        yt_leverage=pool.yt_leverage or 0.0,
    )
