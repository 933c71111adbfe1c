from __future__ import annotations

import time
from typing import Callable, List, Optional

from yield_engine.config import LOOPING_DEFAULTS
from yield_engine.models import Lookup, LoopingStrategy, LoopRow, Market, PrincipalToken
from yield_engine.services import yield_math

REFERENCE_CAPITAL_USD = 10_000.0


def build_looping_strategy(
    pt: PrincipalToken,
    chain: str,
    market: Lookup[Market],
    ltv: Optional[float] = None,
    borrow_rate_pct: Optional[float] = None,
    max_loops: int = 5,
    reference_capital_usd: float = REFERENCE_CAPITAL_USD,
    clock: Callable[[], float] = time.time,
) -> LoopingStrategy:
    """Loop-by-loop projection for one PT used as Morpho collateral.

    Parameters come from, in order: caller overrides, the detected market, and
    placeholder defaults (flagged in ``warnings``). Entry cost is shown for a
    reference capital because the annualised drag scales with trade size.
    """
    pool = pt.pools[0]
    detected = market.value

    if ltv is not None:
        eff_ltv, ltv_source = ltv, "override"
    elif detected is not None:
        eff_ltv, ltv_source = yield_math.normalize_lltv(detected.lltv), "market"
    else:
        eff_ltv, ltv_source = LOOPING_DEFAULTS["ltv"], "default"

    if borrow_rate_pct is not None:
        eff_borrow, borrow_source = borrow_rate_pct, "override"
    elif detected is not None:
        eff_borrow, borrow_source = detected.borrow_rate_pct, "market"
    else:
        eff_borrow, borrow_source = LOOPING_DEFAULTS["borrow_rate_pct"], "default"

    base_apy = pool.implied_apy or 0.0
    days = yield_math.days_to_maturity(pt.maturity, clock())
    liq = pool.liquidity_usd

    warnings: List[str] = []
    if detected is None and (ltv_source == "default" or borrow_source == "default"):
        warnings.append("No Morpho market found; figures use placeholder LTV/borrow assumptions and looping may not be possible.")
    if not yield_math.is_valid_lltv(eff_ltv):
        warnings.append(f"LTV {eff_ltv:.4f} is outside (0, 1); leverage cannot be computed.")
        return LoopingStrategy(
            chain=chain,
            pt_address=pt.address,
            pt_name=pt.name,
            base_apy=base_apy,
            pt_discount_pct=(1 - (pool.pt_price_underlying or 1)) * 100,
            days_to_maturity=days,
            pool_liquidity_usd=liq,
            market=detected,
            market_status=market.status,
            ltv=eff_ltv,
            ltv_source=ltv_source,
            borrow_rate_pct=eff_borrow,
            borrow_rate_source=borrow_source,
            reference_capital_usd=reference_capital_usd,
            optimal_net_apy=base_apy,
            warnings=warnings,
        )

    rows: List[LoopRow] = []
    for i in range(max_loops + 1):
        lev = yield_math.cumulative_leverage(eff_ltv, i)
        entry = yield_math.looping_entry_cost(reference_capital_usd, liq, eff_ltv, i).blended_impact_pct if i > 0 else 0.0
        rows.append(
            LoopRow(
                loop=i,
                leverage=lev,
                gross_apy=base_apy * lev,
                net_apy=yield_math.loop_net_apy(base_apy, lev, eff_borrow),
                entry_cost_pct=entry,
                liquidation_margin_pct=yield_math.liquidation_margin_pct(lev, eff_ltv),
            )
        )

    best = yield_math.optimal_loop(base_apy, eff_ltv, eff_borrow, max_loops)
    entry_cost = 0.0
    if liq > 0 and best.loops > 0:
        entry_cost = yield_math.looping_entry_cost(reference_capital_usd, liq, eff_ltv, best.loops).blended_impact_pct
    if liq <= 0:
        warnings.append("Pool has no liquidity; entry cost cannot be estimated.")

    return LoopingStrategy(
        chain=chain,
        pt_address=pt.address,
        pt_name=pt.name,
        base_apy=base_apy,
        pt_discount_pct=(1 - (pool.pt_price_underlying or 1)) * 100,
        days_to_maturity=days,
        pool_liquidity_usd=liq,
        market=detected,
        market_status=market.status,
        ltv=eff_ltv,
        ltv_source=ltv_source,
        borrow_rate_pct=eff_borrow,
        borrow_rate_source=borrow_source,
        reference_capital_usd=reference_capital_usd,
        rows=rows,
        optimal_loops=best.loops,
        optimal_net_apy=best.net_apy,
        optimal_entry_cost_pct=entry_cost,
        annualized_entry_drag_pct=yield_math.annualize_entry_cost(entry_cost, days),
        warnings=warnings,
    )
