"""Double-loop economics for a curated vault whose shares are used as Morpho collateral.

Layer one is inside the vault (YT yield compounded into LP), layer two is leverage
on the vault shares. Purely computational: every input is a curator assumption.
"""
from __future__ import annotations

from typing import List

from yield_engine.models import (
    CuratorEconomics,
    MetavaultLoopRow,
    MetavaultStrategy,
    MetavaultStrategyRequest,
    RolloverAdvantage,
)
from yield_engine.services import yield_math

# Idle days per manual LP rollover
ROLLOVER_GAP_DAYS = 5


def loop_rows(base_apy: float, borrow_rate_pct: float, ltv: float, max_loops: int) -> List[MetavaultLoopRow]:
    rows = []
    for i in range(max_loops + 1):
        leverage = yield_math.cumulative_leverage(ltv, i)
        rows.append(
            MetavaultLoopRow(
                loop=i,
                leverage=leverage,
                gross_apy=base_apy * leverage,
                net_apy=yield_math.loop_net_apy(base_apy, leverage, borrow_rate_pct),
                effective_margin_pct=yield_math.liquidation_margin_pct(leverage, ltv),
            )
        )
    return rows


def best_row(rows: List[MetavaultLoopRow]) -> MetavaultLoopRow:
    # first maximum wins
    best = rows[0]
    for row in rows:
        if row.net_apy > best.net_apy:
            best = row
    return best


def curator_economics(req: MetavaultStrategyRequest, gross_vault_apy: float, best: MetavaultLoopRow) -> CuratorEconomics:
    capital = req.capital_usd
    own_tvl = capital * best.leverage
    own_yield = capital * best.net_apy / 100
    fee_revenue = req.external_deposits_usd * gross_vault_apy / 100 * req.curator_fee_pct / 100
    return CuratorEconomics(
        capital_usd=capital,
        external_deposits_usd=req.external_deposits_usd,
        own_tvl=own_tvl,
        total_tvl=own_tvl + req.external_deposits_usd,
        additional_tvl_from_looping=capital * (best.leverage - 1),
        curator_fee_revenue_usd=fee_revenue,
        own_yield_usd=own_yield,
        effective_curator_apy=(own_yield + fee_revenue) / capital * 100,
    )


def rollover_advantage(gross_vault_apy: float, cycle_days: float) -> RolloverAdvantage:
    cycles = yield_math.DAYS_PER_YEAR / cycle_days
    idle = ROLLOVER_GAP_DAYS * cycles
    return RolloverAdvantage(
        gap_days=ROLLOVER_GAP_DAYS,
        cycles_per_year=cycles,
        idle_days_per_year=idle,
        yield_lost_pct=gross_vault_apy * idle / yield_math.DAYS_PER_YEAR,
    )


def build_metavault_strategy(req: MetavaultStrategyRequest) -> MetavaultStrategy:
    gross = req.base_apy + req.yt_compounding_apy
    # depositors receive the yield net of the curator's performance fee
    net = gross * (1 - req.curator_fee_pct / 100)

    rows = loop_rows(net, req.borrow_rate_pct, req.morpho_ltv, req.max_loops)
    best = best_row(rows)

    result = dict(
        gross_vault_apy=gross,
        net_vault_apy=net,
        rows=rows,
        optimal_loop=best.loop,
        optimal_net_apy=best.net_apy,
        optimal_leverage=best.leverage,
        rollover=rollover_advantage(gross, req.days_to_maturity),
    )
    if req.capital_usd is not None:
        result["curator"] = curator_economics(req, gross, best)
    if req.compare_pt_apy is not None:
        pt_rows = loop_rows(req.compare_pt_apy, req.borrow_rate_pct, req.morpho_ltv, req.max_loops)
        pt_best = best_row(pt_rows)
        result.update(
            compare_pt_apy=req.compare_pt_apy,
            compare_pt_rows=pt_rows,
            compare_pt_optimal_loop=pt_best.loop,
            compare_pt_optimal_net_apy=pt_best.net_apy,
            double_loop_premium_pct=best.net_apy - pt_best.net_apy,
        )
    return MetavaultStrategy(**result)
