"""Closed-form yield, leverage, boost and price-impact models.

Everything here is synchronous and side-effect free. Degenerate inputs map to
explicit sentinel values (100% impact, 1x boost, zero cost) instead of raising,
so callers can report "not viable" rather than crash.
"""
from __future__ import annotations

import math
import time
from typing import List, NamedTuple, Optional

from yield_engine.models import BoostInfo, LpBreakdown, LpYield, Pool

SECONDS_PER_DAY = 86_400
DAYS_PER_YEAR = 365

MAX_BOOST = 2.5
BOOST_SPAN = MAX_BOOST - 1.0

# Floor for the liquidity a later loop can still trade against, as a share of
# the pool. Keeps the per-loop denominator positive as loops grow.
LIQUIDITY_FLOOR_RATIO = 0.01
MAX_LOOP_IMPACT = 0.99

LLTV_SCALE = 10**18


class LoopingEntryCost(NamedTuple):
    blended_impact_pct: float
    per_loop_impacts_pct: List[float]


class OptimalLoop(NamedTuple):
    loops: int
    leverage: float
    net_apy: float


def price_impact(amount_usd: float, pool_liquidity_usd: float) -> float:
    """Constant-product approximation of entry impact, as a fraction.

    ``amount / (2 * liquidity)``. The pools are StableSwap curves, which are more
    capital efficient than x*y=k, so this is an upper bound rather than a quote.
    No liquidity means no viable trade: 1.0.
    """
    if pool_liquidity_usd <= 0:
        return 1.0
    return amount_usd / (2 * pool_liquidity_usd)


def _partial_geometric_sum(ratio: float, terms: int) -> float:
    # 1 + r + ... + r^(terms-1)
    if terms <= 0:
        return 0.0
    if ratio == 1:
        return float(terms)
    return (1 - ratio**terms) / (1 - ratio)


def cumulative_leverage(ltv: float, loops: int) -> float:
    """Total exposure after ``loops`` re-deposits: (1 - ltv^(loops+1)) / (1 - ltv)."""
    if loops <= 0:
        return 1.0
    if ltv == 1:
        return float(loops + 1)
    return (1 - ltv ** (loops + 1)) / (1 - ltv)


def looping_entry_cost(capital_usd: float, pool_liquidity_usd: float, ltv: float, loops: int) -> LoopingEntryCost:
    """Blended price impact of buying into the same pool once per loop.

    Loop ``i`` buys ``capital * ltv^i``. Earlier buys have already drained about
    half their notional from the pool, so each loop trades against
    ``max(L - prior/2, L * LIQUIDITY_FLOOR_RATIO)``. Per-loop impact is capped at
    99% and the blended figure is weighted by dollars deployed.
    """
    if capital_usd <= 0 or pool_liquidity_usd <= 0 or loops <= 0:
        return LoopingEntryCost(0.0, [])

    per_loop: List[float] = []
    weighted = 0.0
    deployed = 0.0
    floor = pool_liquidity_usd * LIQUIDITY_FLOOR_RATIO

    for i in range(loops):
        amount = capital_usd * ltv**i
        prior = capital_usd * _partial_geometric_sum(ltv, i)
        effective_liq = max(pool_liquidity_usd - prior / 2, floor)
        impact = min(amount / (2 * effective_liq), MAX_LOOP_IMPACT)

        per_loop.append(impact * 100)
        weighted += amount * impact
        deployed += amount

    blended = (weighted / deployed) * 100 if deployed > 0 else 0.0
    return LoopingEntryCost(blended, per_loop)


def boost_multiplier(balance: float, total_supply: float, pool_tvl_usd: float, deposit_usd: float) -> BoostInfo:
    """veSPECTRA LP boost: B = min(2.5, 1.5 * (v/V) * (D/d) + 1).

    ``fraction`` projects B onto [0, 1] (0 at no boost, 1 at the 2.5x cap) and is
    what gauge-reward ranges are interpolated with.
    """
    if total_supply <= 0 or deposit_usd <= 0:
        return BoostInfo(multiplier=1.0, fraction=0.0)

    share = balance / total_supply
    pool_ratio = pool_tvl_usd / deposit_usd
    b = min(MAX_BOOST, BOOST_SPAN * share * pool_ratio + 1)
    b = max(1.0, b)
    fraction = _clamp((b - 1) / BOOST_SPAN, 0.0, 1.0)
    return BoostInfo(multiplier=b, fraction=fraction)


def ve_needed_for_max_boost(total_supply: float, pool_tvl_usd: float, deposit_usd: float) -> float:
    # Full boost once v/V >= d/D
    if pool_tvl_usd <= 0:
        return math.inf
    return total_supply * (deposit_usd / pool_tvl_usd)


def interpolated_lp_yield(breakdown: LpBreakdown, fraction: float) -> float:
    """LP APY at a boost fraction. Only gauge emissions scale with boost."""
    f = _clamp(fraction, 0.0, 1.0)
    apy = breakdown.fees + breakdown.pt + breakdown.ibt
    apy += sum(v or 0.0 for v in breakdown.rewards.values())
    for rng in breakdown.boosted_rewards.values():
        low, high = rng.min or 0.0, rng.max or 0.0
        apy += low + f * (high - low)
    return apy


def extract_lp_yield(pool: Pool, fraction: float = 0.0) -> LpYield:
    lp = pool.lp_apy
    details = lp.details if lp else None
    breakdown = LpBreakdown(
        fees=(details.fees if details else None) or 0.0,
        pt=(details.pt if details else None) or 0.0,
        ibt=(details.ibt if details else None) or 0.0,
        rewards={k: v or 0.0 for k, v in details.rewards.items()} if details else {},
        boosted_rewards=dict(details.boosted_rewards) if details else {},
    )
    total = (lp.total if lp else None) or 0.0
    boosted_total = (lp.boosted_total if lp else None) or total
    return LpYield(
        lp_apy=total,
        lp_apy_boosted_total=boosted_total,
        lp_apy_at_boost=interpolated_lp_yield(breakdown, fraction),
        breakdown=breakdown,
    )


def normalize_lltv(raw: Optional[str]) -> float:
    """1e18 fixed-point integer string -> decimal ratio. 0.0 for missing or garbage."""
    if not raw:
        return 0.0
    try:
        whole, frac = divmod(int(raw), LLTV_SCALE)
        return whole + frac / LLTV_SCALE
    except (TypeError, ValueError):
        pass
    try:
        value = float(raw) / LLTV_SCALE
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(value) else value


def is_valid_lltv(lltv: float) -> bool:
    return 0 < lltv < 1


def loop_net_apy(base_apy: float, leverage: float, borrow_rate_pct: float) -> float:
    return base_apy * leverage - borrow_rate_pct * (leverage - 1)


def optimal_loop(base_apy: float, ltv: float, borrow_rate_pct: float, max_loops: int) -> OptimalLoop:
    """Loop count in 0..max_loops with the highest net APY. Ties keep the lower count."""
    best = OptimalLoop(0, 1.0, base_apy)
    for i in range(1, max_loops + 1):
        lev = cumulative_leverage(ltv, i)
        net = loop_net_apy(base_apy, lev, borrow_rate_pct)
        if net > best.net_apy:
            best = OptimalLoop(i, lev, net)
    return best


def liquidation_margin_pct(leverage: float, ltv: float) -> float:
    """How far collateral can fall before liquidation, in percent. 100 without leverage."""
    if leverage <= 1 or ltv <= 0:
        return 100.0
    debt_ratio = (leverage - 1) / (leverage * ltv)
    return (1 - debt_ratio) * 100


def annualize_entry_cost(impact_pct: float, days: float) -> float:
    if days > 0:
        return impact_pct * (DAYS_PER_YEAR / days)
    return impact_pct


def capacity_usd(max_impact_fraction: float, pool_liquidity_usd: float) -> float:
    # Inverse of price_impact: the largest trade that stays under the threshold.
    return max_impact_fraction * 2 * max(pool_liquidity_usd, 0.0)


def break_even_days(impact_pct: float, spread_pct: float) -> float:
    spread = abs(spread_pct)
    if spread == 0:
        return math.inf
    return (impact_pct / spread) * DAYS_PER_YEAR


def fractional_days_to_maturity(maturity_ts: float, now: Optional[float] = None) -> float:
    now = time.time() if now is None else now
    return max(0.0, (maturity_ts - now) / SECONDS_PER_DAY)


def days_to_maturity(maturity_ts: float, now: Optional[float] = None) -> int:
    # Half-up rounding, display-grade
    return int(math.floor(fractional_days_to_maturity(maturity_ts, now) + 0.5))


def maturity_warnings(days: int) -> List[str]:
    if days < 14:
        return ["Very short maturity (<14 days)"]
    if days < 30:
        return ["Short maturity (<30 days)"]
    return []


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_top_n(top_n: int, upper: int) -> int:
    return int(_clamp(top_n, 1, upper))

