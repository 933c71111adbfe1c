from __future__ import annotations

from typing import Optional

from yield_engine.models import Pool, PrincipalToken, TradeQuote, TradeSide
from yield_engine.services.yield_math import price_impact

# Below this the pool is effectively unpriced
MIN_PT_PRICE = 0.001
MAX_TRADE_IMPACT = 0.99


def build_quote(
    pt: PrincipalToken,
    pool: Pool,
    amount: float,
    side: TradeSide,
    slippage_pct: float = 0.5,
) -> Optional[TradeQuote]:
    """Off-chain estimate of a PT buy or sell against one pool.

    Uses the same constant-product impact bound as the scanners, so it overstates
    the cost on a StableSwap pool near peg. The reported impact is unclamped; the
    output is computed with impact capped at 99% so it never goes negative.
    Returns None when the pool has no usable PT price or the amount is not positive.
    """
    price_underlying = pool.pt_price_underlying
    price_usd = (pool.pt_price.usd if pool.pt_price else None) or 0.0
    if price_underlying < MIN_PT_PRICE or amount <= 0:
        return None

    underlying = pt.underlying_symbol if pt.underlying_symbol != "?" else "UNDERLYING"
    pt_name = pt.name or "PT"
    if side == TradeSide.BUY:
        spot_rate = 1 / price_underlying
        input_token, output_token = underlying, pt_name
        amount_usd = amount * (price_usd / price_underlying)
    else:
        spot_rate = price_underlying
        input_token, output_token = pt_name, underlying
        amount_usd = amount * price_usd

    impact = price_impact(amount_usd, pool.liquidity_usd)
    expected_out = amount * spot_rate * (1 - min(impact, MAX_TRADE_IMPACT))
    return TradeQuote(
        side=side,
        input_token=input_token,
        output_token=output_token,
        amount_in=amount,
        expected_out=expected_out,
        spot_rate=spot_rate,
        effective_rate=expected_out / amount,
        price_impact_pct=impact * 100,
        min_out=expected_out * (1 - slippage_pct / 100),
        slippage_tolerance_pct=slippage_pct,
        pool_liquidity_usd=pool.liquidity_usd,
    )
