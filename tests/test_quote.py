import pytest

from yield_engine.models import TradeSide
from yield_engine.services.quote import build_quote

from conftest import make_pt, raw_pool


def _pt_with_pool(**pool_kwargs):
    pt = make_pt(pools=[raw_pool(**pool_kwargs)])
    return pt, pt.pools[0]


def test_buy_quote():
    pt, pool = _pt_with_pool()

    q = build_quote(pt, pool, 10_000, TradeSide.BUY, slippage_pct=0.5)

    assert (q.input_token, q.output_token) == ("USDC", "PT-sUSDe")
    assert q.spot_rate == pytest.approx(1 / 0.96)
    assert q.price_impact_pct == pytest.approx(0.5)
    assert q.expected_out == pytest.approx(10_000 / 0.96 * 0.995)
    assert q.min_out == pytest.approx(q.expected_out * 0.995)
    assert q.effective_rate == pytest.approx(q.expected_out / 10_000)
    assert q.pool_liquidity_usd == 1_000_000.0


def test_sell_quote():
    pt, pool = _pt_with_pool()

    q = build_quote(pt, pool, 10_000, TradeSide.SELL, slippage_pct=0.0)

    assert (q.input_token, q.output_token) == ("PT-sUSDe", "USDC")
    assert q.spot_rate == pytest.approx(0.96)
    assert q.price_impact_pct == pytest.approx(0.48)
    assert q.expected_out == pytest.approx(9_600 * (1 - 0.0048))
    assert q.min_out == q.expected_out


def test_impact_reported_unclamped_but_output_floored():
    pt, pool = _pt_with_pool(liquidity_usd=100.0)

    q = build_quote(pt, pool, 1_000, TradeSide.SELL)

    assert q.price_impact_pct == pytest.approx(480.0)
    assert q.expected_out == pytest.approx(960 * 0.01)
    assert q.expected_out > 0


@pytest.mark.parametrize("price,amount", [(0.0005, 100.0), (0.96, 0.0), (0.96, -5.0)])
def test_unquotable(price, amount):
    pt, pool = _pt_with_pool(pt_price_underlying=price)
    assert build_quote(pt, pool, amount, TradeSide.BUY) is None
