import pytest

from yield_engine.models import ScanFilters, ScanStatus
from yield_engine.services.scanner import MultiChainScanner
from yield_engine.services.yt_arbitrage import YtArbitrageScanner, yt_implied_rate

from conftest import DAY, NOW, FakeClock, FakeListingSource, FakeSupply, make_pt, raw_pool


def _scanner(listings, settings, supply=None):
    clock = FakeClock()
    multi = MultiChainScanner(FakeListingSource(listings), list(listings), clock)
    return YtArbitrageScanner(multi, supply or FakeSupply(), settings, clock)


def test_yt_implied_rate():
    assert yt_implied_rate(0.96, 180) == pytest.approx(0.04 * 365 / 180 * 100)


@pytest.mark.asyncio
async def test_spread_metrics(settings):
    scanner = _scanner({"base": [make_pt(ibt_apr=6.0)]}, settings)

    scan = await scanner.scan(10_000, 1.0)

    (opp,) = scan.opportunities
    implied = 0.04 * 365 / 180 * 100
    assert opp.yt_price_underlying == pytest.approx(0.04)
    assert opp.yt_implied_rate == pytest.approx(implied)
    assert opp.spread_pct == pytest.approx(6.0 - implied)
    assert opp.entry_impact_pct == pytest.approx(0.5)
    assert opp.break_even_days == pytest.approx(0.5 / abs(6.0 - implied) * 365)
    assert opp.warnings == []


@pytest.mark.asyncio
async def test_small_spread_filtered(settings):
    # implied ~8.11%, ibt 8% -> spread ~0.11%
    scanner = _scanner({"base": [make_pt(ibt_apr=8.0)]}, settings)

    scan = await scanner.scan(10_000, 1.0)

    assert scan.opportunities == []
    assert scan.status == ScanStatus.EMPTY
    assert "above 1.00% spread" in scan.message


@pytest.mark.asyncio
@pytest.mark.parametrize("pt_price", [0.0, 1.0, 1.02])
async def test_unpriced_or_inverted_pools_skipped(settings, pt_price):
    pt = make_pt(ibt_apr=50.0, pools=[raw_pool(pt_price_underlying=pt_price)])
    scanner = _scanner({"base": [pt]}, settings)
    assert (await scanner.scan(10_000, 1.0)).opportunities == []


@pytest.mark.asyncio
async def test_sorted_by_absolute_spread(settings):
    pts = [
        make_pt(address="0xsmall", ibt_apr=10.0),
        make_pt(address="0xnegative", ibt_apr=0.0),
        make_pt(address="0xbig", ibt_apr=30.0),
    ]
    scanner = _scanner({"base": pts}, settings)

    scan = await scanner.scan(10_000, 1.0, ScanFilters(top_n=2))

    assert [o.pt_address for o in scan.opportunities] == ["0xbig", "0xnegative"]
    negative = scan.opportunities[1]
    assert negative.spread_pct < 0
    assert "IBT APR is 0 (possibly stale data)" in negative.warnings


@pytest.mark.asyncio
async def test_break_even_beyond_maturity_warns(settings):
    pt = make_pt(
        maturity=NOW + 20 * DAY,
        ibt_apr=0.0,
        pools=[raw_pool(pt_price_underlying=0.999, liquidity_usd=150_000)],
    )
    scanner = _scanner({"base": [pt]}, settings)

    scan = await scanner.scan(10_000, 1.0)

    (opp,) = scan.opportunities
    assert opp.break_even_days > opp.days_to_maturity
    assert "Break-even exceeds maturity" in opp.warnings
    assert "Short maturity (<30 days)" in opp.warnings


@pytest.mark.asyncio
async def test_zero_min_spread_keeps_exact_match(settings):
    # implied rate at 0.96 over 365 days is exactly 4%
    pt = make_pt(maturity=NOW + 365 * DAY, ibt_apr=4.0)
    scanner = _scanner({"base": [pt]}, settings)

    scan = await scanner.scan(10_000, 0.0)

    (opp,) = scan.opportunities
    assert opp.spread_pct == pytest.approx(0.0, abs=1e-9)
