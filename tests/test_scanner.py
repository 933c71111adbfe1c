import pytest

from yield_engine.errors import TransientUpstreamError, UpstreamRejectedError
from yield_engine.models import ScanCriteria
from yield_engine.services.scanner import MultiChainScanner

from conftest import DAY, NOW, FakeClock, FakeListingSource, make_pt, raw_pool

FIVE = ["mainnet", "base", "arbitrum", "optimism", "sonic"]


def _listings():
    return {chain: [make_pt(address=f"0x{chain}", name=f"PT-{chain}")] for chain in FIVE}


@pytest.mark.asyncio
async def test_one_failing_chain_is_isolated():
    listings = _listings()
    listings["arbitrum"] = TransientUpstreamError("timeout")
    scanner = MultiChainScanner(FakeListingSource(listings), FIVE, FakeClock())

    result = await scanner.scan(ScanCriteria())

    assert result.failed_chains == ["arbitrum"]
    assert sorted(c.chain for c in result.candidates) == sorted(set(FIVE) - {"arbitrum"})


@pytest.mark.asyncio
async def test_every_chain_failing_returns_empty_without_raising(caplog):
    source = FakeListingSource({chain: UpstreamRejectedError("nope", 403) for chain in FIVE})
    scanner = MultiChainScanner(source, FIVE, FakeClock())

    result = await scanner.scan()

    assert result.candidates == []
    assert result.failed_chains == FIVE
    assert "All 5 chains failed" in caplog.text


@pytest.mark.asyncio
async def test_listing_filters():
    pts = [
        make_pt(address="0xok"),
        make_pt(address="0xmatured", maturity=NOW - DAY),
        make_pt(address="0xnopools", pools=[]),
        make_pt(address="0xsmall", tvl_usd=500.0),
    ]
    scanner = MultiChainScanner(FakeListingSource({"base": pts}), ["base"], FakeClock())

    result = await scanner.scan(ScanCriteria(min_tvl_usd=10_000, min_liquidity_usd=5_000))

    assert [c.pt.address for c in result.candidates] == ["0xok"]


@pytest.mark.asyncio
async def test_one_candidate_per_liquid_pool():
    pt = make_pt(
        pools=[
            raw_pool(address="0xp1", liquidity_usd=100_000),
            raw_pool(address="0xp2", liquidity_usd=1_000),
            raw_pool(address="0xp3", liquidity_usd=60_000),
        ]
    )
    scanner = MultiChainScanner(FakeListingSource({"base": [pt]}), ["base"], FakeClock())

    result = await scanner.scan(ScanCriteria(min_liquidity_usd=5_000))

    assert [c.pool.address for c in result.candidates] == ["0xp1", "0xp3"]
    assert all(c.chain == "base" for c in result.candidates)


@pytest.mark.asyncio
@pytest.mark.parametrize("needle,expected", [("usdc", ["0xusdc"]), ("Coin", ["0xusdc", "0xeth"]), ("eth", ["0xeth"]), ("dai", [])])
async def test_asset_filter_matches_symbol_or_name(needle, expected):
    pts = [make_pt(address="0xusdc", underlying="USDC"), make_pt(address="0xeth", underlying="WETH")]
    scanner = MultiChainScanner(FakeListingSource({"base": pts}), ["base"], FakeClock())

    result = await scanner.scan(ScanCriteria(asset_symbol=needle))

    assert [c.pt.address for c in result.candidates] == expected


@pytest.mark.asyncio
async def test_collect_pt_addresses_skips_failures():
    source = FakeListingSource(
        {
            "mainnet": [make_pt(address="0xAbC")],
            "base": TransientUpstreamError("down"),
            "arbitrum": [make_pt(address="0xdef")],
        }
    )
    scanner = MultiChainScanner(source, FIVE, FakeClock())

    addresses = await scanner.collect_pt_addresses(["mainnet", "base", "arbitrum"])

    assert addresses == {"0xabc", "0xdef"}
