from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from yield_engine.config import Settings
from yield_engine.models import Market, PrincipalToken

NOW = 1_700_000_000.0
DAY = 86_400


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeListingSource:
    """Per-network listings; a network mapped to an exception raises it."""

    def __init__(self, listings: Dict[str, Any]):
        self.listings = listings
        self.calls: List[str] = []

    async def get(self, network: str) -> List[PrincipalToken]:
        self.calls.append(network)
        value = self.listings.get(network, [])
        if isinstance(value, BaseException):
            raise value
        return value


class FakeSupply:
    def __init__(self, value: float = 0.0, error: Optional[BaseException] = None):
        self.value = value
        self.error = error
        self.calls = 0

    async def get(self) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


def raw_pool(
    address: str = "0xpool",
    implied_apy: float = 8.0,
    liquidity_usd: float = 1_000_000.0,
    pt_price_underlying: float = 0.96,
    lp_apy: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    pool = {
        "address": address,
        "impliedApy": implied_apy,
        "ptPrice": {"usd": pt_price_underlying * 1.0, "underlying": pt_price_underlying},
        "ytPrice": {"usd": 1 - pt_price_underlying, "underlying": 1 - pt_price_underlying},
        "liquidity": {"usd": liquidity_usd},
        "ytLeverage": 25.0,
    }
    if lp_apy is not None:
        pool["lpApy"] = lp_apy
    pool.update(extra)
    return pool


def raw_pt(
    address: str = "0xpt",
    name: str = "PT-sUSDe",
    maturity: float = NOW + 180 * DAY,
    tvl_usd: float = 2_000_000.0,
    pools: Optional[List[Dict[str, Any]]] = None,
    underlying: str = "USDC",
    ibt_apr: float = 6.0,
    **extra: Any,
) -> Dict[str, Any]:
    pt = {
        "name": name,
        "address": address,
        "maturity": maturity,
        "decimals": 18,
        "tvl": {"usd": tvl_usd},
        "pools": [raw_pool()] if pools is None else pools,
        "underlying": {"symbol": underlying, "name": f"{underlying} Coin"},
        "ibt": {"symbol": f"s{underlying}", "name": f"Staked {underlying}", "protocol": "Ethena", "apr": {"total": ibt_apr}},
    }
    pt.update(extra)
    return pt


def make_pt(**kwargs: Any) -> PrincipalToken:
    return PrincipalToken.model_validate(raw_pt(**kwargs))


def make_market(
    collateral: str = "0xpt",
    lltv: str = "860000000000000000",
    borrow_apy: float = 0.04,
    supply_usd: float = 5_000_000.0,
    key: str = "0xmarket",
) -> Market:
    return Market.model_validate(
        {
            "uniqueKey": key,
            "lltv": lltv,
            "listed": True,
            "collateralAsset": {"address": collateral, "symbol": "PT-sUSDe"},
            "loanAsset": {"address": "0xusdc", "symbol": "USDC"},
            "state": {"borrowApy": borrow_apy, "supplyAssetsUsd": supply_usd, "liquidityAssetsUsd": supply_usd / 2},
        }
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(HTTP_RETRY_DELAY_SECONDS=0.0, FETCH_TIMEOUT_SECONDS=2.0, _env_file=None)
