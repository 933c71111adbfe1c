from __future__ import annotations

import logging
from typing import Optional, Protocol

from yield_engine.errors import UpstreamError
from yield_engine.models import BoostInfo, Lookup, LookupStatus
from yield_engine.services.yield_math import boost_multiplier

logger = logging.getLogger(__name__)


class SupplySource(Protocol):
    async def get(self) -> float: ...


async def resolve_total_supply(source: SupplySource, balance: Optional[float]) -> Lookup[float]:
    """Read veSPECTRA total supply only when the caller actually holds a balance."""
    if balance is None or balance <= 0:
        return Lookup(status=LookupStatus.NOT_FOUND, detail="no balance supplied")
    try:
        return Lookup(value=await source.get())
    except UpstreamError as e:
        logger.warning(f"Could not fetch veSPECTRA totalSupply: {e}")
        return Lookup(status=LookupStatus.FAILED, detail=str(e))


def boost_for(balance: Optional[float], supply: Lookup[float], pool_tvl_usd: float, deposit_usd: float) -> Optional[BoostInfo]:
    if balance is None or balance <= 0 or supply.value is None:
        return None
    return boost_multiplier(balance, supply.value, pool_tvl_usd, deposit_usd)
