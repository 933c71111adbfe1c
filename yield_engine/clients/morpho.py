from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from yield_engine.clients.graphql import graphql_query
from yield_engine.http import HttpClient
from yield_engine.models import Market

logger = logging.getLogger(__name__)


MARKET_FIELDS = """
  uniqueKey
  lltv
  listed
  collateralAsset { address symbol name decimals }
  loanAsset { address symbol name decimals }
  morphoBlue { chain { id network } }
  state {
    borrowApy
    supplyApy
    borrowAssetsUsd
    supplyAssetsUsd
    collateralAssetsUsd
    liquidityAssetsUsd
    utilization
    fee
    timestamp
  }
  warnings { type level }
"""

MARKETS_BY_COLLATERAL_QUERY = f"""
query MarketsByCollateral($collateral: [String!], $chainIds: [Int!], $first: Int) {{
  markets(
    where: {{ collateralAssetAddress_in: $collateral, chainId_in: $chainIds }}
    first: $first
    orderBy: SupplyAssetsUsd
    orderDirection: Desc
  ) {{
    items {{ {MARKET_FIELDS} }}
  }}
}}
"""


def _to_market(item) -> Optional[Market]:
    """Validate one market. Bad optional fields are dropped; only a missing uniqueKey rejects it."""
    try:
        return Market.model_validate(item)
    except ValidationError as e:
        bad = {err["loc"][0] for err in e.errors() if err["loc"]}
    if not isinstance(item, dict) or "uniqueKey" in bad or not item.get("uniqueKey"):
        logger.debug("Skipping Morpho market without a usable uniqueKey")
        return None
    try:
        return Market.model_validate({k: v for k, v in item.items() if k not in bad})
    except ValidationError as e:
        logger.debug(f"Skipping malformed Morpho market: {e.error_count()} error(s)")
        return None


def _parse_markets(data: Dict) -> List[Market]:
    items = ((data or {}).get("markets") or {}).get("items") or []
    out: List[Market] = []
    for item in items:
        market = _to_market(item)
        if market is not None:
            out.append(market)
    return out


def best_market_per_collateral(markets: List[Market]) -> Dict[str, Market]:
    """Collateral address (lowercased) -> market with the highest total supply. First wins on ties."""
    best: Dict[str, Market] = {}
    for market in markets:
        addr = (market.collateral_asset.address if market.collateral_asset else None) or ""
        addr = addr.lower()
        if not addr:
            continue
        current = best.get(addr)
        if current is None or market.supply_usd > current.supply_usd:
            best[addr] = market
    return best


async def find_markets_for_pts(
    http: HttpClient,
    url: str,
    pt_addresses: List[str],
    chain_id: int,
    batch_max: int = 200,
    result_max: int = 500,
) -> Dict[str, Market]:
    """One GraphQL round trip for a whole batch of PT collateral addresses on one chain.

    Raises on transport or GraphQL failure; degrading is the caller's decision.
    """
    if not pt_addresses:
        return {}
    capped = pt_addresses[:batch_max]
    if len(pt_addresses) > batch_max:
        logger.info(f"Morpho batch for chain {chain_id} truncated from {len(pt_addresses)} to {batch_max} addresses")
    variables = {
        "collateral": capped,
        "chainIds": [chain_id],
        "first": min(len(capped) * 3, result_max),
    }
    data = await graphql_query(http, url, MARKETS_BY_COLLATERAL_QUERY, variables)
    return best_market_per_collateral(_parse_markets(data))


async def find_market_for_pt(http: HttpClient, url: str, pt_address: str, chain_id: int) -> Optional[Market]:
    variables = {"collateral": [pt_address], "chainIds": [chain_id], "first": 1}
    data = await graphql_query(http, url, MARKETS_BY_COLLATERAL_QUERY, variables)
    markets = _parse_markets(data)
    return markets[0] if markets else None


MARKET_SEARCH_QUERY = f"""
query MarketSearch($where: MarketFilters, $first: Int, $orderBy: MarketOrderBy) {{
  markets(where: $where, first: $first, orderBy: $orderBy, orderDirection: Desc) {{
    items {{ {MARKET_FIELDS} }}
    pageInfo {{ count countTotal }}
  }}
}}
"""

MARKET_BY_KEY_QUERY = f"""
query MarketByKey($key: String!, $chainId: Int) {{
  marketByUniqueKey(uniqueKey: $key, chainId: $chainId) {{ {MARKET_FIELDS} }}
}}
"""

ORDER_BY = {
    "supply": "SupplyAssetsUsd",
    "borrow_apy": "BorrowApy",
    "utilization": "Utilization",
}


async def search_markets(
    http: HttpClient,
    url: str,
    chain_ids: List[int],
    search: str = "PT-",
    min_supply_usd: float = 0.0,
    order_by: str = "supply",
    first: int = 10,
) -> Tuple[List[Market], int]:
    """Markets whose name matches ``search``; returns (markets, total matching count)."""
    where: Dict = {"search": search, "chainId_in": chain_ids}
    if min_supply_usd > 0:
        where["supplyAssetsUsd_gte"] = float(min_supply_usd)
    variables = {"where": where, "first": first, "orderBy": ORDER_BY[order_by]}
    data = await graphql_query(http, url, MARKET_SEARCH_QUERY, variables)
    markets = _parse_markets(data)
    page_info = ((data or {}).get("markets") or {}).get("pageInfo") or {}
    return markets, int(page_info.get("countTotal") or 0)


async def fetch_market_by_key(http: HttpClient, url: str, market_key: str, chain_id: int) -> Optional[Market]:
    data = await graphql_query(http, url, MARKET_BY_KEY_QUERY, {"key": market_key, "chainId": chain_id})
    item = (data or {}).get("marketByUniqueKey")
    return _to_market(item) if item else None
