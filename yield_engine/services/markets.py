from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from yield_engine.clients.morpho import ORDER_BY, fetch_market_by_key, find_market_for_pt, find_markets_for_pts, search_markets
from yield_engine.config import MORPHO_CHAIN_IDS, Settings, get_settings, resolve_network
from yield_engine.errors import UpstreamError
from yield_engine.http import HttpClient
from yield_engine.models import (
    Lookup,
    LookupStatus,
    Market,
    MarketAsset,
    MarketState,
    MorphoMarketList,
    MorphoMarketView,
)
from yield_engine.services.yield_math import clamp_top_n, normalize_lltv

logger = logging.getLogger(__name__)

MarketMap = Dict[str, Market]


def _dedupe(addresses: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for addr in addresses:
        key = addr.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(addr)
    return out


MARKET_LIST_MAX = 50

_SORT_VALUES = {
    "supply": lambda v: v.supply_usd,
    "borrow_apy": lambda v: v.borrow_rate_pct,
    "utilization": lambda v: v.utilization_pct,
}

_NETWORK_BY_CHAIN_ID = {cid: network for network, cid in MORPHO_CHAIN_IDS.items()}


def market_view(market: Market, spectra_addresses: Optional[Set[str]] = None) -> MorphoMarketView:
    state = market.state or MarketState()
    chain = market.morpho_blue.chain if market.morpho_blue else None
    chain_id = chain.id if chain else None
    collateral = market.collateral_asset or MarketAsset()
    loan = market.loan_asset or MarketAsset()
    is_spectra = None
    if spectra_addresses is not None:
        is_spectra = (collateral.address or "").lower() in spectra_addresses
    return MorphoMarketView(
        unique_key=market.unique_key,
        chain=_NETWORK_BY_CHAIN_ID.get(chain_id) or (chain.network if chain else None),
        chain_id=chain_id,
        collateral_symbol=collateral.symbol or "?",
        collateral_address=collateral.address,
        loan_symbol=loan.symbol or "?",
        listed=market.listed,
        lltv=normalize_lltv(market.lltv),
        borrow_rate_pct=(state.borrow_apy or 0.0) * 100,
        supply_apy_pct=(state.supply_apy or 0.0) * 100,
        utilization_pct=(state.utilization or 0.0) * 100,
        supply_usd=state.supply_assets_usd or 0.0,
        borrow_usd=state.borrow_assets_usd or 0.0,
        liquidity_usd=state.liquidity_assets_usd or 0.0,
        collateral_usd=state.collateral_assets_usd or 0.0,
        fee_pct=(state.fee or 0.0) * 100,
        is_spectra_pt=is_spectra,
        warnings=[f"[{w.level or '?'}] {w.type or 'unknown'}" for w in market.warnings],
    )


class MarketResolver:
    """Best-effort Morpho lookups keyed by PT collateral address.

    The collateral lookups used while scanning never raise for upstream trouble:
    "chain unsupported", "no market" and "lookup failed" all come back as a Lookup
    whose value callers treat the same way. Direct listing queries do raise.
    """

    def __init__(self, http: HttpClient, settings: Settings | None = None):
        self.http = http
        self.settings = settings or get_settings()

    def chain_id(self, chain: str) -> Optional[int]:
        return MORPHO_CHAIN_IDS.get(resolve_network(chain))

    def supports(self, chain: str) -> bool:
        return self.chain_id(chain) is not None

    async def find_markets(self, pt_addresses: List[str], chain: str) -> Lookup[MarketMap]:
        chain_id = self.chain_id(chain)
        if chain_id is None:
            return Lookup(value={}, status=LookupStatus.UNSUPPORTED_CHAIN, detail=f"Morpho not tracked on {chain}")
        addresses = _dedupe(pt_addresses)
        if not addresses:
            return Lookup(value={}, status=LookupStatus.NOT_FOUND)
        try:
            markets = await find_markets_for_pts(
                self.http,
                self.settings.MORPHO_GRAPHQL_URL,
                addresses,
                chain_id,
                batch_max=self.settings.MARKET_BATCH_MAX,
                result_max=self.settings.MARKET_RESULT_MAX,
            )
        except UpstreamError as e:
            logger.warning(f"Morpho batch lookup failed for {chain}: {e}")
            return Lookup(value={}, status=LookupStatus.FAILED, detail=str(e))
        return Lookup(value=markets, status=LookupStatus.OK if markets else LookupStatus.NOT_FOUND)

    async def find_market(self, pt_address: str, chain: str) -> Lookup[Market]:
        chain_id = self.chain_id(chain)
        if chain_id is None:
            return Lookup(status=LookupStatus.UNSUPPORTED_CHAIN, detail=f"Morpho not tracked on {chain}")
        try:
            market = await find_market_for_pt(self.http, self.settings.MORPHO_GRAPHQL_URL, pt_address, chain_id)
        except UpstreamError as e:
            logger.warning(f"Morpho lookup failed for PT {pt_address} on {chain}: {e}")
            return Lookup(status=LookupStatus.FAILED, detail=str(e))
        if market is None:
            return Lookup(status=LookupStatus.NOT_FOUND)
        return Lookup(value=market)

    async def resolve_batches(self, addresses_by_chain: Dict[str, List[str]]) -> Dict[str, Lookup[MarketMap]]:
        """One batched query per chain, all in flight together."""
        chains = list(addresses_by_chain)
        results = await asyncio.gather(
            *(self.find_markets(addresses_by_chain[c], c) for c in chains),
            return_exceptions=True,
        )
        out: Dict[str, Lookup[MarketMap]] = {}
        for chain, result in zip(chains, results):
            if isinstance(result, BaseException):
                logger.warning(f"Morpho batch for {chain} raised unexpectedly: {result}")
                out[chain] = Lookup(value={}, status=LookupStatus.FAILED, detail=str(result))
            else:
                out[chain] = result
        return out

    async def list_markets(
        self,
        chain: Optional[str] = None,
        pt_symbol: Optional[str] = None,
        min_supply_usd: float = 0.0,
        sort_by: str = "supply",
        top_n: int = 10,
        pt_index: Optional[Callable[[], Awaitable[Set[str]]]] = None,
    ) -> MorphoMarketList:
        """Morpho markets with PT collateral, across every tracked chain or just one.

        With ``pt_index`` each market is tagged by whether its collateral is a known
        Spectra PT, and only those are kept. Upstream failures propagate.
        """
        if sort_by not in ORDER_BY:
            raise ValueError(f"Unknown sort key {sort_by!r}; expected one of {sorted(ORDER_BY)}")
        if chain:
            chain_id = self.chain_id(chain)
            if chain_id is None:
                return MorphoMarketList(
                    status=LookupStatus.UNSUPPORTED_CHAIN,
                    message=f"No Morpho PT markets are tracked for {chain}. Tracked: {', '.join(MORPHO_CHAIN_IDS)}.",
                )
            chain_ids = [chain_id]
        else:
            chain_ids = list(MORPHO_CHAIN_IDS.values())

        top_n = int(clamp_top_n(top_n, MARKET_LIST_MAX))
        symbol = (pt_symbol or "").strip()
        search = f"PT-{symbol}" if symbol else "PT-"
        # other protocols' PTs share the prefix, so over-fetch before filtering
        first = min(top_n * 3, self.settings.MARKET_RESULT_MAX) if pt_index else top_n
        lookup = search_markets(
            self.http, self.settings.MORPHO_GRAPHQL_URL, chain_ids, search, min_supply_usd, sort_by, first
        )
        if pt_index is not None:
            (markets, total), spectra = await asyncio.gather(lookup, pt_index())
        else:
            markets, total = await lookup
            spectra = None

        views = [market_view(m, spectra) for m in markets]
        spectra_count = sum(1 for v in views if v.is_spectra_pt)
        if spectra is not None:
            views = [v for v in views if v.is_spectra_pt]
        views.sort(key=_SORT_VALUES[sort_by], reverse=True)
        views = views[:top_n]

        message = None
        if not views:
            scope = chain or "any tracked chain"
            message = f"No Morpho PT markets found on {scope}" + (f' matching "{symbol}"' if symbol else "")
        return MorphoMarketList(
            markets=views,
            total=total,
            spectra_count=spectra_count,
            other_count=len(markets) - spectra_count,
            status=LookupStatus.OK if views else LookupStatus.NOT_FOUND,
            message=message,
        )

    async def market_rate(self, chain: str, market_key: str) -> Lookup[MorphoMarketView]:
        """Live state of one market by unique key. Upstream failures propagate."""
        chain_id = self.chain_id(chain)
        if chain_id is None:
            return Lookup(status=LookupStatus.UNSUPPORTED_CHAIN, detail=f"Morpho not tracked on {chain}")
        market = await fetch_market_by_key(self.http, self.settings.MORPHO_GRAPHQL_URL, market_key, chain_id)
        if market is None:
            return Lookup(status=LookupStatus.NOT_FOUND, detail=f"No market {market_key} on {chain}")
        return Lookup(value=market_view(market))
