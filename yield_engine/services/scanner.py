from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Iterable, List, Optional, Protocol, Set

from yield_engine.config import API_NETWORKS, MORPHO_CHAIN_IDS
from yield_engine.models import Candidate, ChainScanResult, PrincipalToken, ScanCriteria

logger = logging.getLogger(__name__)


class ListingSource(Protocol):
    async def get(self, network: str) -> List[PrincipalToken]: ...


def _matches_asset(pt: PrincipalToken, needle: str) -> bool:
    symbol = ((pt.underlying.symbol if pt.underlying else None) or "").upper()
    name = ((pt.underlying.name if pt.underlying else None) or "").upper()
    return needle in symbol or needle in name


class MultiChainScanner:
    """Fans out one cached listing fetch per chain and flattens them into PT x pool candidates."""

    def __init__(
        self,
        source: ListingSource,
        networks: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.networks = list(networks) if networks is not None else list(API_NETWORKS)
        self.clock = clock

    def expand(self, listings: List[PrincipalToken], chain: str, criteria: ScanCriteria) -> List[Candidate]:
        now = self.clock()
        needle = criteria.asset_symbol.upper() if criteria.asset_symbol else None
        out: List[Candidate] = []
        for pt in listings:
            if not pt.pools:
                continue
            if pt.maturity <= now:
                continue
            if pt.tvl_usd < criteria.min_tvl_usd:
                continue
            if needle and not _matches_asset(pt, needle):
                continue
            # a PT can trade in several pools; each is its own candidate
            for pool in pt.pools:
                if pool.liquidity_usd < criteria.min_liquidity_usd:
                    continue
                out.append(Candidate(pt=pt, pool=pool, chain=chain))
        return out

    async def _scan_chain(self, chain: str, criteria: ScanCriteria) -> List[Candidate]:
        listings = await self.source.get(chain)
        return self.expand(listings, chain, criteria)

    async def scan(self, criteria: ScanCriteria | None = None) -> ChainScanResult:
        criteria = criteria or ScanCriteria()
        results = await asyncio.gather(
            *(self._scan_chain(chain, criteria) for chain in self.networks),
            return_exceptions=True,
        )

        candidates: List[Candidate] = []
        failed: List[str] = []
        for chain, result in zip(self.networks, results):
            if isinstance(result, BaseException):
                logger.warning(f"Chain scan failed for {chain}: {type(result).__name__}: {result}")
                failed.append(chain)
                continue
            candidates.extend(result)

        if failed and len(failed) == len(self.networks):
            logger.error(f"All {len(failed)} chains failed to load pool data")
        return ChainScanResult(candidates=candidates, failed_chains=failed)

    async def collect_pt_addresses(self, networks: Optional[Iterable[str]] = None) -> Set[str]:
        """Lower-cased PT addresses across the lending-capable chains. Failing chains are skipped."""
        targets = list(networks) if networks is not None else list(MORPHO_CHAIN_IDS)
        results = await asyncio.gather(*(self.source.get(n) for n in targets), return_exceptions=True)
        addresses: Set[str] = set()
        for network, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.debug(f"Skipping {network} while indexing PT addresses: {result}")
                continue
            addresses.update(pt.address.lower() for pt in result if pt.address)
        return addresses
