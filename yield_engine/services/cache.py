from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, TypeVar

from yield_engine.clients.rpc import fetch_ve_total_supply
from yield_engine.clients.spectra import fetch_chain_listings
from yield_engine.config import VE_SPECTRA, Settings, get_settings
from yield_engine.http import HttpClient
from yield_engine.models import PrincipalToken

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


def _retrieve_exception(task: asyncio.Task) -> None:
    # every waiter may have been cancelled; the failure is still observed here
    if not task.cancelled():
        task.exception()


class AsyncTTLCache(Generic[K, V]):
    """Per-key TTL cache that collapses concurrent misses into one upstream load.

    The entry table and the in-flight table are only touched between awaits, so on
    a single event loop a key is always either cached, loading, or neither; never
    observed as neither while a load is running.
    """

    def __init__(self, loader: Callable[[K], Awaitable[V]], ttl_seconds: float, clock: Clock = time.monotonic):
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, _Entry[V]] = {}
        self._inflight: Dict[K, asyncio.Task] = {}

    async def get(self, key: K) -> V:
        entry = self._entries.get(key)
        if entry is not None and self._clock() < entry.expires_at:
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task
        # shield: one caller giving up must not cancel the load for the others
        return await asyncio.shield(task)

    async def _load(self, key: K) -> V:
        try:
            value = await self._loader(key)
            self._entries[key] = _Entry(value, self._clock() + self._ttl)
            return value
        finally:
            self._inflight.pop(key, None)

    def peek(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.value

    def is_loading(self, key: K) -> bool:
        return key in self._inflight

    def invalidate(self, key: Optional[K] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class ChainPoolCache:
    """Validated PT listings per network, refreshed wholesale every POOL_CACHE_TTL_SECONDS."""

    def __init__(self, http: HttpClient, settings: Settings | None = None, clock: Clock = time.monotonic):
        self.http = http
        self.settings = settings or get_settings()
        self._cache: AsyncTTLCache[str, List[PrincipalToken]] = AsyncTTLCache(
            self._fetch, self.settings.POOL_CACHE_TTL_SECONDS, clock
        )

    async def _fetch(self, network: str) -> List[PrincipalToken]:
        listings = await fetch_chain_listings(self.http, self.settings, network)
        logger.debug(f"Loaded {len(listings)} listings for {network}")
        return listings

    async def get(self, network: str) -> List[PrincipalToken]:
        return await self._cache.get(network)

    def invalidate(self, network: Optional[str] = None) -> None:
        self._cache.invalidate(network)


class VeSupplyCache:
    """veSPECTRA total supply; changes slowly, so it lives much longer than pool data."""

    _KEY = "ve_total_supply"

    def __init__(self, http: HttpClient, settings: Settings | None = None, clock: Clock = time.monotonic):
        self.http = http
        self.settings = settings or get_settings()
        self._cache: AsyncTTLCache[str, float] = AsyncTTLCache(
            self._fetch, self.settings.VE_SUPPLY_CACHE_TTL_SECONDS, clock
        )

    async def _fetch(self, _key: Any) -> float:
        return await fetch_ve_total_supply(
            self.http,
            self.settings.BASE_RPC_URL,
            VE_SPECTRA["address"],
            VE_SPECTRA["total_supply_selector"],
            VE_SPECTRA["decimals"],
        )

    async def get(self) -> float:
        return await self._cache.get(self._KEY)
