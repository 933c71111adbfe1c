from __future__ import annotations

from functools import lru_cache
from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Runtime
    ENV: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)

    # Upstream sources
    SPECTRA_API_BASE: str = Field(default="https://api.spectra.finance/v1")
    MORPHO_GRAPHQL_URL: str = Field(default="https://api.morpho.org/graphql")
    BASE_RPC_URL: str = Field(default="https://mainnet.base.org")

    # HTTP behaviour (HTTP_MAX_ATTEMPTS=2 means one retry)
    FETCH_TIMEOUT_SECONDS: float = Field(default=15.0)
    HTTP_MAX_ATTEMPTS: int = Field(default=2)
    HTTP_RETRY_DELAY_SECONDS: float = Field(default=1.0)

    # Caches
    POOL_CACHE_TTL_SECONDS: float = Field(default=30.0)
    VE_SUPPLY_CACHE_TTL_SECONDS: float = Field(default=300.0)

    # Lending market lookups
    MARKET_BATCH_MAX: int = Field(default=200)
    MARKET_RESULT_MAX: int = Field(default=500)

    # Strategy knobs
    MAX_LOOPS: int = Field(default=5)
    TOP_N_MAX: int = Field(default=50)

    def spectra_url(self, path: str) -> str:
        return f"{self.SPECTRA_API_BASE.rstrip('/')}/{path.lstrip('/')}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


# Spectra network slugs -> display name and EVM chain id.
# "ethereum" is a user-facing alias for "mainnet" and is never sent upstream.
SUPPORTED_CHAINS: Dict[str, Dict[str, object]] = {
    "mainnet": {"name": "Ethereum", "id": 1},
    "base": {"name": "Base", "id": 8453},
    "arbitrum": {"name": "Arbitrum", "id": 42161},
    "optimism": {"name": "Optimism", "id": 10},
    "avalanche": {"name": "Avalanche", "id": 43114},
    "katana": {"name": "Katana", "id": 747474},
    "sonic": {"name": "Sonic", "id": 146},
    "flare": {"name": "Flare", "id": 14},
    "bsc": {"name": "BSC", "id": 56},
    "monad": {"name": "Monad", "id": 143},
    "ethereum": {"name": "Ethereum (alias for mainnet)", "id": 1},
}

# Networks scanned in a multi-chain sweep (alias skipped to avoid double counting)
API_NETWORKS: List[str] = [k for k in SUPPORTED_CHAINS if k != "ethereum"]

# Chains on which Morpho lists PT collateral markets
MORPHO_CHAIN_IDS: Dict[str, int] = {
    "mainnet": 1,
    "base": 8453,
    "arbitrum": 42161,
    "katana": 747474,
}

# veSPECTRA voting escrow on Base. Boost: B = min(2.5, 1.5 * (v/V) * (D/d) + 1)
VE_SPECTRA = {
    "address": "0x6a89228055c7c28430692e342f149f37462b478b",
    "chain_id": 8453,
    "total_supply_selector": "0x18160ddd",
    "decimals": 18,
    "max_boost": 2.5,
}

# Placeholder looping parameters used only when no live market is found
LOOPING_DEFAULTS = {
    "ltv": 0.86,
    "borrow_rate_pct": 5.0,
}


def resolve_network(chain: str) -> str:
    chain = chain.strip().lower()
    return "mainnet" if chain == "ethereum" else chain
