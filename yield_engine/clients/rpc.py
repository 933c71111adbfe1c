from __future__ import annotations

import logging
from typing import Any, List, Optional

from yield_engine.errors import DataShapeError, UpstreamError
from yield_engine.http import HttpClient

logger = logging.getLogger(__name__)


async def _rpc(http: HttpClient, url: str, method: str, params: Optional[List[Any]] = None) -> Any:
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
    resp = await http.post(url, json=payload, headers={"Content-Type": "application/json"})
    try:
        data = resp.json()
    except ValueError as e:
        raise DataShapeError(f"RPC {url} returned invalid JSON") from e
    if not isinstance(data, dict):
        raise DataShapeError(f"RPC {url} returned {type(data).__name__}, expected object")
    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise UpstreamError(f"RPC error from {url}: {message}")
    return data.get("result")


def hex_to_decimal(raw_hex: str, decimals: int) -> float:
    raw = int(raw_hex, 16)
    scale = 10**decimals
    whole, frac = divmod(raw, scale)
    return whole + frac / scale


async def fetch_ve_total_supply(http: HttpClient, rpc_url: str, contract: str, selector: str, decimals: int) -> float:
    """totalSupply() of the voting-escrow contract via eth_call, decimals divided out."""
    result = await _rpc(http, rpc_url, "eth_call", [{"to": contract, "data": selector}, "latest"])
    if not isinstance(result, str) or result in ("", "0x"):
        raise DataShapeError("veSPECTRA totalSupply returned empty")
    try:
        value = hex_to_decimal(result, decimals)
    except ValueError as e:
        raise DataShapeError(f"veSPECTRA totalSupply returned non-hex value {result[:20]!r}") from e
    logger.debug(f"veSPECTRA totalSupply={value:,.0f}")
    return value
