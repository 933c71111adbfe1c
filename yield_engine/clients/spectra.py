from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from yield_engine.config import Settings
from yield_engine.errors import DataShapeError
from yield_engine.http import HttpClient
from yield_engine.models import PrincipalToken

logger = logging.getLogger(__name__)


REQUIRED_FIELDS = ("address", "maturity", "name")


def _has_required_fields(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    address = item.get("address")
    maturity = item.get("maturity")
    return (
        isinstance(address, str)
        and bool(address)
        and isinstance(maturity, (int, float))
        and not isinstance(maturity, bool)
        and isinstance(item.get("name"), str)
    )


def _strip_invalid(item: Dict[str, Any], error: ValidationError) -> Dict[str, Any]:
    """Drop the optional parts of a listing that failed validation: a bad pool, or a bad top-level field."""
    bad_fields = set()
    bad_pools = set()
    for err in error.errors():
        loc = err["loc"]
        if len(loc) >= 2 and loc[0] == "pools" and isinstance(loc[1], int):
            bad_pools.add(loc[1])
        elif loc:
            bad_fields.add(loc[0])
    cleaned = {k: v for k, v in item.items() if k not in bad_fields or k in REQUIRED_FIELDS}
    if bad_pools and isinstance(cleaned.get("pools"), list):
        cleaned["pools"] = [p for i, p in enumerate(cleaned["pools"]) if i not in bad_pools]
    return cleaned


def _to_listing(item: Dict[str, Any], chain: str) -> Optional[PrincipalToken]:
    try:
        return PrincipalToken.model_validate(item)
    except ValidationError as e:
        logger.debug(f"[{chain}] Dropping invalid optional fields of PT {item.get('address')}: {e.error_count()} error(s)")
        cleaned = _strip_invalid(item, e)
    try:
        return PrincipalToken.model_validate(cleaned)
    except ValidationError:
        return None


def validate_listings(raw: List[Any], chain: str) -> List[PrincipalToken]:
    """Keep PT records that carry an address, a numeric maturity and a name.

    Only those three fields can reject a record; malformed optional parts are dropped
    from it instead. Rejected records share a single warning per call.
    """
    warned = False
    valid: List[PrincipalToken] = []
    for item in raw:
        pt = _to_listing(item, chain) if _has_required_fields(item) else None
        if pt is not None:
            valid.append(pt)
        elif not warned:
            logger.warning(f"[{chain}] Skipping malformed PT entry: missing or invalid address/maturity/name")
            warned = True
    return valid


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


async def fetch_chain_listings(http: HttpClient, settings: Settings, network: str) -> List[PrincipalToken]:
    """GET /{network}/pools, validated."""
    url = settings.spectra_url(f"/{network}/pools")
    resp = await http.get(url)
    try:
        payload = resp.json()
    except ValueError as e:
        raise DataShapeError(f"Spectra API returned invalid JSON for {url}: {resp.text[:120]}") from e
    items = _unwrap(payload)
    if items is None:
        return []
    if not isinstance(items, list):
        logger.warning(f"[{network}] Unexpected pools payload type {type(items).__name__}; treating as empty")
        return []
    return validate_listings(items, network)


def parse_pt_response(payload: Any) -> Optional[PrincipalToken]:
    """Single-PT responses come wrapped in {data: ...}, as a one-element array, or bare."""
    if not payload:
        return None
    data = _unwrap(payload)
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict) or not data.get("address") or not data.get("maturity"):
        return None
    valid = validate_listings([data], "pt")
    return valid[0] if valid else None


async def fetch_pt(http: HttpClient, settings: Settings, network: str, pt_address: str) -> Optional[PrincipalToken]:
    """GET /{network}/pt/{address}. None when the PT does not exist."""
    url = settings.spectra_url(f"/{network}/pt/{pt_address}")
    resp = await http.get(url)
    try:
        payload = resp.json()
    except ValueError as e:
        raise DataShapeError(f"Spectra API returned invalid JSON for {url}") from e
    return parse_pt_response(payload)
