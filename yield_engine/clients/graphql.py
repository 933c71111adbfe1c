from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from yield_engine.errors import DataShapeError, GraphQLError
from yield_engine.http import HttpClient

logger = logging.getLogger(__name__)


async def graphql_query(http: HttpClient, url: str, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {"query": query, "variables": variables or {}}
    resp = await http.post(url, json=payload, headers={"Content-Type": "application/json"})
    try:
        data = resp.json()
    except ValueError as e:
        raise DataShapeError(f"GraphQL endpoint {url} returned invalid JSON") from e
    if not isinstance(data, dict):
        raise DataShapeError(f"GraphQL endpoint {url} returned {type(data).__name__}, expected object")
    if data.get("errors"):
        logger.warning(f"GraphQL errors from {url}: {data['errors']}")
        first = data["errors"][0]
        message = first.get("message") if isinstance(first, dict) else str(first)
        raise GraphQLError(f"GraphQL query failed: {message}")
    return data.get("data") or {}
