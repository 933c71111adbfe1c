from __future__ import annotations

from typing import Optional


class UpstreamError(RuntimeError):
    """Base error for anything that went wrong talking to an external source."""


class TransientUpstreamError(UpstreamError):
    """Timeout, connection failure or 5xx that survived the retry."""


class UpstreamRejectedError(UpstreamError):
    """4xx response. Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GraphQLError(UpstreamError):
    pass


class DataShapeError(UpstreamError):
    """Response parsed but did not have the expected structure."""
