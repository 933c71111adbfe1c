from __future__ import annotations

from typing import List, Sequence, TypeVar

from yield_engine.models import OpportunityScan, ScanStatus

T = TypeVar("T")


def failed_chains_note(failed_chains: Sequence[str]) -> str:
    return f"{len(failed_chains)} chain(s) failed ({', '.join(failed_chains)})."


def build_scan(
    opportunities: List[T],
    failed_chains: List[str],
    total_chains: int,
    empty_message: str,
) -> OpportunityScan[T]:
    """Wrap ranked results, telling "nothing matched" apart from "sources were down"."""
    if opportunities:
        status = ScanStatus.PARTIAL if failed_chains else ScanStatus.OK
        message = f"Partial data: {failed_chains_note(failed_chains)}" if failed_chains else None
        return OpportunityScan(opportunities=opportunities, failed_chains=failed_chains, status=status, message=message)

    if total_chains > 0 and len(failed_chains) >= total_chains:
        message = f"No pool data available: every chain failed to respond ({', '.join(failed_chains)}). Retry shortly."
        return OpportunityScan(opportunities=[], failed_chains=failed_chains, status=ScanStatus.UNAVAILABLE, message=message)

    message = empty_message
    if failed_chains:
        message += f"\nNote: {failed_chains_note(failed_chains)}"
    return OpportunityScan(opportunities=[], failed_chains=failed_chains, status=ScanStatus.EMPTY, message=message)


def format_usd(value: float) -> str:
    return f"${value:,.2f}"


def format_pct(value: float) -> str:
    return f"{value:.2f}%"
