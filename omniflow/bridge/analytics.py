"""
Bridge Analytics

Aggregate metrics over ledger records: success rate, average completion
time, popular routes and trailing 24 hour activity.
"""

from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import Decimal

from ..config import ChainNetwork
from ..models import (
    TERMINAL_STATUSES,
    BridgeMetrics,
    NetworkHealth,
    NetworkStatus,
    RouteCount,
    Transfer,
    TransferStatus,
)

ACTIVITY_WINDOW = timedelta(hours=24)
POPULAR_ROUTE_LIMIT = 5


def completed_at(transfer: Transfer) -> datetime:
    """When the transfer reached COMPLETED, falling back to its last update."""
    for change in reversed(transfer.history):
        if change.status == TransferStatus.COMPLETED:
            return change.at
    return transfer.last_updated_at


def summarize_transfers(
    transfers: Iterable[Transfer],
    now: datetime,
    statuses: Iterable[NetworkStatus] = (),
) -> BridgeMetrics:
    """
    Build BridgeMetrics from ledger records.

    Args:
        transfers: Every transfer to aggregate
        now: Reference time for the 24 hour window
        statuses: Latest network samples; offline chains are skipped

    The 24 hour volume counts transfers created inside the window that
    have not failed.
    """
    transfers = list(transfers)
    completed = [t for t in transfers if t.status == TransferStatus.COMPLETED]
    failed = [t for t in transfers if t.status == TransferStatus.FAILED]
    terminal = len(completed) + len(failed)

    durations = [(completed_at(t) - t.created_at).total_seconds() for t in completed]

    since = now - ACTIVITY_WINDOW
    recent = [t for t in transfers if t.created_at >= since]
    volume: dict[str, Decimal] = {}
    for transfer in recent:
        if transfer.status == TransferStatus.FAILED:
            continue
        asset = transfer.asset.upper()
        volume[asset] = volume.get(asset, Decimal("0")) + transfer.amount

    routes: Counter[tuple[ChainNetwork, ChainNetwork]] = Counter(
        (t.source_chain, t.destination_chain) for t in transfers
    )

    return BridgeMetrics(
        total_transfers=len(transfers),
        completed_transfers=len(completed),
        failed_transfers=len(failed),
        in_flight_transfers=sum(1 for t in transfers if t.status not in TERMINAL_STATUSES),
        success_rate=round(len(completed) / terminal * 100, 2) if terminal else None,
        average_completion_seconds=(
            round(sum(durations) / len(durations), 1) if durations else None
        ),
        transfers_24h=len(recent),
        volume_24h=volume,
        popular_routes=[
            RouteCount(source_chain=source, destination_chain=destination, count=count)
            for (source, destination), count in routes.most_common(POPULAR_ROUTE_LIMIT)
        ],
        gas_prices={
            s.network: s.gas_price for s in statuses if s.health != NetworkHealth.OFFLINE
        },
        computed_at=now,
    )
