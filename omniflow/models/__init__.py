"""
OmniFlow Data Models

Pydantic models shared across connectors, bridge orchestration,
the ledger and the API layer.
"""

from .base import (
    BridgeEstimate,
    BridgeMetrics,
    BridgeProtocol,
    BridgeRoute,
    ContractCall,
    GasEstimate,
    NetworkHealth,
    NetworkStatus,
    RouteCount,
    TransactionRecord,
)
from .transfer import (
    CANCELLABLE_STATUSES,
    PROGRESS_BY_STATUS,
    TERMINAL_STATUSES,
    FailureReason,
    StatusChange,
    Transfer,
    TransferFilter,
    TransferRequest,
    TransferStatus,
    parse_amount,
)

__all__ = [
    "BridgeEstimate",
    "BridgeMetrics",
    "BridgeProtocol",
    "BridgeRoute",
    "ContractCall",
    "GasEstimate",
    "NetworkHealth",
    "NetworkStatus",
    "RouteCount",
    "TransactionRecord",
    "CANCELLABLE_STATUSES",
    "PROGRESS_BY_STATUS",
    "TERMINAL_STATUSES",
    "FailureReason",
    "StatusChange",
    "Transfer",
    "TransferFilter",
    "TransferRequest",
    "TransferStatus",
    "parse_amount",
]
