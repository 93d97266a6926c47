"""
OmniFlow Transfer Ledger

Durable transfer storage with in-memory and Redis backends.
"""

from .store import (
    InMemoryTransferLedger,
    RedisTransferLedger,
    TransferLedger,
    create_ledger,
)

__all__ = [
    "TransferLedger",
    "InMemoryTransferLedger",
    "RedisTransferLedger",
    "create_ledger",
]
