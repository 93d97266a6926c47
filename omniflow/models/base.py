"""
Base Models for the Bridge Orchestrator

This module defines the shared data structures used by the chain
connectors, the route registry, the estimator and the network status
aggregator. Amounts are Decimal and serialize to decimal strings.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..config import ChainNetwork


class BridgeProtocol(str, Enum):
    """Bridging protocols a route can use."""

    WORMHOLE = "wormhole"
    NATIVE = "native"
    CCTP = "cctp"


class NetworkHealth(str, Enum):
    """Coarse health of a chain as seen by the status aggregator."""

    ONLINE = "online"
    CONGESTED = "congested"
    OFFLINE = "offline"


class TransactionRecord(BaseModel):
    """
    Record of a submitted or observed transaction.

    block_number is None until the transaction is included.
    """

    tx_hash: str = Field(description="Transaction hash or signature")
    network: ChainNetwork
    status: str = Field(default="pending", description="pending, success, failed")
    block_number: int | None = None
    from_address: str = ""
    to_address: str = ""
    gas_used: int = 0
    logs: list[dict[str, Any]] = Field(
        default_factory=list, description="Decoded receipt logs (topics, data, address)"
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_included(self) -> bool:
        return self.block_number is not None and self.status != "pending"

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class ContractCall(BaseModel):
    """
    A state-changing call to be signed and broadcast.

    EVM calls use function_name/args/abi. Solana calls carry a raw
    instruction in instruction_data with its account metas.
    """

    target: str = Field(description="Contract or program address")
    function_name: str
    args: list[Any] = Field(default_factory=list)
    abi: list[dict[str, Any]] | None = None
    value: int = Field(default=0, ge=0, description="Native value in smallest units")
    instruction_data: bytes | None = None
    accounts: list[dict[str, Any]] = Field(default_factory=list)
    ephemeral_signers: list[Any] = Field(
        default_factory=list, exclude=True, description="Throwaway keypairs that co-sign"
    )

    model_config = {"arbitrary_types_allowed": True}


class BridgeRoute(BaseModel):
    """A configured source/destination pairing."""

    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    protocol: BridgeProtocol
    base_fee: Decimal = Field(ge=0, description="Fee in units of the transferred asset")
    nominal_time_minutes: int = Field(gt=0)
    supported: bool = True

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[ChainNetwork, ChainNetwork]:
        return (self.source_chain, self.destination_chain)


class GasEstimate(BaseModel):
    """Simulated source-side gas for approval plus bridge call."""

    gas_limit: int
    gas_price: int = Field(description="Smallest native unit per gas")
    cost_in_native: Decimal
    cost_in_usd: Decimal
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime


class BridgeEstimate(BaseModel):
    """Fee and time estimate for one transfer."""

    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    asset: str
    amount: Decimal
    fee: Decimal
    time_minutes: int
    route_protocol: BridgeProtocol
    supported: bool
    receive_amount: Decimal
    congestion_multiplier: Decimal = Decimal("1.0")
    gas_estimate: GasEstimate | None = None


class NetworkStatus(BaseModel):
    """Latest health sample for a chain."""

    network: ChainNetwork
    chain_id: int
    name: str
    health: NetworkHealth
    gas_price: int = 0
    congestion_score: float = Field(default=0.0, ge=0.0, le=100.0)
    last_observed_block: int = 0
    bridge_liquidity_balance: Decimal = Decimal("0")
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None


class RouteCount(BaseModel):
    """Number of transfers seen on one source/destination pairing."""

    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    count: int


class BridgeMetrics(BaseModel):
    """
    Aggregates derived from the transfer ledger.

    Volumes are summed per asset symbol in asset units; no price
    conversion is applied. success_rate is None until at least one
    transfer has reached a terminal status.
    """

    total_transfers: int = 0
    completed_transfers: int = 0
    failed_transfers: int = 0
    in_flight_transfers: int = 0
    success_rate: float | None = Field(
        default=None, description="Percent of terminal transfers that completed"
    )
    average_completion_seconds: float | None = None
    transfers_24h: int = 0
    volume_24h: dict[str, Decimal] = Field(default_factory=dict)
    popular_routes: list[RouteCount] = Field(default_factory=list)
    gas_prices: dict[ChainNetwork, int] = Field(
        default_factory=dict, description="Latest sampled gas price, smallest native unit"
    )
    computed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
