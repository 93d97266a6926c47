"""
Transfer Models

The durable Transfer record and the request/filter types used to create
and query it. Transfers move through these states:

CREATED -> APPROVING -> SUBMITTED_SOURCE -> AWAITING_ATTESTATION
        -> ATTESTED -> SUBMITTED_DESTINATION -> COMPLETED

FAILED is reachable from every non-terminal state.
"""

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..config import ChainNetwork
from .base import BridgeProtocol


class TransferStatus(str, Enum):
    """Lifecycle state of a transfer."""

    CREATED = "created"
    APPROVING = "approving"
    SUBMITTED_SOURCE = "submitted_source"
    AWAITING_ATTESTATION = "awaiting_attestation"
    ATTESTED = "attested"
    SUBMITTED_DESTINATION = "submitted_destination"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Why a transfer (or a request) failed."""

    INVALID_AMOUNT = "invalid_amount"
    ROUTE_NOT_SUPPORTED = "route_not_supported"
    APPROVAL_FAILED = "approval_failed"
    SOURCE_SUBMISSION_FAILED = "source_submission_failed"
    ATTESTATION_TIMEOUT = "attestation_timeout"
    DESTINATION_SUBMISSION_FAILED = "destination_submission_failed"
    CONNECTOR_UNAVAILABLE = "connector_unavailable"
    USER_CANCELLED = "user_cancelled"


TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED})
CANCELLABLE_STATUSES = frozenset({TransferStatus.CREATED, TransferStatus.APPROVING})

PROGRESS_BY_STATUS: dict[TransferStatus, float] = {
    TransferStatus.CREATED: 0.0,
    TransferStatus.APPROVING: 0.1,
    TransferStatus.SUBMITTED_SOURCE: 0.25,
    TransferStatus.AWAITING_ATTESTATION: 0.4,
    TransferStatus.ATTESTED: 0.6,
    TransferStatus.SUBMITTED_DESTINATION: 0.8,
    TransferStatus.COMPLETED: 1.0,
}


def parse_amount(value: Any) -> Decimal:
    """
    Parse a user-supplied amount.

    Accepts decimal strings, ints and Decimals. Floats are rejected since
    they cannot represent token amounts exactly.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("amount must be a decimal string, not a float")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"invalid amount: {value!r}") from e
    else:
        raise ValueError(f"unsupported amount type: {type(value).__name__}")
    if not amount.is_finite():
        raise ValueError("amount must be finite")
    return amount


class StatusChange(BaseModel):
    """One entry in a transfer's transition history."""

    status: TransferStatus
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    note: str | None = None


class TransferRequest(BaseModel):
    """Input for creating a transfer."""

    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    asset: str = Field(min_length=1, description="Asset symbol (USDC) or token address")
    amount: Decimal = Field(description="Amount as a decimal string")
    sender_address: str = Field(min_length=1)
    recipient_address: str | None = Field(
        default=None, description="Defaults to the sender when both chains share a family"
    )

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Decimal:
        return parse_amount(v)


class Transfer(BaseModel):
    """
    Durable record of one cross-chain transfer.

    Written through to the ledger on every transition. Once COMPLETED or
    FAILED the record never changes again.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    asset: str
    amount: Decimal
    sender_address: str
    recipient_address: str
    protocol: BridgeProtocol
    status: TransferStatus = TransferStatus.CREATED

    # Chain artifacts
    approval_tx_hash: str | None = None
    source_tx_hash: str | None = None
    source_block_number: int | None = None
    attestation_payload: str | None = Field(default=None, description="Hex-encoded proof")
    pending_destination_tx_hash: str | None = Field(
        default=None, description="Destination transaction awaiting finality"
    )
    destination_tx_hash: str | None = Field(
        default=None, description="Set once the transfer completes"
    )

    # Failure details
    failure_reason: FailureReason | None = None
    error_message: str | None = None

    # Timing
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    awaiting_since: datetime | None = None
    estimated_completion_at: datetime | None = None

    progress_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    attestation_overdue: bool = False
    history: list[StatusChange] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def involves(self, address: str) -> bool:
        lowered = address.lower()
        return lowered in (self.sender_address.lower(), self.recipient_address.lower())


class TransferFilter(BaseModel):
    """Query parameters for listing transfers."""

    address: str | None = Field(default=None, description="Sender or recipient")
    sender_address: str | None = None
    recipient_address: str | None = None
    statuses: list[TransferStatus] | None = None
    source_chain: ChainNetwork | None = None
    destination_chain: ChainNetwork | None = None
    limit: int | None = Field(default=None, ge=1)

    def matches(self, transfer: Transfer) -> bool:
        if self.address and not transfer.involves(self.address):
            return False
        if self.sender_address and transfer.sender_address.lower() != self.sender_address.lower():
            return False
        if (
            self.recipient_address
            and transfer.recipient_address.lower() != self.recipient_address.lower()
        ):
            return False
        if self.statuses is not None and transfer.status not in self.statuses:
            return False
        if self.source_chain and transfer.source_chain != self.source_chain:
            return False
        if self.destination_chain and transfer.destination_chain != self.destination_chain:
            return False
        return True

    def apply(self, transfers: list[Transfer]) -> list[Transfer]:
        """Filter and order newest first."""
        selected = sorted(
            (t for t in transfers if self.matches(t)),
            key=lambda t: t.created_at,
            reverse=True,
        )
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected
