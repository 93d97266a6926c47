"""
OmniFlow Bridge

Routing, estimation, approvals, protocol adapters and finality policies.

The stateful parts live in their own modules and are imported directly:
- omniflow.bridge.state_machine: TransferStateMachine
- omniflow.bridge.monitor: TransferMonitor
- omniflow.bridge.service: BridgeService, get_bridge_service
"""

from .errors import (
    ApprovalFailedError,
    BridgeError,
    CancellationNotAllowedError,
    DestinationSubmissionError,
    InvalidAmountError,
    InvalidRequestError,
    RouteNotSupportedError,
    SourceSubmissionError,
    TerminalTransferError,
    TransferNotFoundError,
)
from .routes import DEFAULT_ROUTES, RouteRegistry
from .finality import (
    Attestation,
    CircleAttestationPolicy,
    ConfirmationDepthPolicy,
    FinalityPolicy,
    WormholeVaaPolicy,
)
from .protocols import (
    BridgeProtocolAdapter,
    CctpAdapter,
    NativeBridgeAdapter,
    WormholeAdapter,
    build_protocol_adapters,
    parse_vaa,
)
from .approval import ApprovalManager, ApprovalResult
from .estimator import FeeEstimator

__all__ = [
    # Errors
    "BridgeError",
    "InvalidRequestError",
    "InvalidAmountError",
    "RouteNotSupportedError",
    "ApprovalFailedError",
    "SourceSubmissionError",
    "DestinationSubmissionError",
    "TransferNotFoundError",
    "CancellationNotAllowedError",
    "TerminalTransferError",
    # Routes
    "DEFAULT_ROUTES",
    "RouteRegistry",
    # Finality
    "Attestation",
    "FinalityPolicy",
    "ConfirmationDepthPolicy",
    "WormholeVaaPolicy",
    "CircleAttestationPolicy",
    # Protocols
    "BridgeProtocolAdapter",
    "WormholeAdapter",
    "CctpAdapter",
    "NativeBridgeAdapter",
    "build_protocol_adapters",
    "parse_vaa",
    # Estimation & approvals
    "FeeEstimator",
    "ApprovalManager",
    "ApprovalResult",
]
