"""
Bridge Errors

Every error the orchestrator surfaces carries a FailureReason so callers
and stored Transfer records share one taxonomy.
"""

from ..models import FailureReason


class BridgeError(Exception):
    """Error raised when a bridge operation fails."""

    reason: FailureReason | None = None

    def __init__(self, message: str, reason: FailureReason | None = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class InvalidRequestError(BridgeError):
    """Malformed transfer request (same chain twice, missing recipient)."""
    pass


class InvalidAmountError(BridgeError):
    reason = FailureReason.INVALID_AMOUNT


class RouteNotSupportedError(BridgeError):
    reason = FailureReason.ROUTE_NOT_SUPPORTED


class ApprovalFailedError(BridgeError):
    reason = FailureReason.APPROVAL_FAILED


class SourceSubmissionError(BridgeError):
    reason = FailureReason.SOURCE_SUBMISSION_FAILED


class DestinationSubmissionError(BridgeError):
    reason = FailureReason.DESTINATION_SUBMISSION_FAILED


class TransferNotFoundError(BridgeError):
    """No transfer with the given id."""
    pass


class CancellationNotAllowedError(BridgeError):
    """The transfer has already touched the source chain."""

    reason = FailureReason.USER_CANCELLED


class TerminalTransferError(BridgeError):
    """Attempt to rewrite a completed or failed transfer."""
    pass
