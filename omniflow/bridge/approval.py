"""
Approval Manager

Makes sure the bridge contract may move the sender's tokens before the
lock/burn call is submitted. Approvals are always for the exact transfer
amount, never unlimited.
"""

from decimal import Decimal

from pydantic import BaseModel

from ..chains import BaseChainClient, ChainClientError, SigningError
from ..config import BridgeConfig, get_bridge_config
from ..monitoring import get_logger
from .errors import ApprovalFailedError

logger = get_logger(__name__)


class ApprovalResult(BaseModel):
    """Outcome of ensure_approval."""

    already_approved: bool
    approval_tx_hash: str | None = None


class ApprovalManager:
    """Idempotent allowance top-up for a spender contract."""

    def __init__(self, config: BridgeConfig | None = None):
        self.config = config or get_bridge_config()

    async def ensure_approval(
        self,
        client: BaseChainClient,
        asset: str,
        owner: str,
        spender: str,
        amount: Decimal,
    ) -> ApprovalResult:
        """
        Ensure spender may move amount of asset on behalf of owner.

        Skips the transaction when the current allowance already covers the
        amount. Otherwise submits an exact approval and waits for the
        configured number of confirmations.

        Raises:
            ApprovalFailedError: If the approval is rejected, reverts or
                does not confirm in time. Connector errors keep their
                message and are chained as the cause.
        """
        token = client.resolve_token(asset)
        if token is None:
            return ApprovalResult(already_approved=True)

        try:
            allowance = await client.get_allowance(token, owner, spender)
            if allowance >= amount:
                logger.debug(
                    "approval_already_sufficient",
                    network=client.network.value,
                    token=token,
                    allowance=str(allowance),
                )
                return ApprovalResult(already_approved=True)

            call = await client.build_approval_call(token, owner, spender, amount)
            tx_hash = await client.submit_call(call, owner)
            logger.info(
                "approval_submitted",
                network=client.network.value,
                token=token,
                amount=str(amount),
                tx_hash=tx_hash,
            )
            await client.wait_for_transaction(
                tx_hash,
                confirmations=self.config.approval_confirmations,
                timeout_seconds=self.config.approval_timeout_seconds,
            )
        except (ChainClientError, SigningError, TimeoutError) as e:
            logger.warning(
                "approval_failed",
                network=client.network.value,
                token=token,
                error=str(e),
            )
            raise ApprovalFailedError(f"Approval on {client.network.value} failed: {e}") from e

        logger.info("approval_confirmed", network=client.network.value, tx_hash=tx_hash)
        return ApprovalResult(already_approved=False, approval_tx_hash=tx_hash)
