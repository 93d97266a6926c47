"""
Transfer State Machine

Drives one transfer through its lifecycle:

created -> approving -> submitted_source -> awaiting_attestation
        -> attested -> submitted_destination -> completed

with failed reachable from every non-terminal state. Each machine is a
single writer for its transfer: all steps run under one asyncio.Lock and
at most one driver task exists at a time. Every transition is written
through to the ledger before listeners hear about it.

The machine never retries a failed transfer. Bridge calls are not safe to
replay once submitted, so a retry is a new transfer.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..chains import (
    BaseChainClient,
    BroadcastUncertainError,
    ChainClientError,
    ConnectorUnavailableError,
    MultiChainManager,
    SigningError,
)
from ..config import CHAINS, BridgeConfig, ChainNetwork, get_bridge_config
from ..ledger.store import TransferLedger
from ..models import (
    CANCELLABLE_STATUSES,
    PROGRESS_BY_STATUS,
    BridgeProtocol,
    BridgeRoute,
    FailureReason,
    StatusChange,
    Transfer,
    TransferRequest,
    TransferStatus,
    TransactionRecord,
)
from ..monitoring import get_logger, transfer_context
from .approval import ApprovalManager
from .errors import (
    ApprovalFailedError,
    BridgeError,
    CancellationNotAllowedError,
    InvalidAmountError,
    InvalidRequestError,
    RouteNotSupportedError,
)
from .finality import ConfirmationDepthPolicy
from .protocols import BridgeProtocolAdapter
from .routes import RouteRegistry

if TYPE_CHECKING:
    from .monitor import TransferMonitor

logger = get_logger(__name__)

TransferListener = Callable[[Transfer], Awaitable[None] | None]


def utcnow() -> datetime:
    return datetime.now(UTC)


class TransferStateMachine:
    """
    Actor owning one transfer.

    The monitor feeds it block heights through on_block(); each new
    height schedules a pass of advance(). Heights at or below the last one
    seen for a chain are ignored, so duplicate and out-of-order events are
    no-ops.
    """

    def __init__(
        self,
        transfer: Transfer,
        route: BridgeRoute,
        *,
        ledger: TransferLedger,
        chain_manager: MultiChainManager,
        adapter: BridgeProtocolAdapter,
        approvals: ApprovalManager | None = None,
        config: BridgeConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.route = route
        self.ledger = ledger
        self.chain_manager = chain_manager
        self.adapter = adapter
        self.config = config or get_bridge_config()
        self.approvals = approvals or ApprovalManager(self.config)
        self._clock = clock
        self._transfer = transfer
        self._destination_finality = ConfirmationDepthPolicy()

        self._lock = asyncio.Lock()
        self._heights: dict[ChainNetwork, int] = {}
        self._listeners: list[TransferListener] = []
        self._driver: asyncio.Task[Transfer] | None = None
        self._wake_pending = False
        self._cancel_requested = False

    # ==================== Creation ====================

    @classmethod
    async def create(
        cls,
        request: TransferRequest,
        *,
        registry: RouteRegistry,
        ledger: TransferLedger,
        chain_manager: MultiChainManager,
        adapters: dict[BridgeProtocol, BridgeProtocolAdapter],
        monitor: "TransferMonitor | None" = None,
        approvals: ApprovalManager | None = None,
        config: BridgeConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "TransferStateMachine":
        """
        Validate a request, write the created record and register it.

        Makes no network calls; the first chain interaction happens when
        the driver runs.

        Raises:
            InvalidAmountError: If the amount is not positive or is finer than
                the protocol carries
            InvalidRequestError: If the chains are equal or a cross-family
                transfer has no recipient
            RouteNotSupportedError: If the pair has no supported route
        """
        if request.amount <= 0:
            raise InvalidAmountError("Amount must be positive")
        if request.source_chain == request.destination_chain:
            raise InvalidRequestError("Source and destination chains must differ")

        route = registry.find_route(request.source_chain, request.destination_chain)
        if route is None or not route.supported:
            raise RouteNotSupportedError(
                f"No supported route from {request.source_chain.value} "
                f"to {request.destination_chain.value}"
            )
        adapter = adapters.get(route.protocol)
        if adapter is None:
            raise RouteNotSupportedError(f"No adapter for {route.protocol.value}")
        adapter.check_precision(request.amount, request.asset)

        recipient = request.recipient_address
        if recipient is None:
            source = CHAINS[request.source_chain]
            destination = CHAINS[request.destination_chain]
            if source.family != destination.family:
                raise InvalidRequestError(
                    "recipient_address is required when bridging between chain families"
                )
            recipient = request.sender_address

        now = clock()
        transfer = Transfer(
            source_chain=request.source_chain,
            destination_chain=request.destination_chain,
            asset=request.asset,
            amount=request.amount,
            sender_address=request.sender_address,
            recipient_address=recipient,
            protocol=route.protocol,
            created_at=now,
            last_updated_at=now,
            estimated_completion_at=now + timedelta(minutes=route.nominal_time_minutes),
            history=[StatusChange(status=TransferStatus.CREATED, at=now)],
        )
        await ledger.put(transfer)

        machine = cls(
            transfer,
            route,
            ledger=ledger,
            chain_manager=chain_manager,
            adapter=adapter,
            approvals=approvals,
            config=config,
            clock=clock,
        )
        if monitor is not None:
            monitor.register(machine)

        logger.info(
            "transfer_created",
            transfer_id=transfer.id,
            source=transfer.source_chain.value,
            destination=transfer.destination_chain.value,
            asset=transfer.asset,
            amount=str(transfer.amount),
            protocol=route.protocol.value,
        )
        return machine

    # ==================== Accessors ====================

    @property
    def transfer(self) -> Transfer:
        """A copy of the working record."""
        return self._transfer.model_copy(deep=True)

    @property
    def transfer_id(self) -> str:
        return self._transfer.id

    @property
    def status(self) -> TransferStatus:
        return self._transfer.status

    @property
    def is_terminal(self) -> bool:
        return self._transfer.is_terminal

    @property
    def networks(self) -> frozenset[ChainNetwork]:
        """Chains whose blocks this transfer waits on."""
        return frozenset({self._transfer.source_chain, self._transfer.destination_chain})

    def observed_height(self, network: ChainNetwork) -> int | None:
        return self._heights.get(network)

    # ==================== Listeners ====================

    def subscribe(self, callback: TransferListener) -> Callable[[], None]:
        """
        Call callback with a copy of the transfer after every change.

        Returns:
            A function that removes the subscription
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(self.transfer)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("transfer_listener_failed", transfer_id=self.transfer_id)

    # ==================== Events ====================

    def on_block(self, network: ChainNetwork, height: int) -> bool:
        """
        Record a new block height and wake the driver.

        Returns:
            True if the height was new for this chain
        """
        if self.is_terminal or network not in self.networks:
            return False
        if height <= self._heights.get(network, -1):
            return False
        self._heights[network] = height
        self.schedule()
        return True

    def schedule(self) -> None:
        """Start a driver task, or flag the running one to make another pass."""
        if self.is_terminal:
            return
        if self._driver is not None and not self._driver.done():
            self._wake_pending = True
            return
        self._driver = asyncio.get_running_loop().create_task(
            self.advance(), name=f"transfer-{self.transfer_id}"
        )
        self._driver.add_done_callback(self._on_driver_done)

    def _on_driver_done(self, task: "asyncio.Task[Transfer]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "transfer_driver_crashed",
                transfer_id=self.transfer_id,
                status=self.status.value,
                error=str(error),
            )

    async def wait_idle(self) -> None:
        """Wait for the current driver task, if any."""
        while self._driver is not None and not self._driver.done():
            await asyncio.wait({self._driver})

    async def stop(self) -> None:
        """Cancel the driver task without touching stored state."""
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
            try:
                await self._driver
            except asyncio.CancelledError:
                pass
        self._driver = None

    # ==================== Driver ====================

    async def advance(self) -> Transfer:
        """
        Run steps until the transfer is waiting on the chain or terminal.

        Wake-ups that arrive during a pass trigger one more pass.
        """
        transfer = self._transfer
        route = f"{transfer.source_chain.value}->{transfer.destination_chain.value}"
        async with self._lock:
            with transfer_context(transfer.id, route=route, protocol=transfer.protocol.value):
                while not self.is_terminal:
                    self._wake_pending = False
                    progressed = await self._step()
                    if not progressed and not self._wake_pending:
                        break
        return self.transfer

    async def _step(self) -> bool:
        """Run the handler for the current status. Returns True on a transition."""
        if self._cancel_requested and self.status in CANCELLABLE_STATUSES:
            await self._fail(FailureReason.USER_CANCELLED, "Cancelled by user")
            return True

        handlers = {
            TransferStatus.CREATED: self._begin_approval,
            TransferStatus.APPROVING: self._approve_and_submit_source,
            TransferStatus.SUBMITTED_SOURCE: self._confirm_source,
            TransferStatus.AWAITING_ATTESTATION: self._collect_attestation,
            TransferStatus.ATTESTED: self._submit_destination,
            TransferStatus.SUBMITTED_DESTINATION: self._confirm_destination,
        }
        return await handlers[self.status]()

    async def _begin_approval(self) -> bool:
        await self._transition(TransferStatus.APPROVING)
        return True

    async def _approve_and_submit_source(self) -> bool:
        transfer = self._transfer
        try:
            client = self.chain_manager.get_client(transfer.source_chain)
            await self.adapter.validate_amount(transfer, client)
            spender = self.adapter.spender(transfer.source_chain)
            approval = await self.approvals.ensure_approval(
                client, transfer.asset, transfer.sender_address, spender, transfer.amount
            )
        except ApprovalFailedError as e:
            reason = (
                FailureReason.CONNECTOR_UNAVAILABLE
                if isinstance(e.__cause__, ConnectorUnavailableError)
                else FailureReason.APPROVAL_FAILED
            )
            await self._fail(reason, str(e))
            return True
        except ConnectorUnavailableError as e:
            await self._fail(FailureReason.CONNECTOR_UNAVAILABLE, str(e))
            return True
        except BridgeError as e:
            await self._fail(e.reason or FailureReason.APPROVAL_FAILED, str(e))
            return True
        except ChainClientError as e:
            await self._fail(FailureReason.APPROVAL_FAILED, str(e))
            return True

        if self._cancel_requested:
            await self._fail(FailureReason.USER_CANCELLED, "Cancelled by user")
            return True

        note: str | None = None
        try:
            call = await self.adapter.build_source_call(transfer, client)
            tx_hash = await client.submit_call(call, transfer.sender_address)
        except BroadcastUncertainError as e:
            # Signed and possibly in flight: let the receipt decide
            logger.warning(
                "source_broadcast_unconfirmed",
                transfer_id=self.transfer_id,
                network=transfer.source_chain.value,
                tx_hash=e.tx_hash,
                error=str(e),
            )
            tx_hash = e.tx_hash
            note = "broadcast unconfirmed"
        except ConnectorUnavailableError as e:
            await self._fail(FailureReason.CONNECTOR_UNAVAILABLE, str(e))
            return True
        except BridgeError as e:
            await self._fail(e.reason or FailureReason.SOURCE_SUBMISSION_FAILED, str(e))
            return True
        except (ChainClientError, SigningError) as e:
            await self._fail(FailureReason.SOURCE_SUBMISSION_FAILED, str(e))
            return True

        await self._transition(
            TransferStatus.SUBMITTED_SOURCE,
            note,
            source_tx_hash=tx_hash,
            approval_tx_hash=approval.approval_tx_hash,
        )
        return True

    async def _confirm_source(self) -> bool:
        transfer = self._transfer
        assert transfer.source_tx_hash is not None
        receipt = await self._observe_receipt(transfer.source_chain, transfer.source_tx_hash)
        if receipt is None:
            return False
        if not receipt.succeeded:
            await self._fail(
                FailureReason.SOURCE_SUBMISSION_FAILED,
                f"Source transaction {transfer.source_tx_hash} reverted",
            )
            return True

        metadata = {
            **transfer.metadata,
            **self.adapter.extract_source_metadata(transfer, receipt),
        }
        now = self._clock()
        await self._transition(
            TransferStatus.AWAITING_ATTESTATION,
            source_block_number=receipt.block_number,
            metadata=metadata,
            awaiting_since=now,
            estimated_completion_at=now + timedelta(minutes=self.route.nominal_time_minutes),
        )
        return True

    async def _collect_attestation(self) -> bool:
        transfer = self._transfer
        height = self._heights.get(transfer.source_chain, transfer.source_block_number or 0)
        attestation = await self.adapter.finality.check(transfer, height)

        if attestation is None:
            await self._flag_if_overdue()
            return False

        await self._transition(
            TransferStatus.ATTESTED,
            attestation_payload=attestation.payload,
            metadata={
                **transfer.metadata,
                **attestation.metadata,
                "attestation_kind": attestation.kind,
            },
        )
        return True

    async def _flag_if_overdue(self) -> None:
        transfer = self._transfer
        if transfer.attestation_overdue or transfer.awaiting_since is None:
            return
        window = timedelta(
            minutes=self.route.nominal_time_minutes * self.config.attestation_window_multiplier
        )
        if self._clock() <= transfer.awaiting_since + window:
            return

        logger.warning(
            "attestation_overdue",
            transfer_id=transfer.id,
            protocol=transfer.protocol.value,
            awaiting_since=transfer.awaiting_since.isoformat(),
            window_minutes=window.total_seconds() / 60,
        )
        await self._update(
            attestation_overdue=True,
            metadata={**transfer.metadata, "warning": FailureReason.ATTESTATION_TIMEOUT.value},
        )

    async def _submit_destination(self) -> bool:
        transfer = self._transfer
        try:
            client = self.chain_manager.get_client(transfer.destination_chain)
            call = await self.adapter.build_destination_call(transfer, client)
            tx_hash = await client.submit_call(call, transfer.recipient_address)
        except ConnectorUnavailableError as e:
            await self._fail(FailureReason.CONNECTOR_UNAVAILABLE, str(e))
            return True
        except BridgeError as e:
            await self._fail(e.reason or FailureReason.DESTINATION_SUBMISSION_FAILED, str(e))
            return True
        except (ChainClientError, SigningError) as e:
            await self._fail(FailureReason.DESTINATION_SUBMISSION_FAILED, str(e))
            return True

        await self._transition(
            TransferStatus.SUBMITTED_DESTINATION, pending_destination_tx_hash=tx_hash
        )
        return True

    async def _confirm_destination(self) -> bool:
        transfer = self._transfer
        tx_hash = transfer.pending_destination_tx_hash
        assert tx_hash is not None
        network = transfer.destination_chain

        receipt = await self._observe_receipt(network, tx_hash)
        if receipt is None:
            return False
        if not receipt.succeeded:
            await self._fail(
                FailureReason.DESTINATION_SUBMISSION_FAILED,
                f"Destination transaction {tx_hash} reverted",
            )
            return True

        assert receipt.block_number is not None
        head = self._heights.get(network)
        if head is None or not self._destination_finality.is_final(
            network, receipt.block_number, head
        ):
            return False

        await self._transition(TransferStatus.COMPLETED, destination_tx_hash=tx_hash)
        return True

    async def _observe_receipt(
        self,
        network: ChainNetwork,
        tx_hash: str,
    ) -> TransactionRecord | None:
        """
        Read-only receipt lookup after submission.

        Connector failures are logged and the lookup is retried on the next
        block event; the chain action is already irreversible.
        """
        try:
            client: BaseChainClient = self.chain_manager.get_client(network)
            receipt = await client.get_receipt(tx_hash)
        except ChainClientError as e:
            logger.warning(
                "transfer_observation_deferred",
                transfer_id=self.transfer_id,
                network=network.value,
                tx_hash=tx_hash,
                error=str(e),
            )
            return None
        if receipt is None or not receipt.is_included:
            return None
        return receipt

    # ==================== Cancellation ====================

    async def cancel(self) -> Transfer:
        """
        Cancel before the source transaction is submitted.

        Waits for an in-flight step to finish. A source submission that wins
        that race makes the transfer non-cancellable.

        Raises:
            CancellationNotAllowedError: If the source chain was already touched
        """
        if self.status not in CANCELLABLE_STATUSES:
            raise CancellationNotAllowedError(
                f"Transfer {self.transfer_id} is {self.status.value} and cannot be cancelled"
            )

        self._cancel_requested = True
        async with self._lock:
            if self.status in CANCELLABLE_STATUSES:
                await self._fail(FailureReason.USER_CANCELLED, "Cancelled by user")
            elif self._transfer.failure_reason != FailureReason.USER_CANCELLED:
                self._cancel_requested = False
                raise CancellationNotAllowedError(
                    f"Transfer {self.transfer_id} is {self.status.value} and cannot be cancelled"
                )
        return self.transfer

    # ==================== Persistence ====================

    async def _transition(
        self,
        status: TransferStatus,
        note: str | None = None,
        **changes: Any,
    ) -> None:
        previous = self._transfer
        now = self._clock()
        progress = max(
            previous.progress_fraction,
            PROGRESS_BY_STATUS.get(status, previous.progress_fraction),
        )
        await self._commit(
            previous.model_copy(
                update={
                    **changes,
                    "status": status,
                    "progress_fraction": progress,
                    "last_updated_at": now,
                    "history": [*previous.history, StatusChange(status=status, at=now, note=note)],
                }
            )
        )
        logger.info(
            "transfer_transition",
            transfer_id=previous.id,
            from_status=previous.status.value,
            status=status.value,
            progress=progress,
        )

    async def _update(self, **changes: Any) -> None:
        """Persist field changes without a status transition."""
        await self._commit(
            self._transfer.model_copy(update={**changes, "last_updated_at": self._clock()})
        )

    async def _fail(self, reason: FailureReason, message: str) -> None:
        logger.warning(
            "transfer_failed",
            transfer_id=self.transfer_id,
            status=self.status.value,
            reason=reason.value,
            error=message,
        )
        await self._transition(
            TransferStatus.FAILED,
            note=reason.value,
            failure_reason=reason,
            error_message=message,
        )

    async def _commit(self, updated: Transfer) -> None:
        # Working copy first so a failed ledger write never repeats a chain action
        self._transfer = updated
        await self.ledger.put(updated)
        await self._notify()