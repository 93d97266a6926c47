"""
Bridge Service

The orchestrator facade used by the API layer and other collaborators.
It wires the route registry, estimator, approval manager, protocol
adapters, transfer monitor, network status aggregator and ledger, and
recovers in-flight transfers from the ledger on startup.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from ..chains import MultiChainManager, SignerRegistry
from ..config import BridgeConfig, ChainNetwork, get_bridge_config
from ..ledger import TransferLedger, create_ledger
from ..models import (
    TERMINAL_STATUSES,
    BridgeEstimate,
    BridgeMetrics,
    BridgeProtocol,
    BridgeRoute,
    NetworkStatus,
    Transfer,
    TransferFilter,
    TransferRequest,
    TransferStatus,
)
from ..monitoring import configure_logging, get_logger
from ..network import NetworkStatusAggregator
from .analytics import summarize_transfers
from .approval import ApprovalManager
from .errors import CancellationNotAllowedError, TransferNotFoundError
from .estimator import FeeEstimator
from .monitor import TransferMonitor
from .protocols import BridgeProtocolAdapter, build_protocol_adapters
from .routes import RouteRegistry
from .state_machine import TransferListener, TransferStateMachine, utcnow

logger = get_logger(__name__)


class BridgeService:
    """
    Cross-chain transfer orchestrator.

    Every dependency can be injected; defaults are built from the
    configuration.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        chain_manager: MultiChainManager | None = None,
        ledger: TransferLedger | None = None,
        registry: RouteRegistry | None = None,
        adapters: dict[BridgeProtocol, BridgeProtocolAdapter] | None = None,
        signers: SignerRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config if config is not None else get_bridge_config()
        self.chain_manager = (
            chain_manager if chain_manager is not None else MultiChainManager(self.config, signers)
        )
        self.ledger = ledger if ledger is not None else create_ledger(self.config)
        self.registry = registry if registry is not None else RouteRegistry()
        self.adapters = adapters if adapters is not None else build_protocol_adapters(self.config)
        self.approvals = ApprovalManager(self.config)
        self.network_status = NetworkStatusAggregator(self.chain_manager, self.config)
        self.monitor = TransferMonitor(self.chain_manager, self.config)
        self.estimator = FeeEstimator(
            self.registry,
            self.network_status,
            self.chain_manager,
            self.adapters,
            self.config,
        )
        self._clock = clock
        self._machines: dict[str, TransferStateMachine] = {}
        self._initialized = False

    # ==================== Lifecycle ====================

    async def initialize(self, start_status_sampling: bool = True) -> None:
        """Connect to chains, start status sampling and resume open transfers."""
        if self._initialized:
            return
        await self.chain_manager.initialize()
        if start_status_sampling:
            await self.network_status.start()
        recovered = await self.recover()
        self._initialized = True
        logger.info(
            "bridge_service_initialized",
            networks=[n.value for n in self.chain_manager.networks],
            routes=len(self.registry),
            recovered_transfers=recovered,
        )

    async def recover(self) -> int:
        """
        Rebuild state machines for every non-terminal transfer in the ledger.

        Returns:
            Number of transfers resumed
        """
        open_statuses = [s for s in TransferStatus if s not in TERMINAL_STATUSES]
        pending = await self.ledger.list(TransferFilter(statuses=open_statuses))

        resumed = 0
        for transfer in pending:
            if transfer.id in self._machines:
                continue
            route = self.registry.find_route(transfer.source_chain, transfer.destination_chain)
            adapter = self.adapters.get(transfer.protocol)
            if route is None or adapter is None:
                logger.warning(
                    "transfer_recovery_skipped",
                    transfer_id=transfer.id,
                    protocol=transfer.protocol.value,
                )
                continue

            machine = TransferStateMachine(
                transfer,
                route,
                ledger=self.ledger,
                chain_manager=self.chain_manager,
                adapter=adapter,
                approvals=self.approvals,
                config=self.config,
                clock=self._clock,
            )
            self.monitor.register(machine)
            self._adopt(machine)
            resumed += 1
            logger.info(
                "transfer_recovered", transfer_id=transfer.id, status=transfer.status.value
            )
        return resumed

    async def close(self) -> None:
        await self.monitor.stop()
        await self.network_status.stop()
        for adapter in self.adapters.values():
            await adapter.close()
        await self.ledger.close()
        await self.chain_manager.close()
        self._machines.clear()
        self._initialized = False
        logger.info("bridge_service_closed")

    def _adopt(self, machine: TransferStateMachine) -> None:
        self._machines[machine.transfer_id] = machine

        def release(transfer: Transfer) -> None:
            if transfer.is_terminal:
                self._machines.pop(transfer.id, None)

        machine.subscribe(release)
        machine.schedule()

    # ==================== Routes & Estimates ====================

    def list_routes(self) -> list[BridgeRoute]:
        return self.registry.list_routes()

    async def estimate(
        self,
        source: ChainNetwork,
        destination: ChainNetwork,
        asset: str,
        amount: Decimal | str | int,
        sender_address: str | None = None,
    ) -> BridgeEstimate:
        return await self.estimator.estimate(source, destination, asset, amount, sender_address)

    # ==================== Transfers ====================

    async def create_transfer(self, request: TransferRequest) -> str:
        """
        Create a transfer and start driving it in the background.

        Returns as soon as the created record is in the ledger.

        Returns:
            The transfer id
        """
        machine = await TransferStateMachine.create(
            request,
            registry=self.registry,
            ledger=self.ledger,
            chain_manager=self.chain_manager,
            adapters=self.adapters,
            monitor=self.monitor,
            approvals=self.approvals,
            config=self.config,
            clock=self._clock,
        )
        self._adopt(machine)
        return machine.transfer_id

    async def get_transfer(self, transfer_id: str) -> Transfer:
        transfer = await self.ledger.get(transfer_id)
        if transfer is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} not found")
        return transfer

    async def list_transfers(self, transfer_filter: TransferFilter | None = None) -> list[Transfer]:
        return await self.ledger.list(transfer_filter)

    async def cancel_transfer(self, transfer_id: str) -> Transfer:
        """
        Cancel a transfer that has not touched the source chain yet.

        Raises:
            TransferNotFoundError: If the id is unknown
            CancellationNotAllowedError: If the source transaction was submitted
        """
        machine = self._machines.get(transfer_id)
        if machine is None:
            transfer = await self.get_transfer(transfer_id)
            raise CancellationNotAllowedError(
                f"Transfer {transfer_id} is {transfer.status.value} and cannot be cancelled"
            )
        transfer = await machine.cancel()
        logger.info("transfer_cancelled", transfer_id=transfer_id)
        return transfer

    async def subscribe_to_transfer_updates(
        self,
        transfer_id: str,
        callback: TransferListener,
    ) -> Callable[[], None]:
        """
        Call callback with a copy of the transfer after every change.

        Terminal transfers never change, so their subscription is a no-op.

        Returns:
            A function that removes the subscription
        """
        machine = self._machines.get(transfer_id)
        if machine is not None:
            return machine.subscribe(callback)

        await self.get_transfer(transfer_id)
        return lambda: None

    def get_machine(self, transfer_id: str) -> TransferStateMachine | None:
        return self._machines.get(transfer_id)

    # ==================== Network Status ====================

    async def get_network_status(self) -> list[NetworkStatus]:
        """Latest cached sample, sampling once if nothing is cached yet."""
        statuses = self.network_status.latest()
        if not statuses:
            statuses = await self.network_status.sample()
        return statuses

    async def get_metrics(self) -> BridgeMetrics:
        """
        Ledger-wide success rate, completion time and 24 hour activity.

        Gas prices come from the cached network sample; no chain is queried.
        """
        transfers = await self.ledger.list(TransferFilter())
        return summarize_transfers(transfers, self._clock(), self.network_status.latest())


# Global service instance
_bridge_service: BridgeService | None = None


async def get_bridge_service() -> BridgeService:
    """
    Get the global bridge service instance.

    Configures logging and initializes the service if not already done.
    """
    global _bridge_service
    if _bridge_service is None:
        config = get_bridge_config()
        configure_logging(config.log_level, json_output=config.log_json)
        _bridge_service = BridgeService(config)
        await _bridge_service.initialize()
    return _bridge_service
