"""
Chain Connector Base

This module provides the abstract base class for blockchain interactions
across the supported chains (Ethereum, Polygon, BSC, Solana). Each chain
family inherits from this base and provides chain-specific logic.

Every RPC made by a connector goes through _call(), which bounds the call
with a timeout and retries transient failures with exponential backoff.
A call that exhausts its retry budget raises ConnectorUnavailableError.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import BridgeConfig, Chain, ChainNetwork, get_bridge_config
from ..models import ContractCall, TransactionRecord
from ..monitoring import get_logger
from .signing import SignerRegistry

logger = get_logger(__name__)

T = TypeVar("T")


class ChainClientError(Exception):
    """Base exception for chain client errors."""
    pass


class ConnectorUnavailableError(ChainClientError):
    """Raised when an RPC keeps failing after the retry budget is spent."""
    pass


class BroadcastUncertainError(ConnectorUnavailableError):
    """
    Raised when a signed transaction could not be confirmed as broadcast.

    The transaction may still land, so tx_hash carries the hash derived
    from the signed bytes for receipt lookups.
    """

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


class InsufficientFundsError(ChainClientError):
    """Raised when wallet has insufficient funds for operation."""
    pass


class TransactionFailedError(ChainClientError):
    """Raised when a transaction reverts or is rejected."""
    pass


class ContractNotFoundError(ChainClientError):
    """Raised when a contract address is not found or invalid."""
    pass


# Errors worth retrying: socket drops, timeouts, refused connections
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
)


class BaseChainClient(ABC):
    """
    Abstract base class for chain connectors.

    The connector handles:
    - Balance, allowance and gas reads
    - Building, signing (via the wallet layer) and broadcasting calls
    - Receipt lookups and confirmation waits
    - Push notification of new blocks

    Connectors are shared by all transfers and must be safe to call
    concurrently.
    """

    transient_exceptions: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS

    def __init__(
        self,
        network: ChainNetwork,
        config: BridgeConfig | None = None,
        signers: SignerRegistry | None = None,
    ):
        """
        Initialize the chain client.

        Args:
            network: The blockchain network this client connects to
            config: Optional configuration (defaults to the global config)
            signers: Registry used to sign outgoing transactions
        """
        self.network = network
        self.config = config or get_bridge_config()
        self.chain: Chain = self.config.get_chain(network)
        self.signers = signers or SignerRegistry()
        self._rpc_endpoint = self.chain.rpc_url
        self._ws_endpoint = self.chain.ws_url
        self._initialized = False

    @abstractmethod
    async def initialize(self) -> None:
        """Create the RPC connection."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the chain connection and cleanup resources."""
        pass

    # ==================== Balance Operations ====================

    @abstractmethod
    async def get_balance(self, address: str, token: str | None = None) -> Decimal:
        """
        Get the balance of a wallet.

        Args:
            address: The wallet address to query
            token: Optional token address/mint. If None, returns the native
                   currency balance.

        Returns:
            Balance in human-readable units
        """
        pass

    @abstractmethod
    async def get_token_decimals(self, token: str) -> int:
        """Get the decimals of a token."""
        pass

    @abstractmethod
    async def get_allowance(self, token: str, owner: str, spender: str) -> Decimal:
        """
        Get the amount the spender may move on behalf of owner.

        Returns:
            Allowance in human-readable units
        """
        pass

    @abstractmethod
    async def build_approval_call(
        self,
        token: str,
        owner: str,
        spender: str,
        amount: Decimal,
    ) -> ContractCall:
        """Build an approval for exactly amount."""
        pass

    # ==================== Network Operations ====================

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Get the current gas price in the smallest native unit."""
        pass

    @abstractmethod
    async def get_current_block(self) -> int:
        """Get the current block number (slot on Solana)."""
        pass

    async def get_congestion_score(self, gas_price: int) -> float:
        """
        Score congestion from 0 to 100.

        EVM chains compare the gas price against the chain's reference
        price: (gwei - base) / base * 100, clamped.
        """
        base = self.chain.base_gas_price_gwei
        if base <= 0:
            return 0.0
        gwei = Decimal(gas_price) / Decimal(10**9)
        score = (gwei - base) / base * 100
        return float(min(Decimal(100), max(Decimal(0), score)))

    @property
    def congestion_threshold(self) -> float:
        """Score above which the chain is reported as congested."""
        return 80.0

    async def get_bridge_liquidity(self) -> Decimal:
        """Native balance held by the chain's token bridge contract."""
        bridge = self.chain.contracts.get("wormhole_token_bridge")
        if not bridge:
            return Decimal("0")
        return await self.get_balance(bridge)

    # ==================== Transaction Operations ====================

    @abstractmethod
    async def estimate_call_gas(self, call: ContractCall, sender: str) -> int:
        """Simulate a call and return the gas (compute units) it needs."""
        pass

    @abstractmethod
    async def submit_call(self, call: ContractCall, sender: str) -> str:
        """
        Sign the call through the wallet layer and broadcast it.

        Returns:
            The transaction hash (signature on Solana)

        Raises:
            TransactionFailedError: If the node rejects the transaction
            ConnectorUnavailableError: If the node cannot be reached
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> TransactionRecord | None:
        """
        Look up a transaction.

        Returns:
            TransactionRecord once included, None while unknown or pending
        """
        pass

    async def wait_for_transaction(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: float = 120,
    ) -> TransactionRecord:
        """
        Wait for a transaction to reach the requested confirmation depth.

        Polls with backoff to avoid overwhelming the RPC endpoint.

        Raises:
            TimeoutError: If not confirmed within timeout
            TransactionFailedError: If the transaction reverts
        """
        self._ensure_initialized()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        poll_interval = 1.0

        while True:
            record = await self.get_receipt(tx_hash)
            if record is not None and record.is_included:
                if not record.succeeded:
                    raise TransactionFailedError(f"Transaction {tx_hash} reverted")
                assert record.block_number is not None
                head = await self.get_current_block()
                if head - record.block_number + 1 >= confirmations:
                    return record

            if loop.time() >= deadline:
                raise TimeoutError(
                    f"Transaction {tx_hash} not confirmed within {timeout_seconds}s"
                )
            await asyncio.sleep(poll_interval)
            poll_interval = min(poll_interval * 1.5, 10.0)

    # ==================== Block Subscriptions ====================

    @abstractmethod
    def subscribe_new_blocks(self) -> AsyncIterator[int]:
        """
        Open a push subscription and yield new block heights.

        The iterator ends or raises when the socket drops; reconnection is
        the caller's concern.
        """
        pass

    # ==================== Utility Methods ====================

    def resolve_token(self, asset: str) -> str | None:
        """
        Map an asset symbol or address to a token address on this chain.

        Returns None for the chain's native currency.
        """
        if asset.upper() == self.chain.native_symbol:
            return None
        return self.chain.tokens.get(asset.upper(), asset)

    def is_native_asset(self, asset: str) -> bool:
        return self.resolve_token(asset) is None

    @staticmethod
    def to_base_units(amount: Decimal, decimals: int) -> int:
        """Convert to integer base units, refusing to round away precision."""
        scaled = amount.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} has more than {decimals} decimal places")
        return int(scaled)

    @staticmethod
    def from_base_units(raw: int, decimals: int) -> Decimal:
        return Decimal(raw).scaleb(-decimals)

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Run one RPC with a timeout and bounded retries.

        Only transient errors are retried. Anything else propagates as-is.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.rpc_retry_attempts),
            wait=wait_exponential(
                multiplier=self.config.rpc_retry_min_wait,
                min=self.config.rpc_retry_min_wait,
                max=self.config.rpc_retry_max_wait,
            ),
            retry=retry_if_exception_type(self.transient_exceptions),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.wait_for(
                        fn(*args, **kwargs), timeout=self.config.rpc_timeout_seconds
                    )
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.warning(
                "rpc_retry_exhausted",
                network=self.network.value,
                operation=operation,
                attempts=self.config.rpc_retry_attempts,
                error=str(cause),
            )
            raise ConnectorUnavailableError(
                f"{operation} on {self.network.value} failed after "
                f"{self.config.rpc_retry_attempts} attempts: {cause}"
            ) from cause
        raise ConnectorUnavailableError(f"{operation} on {self.network.value} did not run")

    @property
    def is_initialized(self) -> bool:
        """Check if the client has been initialized."""
        return self._initialized

    def _ensure_initialized(self) -> None:
        """Raise error if client is not initialized."""
        if not self._initialized:
            raise ChainClientError(
                f"Chain client for {self.network.value} not initialized. "
                "Call initialize() first."
            )


class MultiChainManager:
    """
    Owner of one connector per enabled chain.

    Connectors are created on initialize() and shared by every transfer,
    the monitor and the status aggregator.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        signers: SignerRegistry | None = None,
    ) -> None:
        self.config = config or get_bridge_config()
        self.signers = signers or SignerRegistry()
        self._clients: dict[ChainNetwork, BaseChainClient] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Create and initialize a connector for each enabled chain."""
        from .evm_client import EVMChainClient
        from .solana_client import SolanaChainClient

        for network in self.config.enabled_chains:
            if network in self._clients:
                continue
            client: BaseChainClient
            if network == ChainNetwork.SOLANA:
                client = SolanaChainClient(network, self.config, self.signers)
            else:
                client = EVMChainClient(network, self.config, self.signers)

            await client.initialize()
            self._clients[network] = client
            logger.info("chain_client_initialized", network=network.value)

        self._initialized = True

    def register_client(self, client: BaseChainClient) -> None:
        """Install a connector directly (used for custom or in-process chains)."""
        self._clients[client.network] = client

    async def close(self) -> None:
        """Close all chain clients."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        self._initialized = False

    def get_client(self, network: ChainNetwork) -> BaseChainClient:
        """
        Get the client for a specific chain.

        Raises:
            ConnectorUnavailableError: If chain is not enabled or initialized
        """
        if network not in self._clients:
            raise ConnectorUnavailableError(
                f"Chain {network.value} is not enabled or initialized"
            )
        return self._clients[network]

    @property
    def networks(self) -> list[ChainNetwork]:
        return list(self._clients)


# Global manager instance
_chain_manager: MultiChainManager | None = None


async def get_chain_manager() -> MultiChainManager:
    """
    Get the global multi-chain manager instance.

    Initializes the manager if not already done.
    """
    global _chain_manager
    if _chain_manager is None:
        _chain_manager = MultiChainManager()
        await _chain_manager.initialize()
    return _chain_manager
