"""
EVM Chain Connector

This module provides the concrete connector for EVM-compatible chains
(Ethereum, Polygon, BSC). It uses web3.py for all blockchain interactions
and web3's websocket provider for newHeads subscriptions.
"""

from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3, WebSocketProvider
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from ..config import BridgeConfig, ChainNetwork
from ..models import ContractCall, TransactionRecord
from ..monitoring import get_logger
from .base_client import (
    BaseChainClient,
    BroadcastUncertainError,
    ChainClientError,
    ConnectorUnavailableError,
    ContractNotFoundError,
    TransactionFailedError,
)
from .signing import SignerRegistry

logger = get_logger(__name__)


# Standard ERC-20 ABI subset used for bridging
ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class EVMChainClient(BaseChainClient):
    """
    Connector for EVM-compatible blockchains.

    Transactions are built here, signed by the wallet layer through the
    signer registry and broadcast as raw bytes.
    """

    def __init__(
        self,
        network: ChainNetwork,
        config: BridgeConfig | None = None,
        signers: SignerRegistry | None = None,
    ) -> None:
        super().__init__(network, config, signers)
        self._w3: AsyncWeb3 | None = None
        self._chain_id: int = self.chain.chain_id
        self._contract_cache: dict[str, Any] = {}
        self._token_decimals_cache: dict[str, int] = {}

    def _get_w3(self) -> AsyncWeb3:
        """Return the Web3 instance, raising if not initialized."""
        if self._w3 is None:
            raise ChainClientError(
                f"Chain client for {self.network.value} not initialized. "
                "Call initialize() first."
            )
        return self._w3

    async def initialize(self) -> None:
        """
        Create the HTTP provider and read the chain id.

        An unreachable endpoint at startup is logged, not fatal: every later
        call retries on its own and the status aggregator reports the chain
        offline in the meantime.
        """
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(
                self._rpc_endpoint,
                request_kwargs={"timeout": self.config.rpc_timeout_seconds},
            )
        )
        w3 = self._w3

        async def read_chain_id() -> int:
            return await w3.eth.chain_id  # type: ignore[misc]

        self._initialized = True
        try:
            self._chain_id = await self._call("chain_id", read_chain_id)
            logger.info(
                "evm_client_connected", network=self.network.value, chain_id=self._chain_id
            )
        except ChainClientError as e:
            logger.warning("evm_client_connect_deferred", network=self.network.value, error=str(e))

    async def close(self) -> None:
        """Dispose of the provider and clear caches."""
        if self._w3 and hasattr(self._w3.provider, "disconnect"):
            await self._w3.provider.disconnect()
        self._w3 = None
        self._contract_cache.clear()
        self._token_decimals_cache.clear()
        self._initialized = False

    # ==================== Balance Operations ====================

    async def get_balance(self, address: str, token: str | None = None) -> Decimal:
        self._ensure_initialized()
        w3 = self._get_w3()
        address = w3.to_checksum_address(address)

        if token is None:
            balance_wei: int = await self._call("get_balance", w3.eth.get_balance, address)
            return self.from_base_units(balance_wei, self.chain.native_decimals)

        contract = self._get_token_contract(token)
        raw: int = await self._call("balanceOf", contract.functions.balanceOf(address).call)
        decimals = await self.get_token_decimals(token)
        return self.from_base_units(raw, decimals)

    async def get_token_decimals(self, token: str) -> int:
        """Get and cache the decimals for a token."""
        key = token.lower()
        if key not in self._token_decimals_cache:
            contract = self._get_token_contract(token)
            try:
                decimals = await self._call("decimals", contract.functions.decimals().call)
            except (ContractLogicError, Web3RPCError) as e:
                raise ContractNotFoundError(f"{token} is not an ERC-20 token: {e}") from e
            self._token_decimals_cache[key] = int(decimals)
        return self._token_decimals_cache[key]

    async def get_allowance(self, token: str, owner: str, spender: str) -> Decimal:
        self._ensure_initialized()
        w3 = self._get_w3()
        contract = self._get_token_contract(token)
        raw: int = await self._call(
            "allowance",
            contract.functions.allowance(
                w3.to_checksum_address(owner), w3.to_checksum_address(spender)
            ).call,
        )
        decimals = await self.get_token_decimals(token)
        return self.from_base_units(raw, decimals)

    async def build_approval_call(
        self,
        token: str,
        owner: str,
        spender: str,
        amount: Decimal,
    ) -> ContractCall:
        """Build an ERC-20 approve for exactly amount."""
        w3 = self._get_w3()
        decimals = await self.get_token_decimals(token)
        return ContractCall(
            target=w3.to_checksum_address(token),
            function_name="approve",
            args=[w3.to_checksum_address(spender), self.to_base_units(amount, decimals)],
            abi=ERC20_ABI,
        )

    # ==================== Network Operations ====================

    async def get_gas_price(self) -> int:
        self._ensure_initialized()
        w3 = self._get_w3()

        async def read_gas_price() -> int:
            return await w3.eth.gas_price  # type: ignore[misc]

        return await self._call("gas_price", read_gas_price)

    async def get_current_block(self) -> int:
        self._ensure_initialized()
        w3 = self._get_w3()

        async def read_block_number() -> int:
            return await w3.eth.block_number  # type: ignore[misc]

        return await self._call("block_number", read_block_number)

    # ==================== Transaction Operations ====================

    def _bind_call(self, call: ContractCall) -> Any:
        if not call.abi:
            raise ChainClientError("ABI required for contract execution")
        w3 = self._get_w3()
        contract = w3.eth.contract(address=w3.to_checksum_address(call.target), abi=call.abi)
        return getattr(contract.functions, call.function_name)(*call.args)

    async def estimate_call_gas(self, call: ContractCall, sender: str) -> int:
        self._ensure_initialized()
        w3 = self._get_w3()
        func = self._bind_call(call)
        try:
            gas: int = await self._call(
                f"estimate_gas:{call.function_name}",
                func.estimate_gas,
                {"from": w3.to_checksum_address(sender), "value": call.value},
            )
        except (ContractLogicError, Web3RPCError, ValueError) as e:
            raise TransactionFailedError(
                f"Simulation of {call.function_name} reverted: {e}"
            ) from e
        return gas

    async def submit_call(self, call: ContractCall, sender: str) -> str:
        """
        Build an EIP-1559 transaction, have it signed and broadcast it.

        The transaction hash is derived locally from the signed bytes so a
        rebroadcast the node already knows about resolves to the same hash.
        """
        self._ensure_initialized()
        w3 = self._get_w3()
        sender = w3.to_checksum_address(sender)
        func = self._bind_call(call)

        nonce: int = await self._call(
            "get_transaction_count", w3.eth.get_transaction_count, sender, "pending"
        )
        try:
            tx: dict[str, Any] = await self._call(
                f"build_transaction:{call.function_name}",
                func.build_transaction,
                {
                    "from": sender,
                    "value": call.value,
                    "nonce": nonce,
                    "chainId": self._chain_id,
                },
            )
        except (ContractLogicError, Web3RPCError, ValueError) as e:
            raise TransactionFailedError(
                f"{call.function_name} would revert on {self.network.value}: {e}"
            ) from e

        raw = await self.signers.sign(self.network, sender, tx)
        local_hash = Web3.to_hex(Web3.keccak(raw))

        try:
            sent = await self._call("send_raw_transaction", w3.eth.send_raw_transaction, raw)
        except ConnectorUnavailableError as e:
            raise BroadcastUncertainError(
                f"Broadcast of {call.function_name} on {self.network.value} unconfirmed: {e}",
                tx_hash=local_hash,
            ) from e
        except (Web3RPCError, ValueError) as e:
            if "already known" in str(e).lower():
                return local_hash
            raise TransactionFailedError(
                f"{call.function_name} rejected by {self.network.value}: {e}"
            ) from e

        tx_hash = Web3.to_hex(sent)
        logger.info(
            "evm_transaction_sent",
            network=self.network.value,
            function=call.function_name,
            tx_hash=tx_hash,
        )
        return tx_hash

    async def get_receipt(self, tx_hash: str) -> TransactionRecord | None:
        self._ensure_initialized()
        w3 = self._get_w3()
        try:
            receipt: Any = await self._call(
                "get_transaction_receipt", w3.eth.get_transaction_receipt, tx_hash
            )
        except TransactionNotFound:
            return None
        if not receipt:
            return None

        return TransactionRecord(
            tx_hash=tx_hash,
            network=self.network,
            status="success" if receipt["status"] == 1 else "failed",
            block_number=receipt["blockNumber"],
            from_address=receipt.get("from", "") or "",
            to_address=receipt.get("to", "") or "",
            gas_used=receipt.get("gasUsed", 0),
            logs=[
                {
                    "address": log["address"],
                    "topics": [Web3.to_hex(t) for t in log["topics"]],
                    "data": Web3.to_hex(log["data"]),
                }
                for log in receipt.get("logs", [])
            ],
        )

    # ==================== Block Subscriptions ====================

    async def subscribe_new_blocks(self) -> AsyncIterator[int]:
        """Yield block numbers from an eth_subscribe newHeads stream."""
        async with AsyncWeb3(WebSocketProvider(self._ws_endpoint)) as ws_w3:
            subscription_id = await ws_w3.eth.subscribe("newHeads")
            logger.info(
                "evm_subscription_opened",
                network=self.network.value,
                subscription_id=str(subscription_id),
            )
            async for message in ws_w3.socket.process_subscriptions():
                header = message.get("result") or {}
                if "number" in header:
                    yield _to_int(header["number"])

    # ==================== Helper Methods ====================

    def _get_token_contract(self, token: str) -> Any:
        """Get or create a contract instance for a token."""
        w3 = self._get_w3()
        key = token.lower()
        if key not in self._contract_cache:
            self._contract_cache[key] = w3.eth.contract(
                address=w3.to_checksum_address(token),
                abi=ERC20_ABI,
            )
        return self._contract_cache[key]
