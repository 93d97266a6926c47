"""
Solana Chain Connector

This module provides the concrete connector for Solana. It uses solana-py
for RPC and websocket access and solders for instruction and message
construction.

Note: Solana uses different terminology and paradigms than EVM chains:
- Programs instead of smart contracts
- Slots instead of block numbers
- Lamports instead of wei (1 SOL = 1 billion lamports)
- SPL token delegates instead of ERC-20 allowances
"""

from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Any

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solana.rpc.websocket_api import connect
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import ApproveParams, approve, get_associated_token_address

from ..config import BridgeConfig, ChainNetwork
from ..models import ContractCall, TransactionRecord
from ..monitoring import get_logger
from .base_client import (
    TRANSIENT_EXCEPTIONS,
    BaseChainClient,
    BroadcastUncertainError,
    ChainClientError,
    ConnectorUnavailableError,
    TransactionFailedError,
)
from .signing import SignerRegistry

logger = get_logger(__name__)

# Base fee per signature
LAMPORTS_PER_SIGNATURE = 5000

# Throughput treated as fully congested
CONGESTION_TPS_CEILING = 5000

# Compute unit budget assumed for program calls
DEFAULT_COMPUTE_UNITS = 200_000


class SolanaChainClient(BaseChainClient):
    """
    Connector for Solana mainnet and devnet.

    Messages are built here and signed by the wallet layer through the
    signer registry.
    """

    transient_exceptions = TRANSIENT_EXCEPTIONS + (SolanaRpcException, httpx.TransportError)

    def __init__(
        self,
        network: ChainNetwork = ChainNetwork.SOLANA,
        config: BridgeConfig | None = None,
        signers: SignerRegistry | None = None,
    ) -> None:
        super().__init__(network, config, signers)
        self._client: AsyncClient | None = None
        self._token_decimals_cache: dict[str, int] = {}

    def _get_client(self) -> AsyncClient:
        """Return the Solana client, raising if not initialized."""
        if self._client is None:
            raise ChainClientError(
                f"Chain client for {self.network.value} not initialized. Call initialize() first."
            )
        return self._client

    async def initialize(self) -> None:
        """Create the RPC client and check the endpoint answers."""
        self._client = AsyncClient(self._rpc_endpoint, timeout=self.config.rpc_timeout_seconds)
        self._initialized = True
        try:
            slot = await self.get_current_block()
            logger.info("solana_client_connected", network=self.network.value, slot=slot)
        except ChainClientError as e:
            logger.warning(
                "solana_client_connect_deferred", network=self.network.value, error=str(e)
            )

    async def close(self) -> None:
        """Close the Solana connection and cleanup resources."""
        if self._client:
            await self._client.close()
        self._client = None
        self._token_decimals_cache.clear()
        self._initialized = False

    # ==================== Balance Operations ====================

    async def get_balance(self, address: str, token: str | None = None) -> Decimal:
        self._ensure_initialized()
        client = self._get_client()
        owner = Pubkey.from_string(address)

        if token is None:
            response: Any = await self._call("get_balance", client.get_balance, owner)
            return self.from_base_units(response.value or 0, self.chain.native_decimals)

        ata = get_associated_token_address(owner, Pubkey.from_string(token))
        try:
            response = await self._call(
                "get_token_account_balance", client.get_token_account_balance, ata
            )
        except RPCException:
            # No associated token account yet
            return Decimal("0")
        return Decimal(response.value.amount).scaleb(-response.value.decimals)

    async def get_token_decimals(self, token: str) -> int:
        if token not in self._token_decimals_cache:
            client = self._get_client()
            response: Any = await self._call(
                "get_token_supply", client.get_token_supply, Pubkey.from_string(token)
            )
            self._token_decimals_cache[token] = int(response.value.decimals)
        return self._token_decimals_cache[token]

    async def get_allowance(self, token: str, owner: str, spender: str) -> Decimal:
        """
        Read the SPL delegate amount on the owner's token account.

        Only a delegation to spender counts; any other delegate means zero.
        """
        self._ensure_initialized()
        client = self._get_client()
        ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(token))
        response: Any = await self._call(
            "get_account_info_json_parsed", client.get_account_info_json_parsed, ata
        )
        if response.value is None:
            return Decimal("0")

        parsed = getattr(response.value.data, "parsed", None) or {}
        info = parsed.get("info", {}) if isinstance(parsed, dict) else {}
        if info.get("delegate") != spender:
            return Decimal("0")
        raw = int(info.get("delegatedAmount", {}).get("amount", "0"))
        decimals = await self.get_token_decimals(token)
        return self.from_base_units(raw, decimals)

    async def build_approval_call(
        self,
        token: str,
        owner: str,
        spender: str,
        amount: Decimal,
    ) -> ContractCall:
        """Build an SPL approve delegating exactly amount."""
        owner_key = Pubkey.from_string(owner)
        decimals = await self.get_token_decimals(token)
        instruction = approve(
            ApproveParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(owner_key, Pubkey.from_string(token)),
                delegate=Pubkey.from_string(spender),
                owner=owner_key,
                amount=self.to_base_units(amount, decimals),
            )
        )
        return instruction_to_call(instruction, "approve")

    # ==================== Network Operations ====================

    async def get_gas_price(self) -> int:
        """Solana charges a flat base fee per signature."""
        return LAMPORTS_PER_SIGNATURE

    async def get_current_block(self) -> int:
        self._ensure_initialized()
        client = self._get_client()
        response: Any = await self._call("get_slot", client.get_slot)
        return int(response.value)

    async def get_congestion_score(self, gas_price: int) -> float:
        """Score congestion from recent throughput against a 5000 TPS ceiling."""
        client = self._get_client()
        response: Any = await self._call(
            "get_recent_performance_samples", client.get_recent_performance_samples, 1
        )
        if not response.value:
            return 0.0
        sample = response.value[0]
        if not sample.sample_period_secs:
            return 0.0
        tps = sample.num_transactions / sample.sample_period_secs
        return float(min(100.0, max(0.0, tps / CONGESTION_TPS_CEILING * 100)))

    @property
    def congestion_threshold(self) -> float:
        return 70.0

    # ==================== Transaction Operations ====================

    async def estimate_call_gas(self, call: ContractCall, sender: str) -> int:
        """Compute units are budgeted, not metered per call in advance."""
        return DEFAULT_COMPUTE_UNITS

    async def submit_call(self, call: ContractCall, sender: str) -> str:
        self._ensure_initialized()
        client = self._get_client()
        instruction = call_to_instruction(call)

        blockhash_response: Any = await self._call(
            "get_latest_blockhash", client.get_latest_blockhash
        )
        message = Message.new_with_blockhash(
            [instruction],
            Pubkey.from_string(sender),
            blockhash_response.value.blockhash,
        )
        transaction = Transaction.new_unsigned(message)
        if call.ephemeral_signers:
            transaction.partial_sign(call.ephemeral_signers, blockhash_response.value.blockhash)
        raw = await self.signers.sign(self.network, sender, transaction)

        try:
            response: Any = await self._call(
                "send_raw_transaction", client.send_raw_transaction, raw
            )
        except ConnectorUnavailableError as e:
            signature = str(Transaction.from_bytes(raw).signatures[0])
            raise BroadcastUncertainError(
                f"Broadcast of {call.function_name} on {self.network.value} unconfirmed: {e}",
                tx_hash=signature,
            ) from e
        except RPCException as e:
            raise TransactionFailedError(
                f"{call.function_name} rejected by {self.network.value}: {e}"
            ) from e

        signature = str(response.value)
        logger.info(
            "solana_transaction_sent",
            network=self.network.value,
            function=call.function_name,
            tx_hash=signature,
        )
        return signature

    async def get_receipt(self, tx_hash: str) -> TransactionRecord | None:
        self._ensure_initialized()
        client = self._get_client()
        response: Any = await self._call(
            "get_signature_statuses",
            client.get_signature_statuses,
            [Signature.from_string(tx_hash)],
            search_transaction_history=True,
        )
        if not response.value or response.value[0] is None:
            return None

        status = response.value[0]
        return TransactionRecord(
            tx_hash=tx_hash,
            network=self.network,
            status="failed" if status.err else "success",
            block_number=int(status.slot),
        )

    # ==================== Block Subscriptions ====================

    async def subscribe_new_blocks(self) -> AsyncIterator[int]:
        """Yield slots from a slotSubscribe stream."""
        async with connect(self._ws_endpoint) as websocket:
            await websocket.slot_subscribe()
            await websocket.recv()
            logger.info("solana_subscription_opened", network=self.network.value)
            async for messages in websocket:
                for message in messages:
                    result = getattr(message, "result", None)
                    slot = getattr(result, "slot", None)
                    if slot is not None:
                        yield int(slot)


# ==================== Instruction Helpers ====================

def instruction_to_call(instruction: Instruction, function_name: str) -> ContractCall:
    return ContractCall(
        target=str(instruction.program_id),
        function_name=function_name,
        instruction_data=bytes(instruction.data),
        accounts=[
            {
                "pubkey": str(meta.pubkey),
                "is_signer": meta.is_signer,
                "is_writable": meta.is_writable,
            }
            for meta in instruction.accounts
        ],
    )


def call_to_instruction(call: ContractCall) -> Instruction:
    if call.instruction_data is None:
        raise ChainClientError(f"{call.function_name} has no instruction data for Solana")
    return Instruction(
        Pubkey.from_string(call.target),
        call.instruction_data,
        [
            AccountMeta(
                Pubkey.from_string(account["pubkey"]),
                is_signer=bool(account.get("is_signer", False)),
                is_writable=bool(account.get("is_writable", False)),
            )
            for account in call.accounts
        ],
    )
