"""
Bridge Protocol Adapters

Each adapter knows how to express the source-side lock/burn and the
destination-side mint/release for one protocol, which contract needs the
token allowance, what to pull out of the source receipt, and which
finality policy proves the source action to the destination chain.

Supported protocols:
- Wormhole token bridge (EVM and Solana)
- Circle CCTP (EVM to EVM, USDC only)
- Native bridges (listed, not executable)
"""

import hashlib
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import base58
import httpx
from eth_abi import decode
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import CLOCK, RENT
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address
from web3 import Web3

from ..chains.base_client import BaseChainClient
from ..chains.solana_client import instruction_to_call
from ..config import BridgeConfig, Chain, ChainNetwork
from ..models import BridgeProtocol, ContractCall, TransactionRecord, Transfer
from ..monitoring import get_logger
from .errors import (
    DestinationSubmissionError,
    InvalidAmountError,
    RouteNotSupportedError,
    SourceSubmissionError,
)
from .finality import (
    CircleAttestationPolicy,
    ConfirmationDepthPolicy,
    FinalityPolicy,
    WormholeVaaPolicy,
)

logger = get_logger(__name__)


# ==================== Contract Interfaces ====================

WORMHOLE_TOKEN_BRIDGE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "recipientChain", "type": "uint16"},
            {"name": "recipient", "type": "bytes32"},
            {"name": "arbiterFee", "type": "uint256"},
            {"name": "nonce", "type": "uint32"},
        ],
        "name": "transferTokens",
        "outputs": [{"name": "sequence", "type": "uint64"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "recipientChain", "type": "uint16"},
            {"name": "recipient", "type": "bytes32"},
            {"name": "arbiterFee", "type": "uint256"},
            {"name": "nonce", "type": "uint32"},
        ],
        "name": "wrapAndTransferETH",
        "outputs": [{"name": "sequence", "type": "uint64"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [{"name": "encodedVm", "type": "bytes"}],
        "name": "completeTransfer",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

CCTP_TOKEN_MESSENGER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
        ],
        "name": "depositForBurn",
        "outputs": [{"name": "_nonce", "type": "uint64"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

CCTP_MESSAGE_TRANSMITTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "name": "receiveMessage",
        "outputs": [{"name": "success", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# LogMessagePublished(address indexed sender, uint64 sequence, uint32 nonce, bytes payload, uint8)
LOG_MESSAGE_PUBLISHED_TOPIC = "0x6eb224fb001ed210e379b335e35efe88672a8ce935d981a6896b27ffdf52a3b2"

# MessageSent(bytes message)
MESSAGE_SENT_TOPIC = "0x8c5261668696ce22758910d05bab8f186d6eb247ceac2af2e82c7dc17669b036"

# Wormhole token bridge instruction indices on Solana
SOLANA_COMPLETE_NATIVE = 2
SOLANA_COMPLETE_WRAPPED = 3
SOLANA_TRANSFER_NATIVE = 5


# ==================== VAA Codec ====================

@dataclass(frozen=True)
class TokenTransferPayload:
    """Wormhole token bridge payload type 1."""

    amount: int
    token_address: bytes
    token_chain: int
    to: bytes
    to_chain: int
    fee: int


@dataclass(frozen=True)
class ParsedVaa:
    """A guardian-signed Wormhole message."""

    version: int
    guardian_set_index: int
    signature_count: int
    timestamp: int
    nonce: int
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    consistency_level: int
    body: bytes
    payload: bytes

    @property
    def digest(self) -> bytes:
        return bytes(Web3.keccak(self.body))

    def token_transfer(self) -> TokenTransferPayload:
        payload = self.payload
        if len(payload) < 133 or payload[0] not in (1, 3):
            raise ValueError("VAA does not carry a token transfer")
        return TokenTransferPayload(
            amount=int.from_bytes(payload[1:33], "big"),
            token_address=payload[33:65],
            token_chain=int.from_bytes(payload[65:67], "big"),
            to=payload[67:99],
            to_chain=int.from_bytes(payload[99:101], "big"),
            fee=int.from_bytes(payload[101:133], "big"),
        )


def parse_vaa(raw: bytes) -> ParsedVaa:
    """
    Decode a VAA.

    Layout: version u8, guardian set u32, signature count u8, 66-byte
    signatures, then the body (timestamp u32, nonce u32, emitter chain
    u16, emitter address 32 bytes, sequence u64, consistency u8, payload).
    """
    if len(raw) < 6:
        raise ValueError("VAA too short")
    version, guardian_set_index, signature_count = struct.unpack(">BIB", raw[:6])
    body_offset = 6 + signature_count * 66
    body = raw[body_offset:]
    if len(body) < 51:
        raise ValueError("VAA body truncated")
    timestamp, nonce, emitter_chain = struct.unpack(">IIH", body[:10])
    emitter_address = body[10:42]
    sequence, consistency_level = struct.unpack(">QB", body[42:51])
    return ParsedVaa(
        version=version,
        guardian_set_index=guardian_set_index,
        signature_count=signature_count,
        timestamp=timestamp,
        nonce=nonce,
        emitter_chain=emitter_chain,
        emitter_address=emitter_address,
        sequence=sequence,
        consistency_level=consistency_level,
        body=body,
        payload=body[51:],
    )


# ==================== Address Helpers ====================

def evm_address_to_bytes32(address: str) -> bytes:
    return bytes.fromhex(address.removeprefix("0x").rjust(64, "0"))


def solana_address_to_bytes32(address: str) -> bytes:
    decoded: bytes = base58.b58decode(address)
    if len(decoded) != 32:
        raise ValueError(f"Invalid Solana address: {address}")
    return decoded


def transfer_nonce(transfer_id: str) -> int:
    """Stable u32 nonce per transfer so a resubmission carries the same nonce."""
    return int.from_bytes(hashlib.sha256(transfer_id.encode()).digest()[:4], "big")


def check_amount_precision(amount: Decimal, decimals: int, asset: str) -> None:
    """Raise InvalidAmountError when amount has more places than decimals."""
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > decimals:
        raise InvalidAmountError(
            f"{asset} amounts support at most {decimals} decimal places, got {amount}"
        )


def _pda(seeds: list[bytes], program: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(seeds, program)[0]


def wormhole_wrapped_mint(token_bridge: Pubkey, token_chain: int, token_address: bytes) -> Pubkey:
    return _pda([b"wrapped", token_chain.to_bytes(2, "big"), token_address], token_bridge)


def _solana_programs(config: BridgeConfig) -> tuple[Pubkey, Pubkey]:
    contracts = config.get_chain(ChainNetwork.SOLANA).contracts
    return (
        Pubkey.from_string(contracts["wormhole_token_bridge"]),
        Pubkey.from_string(contracts["wormhole_core"]),
    )


def _account(pubkey: Pubkey, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey, is_signer=signer, is_writable=writable)


# ==================== Adapters ====================

class BridgeProtocolAdapter(ABC):
    """Protocol-specific half of the transfer state machine."""

    protocol: BridgeProtocol
    # Decimal places carried on the wire; None defers to the token's decimals
    max_amount_decimals: int | None = None

    def __init__(self, config: BridgeConfig, finality: FinalityPolicy):
        self.config = config
        self.finality = finality

    def check_precision(self, amount: Decimal, asset: str) -> None:
        """Protocol-level precision check that needs no chain access."""
        if self.max_amount_decimals is not None:
            check_amount_precision(amount, self.max_amount_decimals, asset)

    async def validate_amount(self, transfer: Transfer, client: BaseChainClient) -> None:
        """
        Reject amounts finer than the source asset or the protocol can carry.

        Raises:
            InvalidAmountError: If the amount would be rounded in base units
        """
        token = client.resolve_token(transfer.asset)
        if token is None:
            decimals = client.chain.native_decimals
        else:
            decimals = await client.get_token_decimals(token)
        if self.max_amount_decimals is not None:
            decimals = min(decimals, self.max_amount_decimals)
        check_amount_precision(transfer.amount, decimals, transfer.asset)

    def _chain(self, network: ChainNetwork) -> Chain:
        return self.config.get_chain(network)

    @abstractmethod
    def spender(self, network: ChainNetwork) -> str:
        """Address that must hold the token allowance on network."""
        pass

    @abstractmethod
    async def build_source_call(self, transfer: Transfer, client: BaseChainClient) -> ContractCall:
        """Lock or burn transfer.amount on the source chain."""
        pass

    def extract_source_metadata(
        self,
        transfer: Transfer,
        receipt: TransactionRecord,
    ) -> dict[str, Any]:
        """Protocol data from the included source transaction."""
        return {}

    @abstractmethod
    async def build_destination_call(
        self,
        transfer: Transfer,
        client: BaseChainClient,
    ) -> ContractCall:
        """Mint or release on the destination chain using transfer.attestation_payload."""
        pass

    async def close(self) -> None:
        await self.finality.close()


class WormholeAdapter(BridgeProtocolAdapter):
    """Wormhole token bridge: lock on source, VAA, redeem on destination."""

    protocol = BridgeProtocol.WORMHOLE
    # Token bridge payloads normalize amounts to 8 decimals
    max_amount_decimals = 8

    def spender(self, network: ChainNetwork) -> str:
        if network == ChainNetwork.SOLANA:
            token_bridge, _ = _solana_programs(self.config)
            return str(_pda([b"authority_signer"], token_bridge))
        return self._chain(network).contracts["wormhole_token_bridge"]

    async def build_source_call(self, transfer: Transfer, client: BaseChainClient) -> ContractCall:
        if transfer.source_chain == ChainNetwork.SOLANA:
            return await self._build_solana_transfer(transfer, client)
        return await self._build_evm_transfer(transfer, client)

    async def _recipient_bytes32(self, transfer: Transfer, client: BaseChainClient) -> bytes:
        """
        Encode the recipient for the VAA.

        Solana recipients receive into the token account for the wrapped
        mint, so the source side commits to that account.
        """
        if transfer.destination_chain != ChainNetwork.SOLANA:
            return evm_address_to_bytes32(transfer.recipient_address)

        token = client.resolve_token(transfer.asset)
        if token is None:
            raise SourceSubmissionError("Native currency cannot be bridged to Solana")
        token_bridge, _ = _solana_programs(self.config)
        origin_chain = self._chain(transfer.source_chain).wormhole_chain_id
        mint = wormhole_wrapped_mint(token_bridge, origin_chain, evm_address_to_bytes32(token))
        owner = Pubkey.from_string(transfer.recipient_address)
        return bytes(get_associated_token_address(owner, mint))

    async def _build_evm_transfer(
        self, transfer: Transfer, client: BaseChainClient
    ) -> ContractCall:
        bridge = self._chain(transfer.source_chain).contracts["wormhole_token_bridge"]
        recipient_chain = self._chain(transfer.destination_chain).wormhole_chain_id
        recipient = await self._recipient_bytes32(transfer, client)
        nonce = transfer_nonce(transfer.id)
        token = client.resolve_token(transfer.asset)

        if token is None:
            amount = client.to_base_units(transfer.amount, client.chain.native_decimals)
            return ContractCall(
                target=bridge,
                function_name="wrapAndTransferETH",
                args=[recipient_chain, recipient, 0, nonce],
                abi=WORMHOLE_TOKEN_BRIDGE_ABI,
                value=amount + self.config.wormhole_message_fee_wei,
            )

        decimals = await client.get_token_decimals(token)
        return ContractCall(
            target=bridge,
            function_name="transferTokens",
            args=[
                Web3.to_checksum_address(token),
                client.to_base_units(transfer.amount, decimals),
                recipient_chain,
                recipient,
                0,
                nonce,
            ],
            abi=WORMHOLE_TOKEN_BRIDGE_ABI,
            value=self.config.wormhole_message_fee_wei,
        )

    async def _build_solana_transfer(
        self,
        transfer: Transfer,
        client: BaseChainClient,
    ) -> ContractCall:
        """TransferNative: lock an SPL token in custody and publish a message."""
        mint_address = client.resolve_token(transfer.asset)
        if mint_address is None:
            raise SourceSubmissionError("Bridging SOL requires wrapping it first")

        token_bridge, core = _solana_programs(self.config)
        payer = Pubkey.from_string(transfer.sender_address)
        mint = Pubkey.from_string(mint_address)
        emitter = _pda([b"emitter"], token_bridge)
        message = Keypair()

        decimals = await client.get_token_decimals(mint_address)
        data = bytes([SOLANA_TRANSFER_NATIVE]) + struct.pack(
            "<IQQ",
            transfer_nonce(transfer.id),
            client.to_base_units(transfer.amount, decimals),
            0,
        ) + evm_address_to_bytes32(transfer.recipient_address) + struct.pack(
            "<H", self._chain(transfer.destination_chain).wormhole_chain_id
        )

        instruction = Instruction(
            token_bridge,
            data,
            [
                _account(payer, signer=True, writable=True),
                _account(_pda([b"config"], token_bridge)),
                _account(get_associated_token_address(payer, mint), writable=True),
                _account(mint, writable=True),
                _account(_pda([bytes(mint)], token_bridge), writable=True),
                _account(_pda([b"authority_signer"], token_bridge)),
                _account(_pda([b"custody_signer"], token_bridge)),
                _account(_pda([b"Bridge"], core), writable=True),
                _account(message.pubkey(), signer=True, writable=True),
                _account(emitter),
                _account(_pda([b"Sequence", bytes(emitter)], core), writable=True),
                _account(_pda([b"fee_collector"], core), writable=True),
                _account(CLOCK),
                _account(RENT),
                _account(SYSTEM_PROGRAM_ID),
                _account(core),
                _account(TOKEN_PROGRAM_ID),
            ],
        )
        call = instruction_to_call(instruction, "transfer_native")
        call.ephemeral_signers.append(message)
        return call

    def extract_source_metadata(
        self,
        transfer: Transfer,
        receipt: TransactionRecord,
    ) -> dict[str, Any]:
        """Read sequence and emitter from the core bridge's LogMessagePublished."""
        for log in receipt.logs:
            topics = log.get("topics") or []
            if not topics or topics[0].lower() != LOG_MESSAGE_PUBLISHED_TOPIC:
                continue
            sequence, _nonce, _payload, _consistency = decode(
                ["uint64", "uint32", "bytes", "uint8"],
                bytes.fromhex(log["data"].removeprefix("0x")),
            )
            return {
                "wormhole_sequence": int(sequence),
                "wormhole_emitter": topics[1].removeprefix("0x").rjust(64, "0"),
            }
        return {}

    async def build_destination_call(
        self,
        transfer: Transfer,
        client: BaseChainClient,
    ) -> ContractCall:
        if not transfer.attestation_payload:
            raise DestinationSubmissionError("No VAA recorded for transfer")
        vaa = bytes.fromhex(transfer.attestation_payload.removeprefix("0x"))

        if transfer.destination_chain == ChainNetwork.SOLANA:
            return self._build_solana_redeem(transfer, vaa)

        return ContractCall(
            target=self._chain(transfer.destination_chain).contracts["wormhole_token_bridge"],
            function_name="completeTransfer",
            args=[vaa],
            abi=WORMHOLE_TOKEN_BRIDGE_ABI,
        )

    def _build_solana_redeem(self, transfer: Transfer, raw_vaa: bytes) -> ContractCall:
        """
        CompleteNative / CompleteWrapped against an already posted VAA.

        The VAA must have been verified and posted to the core bridge
        (PostedVAA account) by the wallet layer's relayer before this call.
        """
        try:
            vaa = parse_vaa(raw_vaa)
            payload = vaa.token_transfer()
        except ValueError as e:
            raise DestinationSubmissionError(f"Malformed VAA: {e}") from e

        token_bridge, core = _solana_programs(self.config)
        payer = Pubkey.from_string(transfer.recipient_address)
        emitter_chain = vaa.emitter_chain.to_bytes(2, "big")
        posted_vaa = _pda([b"PostedVAA", vaa.digest], core)
        claim = _pda(
            [vaa.emitter_address, emitter_chain, vaa.sequence.to_bytes(8, "big")], token_bridge
        )
        endpoint = _pda([emitter_chain, vaa.emitter_address], token_bridge)
        to = Pubkey(payload.to)
        head = [
            _account(payer, signer=True, writable=True),
            _account(_pda([b"config"], token_bridge)),
            _account(posted_vaa),
            _account(claim, writable=True),
            _account(endpoint),
            _account(to, writable=True),
        ]
        tail = [
            _account(RENT),
            _account(SYSTEM_PROGRAM_ID),
            _account(core),
            _account(TOKEN_PROGRAM_ID),
        ]

        if payload.token_chain == self._chain(ChainNetwork.SOLANA).wormhole_chain_id:
            mint = Pubkey(payload.token_address)
            accounts = head + [
                _account(get_associated_token_address(payer, mint), writable=True),
                _account(_pda([bytes(mint)], token_bridge), writable=True),
                _account(mint),
                _account(_pda([b"custody_signer"], token_bridge)),
            ] + tail
            index, name = SOLANA_COMPLETE_NATIVE, "complete_native"
        else:
            mint = wormhole_wrapped_mint(token_bridge, payload.token_chain, payload.token_address)
            accounts = head + [
                _account(get_associated_token_address(payer, mint), writable=True),
                _account(mint, writable=True),
                _account(_pda([b"meta", bytes(mint)], token_bridge)),
                _account(_pda([b"mint_signer"], token_bridge)),
            ] + tail
            index, name = SOLANA_COMPLETE_WRAPPED, "complete_wrapped"

        return instruction_to_call(Instruction(token_bridge, bytes([index]), accounts), name)


class CctpAdapter(BridgeProtocolAdapter):
    """Circle CCTP: burn USDC on source, Circle attestation, mint on destination."""

    protocol = BridgeProtocol.CCTP

    def spender(self, network: ChainNetwork) -> str:
        return self._chain(network).contracts["cctp_token_messenger"]

    async def build_source_call(self, transfer: Transfer, client: BaseChainClient) -> ContractCall:
        source = self._chain(transfer.source_chain)
        destination = self._chain(transfer.destination_chain)
        if not (source.is_evm and destination.is_evm) or destination.cctp_domain is None:
            raise RouteNotSupportedError(
                f"CCTP transfers from {source.name} to {destination.name} are not supported"
            )

        token = client.resolve_token(transfer.asset)
        if token is None or token.lower() != source.tokens.get("USDC", "").lower():
            raise SourceSubmissionError("CCTP only moves USDC")

        decimals = await client.get_token_decimals(token)
        return ContractCall(
            target=source.contracts["cctp_token_messenger"],
            function_name="depositForBurn",
            args=[
                client.to_base_units(transfer.amount, decimals),
                destination.cctp_domain,
                evm_address_to_bytes32(transfer.recipient_address),
                Web3.to_checksum_address(token),
            ],
            abi=CCTP_TOKEN_MESSENGER_ABI,
        )

    def extract_source_metadata(
        self,
        transfer: Transfer,
        receipt: TransactionRecord,
    ) -> dict[str, Any]:
        """Pull the burn message out of MessageSent and hash it for Circle."""
        for log in receipt.logs:
            topics = log.get("topics") or []
            if not topics or topics[0].lower() != MESSAGE_SENT_TOPIC:
                continue
            (message,) = decode(["bytes"], bytes.fromhex(log["data"].removeprefix("0x")))
            return {
                "cctp_message": "0x" + message.hex(),
                "cctp_message_hash": Web3.to_hex(Web3.keccak(message)),
            }
        return {}

    async def build_destination_call(
        self,
        transfer: Transfer,
        client: BaseChainClient,
    ) -> ContractCall:
        message = transfer.metadata.get("cctp_message")
        if not message or not transfer.attestation_payload:
            raise DestinationSubmissionError("CCTP message or attestation missing")
        return ContractCall(
            target=self._chain(transfer.destination_chain).contracts["cctp_message_transmitter"],
            function_name="receiveMessage",
            args=[
                bytes.fromhex(message.removeprefix("0x")),
                bytes.fromhex(transfer.attestation_payload.removeprefix("0x")),
            ],
            abi=CCTP_MESSAGE_TRANSMITTER_ABI,
        )


class NativeBridgeAdapter(BridgeProtocolAdapter):
    """
    Chain-operated bridges finalized by confirmation depth.

    No native bridge contract is integrated yet, so these routes are
    listed as unsupported and never reach submission.
    """

    protocol = BridgeProtocol.NATIVE

    def spender(self, network: ChainNetwork) -> str:
        address = self._chain(network).contracts.get("native_bridge")
        if not address:
            raise RouteNotSupportedError(f"No native bridge configured on {network.value}")
        return address

    async def build_source_call(self, transfer: Transfer, client: BaseChainClient) -> ContractCall:
        raise RouteNotSupportedError("Native bridge transfers are not implemented")

    async def build_destination_call(
        self,
        transfer: Transfer,
        client: BaseChainClient,
    ) -> ContractCall:
        raise RouteNotSupportedError("Native bridge transfers are not implemented")


def build_protocol_adapters(
    config: BridgeConfig,
    http_client: httpx.AsyncClient | None = None,
) -> dict[BridgeProtocol, BridgeProtocolAdapter]:
    """One adapter per protocol, sharing an optional HTTP client."""
    interval = config.attestation_poll_interval_seconds
    return {
        BridgeProtocol.WORMHOLE: WormholeAdapter(
            config, WormholeVaaPolicy(config, http_client, min_check_interval=interval)
        ),
        BridgeProtocol.CCTP: CctpAdapter(
            config, CircleAttestationPolicy(config, http_client, min_check_interval=interval)
        ),
        BridgeProtocol.NATIVE: NativeBridgeAdapter(config, ConfirmationDepthPolicy()),
    }
