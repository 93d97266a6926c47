"""
Shared fixtures for the bridge orchestrator tests.

Chains are simulated by FakeChainClient: an in-memory connector with a
controllable head, receipts that appear on submission and a push channel
that can be fed or dropped from the test.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

import omniflow.config as config_module
from omniflow.bridge.approval import ApprovalManager
from omniflow.bridge.finality import Attestation, FinalityPolicy
from omniflow.bridge.protocols import BridgeProtocolAdapter
from omniflow.bridge.routes import RouteRegistry
from omniflow.chains import (
    BaseChainClient,
    ConnectorUnavailableError,
    MultiChainManager,
    SignerRegistry,
    TransactionFailedError,
)
from omniflow.config import BridgeConfig, BridgeEnvironment, ChainNetwork
from omniflow.ledger import InMemoryTransferLedger
from omniflow.models import (
    BridgeProtocol,
    ContractCall,
    TransactionRecord,
    Transfer,
    TransferRequest,
)

SENDER = "0x1111111111111111111111111111111111111111"
EVM_RECIPIENT = "0x2222222222222222222222222222222222222222"
SOLANA_RECIPIENT = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


# ==================== Fakes ====================


class FakeChainClient(BaseChainClient):
    """In-memory chain connector."""

    def __init__(self, network: ChainNetwork, config: BridgeConfig):
        super().__init__(network, config, SignerRegistry())
        self.head = 100
        self.gas_price = 20 * 10**9
        self.decimals = 6
        self.call_gas = 50_000
        self.allowance = Decimal("0")
        self.receipts: dict[str, TransactionRecord] = {}
        self.submitted: list[tuple[ContractCall, str]] = []
        self.tx_hashes: list[str] = []
        self.include_on_submit = True
        self.revert_next = False
        self.submit_error: Exception | None = None
        self.offline = False
        self.head_errors: list[Exception] = []
        self.next_logs: list[dict[str, Any]] = []
        self.push_queue: asyncio.Queue[int | None] = asyncio.Queue()
        self.push_down = False
        self.push_sessions = 0

    async def initialize(self) -> None:
        self._initialized = True

    async def close(self) -> None:
        self._initialized = False

    def _check_online(self) -> None:
        if self.offline:
            raise ConnectorUnavailableError(f"{self.network.value} unreachable")

    async def get_balance(self, address: str, token: str | None = None) -> Decimal:
        self._check_online()
        return Decimal("1000")

    async def get_token_decimals(self, token: str) -> int:
        return self.decimals

    async def get_allowance(self, token: str, owner: str, spender: str) -> Decimal:
        self._check_online()
        return self.allowance

    async def build_approval_call(
        self, token: str, owner: str, spender: str, amount: Decimal
    ) -> ContractCall:
        return ContractCall(target=token, function_name="approve", args=[spender, amount])

    async def get_gas_price(self) -> int:
        self._check_online()
        return self.gas_price

    async def get_current_block(self) -> int:
        self._check_online()
        if self.head_errors:
            raise self.head_errors.pop(0)
        return self.head

    async def estimate_call_gas(self, call: ContractCall, sender: str) -> int:
        self._check_online()
        return self.call_gas

    async def submit_call(self, call: ContractCall, sender: str) -> str:
        self._check_online()
        if self.submit_error is not None:
            raise self.submit_error
        tx_hash = f"0x{self.network.value}{len(self.submitted):04d}"
        self.submitted.append((call, sender))
        self.tx_hashes.append(tx_hash)
        if call.function_name == "approve":
            self.allowance = Decimal(call.args[1])
        if self.include_on_submit:
            self.include(tx_hash)
        return tx_hash

    def include(self, tx_hash: str) -> None:
        """Mine tx_hash into the current head block."""
        status = "failed" if self.revert_next else "success"
        self.revert_next = False
        self.receipts[tx_hash] = TransactionRecord(
            tx_hash=tx_hash,
            network=self.network,
            status=status,
            block_number=self.head,
            logs=list(self.next_logs),
        )

    async def get_receipt(self, tx_hash: str) -> TransactionRecord | None:
        self._check_online()
        return self.receipts.get(tx_hash)

    async def subscribe_new_blocks(self) -> AsyncIterator[int]:
        self.push_sessions += 1
        if self.push_down:
            raise ConnectionError("push endpoint refused connection")
        while True:
            height = await self.push_queue.get()
            if height is None:
                raise ConnectionError("push socket dropped")
            yield height

    def mine(self, blocks: int = 1) -> int:
        self.head += blocks
        return self.head

    def push(self, height: int) -> None:
        self.push_queue.put_nowait(height)

    def drop_push(self) -> None:
        """Kill the live session and refuse reconnects."""
        self.push_down = True
        self.push_queue.put_nowait(None)


class StubFinality(FinalityPolicy):
    """Attestation becomes available once `ready` is set."""

    def __init__(self) -> None:
        self.ready = False
        self.checks = 0

    async def check(self, transfer: Transfer, source_height: int) -> Attestation | None:
        self.checks += 1
        if not self.ready:
            return None
        return Attestation(payload="0xabcdef", kind="stub", metadata={"checked_at": source_height})


class FakeAdapter(BridgeProtocolAdapter):
    """Protocol adapter that issues plain calls against the fake chains."""

    protocol = BridgeProtocol.WORMHOLE

    def __init__(self, config: BridgeConfig, finality: FinalityPolicy | None = None):
        super().__init__(config, finality or StubFinality())

    def spender(self, network: ChainNetwork) -> str:
        return f"{network.value}-bridge"

    async def build_source_call(self, transfer: Transfer, client: BaseChainClient) -> ContractCall:
        return ContractCall(
            target=self.spender(transfer.source_chain),
            function_name="transferTokens",
            args=[transfer.asset, str(transfer.amount)],
        )

    def extract_source_metadata(self, transfer: Transfer, receipt: TransactionRecord) -> dict:
        return {"wormhole_sequence": 42}

    async def build_destination_call(
        self, transfer: Transfer, client: BaseChainClient
    ) -> ContractCall:
        if not transfer.attestation_payload:
            raise TransactionFailedError("missing attestation")
        return ContractCall(
            target=f"{transfer.destination_chain.value}-bridge",
            function_name="completeTransfer",
            args=[transfer.attestation_payload],
        )


class FakeClock:
    """Settable clock for timing-dependent behaviour."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


# ==================== Fixtures ====================


@pytest.fixture(autouse=True)
def reset_global_config():
    """Reset the global bridge config before and after each test."""
    original = config_module._config
    config_module._config = None
    yield
    config_module._config = original


@pytest.fixture
def bridge_config():
    """Fast timings against the mainnet chain table."""
    return BridgeConfig(
        environment=BridgeEnvironment.PRODUCTION,
        enabled_chains=[ChainNetwork.ETHEREUM, ChainNetwork.SOLANA, ChainNetwork.POLYGON],
        rpc_retry_attempts=2,
        rpc_retry_min_wait=0,
        rpc_retry_max_wait=0,
        rpc_timeout_seconds=1,
        poll_interval_seconds=0.02,
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        status_timeout_seconds=0.2,
        attestation_poll_interval_seconds=0,
    )


@pytest.fixture
def fake_chains(bridge_config):
    """One FakeChainClient per enabled chain."""
    return {n: FakeChainClient(n, bridge_config) for n in bridge_config.enabled_chains}


@pytest.fixture
async def chain_manager(bridge_config, fake_chains):
    """Chain manager with the fake clients installed."""
    manager = MultiChainManager(bridge_config)
    for client in fake_chains.values():
        await client.initialize()
        manager.register_client(client)
    return manager


@pytest.fixture
def ledger():
    return InMemoryTransferLedger()


@pytest.fixture
def finality():
    return StubFinality()


@pytest.fixture
def adapters(bridge_config, finality):
    return {BridgeProtocol.WORMHOLE: FakeAdapter(bridge_config, finality)}


@pytest.fixture
def registry():
    return RouteRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def approvals(bridge_config):
    return ApprovalManager(bridge_config)


@pytest.fixture
def eth_to_sol_request():
    return TransferRequest(
        source_chain=ChainNetwork.ETHEREUM,
        destination_chain=ChainNetwork.SOLANA,
        asset="USDC",
        amount="100.00",
        sender_address=SENDER,
        recipient_address=SOLANA_RECIPIENT,
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(interval)
