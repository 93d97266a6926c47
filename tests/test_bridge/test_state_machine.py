"""
Tests for the Transfer State Machine.

Transfers are driven against FakeChainClient instances; block heights are
delivered by calling on_block() directly instead of through the monitor.
"""

import asyncio
from decimal import Decimal

import pytest
import structlog

from omniflow.bridge.errors import (
    CancellationNotAllowedError,
    InvalidAmountError,
    InvalidRequestError,
    RouteNotSupportedError,
)
from omniflow.bridge.state_machine import TransferStateMachine
from omniflow.chains import BroadcastUncertainError, TransactionFailedError
from omniflow.config import ChainNetwork
from omniflow.models import (
    BridgeProtocol,
    FailureReason,
    TransferRequest,
    TransferStatus,
)

from ..conftest import EVM_RECIPIENT, SENDER, SOLANA_RECIPIENT, FakeAdapter, wait_until

E = ChainNetwork.ETHEREUM
P = ChainNetwork.POLYGON
B = ChainNetwork.BSC
S = ChainNetwork.SOLANA


# ==================== Fixtures ====================


@pytest.fixture
def create_machine(registry, ledger, chain_manager, adapters, approvals, bridge_config, clock):
    """Factory for state machines sharing the test's fakes."""

    async def _create(request, adapter_map=None):
        return await TransferStateMachine.create(
            request,
            registry=registry,
            ledger=ledger,
            chain_manager=chain_manager,
            adapters=adapter_map if adapter_map is not None else adapters,
            approvals=approvals,
            config=bridge_config,
            clock=clock,
        )

    return _create


@pytest.fixture
async def awaiting(create_machine, eth_to_sol_request):
    """A machine parked in awaiting_attestation."""
    machine = await create_machine(eth_to_sol_request)
    await machine.advance()
    assert machine.status == TransferStatus.AWAITING_ATTESTATION
    return machine


def _request(source, destination, recipient=None, amount="100.00", asset="USDC"):
    return TransferRequest(
        source_chain=source,
        destination_chain=destination,
        asset=asset,
        amount=amount,
        sender_address=SENDER,
        recipient_address=recipient,
    )


# ==================== Creation Tests ====================


class TestCreate:
    """Tests for TransferStateMachine.create."""

    async def test_created_record(self, create_machine, eth_to_sol_request, ledger, clock):
        """Test the created record is written before any chain call."""
        machine = await create_machine(eth_to_sol_request)
        transfer = machine.transfer

        assert transfer.status == TransferStatus.CREATED
        assert transfer.protocol == BridgeProtocol.WORMHOLE
        assert transfer.progress_fraction == 0.0
        assert transfer.created_at == clock.now
        assert (transfer.estimated_completion_at - clock.now).total_seconds() == 12 * 60
        assert transfer.destination_tx_hash is None
        assert [h.status for h in transfer.history] == [TransferStatus.CREATED]
        assert await ledger.get(transfer.id) == transfer

    async def test_no_chain_calls_on_create(self, create_machine, eth_to_sol_request, fake_chains):
        """Test creation does not touch any chain."""
        await create_machine(eth_to_sol_request)
        assert all(not c.submitted for c in fake_chains.values())

    async def test_non_positive_amount(self, create_machine, ledger):
        """Test zero amounts are rejected."""
        with pytest.raises(InvalidAmountError):
            await create_machine(_request(E, S, SOLANA_RECIPIENT, amount="0"))
        assert len(ledger) == 0

    async def test_amount_finer_than_protocol(self, create_machine, ledger, bridge_config):
        """Test amounts beyond the protocol's wire precision are rejected up front."""
        capped = FakeAdapter(bridge_config)
        capped.max_amount_decimals = 8

        with pytest.raises(InvalidAmountError):
            await create_machine(
                _request(E, S, SOLANA_RECIPIENT, amount="0.000000001"),
                {BridgeProtocol.WORMHOLE: capped},
            )
        assert len(ledger) == 0

    async def test_same_chain(self, create_machine, ledger):
        """Test source and destination must differ."""
        with pytest.raises(InvalidRequestError):
            await create_machine(_request(E, E, EVM_RECIPIENT))
        assert len(ledger) == 0

    async def test_unsupported_route(self, create_machine, ledger):
        """Test listed-but-unsupported routes cannot be executed."""
        with pytest.raises(RouteNotSupportedError):
            await create_machine(_request(E, B, EVM_RECIPIENT))
        assert len(ledger) == 0

    async def test_missing_adapter(self, create_machine):
        """Test a route whose protocol has no adapter is rejected."""
        with pytest.raises(RouteNotSupportedError):
            await create_machine(_request(E, P, EVM_RECIPIENT))

    async def test_cross_family_requires_recipient(self, create_machine, ledger):
        """Test EVM to Solana needs an explicit recipient."""
        with pytest.raises(InvalidRequestError):
            await create_machine(_request(E, S))
        assert len(ledger) == 0

    async def test_recipient_defaults_to_sender(self, create_machine, adapters, bridge_config):
        """Test same-family transfers default the recipient to the sender."""
        cctp = FakeAdapter(bridge_config)
        cctp.protocol = BridgeProtocol.CCTP
        machine = await create_machine(
            _request(E, P), adapter_map={**adapters, BridgeProtocol.CCTP: cctp}
        )

        assert machine.transfer.recipient_address == SENDER
        assert machine.transfer.protocol == BridgeProtocol.CCTP


# ==================== Lifecycle Tests ====================


class TestLifecycle:
    """Tests for the full transfer lifecycle."""

    async def test_ethereum_to_solana(
        self, create_machine, eth_to_sol_request, finality, fake_chains, ledger
    ):
        """Test a transfer runs from created to completed."""
        machine = await create_machine(eth_to_sol_request)
        seen = []
        machine.subscribe(lambda t: seen.append(t))

        await machine.advance()
        transfer = machine.transfer
        assert transfer.status == TransferStatus.AWAITING_ATTESTATION
        assert transfer.approval_tx_hash is not None
        assert transfer.source_tx_hash is not None
        assert transfer.source_block_number == 100
        assert transfer.metadata["wormhole_sequence"] == 42
        assert transfer.destination_tx_hash is None

        finality.ready = True
        assert machine.on_block(E, 101) is True
        await machine.wait_idle()
        transfer = machine.transfer
        assert transfer.status == TransferStatus.SUBMITTED_DESTINATION
        assert transfer.attestation_payload == "0xabcdef"
        assert transfer.metadata["attestation_kind"] == "stub"
        assert transfer.pending_destination_tx_hash is not None
        assert transfer.destination_tx_hash is None

        # 31 blocks on top of inclusion: not final on Solana yet
        machine.on_block(S, 130)
        await machine.wait_idle()
        assert machine.status == TransferStatus.SUBMITTED_DESTINATION

        machine.on_block(S, 131)
        await machine.wait_idle()
        transfer = machine.transfer
        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.destination_tx_hash == transfer.pending_destination_tx_hash
        assert transfer.progress_fraction == 1.0
        assert [h.status for h in transfer.history] == [
            TransferStatus.CREATED,
            TransferStatus.APPROVING,
            TransferStatus.SUBMITTED_SOURCE,
            TransferStatus.AWAITING_ATTESTATION,
            TransferStatus.ATTESTED,
            TransferStatus.SUBMITTED_DESTINATION,
            TransferStatus.COMPLETED,
        ]
        assert await ledger.get(transfer.id) == transfer

        progress = [t.progress_fraction for t in seen]
        assert progress == sorted(progress)
        assert all(t.destination_tx_hash is None for t in seen[:-1])

    async def test_destination_submitted_by_recipient(self, awaiting, finality, fake_chains):
        """Test the redeem transaction is signed as the recipient."""
        finality.ready = True
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        call, sender = fake_chains[S].submitted[0]
        assert call.function_name == "completeTransfer"
        assert sender == SOLANA_RECIPIENT

    async def test_existing_allowance_skips_approval(
        self, create_machine, eth_to_sol_request, fake_chains
    ):
        """Test no approval transaction when the allowance suffices."""
        fake_chains[E].allowance = Decimal("1000")
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        assert machine.transfer.approval_tx_hash is None
        assert [c.function_name for c, _ in fake_chains[E].submitted] == ["transferTokens"]

    async def test_waits_for_source_inclusion(
        self, create_machine, eth_to_sol_request, fake_chains
    ):
        """Test the machine parks in submitted_source until the receipt appears."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].include_on_submit = False
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()
        assert machine.status == TransferStatus.SUBMITTED_SOURCE

        fake_chains[E].include(machine.transfer.source_tx_hash)
        machine.on_block(E, 101)
        await machine.wait_idle()
        assert machine.status == TransferStatus.AWAITING_ATTESTATION

    async def test_async_listener_sees_persisted_state(
        self, create_machine, eth_to_sol_request, ledger
    ):
        """Test listeners run after the ledger write."""
        machine = await create_machine(eth_to_sol_request)
        mismatches = []

        async def listener(transfer):
            stored = await ledger.get(transfer.id)
            if stored.status != transfer.status:
                mismatches.append(transfer.status)

        machine.subscribe(listener)
        await machine.advance()
        assert mismatches == []

    async def test_failing_listener_does_not_stop_driver(
        self, create_machine, eth_to_sol_request
    ):
        """Test a raising listener is logged and ignored."""
        machine = await create_machine(eth_to_sol_request)

        def broken(transfer):
            raise RuntimeError("listener bug")

        machine.subscribe(broken)
        await machine.advance()
        assert machine.status == TransferStatus.AWAITING_ATTESTATION

    async def test_driver_binds_transfer_context(self, create_machine, eth_to_sol_request):
        """Test log context carries the transfer while the driver runs."""
        machine = await create_machine(eth_to_sol_request)
        seen = []
        machine.subscribe(lambda t: seen.append(structlog.contextvars.get_contextvars()))

        await machine.advance()

        assert seen[0]["transfer_id"] == machine.transfer_id
        assert seen[0]["route"] == "ethereum->solana"
        assert seen[0]["protocol"] == "wormhole"
        assert "transfer_id" not in structlog.contextvars.get_contextvars()

    async def test_unsubscribe(self, create_machine, eth_to_sol_request):
        """Test an unsubscribed listener is not called."""
        machine = await create_machine(eth_to_sol_request)
        seen = []
        unsubscribe = machine.subscribe(seen.append)
        unsubscribe()

        await machine.advance()
        assert seen == []


# ==================== Block Event Tests ====================


class TestBlockEvents:
    """Tests for on_block filtering."""

    async def test_duplicate_and_stale_heights_ignored(self, awaiting):
        """Test heights at or below the last seen one are no-ops."""
        assert awaiting.on_block(E, 105) is True
        assert awaiting.on_block(E, 105) is False
        assert awaiting.on_block(E, 104) is False
        assert awaiting.observed_height(E) == 105
        await awaiting.wait_idle()

    async def test_unrelated_chain_ignored(self, awaiting):
        """Test events from chains the transfer does not use are dropped."""
        assert awaiting.on_block(B, 500) is False
        assert awaiting.observed_height(B) is None

    async def test_terminal_machine_ignores_blocks(self, create_machine, eth_to_sol_request):
        """Test a failed transfer no longer reacts to blocks."""
        machine = await create_machine(eth_to_sol_request)
        await machine.cancel()

        assert machine.on_block(E, 200) is False
        machine.schedule()
        assert machine.status == TransferStatus.FAILED


# ==================== Failure Tests ====================


class TestFailures:
    """Tests for failure reasons."""

    async def test_approval_reverts(self, create_machine, eth_to_sol_request, fake_chains):
        """Test a reverted approval fails with approval_failed."""
        fake_chains[E].revert_next = True
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        transfer = machine.transfer
        assert transfer.status == TransferStatus.FAILED
        assert transfer.failure_reason == FailureReason.APPROVAL_FAILED
        assert transfer.source_tx_hash is None

    async def test_amount_finer_than_token(self, create_machine, fake_chains):
        """Test sub-unit amounts fail with invalid_amount before any approval."""
        machine = await create_machine(_request(E, S, SOLANA_RECIPIENT, amount="0.0000001"))
        await machine.advance()

        transfer = machine.transfer
        assert transfer.status == TransferStatus.FAILED
        assert transfer.failure_reason == FailureReason.INVALID_AMOUNT
        assert "6 decimal places" in transfer.error_message
        assert transfer.approval_tx_hash is None
        assert not fake_chains[E].submitted

    async def test_connector_unavailable(self, create_machine, eth_to_sol_request, fake_chains):
        """Test an unreachable source chain fails with connector_unavailable."""
        fake_chains[E].offline = True
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        assert machine.transfer.failure_reason == FailureReason.CONNECTOR_UNAVAILABLE

    async def test_source_rejected(self, create_machine, eth_to_sol_request, fake_chains):
        """Test a rejected source transaction fails with source_submission_failed."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].submit_error = TransactionFailedError("nonce too low")
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        transfer = machine.transfer
        assert transfer.failure_reason == FailureReason.SOURCE_SUBMISSION_FAILED
        assert "nonce too low" in transfer.error_message

    async def test_broadcast_timeout_keeps_signed_hash(
        self, create_machine, eth_to_sol_request, fake_chains, ledger
    ):
        """Test a timed-out broadcast parks in submitted_source under the signed hash."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].submit_error = BroadcastUncertainError("timed out", tx_hash="0xsigned")
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        transfer = await ledger.get(machine.transfer_id)
        assert transfer.status == TransferStatus.SUBMITTED_SOURCE
        assert transfer.source_tx_hash == "0xsigned"
        assert transfer.failure_reason is None
        assert transfer.history[-1].note == "broadcast unconfirmed"

        fake_chains[E].include("0xsigned")
        machine.on_block(E, 101)
        await machine.wait_idle()
        assert machine.status == TransferStatus.AWAITING_ATTESTATION

    async def test_broadcast_timeout_then_revert(
        self, create_machine, eth_to_sol_request, fake_chains
    ):
        """Test the receipt of an unconfirmed broadcast still decides failure."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].submit_error = BroadcastUncertainError("timed out", tx_hash="0xsigned")
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        fake_chains[E].revert_next = True
        fake_chains[E].include("0xsigned")
        machine.on_block(E, 101)
        await machine.wait_idle()

        assert machine.transfer.failure_reason == FailureReason.SOURCE_SUBMISSION_FAILED
        assert machine.transfer.source_tx_hash == "0xsigned"

    async def test_source_reverts(self, create_machine, eth_to_sol_request, fake_chains):
        """Test a reverted source transaction keeps its hash on the record."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].revert_next = True
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        transfer = machine.transfer
        assert transfer.status == TransferStatus.FAILED
        assert transfer.failure_reason == FailureReason.SOURCE_SUBMISSION_FAILED
        assert transfer.source_tx_hash is not None

    async def test_destination_reverts(self, awaiting, finality, fake_chains):
        """Test a reverted redeem fails with destination_submission_failed."""
        fake_chains[S].revert_next = True
        finality.ready = True
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        transfer = awaiting.transfer
        assert transfer.failure_reason == FailureReason.DESTINATION_SUBMISSION_FAILED
        assert transfer.destination_tx_hash is None

    async def test_destination_unreachable(self, awaiting, finality, fake_chains):
        """Test an unreachable destination fails with connector_unavailable."""
        fake_chains[S].offline = True
        finality.ready = True
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        assert awaiting.transfer.failure_reason == FailureReason.CONNECTOR_UNAVAILABLE

    async def test_receipt_lookup_failure_defers(
        self, create_machine, eth_to_sol_request, fake_chains
    ):
        """Test a failed receipt read leaves the transfer waiting."""
        fake_chains[E].allowance = Decimal("1000")
        fake_chains[E].include_on_submit = False
        machine = await create_machine(eth_to_sol_request)
        await machine.advance()

        fake_chains[E].offline = True
        machine.on_block(E, 101)
        await machine.wait_idle()
        assert machine.status == TransferStatus.SUBMITTED_SOURCE

    async def test_progress_kept_on_failure(self, awaiting, finality, fake_chains):
        """Test failing never lowers the progress fraction."""
        before = awaiting.transfer.progress_fraction
        fake_chains[S].revert_next = True
        finality.ready = True
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        assert awaiting.transfer.progress_fraction >= before


# ==================== Attestation Window Tests ====================


class TestAttestationWindow:
    """Tests for the overdue attestation flag."""

    async def test_within_window(self, awaiting, clock):
        """Test no flag before nominal time times the multiplier."""
        clock.advance(30)
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        assert awaiting.transfer.attestation_overdue is False

    async def test_overdue_flag(self, awaiting, clock, ledger):
        """Test an overdue attestation is flagged, not failed."""
        clock.advance(12 * 3 + 1)
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        transfer = awaiting.transfer
        assert transfer.status == TransferStatus.AWAITING_ATTESTATION
        assert transfer.attestation_overdue is True
        assert transfer.metadata["warning"] == "attestation_timeout"
        assert (await ledger.get(transfer.id)).attestation_overdue is True

    async def test_overdue_transfer_still_completes(self, awaiting, clock, finality):
        """Test a late attestation still moves the transfer on."""
        clock.advance(60)
        awaiting.on_block(E, 101)
        await awaiting.wait_idle()

        finality.ready = True
        awaiting.on_block(E, 102)
        await awaiting.wait_idle()
        assert awaiting.status == TransferStatus.SUBMITTED_DESTINATION


# ==================== Cancellation Tests ====================


class TestCancel:
    """Tests for cancellation."""

    async def test_cancel_created(self, create_machine, eth_to_sol_request, fake_chains, ledger):
        """Test a created transfer is cancelled without chain calls."""
        machine = await create_machine(eth_to_sol_request)
        transfer = await machine.cancel()

        assert transfer.status == TransferStatus.FAILED
        assert transfer.failure_reason == FailureReason.USER_CANCELLED
        assert fake_chains[E].submitted == []
        assert (await ledger.get(transfer.id)).status == TransferStatus.FAILED

    async def test_cancel_after_source_submission(self, awaiting):
        """Test cancellation is refused once the source chain was touched."""
        with pytest.raises(CancellationNotAllowedError):
            await awaiting.cancel()
        assert awaiting.status == TransferStatus.AWAITING_ATTESTATION

    async def test_cancel_terminal(self, create_machine, eth_to_sol_request):
        """Test cancelling twice is refused."""
        machine = await create_machine(eth_to_sol_request)
        await machine.cancel()

        with pytest.raises(CancellationNotAllowedError):
            await machine.cancel()

    async def test_cancel_during_approval(self, create_machine, eth_to_sol_request, fake_chains):
        """Test a cancel waiting on an approval stops before the source call."""
        chain = fake_chains[E]
        chain.include_on_submit = False
        machine = await create_machine(eth_to_sol_request)
        machine.schedule()
        await wait_until(lambda: len(chain.submitted) == 1)
        assert machine.status == TransferStatus.APPROVING

        cancel_task = asyncio.create_task(machine.cancel())
        await asyncio.sleep(0)
        chain.include(chain.tx_hashes[0])

        transfer = await asyncio.wait_for(cancel_task, timeout=5)
        assert transfer.failure_reason == FailureReason.USER_CANCELLED
        assert [c.function_name for c, _ in chain.submitted] == ["approve"]
