"""
Tests for the Fee & Time Estimator.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from omniflow.bridge.errors import InvalidAmountError, RouteNotSupportedError
from omniflow.bridge.estimator import FeeEstimator
from omniflow.bridge.finality import ConfirmationDepthPolicy
from omniflow.bridge.protocols import WormholeAdapter
from omniflow.config import CHAINS, BridgeConfig, ChainNetwork
from omniflow.models import BridgeProtocol, NetworkHealth, NetworkStatus

E = ChainNetwork.ETHEREUM
P = ChainNetwork.POLYGON
B = ChainNetwork.BSC
S = ChainNetwork.SOLANA


class StaticStatus:
    """Status source serving fixed samples."""

    def __init__(self, statuses: dict[ChainNetwork, NetworkStatus] | None = None):
        self.statuses = statuses or {}

    def get(self, network):
        return self.statuses.get(network)

    def set(self, network, score: float, health=NetworkHealth.ONLINE):
        chain = CHAINS[network]
        self.statuses[network] = NetworkStatus(
            network=network,
            chain_id=chain.chain_id,
            name=chain.name,
            health=health,
            congestion_score=score,
        )


# ==================== Fixtures ====================


@pytest.fixture
def status():
    return StaticStatus()


@pytest.fixture
def estimator(registry, status, bridge_config):
    """Estimator without chain access (no gas estimates)."""
    return FeeEstimator(registry, status, config=bridge_config)


@pytest.fixture
def gas_estimator(registry, status, chain_manager, adapters, bridge_config):
    """Estimator wired to the fake chains."""
    return FeeEstimator(registry, status, chain_manager, adapters, bridge_config)


# ==================== Fee Tests ====================


class TestFees:
    """Tests for fee and receive amount."""

    async def test_ethereum_to_solana_usdc(self, estimator):
        """Test the baseline Ethereum to Solana estimate."""
        result = await estimator.estimate(E, S, "USDC", "100.00")

        assert result.supported is True
        assert result.route_protocol == BridgeProtocol.WORMHOLE
        assert result.fee == Decimal("0.50")
        assert result.time_minutes == 12
        assert result.receive_amount == Decimal("99.50")
        assert result.amount == Decimal("100.00")

    async def test_large_transfer_surcharge(self, estimator):
        """Test amounts above the threshold pay 20% more."""
        result = await estimator.estimate(E, S, "USDC", "5000")

        assert result.fee == Decimal("0.60")
        assert result.receive_amount == Decimal("4999.40")

    async def test_threshold_is_exclusive(self, estimator):
        """Test an amount equal to the threshold pays the base fee."""
        result = await estimator.estimate(E, S, "USDC", "1000")
        assert result.fee == Decimal("0.50")

    async def test_receive_amount_floors_at_zero(self, estimator):
        """Test a fee larger than the amount yields zero, not a negative."""
        result = await estimator.estimate(S, E, "USDC", "10")

        assert result.fee == Decimal("15.00")
        assert result.receive_amount == Decimal("0")

    async def test_deterministic(self, estimator, status):
        """Test identical inputs against one sample give identical results."""
        status.set(E, 40.0)
        first = await estimator.estimate(E, S, "USDC", "250")
        second = await estimator.estimate(E, S, "USDC", "250")

        assert first.fee == second.fee
        assert first.time_minutes == second.time_minutes
        assert first.receive_amount == second.receive_amount
        assert first.congestion_multiplier == second.congestion_multiplier


# ==================== Route Tests ====================


class TestRouteResolution:
    """Tests for supported, unsupported and absent routes."""

    async def test_unsupported_route_is_informational(self, estimator):
        """Test native routes return supported=false with a fee and time."""
        result = await estimator.estimate(E, B, "USDC", "100")

        assert result.supported is False
        assert result.route_protocol == BridgeProtocol.NATIVE
        assert result.fee == Decimal("18.00")
        assert result.time_minutes == 15
        assert result.gas_estimate is None

    async def test_same_chain_rejected(self, estimator):
        """Test a pair without a route raises."""
        with pytest.raises(RouteNotSupportedError):
            await estimator.estimate(E, E, "USDC", "100")


# ==================== Amount Validation Tests ====================


class TestAmountValidation:
    """Tests for amount parsing."""

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN", 1.5])
    async def test_invalid_amounts(self, estimator, amount):
        """Test non-positive, malformed and float amounts are rejected."""
        with pytest.raises(InvalidAmountError):
            await estimator.estimate(E, S, "USDC", amount)

    async def test_integer_amount(self, estimator):
        """Test integer amounts are accepted."""
        result = await estimator.estimate(E, S, "USDC", 100)
        assert result.receive_amount == Decimal("99.50")

    async def test_finer_than_protocol_precision(self, registry, status, bridge_config):
        """Test a 9th decimal is rejected on a Wormhole route."""
        wormhole = WormholeAdapter(bridge_config, ConfirmationDepthPolicy())
        estimator = FeeEstimator(
            registry, status, adapters={BridgeProtocol.WORMHOLE: wormhole}, config=bridge_config
        )

        with pytest.raises(InvalidAmountError):
            await estimator.estimate(E, S, "USDC", "0.000000001")
        result = await estimator.estimate(E, S, "USDC", "0.00000001")
        assert result.amount == Decimal("0.00000001")


# ==================== Congestion Tests ====================


class TestCongestion:
    """Tests for the congestion time multiplier."""

    def test_no_sample(self, estimator):
        """Test a missing sample yields 1.0."""
        assert estimator.congestion_multiplier(E) == Decimal("1.0")

    def test_offline_chain(self, estimator, status):
        """Test an offline chain yields 1.0."""
        status.set(E, 0.0, health=NetworkHealth.OFFLINE)
        assert estimator.congestion_multiplier(E) == Decimal("1.0")

    @pytest.mark.parametrize(
        "score,expected",
        [(0.0, "0.8"), (50.0, "1.15"), (100.0, "1.5")],
    )
    def test_linear_scale(self, estimator, status, score, expected):
        """Test the multiplier scales linearly with the score."""
        status.set(E, score)
        assert estimator.congestion_multiplier(E) == Decimal(expected)

    def test_clamped_to_configured_bounds(self, registry, status):
        """Test the multiplier respects configured bounds."""
        config = BridgeConfig(
            congestion_min_multiplier=Decimal("1.0"),
            congestion_max_multiplier=Decimal("1.2"),
        )
        estimator = FeeEstimator(registry, status, config=config)

        status.set(E, 100.0)
        assert estimator.congestion_multiplier(E) == Decimal("1.2")
        status.set(E, 0.0)
        assert estimator.congestion_multiplier(E) == Decimal("1.0")

    async def test_time_rounds_up(self, estimator, status):
        """Test scaled times are rounded up to whole minutes."""
        status.set(E, 50.0)
        result = await estimator.estimate(E, S, "USDC", "100")

        assert result.congestion_multiplier == Decimal("1.15")
        assert result.time_minutes == 14

    async def test_source_chain_drives_multiplier(self, estimator, status):
        """Test only the source chain's congestion is used."""
        status.set(S, 100.0)
        result = await estimator.estimate(E, S, "USDC", "100")
        assert result.time_minutes == 12


# ==================== Gas Estimate Tests ====================


class TestGasEstimate:
    """Tests for the optional source-side gas estimate."""

    async def test_gas_estimate_present(self, gas_estimator):
        """Test approval plus bridge gas is simulated and priced."""
        result = await gas_estimator.estimate(E, S, "USDC", "100")
        gas = result.gas_estimate

        assert gas is not None
        assert gas.gas_limit == 100_000
        assert gas.gas_price == 20 * 10**9
        assert gas.cost_in_native == Decimal("0.002")
        assert gas.cost_in_usd == Decimal("4.00")
        assert gas.expires_at - gas.sampled_at == timedelta(seconds=30)

    async def test_gas_failure_leaves_estimate_intact(self, gas_estimator, fake_chains):
        """Test a connector failure drops only the gas estimate."""
        fake_chains[E].offline = True
        result = await gas_estimator.estimate(E, S, "USDC", "100")

        assert result.gas_estimate is None
        assert result.fee == Decimal("0.50")
        assert result.receive_amount == Decimal("99.50")

    async def test_no_gas_estimate_from_solana(self, gas_estimator):
        """Test non-EVM sources carry no gas estimate."""
        result = await gas_estimator.estimate(S, E, "USDC", "100")
        assert result.gas_estimate is None

    async def test_no_gas_estimate_for_native_asset(self, gas_estimator):
        """Test native currency needs no approval simulation."""
        result = await gas_estimator.estimate(E, S, "ETH", "1")
        assert result.gas_estimate is None

    async def test_no_gas_estimate_without_adapter(
        self, registry, status, chain_manager, bridge_config
    ):
        """Test a protocol with no adapter skips gas simulation."""
        estimator = FeeEstimator(registry, status, chain_manager, {}, bridge_config)
        result = await estimator.estimate(E, S, "USDC", "100")
        assert result.gas_estimate is None
