"""
Fee & Time Estimator

Combines the route table with the latest network status sample and a live
gas price to produce a point-in-time BridgeEstimate.

Fee order: the size surcharge is applied to the route fee first, then the
resulting fee is deducted from the displayed receive amount.
"""

import math
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Protocol

from ..chains import BaseChainClient, ChainClientError, MultiChainManager
from ..config import CHAINS, BridgeConfig, ChainFamily, ChainNetwork, get_bridge_config
from ..models import (
    BridgeEstimate,
    BridgeProtocol,
    BridgeRoute,
    GasEstimate,
    NetworkHealth,
    NetworkStatus,
    Transfer,
    parse_amount,
)
from ..monitoring import get_logger
from .errors import BridgeError, InvalidAmountError, RouteNotSupportedError
from .protocols import BridgeProtocolAdapter
from .routes import RouteRegistry

logger = get_logger(__name__)

# Stand-in accounts for simulating calls when no wallet is connected
SIMULATION_ADDRESSES: dict[ChainFamily, str] = {
    ChainFamily.EVM: "0x0000000000000000000000000000000000000001",
    ChainFamily.NON_EVM: "11111111111111111111111111111111",
}


class StatusSource(Protocol):
    """Anything that serves the latest NetworkStatus per chain."""

    def get(self, network: ChainNetwork) -> NetworkStatus | None:
        ...


class FeeEstimator:
    """
    Point-in-time fee and time estimates.

    Identical inputs against an identical status sample always produce the
    same fee, time and receive amount; only the optional gas estimate
    depends on the live gas price.
    """

    def __init__(
        self,
        registry: RouteRegistry,
        status_source: StatusSource | None = None,
        chain_manager: MultiChainManager | None = None,
        adapters: dict[BridgeProtocol, BridgeProtocolAdapter] | None = None,
        config: BridgeConfig | None = None,
    ):
        self.registry = registry
        self.status_source = status_source
        self.chain_manager = chain_manager
        self.adapters = adapters if adapters is not None else {}
        self.config = config or get_bridge_config()

    def resolve_route(self, source: ChainNetwork, destination: ChainNetwork) -> BridgeRoute:
        route = self.registry.find_route(source, destination)
        if route is None:
            raise RouteNotSupportedError(
                f"No route from {source.value} to {destination.value}"
            )
        return route

    # ==================== Fee ====================

    def compute_fee(self, route: BridgeRoute, amount: Decimal) -> Decimal:
        """Route fee with the large-transfer surcharge applied."""
        fee = route.base_fee
        if amount > self.config.large_transfer_threshold(route.protocol.value):
            fee = fee * (1 + self.config.large_transfer_surcharge)
        return fee.quantize(Decimal("0.000001"))

    # ==================== Time ====================

    def congestion_multiplier(self, network: ChainNetwork) -> Decimal:
        """
        Time multiplier from the source chain's congestion score.

        0.8 at an idle chain rising linearly to 1.5 at score 100, clamped to
        the configured bounds. No sample, or an offline chain, yields 1.0.
        """
        status = self.status_source.get(network) if self.status_source else None
        if status is None or status.health == NetworkHealth.OFFLINE:
            return Decimal("1.0")

        score = Decimal(str(status.congestion_score))
        multiplier = Decimal("0.8") + score / 100 * Decimal("0.7")
        multiplier = max(self.config.congestion_min_multiplier, multiplier)
        multiplier = min(self.config.congestion_max_multiplier, multiplier)
        return multiplier.quantize(Decimal("0.0001"))

    def compute_time(self, route: BridgeRoute, multiplier: Decimal) -> int:
        return math.ceil(Decimal(route.nominal_time_minutes) * multiplier)

    # ==================== Estimate ====================

    async def estimate(
        self,
        source: ChainNetwork,
        destination: ChainNetwork,
        asset: str,
        amount: Decimal | str | int,
        sender_address: str | None = None,
    ) -> BridgeEstimate:
        """
        Estimate fee and time for moving amount of asset.

        Raises:
            InvalidAmountError: If amount is not a positive decimal or is finer
                than the route's protocol carries
            RouteNotSupportedError: If the pair has no listed route
        """
        try:
            value = parse_amount(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e)) from e
        if value <= 0:
            raise InvalidAmountError("Amount must be positive")

        route = self.resolve_route(source, destination)
        if route.protocol in self.adapters:
            self.adapters[route.protocol].check_precision(value, asset)
        fee = self.compute_fee(route, value)
        multiplier = self.congestion_multiplier(source)

        estimate = BridgeEstimate(
            source_chain=source,
            destination_chain=destination,
            asset=asset,
            amount=value,
            fee=fee,
            time_minutes=self.compute_time(route, multiplier),
            route_protocol=route.protocol,
            supported=route.supported,
            receive_amount=max(Decimal("0"), value - fee),
            congestion_multiplier=multiplier,
        )

        if route.supported and CHAINS[source].is_evm:
            estimate.gas_estimate = await self._estimate_gas(route, asset, value, sender_address)

        return estimate

    async def _estimate_gas(
        self,
        route: BridgeRoute,
        asset: str,
        amount: Decimal,
        sender_address: str | None,
    ) -> GasEstimate | None:
        """
        Simulate approval plus bridge call on the source chain.

        Returns None (and logs) on any connector or simulation failure.
        """
        if self.chain_manager is None or route.protocol not in self.adapters:
            return None

        try:
            client = self.chain_manager.get_client(route.source_chain)
            if client.is_native_asset(asset):
                return None
            adapter = self.adapters[route.protocol]
            return await self._simulate(client, adapter, route, asset, amount, sender_address)
        except (ChainClientError, BridgeError, ValueError, TimeoutError) as e:
            logger.warning(
                "gas_estimate_unavailable",
                network=route.source_chain.value,
                asset=asset,
                error=str(e),
            )
            return None

    async def _simulate(
        self,
        client: BaseChainClient,
        adapter: BridgeProtocolAdapter,
        route: BridgeRoute,
        asset: str,
        amount: Decimal,
        sender_address: str | None,
    ) -> GasEstimate:
        sender = sender_address or SIMULATION_ADDRESSES[ChainFamily.EVM]
        destination = CHAINS[route.destination_chain]
        recipient = sender if destination.is_evm else SIMULATION_ADDRESSES[destination.family]
        draft = Transfer(
            source_chain=route.source_chain,
            destination_chain=route.destination_chain,
            asset=asset,
            amount=amount,
            sender_address=sender,
            recipient_address=recipient,
            protocol=route.protocol,
        )

        token = client.resolve_token(asset)
        assert token is not None
        approval = await client.build_approval_call(
            token, sender, adapter.spender(route.source_chain), amount
        )
        bridge_call = await adapter.build_source_call(draft, client)

        approval_gas = await client.estimate_call_gas(approval, sender)
        bridge_gas = await client.estimate_call_gas(bridge_call, sender)
        gas_price = await client.get_gas_price()

        gas_limit = approval_gas + bridge_gas
        cost_native = client.from_base_units(gas_limit * gas_price, client.chain.native_decimals)
        usd_price = self.config.native_usd_prices.get(route.source_chain, Decimal("0"))
        sampled_at = datetime.now(UTC)

        return GasEstimate(
            gas_limit=gas_limit,
            gas_price=gas_price,
            cost_in_native=cost_native,
            cost_in_usd=(cost_native * usd_price).quantize(Decimal("0.01")),
            sampled_at=sampled_at,
            expires_at=sampled_at + timedelta(seconds=self.config.gas_estimate_ttl_seconds),
        )
