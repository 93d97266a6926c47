"""
Network Status Aggregator

Samples every chain connector on a fixed interval and caches the latest
NetworkStatus per chain. Consumed by the fee estimator (congestion
multiplier) and by dashboards through the facade.

A chain that errors or exceeds status_timeout_seconds is reported as
offline with a zero congestion score rather than omitted.
"""

import asyncio
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from decimal import Decimal

from ..chains import BaseChainClient, MultiChainManager
from ..config import BridgeConfig, ChainNetwork, get_bridge_config
from ..models import NetworkHealth, NetworkStatus
from ..monitoring import get_logger, log_duration

logger = get_logger(__name__)

StatusCallback = Callable[[list[NetworkStatus]], Coroutine[object, object, None]]


class NetworkStatusAggregator:
    """Periodic health snapshot of all configured chains."""

    def __init__(
        self,
        chain_manager: MultiChainManager,
        config: BridgeConfig | None = None,
    ):
        self.chain_manager = chain_manager
        self.config = config or get_bridge_config()
        self._latest: dict[ChainNetwork, NetworkStatus] = {}
        self._background_task: asyncio.Task[None] | None = None
        self._running = False

    # ==================== Sampling ====================

    async def sample(self) -> list[NetworkStatus]:
        """
        Query every configured chain concurrently.

        Returns:
            One record per configured chain, in configuration order
        """
        networks = list(self.config.enabled_chains)
        with log_duration(logger, "network_status_sample", level="debug", chains=len(networks)):
            results = await asyncio.gather(*(self._sample_bounded(n) for n in networks))
        for status in results:
            self._latest[status.network] = status
        return list(results)

    async def _sample_bounded(self, network: ChainNetwork) -> NetworkStatus:
        try:
            client = self.chain_manager.get_client(network)
            return await asyncio.wait_for(
                self._sample_chain(client), timeout=self.config.status_timeout_seconds
            )
        except Exception as e:
            logger.warning("network_status_offline", network=network.value, error=str(e))
            return self._offline(network, str(e) or type(e).__name__)

    async def _sample_chain(self, client: BaseChainClient) -> NetworkStatus:
        gas_price, block = await asyncio.gather(
            client.get_gas_price(), client.get_current_block()
        )
        score = await client.get_congestion_score(gas_price)
        liquidity = await client.get_bridge_liquidity()

        health = NetworkHealth.ONLINE
        if score > client.congestion_threshold:
            health = NetworkHealth.CONGESTED

        return NetworkStatus(
            network=client.network,
            chain_id=client.chain.chain_id,
            name=client.chain.name,
            health=health,
            gas_price=gas_price,
            congestion_score=score,
            last_observed_block=block,
            bridge_liquidity_balance=liquidity,
        )

    def _offline(self, network: ChainNetwork, error: str) -> NetworkStatus:
        chain = self.config.get_chain(network)
        previous = self._latest.get(network)
        return NetworkStatus(
            network=network,
            chain_id=chain.chain_id,
            name=chain.name,
            health=NetworkHealth.OFFLINE,
            congestion_score=0.0,
            last_observed_block=previous.last_observed_block if previous else 0,
            bridge_liquidity_balance=Decimal("0"),
            sampled_at=datetime.now(UTC),
            error=error,
        )

    # ==================== Cache ====================

    def latest(self) -> list[NetworkStatus]:
        """The cached sample, one record per chain sampled so far."""
        return [self._latest[n] for n in self.config.enabled_chains if n in self._latest]

    def get(self, network: ChainNetwork) -> NetworkStatus | None:
        return self._latest.get(network)

    # ==================== Background Sampling ====================

    async def start(self, callback: StatusCallback | None = None) -> None:
        """Sample immediately, then every status_interval_seconds."""
        if self._running:
            return
        self._running = True

        async def sample_loop() -> None:
            while self._running:
                try:
                    statuses = await self.sample()
                    unhealthy = [
                        s.network.value for s in statuses if s.health != NetworkHealth.ONLINE
                    ]
                    if unhealthy:
                        logger.info("network_status_degraded", networks=unhealthy)
                    if callback:
                        await callback(statuses)
                except Exception as e:
                    logger.error("network_status_loop_error", error=str(e))
                await asyncio.sleep(self.config.status_interval_seconds)

        self._background_task = asyncio.create_task(sample_loop())
        logger.info(
            "network_status_started",
            interval_seconds=self.config.status_interval_seconds,
        )

    async def stop(self) -> None:
        self._running = False
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None
        logger.info("network_status_stopped")
