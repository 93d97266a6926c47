"""
Transfer Monitor

Supervises in-flight transfer state machines and feeds them chain events.

Per chain there is one shared channel made of three tasks:
- push: a new-block subscription (newHeads / slotSubscribe) that
  reconnects forever with jittered exponential backoff
- poll: reads the head every poll_interval_seconds, so transfers keep
  moving while the push socket is down
- dispatcher: drains the chain's BlockEvent queue, drops heights that were
  already dispatched and fans out to every machine depending on the chain

A channel starts when the first transfer depending on its chain is
watched and stops once no watched transfer depends on it. A loop that
exits while its channel is live is logged and restarted.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    wait_random_exponential,
)

from ..chains import BaseChainClient, MultiChainManager
from ..config import BridgeConfig, ChainNetwork, get_bridge_config
from ..models import Transfer
from ..monitoring import get_logger
from .errors import TransferNotFoundError

if TYPE_CHECKING:
    from .state_machine import TransferStateMachine

logger = get_logger(__name__)


class PushChannelClosed(ConnectionError):
    """The subscription ended without delivering a block."""
    pass


@dataclass(frozen=True)
class BlockEvent:
    """A block height observed on one chain."""

    network: ChainNetwork
    height: int
    origin: str  # "push" or "poll"


@dataclass
class ChainChannel:
    """Shared observation state for one chain."""

    network: ChainNetwork
    queue: asyncio.Queue[BlockEvent] = field(default_factory=asyncio.Queue)
    tasks: list[asyncio.Task[None]] = field(default_factory=list)
    last_dispatched: int = -1
    push_connected: bool = False
    reconnects: int = 0


class TransferMonitor:
    """
    Watches transfers and delivers block events to their state machines.

    watch() and unwatch() are idempotent and never touch stored transfer
    state. Terminal transfers are unwatched automatically.
    """

    def __init__(
        self,
        chain_manager: MultiChainManager,
        config: BridgeConfig | None = None,
    ):
        self.chain_manager = chain_manager
        self.config = config or get_bridge_config()
        self._machines: dict[str, "TransferStateMachine"] = {}
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._watched: set[str] = set()
        self._channels: dict[ChainNetwork, ChainChannel] = {}

    # ==================== Registration ====================

    def register(self, machine: "TransferStateMachine") -> None:
        """Adopt a state machine and start watching it."""
        transfer_id = machine.transfer_id
        if transfer_id not in self._machines:
            self._machines[transfer_id] = machine
            self._unsubscribers[transfer_id] = machine.subscribe(self._on_transfer_update)
        self.watch(transfer_id)

    def get_machine(self, transfer_id: str) -> "TransferStateMachine | None":
        return self._machines.get(transfer_id)

    def _on_transfer_update(self, transfer: Transfer) -> None:
        if not transfer.is_terminal:
            return
        self.unwatch(transfer.id)
        unsubscribe = self._unsubscribers.pop(transfer.id, None)
        if unsubscribe is not None:
            unsubscribe()
        self._machines.pop(transfer.id, None)

    # ==================== Watch ====================

    def watch(self, transfer_id: str) -> bool:
        """
        Begin observing a registered transfer.

        Returns:
            False if it was already watched or is terminal

        Raises:
            TransferNotFoundError: If no machine is registered for the id
        """
        machine = self._machines.get(transfer_id)
        if machine is None:
            raise TransferNotFoundError(f"Transfer {transfer_id} is not registered")
        if transfer_id in self._watched or machine.is_terminal:
            return False

        self._watched.add(transfer_id)
        for network in machine.networks:
            channel = self._ensure_channel(network)
            if channel.last_dispatched >= 0:
                machine.on_block(network, channel.last_dispatched)

        logger.info(
            "transfer_watched",
            transfer_id=transfer_id,
            networks=sorted(n.value for n in machine.networks),
        )
        return True

    def unwatch(self, transfer_id: str) -> bool:
        """
        Stop observing a transfer.

        Returns:
            False if it was not watched
        """
        if transfer_id not in self._watched:
            return False
        self._watched.discard(transfer_id)

        machine = self._machines.get(transfer_id)
        if machine is not None:
            for network in machine.networks:
                if not self._dependents(network):
                    self._stop_channel(network)

        logger.info("transfer_unwatched", transfer_id=transfer_id)
        return True

    def is_watching(self, transfer_id: str) -> bool:
        return transfer_id in self._watched

    @property
    def watched_ids(self) -> set[str]:
        return set(self._watched)

    @property
    def active_networks(self) -> set[ChainNetwork]:
        return set(self._channels)

    def channel(self, network: ChainNetwork) -> ChainChannel | None:
        return self._channels.get(network)

    def _dependents(self, network: ChainNetwork) -> list["TransferStateMachine"]:
        return [
            self._machines[tid]
            for tid in self._watched
            if tid in self._machines and network in self._machines[tid].networks
        ]

    # ==================== Channels ====================

    def _ensure_channel(self, network: ChainNetwork) -> ChainChannel:
        channel = self._channels.get(network)
        if channel is not None:
            return channel

        channel = ChainChannel(network=network)
        channel.tasks = [self._spawn(channel, kind) for kind in ("push", "poll", "dispatch")]
        self._channels[network] = channel
        logger.info("chain_channel_started", network=network.value)
        return channel

    def _spawn(self, channel: ChainChannel, kind: str) -> asyncio.Task[None]:
        loops = {
            "push": self._push_loop,
            "poll": self._poll_loop,
            "dispatch": self._dispatch_loop,
        }
        task = asyncio.get_running_loop().create_task(
            loops[kind](channel), name=f"{kind}-{channel.network.value}"
        )
        task.add_done_callback(lambda t: self._on_task_done(channel, kind, t))
        return task

    def _on_task_done(self, channel: ChainChannel, kind: str, task: asyncio.Task[None]) -> None:
        """Restart a loop that exited while its channel is still live."""
        if task.cancelled() or self._channels.get(channel.network) is not channel:
            return
        error = task.exception()
        logger.error(
            "chain_channel_task_exited",
            network=channel.network.value,
            task=kind,
            error=str(error) if error else None,
        )
        channel.tasks = [
            self._spawn(channel, kind) if t is task else t for t in channel.tasks
        ]

    def _stop_channel(self, network: ChainNetwork) -> None:
        channel = self._channels.pop(network, None)
        if channel is None:
            return
        for task in channel.tasks:
            task.cancel()
        logger.info("chain_channel_stopped", network=network.value)

    async def stop(self) -> None:
        """Stop every channel. Watched transfers stay registered."""
        tasks = [t for channel in self._channels.values() for t in channel.tasks]
        for network in list(self._channels):
            self._stop_channel(network)
        await asyncio.gather(*tasks, return_exceptions=True)
        for machine in self._machines.values():
            await machine.stop()

    # ==================== Push ====================

    def _log_reconnect(self, channel: ChainChannel) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            channel.reconnects += 1
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "push_channel_reconnecting",
                network=channel.network.value,
                attempt=retry_state.attempt_number,
                delay_seconds=round(delay, 2),
                error=str(error),
            )

        return before_sleep

    async def _push_loop(self, channel: ChainChannel) -> None:
        """
        Keep a block subscription open for as long as the channel lives.

        Backoff grows while sessions fail without delivering anything and
        resets after a session that delivered at least one block.
        """
        while True:
            retrying = AsyncRetrying(
                wait=wait_random_exponential(
                    multiplier=self.config.reconnect_initial_seconds,
                    min=self.config.reconnect_initial_seconds,
                    max=self.config.reconnect_max_seconds,
                ),
                retry=retry_if_exception_type(Exception),
                before_sleep=self._log_reconnect(channel),
            )
            async for attempt in retrying:
                with attempt:
                    await self._push_session(channel)
            await asyncio.sleep(self.config.reconnect_initial_seconds)

    async def _push_session(self, channel: ChainChannel) -> None:
        client: BaseChainClient = self.chain_manager.get_client(channel.network)
        delivered = 0
        try:
            async for height in client.subscribe_new_blocks():
                if not channel.push_connected:
                    channel.push_connected = True
                    logger.info("push_channel_connected", network=channel.network.value)
                await channel.queue.put(BlockEvent(channel.network, height, "push"))
                delivered += 1
        finally:
            channel.push_connected = False

        logger.warning(
            "push_channel_closed", network=channel.network.value, delivered=delivered
        )
        if delivered == 0:
            raise PushChannelClosed(f"{channel.network.value} subscription closed")

    # ==================== Poll ====================

    async def _poll_loop(self, channel: ChainChannel) -> None:
        while True:
            try:
                client = self.chain_manager.get_client(channel.network)
                height = await client.get_current_block()
                await channel.queue.put(BlockEvent(channel.network, height, "poll"))
            except Exception as e:
                logger.warning(
                    "block_poll_failed",
                    network=channel.network.value,
                    error=str(e) or type(e).__name__,
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

    # ==================== Dispatch ====================

    async def _dispatch_loop(self, channel: ChainChannel) -> None:
        while True:
            event = await channel.queue.get()
            try:
                self.dispatch(channel, event)
            except Exception as e:
                logger.error(
                    "block_dispatch_failed",
                    network=channel.network.value,
                    height=event.height,
                    error=str(e),
                )
            finally:
                channel.queue.task_done()

    def dispatch(self, channel: ChainChannel, event: BlockEvent) -> int:
        """
        Fan a block event out to dependent machines.

        Returns:
            Number of machines that accepted the height
        """
        if event.height <= channel.last_dispatched:
            return 0
        channel.last_dispatched = event.height

        accepted = 0
        for machine in self._dependents(event.network):
            if machine.on_block(event.network, event.height):
                accepted += 1
        logger.debug(
            "block_dispatched",
            network=event.network.value,
            height=event.height,
            origin=event.origin,
            transfers=accepted,
        )
        return accepted
