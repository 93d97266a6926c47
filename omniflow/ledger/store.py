"""
Transfer Ledger

Durable store of Transfer records and the source of truth for history
queries and restart recovery. Reads see every completed write for the same
transfer id, and records are copied on the way in and out so callers never
share mutable state with the store.

Backends:
- InMemoryTransferLedger: a dict guarded by an asyncio lock
- RedisTransferLedger: one JSON document per transfer plus a sorted-set
  index ordered by creation time
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis

from ..bridge.errors import TerminalTransferError
from ..config import BridgeConfig, get_bridge_config
from ..models import Transfer, TransferFilter
from ..monitoring import get_logger

logger = get_logger(__name__)


def _check_terminal(existing: Transfer | None, incoming: Transfer) -> None:
    """Terminal records may only be rewritten with identical content."""
    if existing is None or not existing.is_terminal:
        return
    if existing.model_dump() != incoming.model_dump():
        raise TerminalTransferError(
            f"Transfer {incoming.id} is {existing.status.value} and cannot change"
        )


class TransferLedger(ABC):
    """Persistence interface for transfers."""

    @abstractmethod
    async def put(self, transfer: Transfer) -> None:
        """
        Insert or replace a transfer.

        Raises:
            TerminalTransferError: If the stored record is terminal and the
                new content differs
        """
        pass

    @abstractmethod
    async def get(self, transfer_id: str) -> Transfer | None:
        pass

    @abstractmethod
    async def list(self, transfer_filter: TransferFilter | None = None) -> list[Transfer]:
        """Matching transfers, newest first."""
        pass

    async def close(self) -> None:
        pass


class InMemoryTransferLedger(TransferLedger):
    """Process-local ledger for tests and single-node deployments."""

    def __init__(self) -> None:
        self._records: dict[str, Transfer] = {}
        self._lock = asyncio.Lock()

    async def put(self, transfer: Transfer) -> None:
        async with self._lock:
            _check_terminal(self._records.get(transfer.id), transfer)
            self._records[transfer.id] = transfer.model_copy(deep=True)

    async def get(self, transfer_id: str) -> Transfer | None:
        async with self._lock:
            record = self._records.get(transfer_id)
            return record.model_copy(deep=True) if record else None

    async def list(self, transfer_filter: TransferFilter | None = None) -> list[Transfer]:
        async with self._lock:
            records = [r.model_copy(deep=True) for r in self._records.values()]
        return (transfer_filter or TransferFilter()).apply(records)

    def __len__(self) -> int:
        return len(self._records)


class RedisTransferLedger(TransferLedger):
    """
    Redis-backed ledger.

    Keys:
        <prefix>transfer:<id>   JSON document
        <prefix>transfers       sorted set of ids scored by created_at
    """

    def __init__(self, redis_client: Any, prefix: str = "omniflow:"):
        """
        Args:
            redis_client: redis.asyncio client created with decode_responses=True
            prefix: Key prefix shared by all ledger keys
        """
        self._redis = redis_client
        self._prefix = prefix
        # Serializes the read-check-write of a single id within this process
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_url(cls, url: str, prefix: str = "omniflow:") -> "RedisTransferLedger":
        return cls(redis.from_url(url, decode_responses=True), prefix)

    def _make_key(self, transfer_id: str) -> str:
        return f"{self._prefix}transfer:{transfer_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}transfers"

    @staticmethod
    def _decode(raw: str | bytes | None) -> Transfer | None:
        if raw is None:
            return None
        return Transfer.model_validate_json(raw)

    async def put(self, transfer: Transfer) -> None:
        lock = self._locks.setdefault(transfer.id, asyncio.Lock())
        async with lock:
            existing = self._decode(await self._redis.get(self._make_key(transfer.id)))
            _check_terminal(existing, transfer)

            pipe = self._redis.pipeline()
            pipe.set(self._make_key(transfer.id), transfer.model_dump_json())
            pipe.zadd(self._index_key, {transfer.id: transfer.created_at.timestamp()})
            await pipe.execute()

        if transfer.is_terminal:
            self._locks.pop(transfer.id, None)

    async def get(self, transfer_id: str) -> Transfer | None:
        return self._decode(await self._redis.get(self._make_key(transfer_id)))

    async def list(self, transfer_filter: TransferFilter | None = None) -> list[Transfer]:
        ids = await self._redis.zrevrange(self._index_key, 0, -1)
        if not ids:
            return []
        raw_records = await self._redis.mget([self._make_key(i) for i in ids])
        records = [t for t in (self._decode(raw) for raw in raw_records) if t is not None]
        return (transfer_filter or TransferFilter()).apply(records)

    async def close(self) -> None:
        await self._redis.aclose()


def create_ledger(config: BridgeConfig | None = None) -> TransferLedger:
    """Redis when a URL is configured, otherwise in-memory."""
    config = config or get_bridge_config()
    if config.redis_url:
        logger.info("transfer_ledger_backend", backend="redis", prefix=config.ledger_prefix)
        return RedisTransferLedger.from_url(config.redis_url, config.ledger_prefix)
    logger.info("transfer_ledger_backend", backend="memory")
    return InMemoryTransferLedger()
