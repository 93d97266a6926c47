"""
Finality Policies

A finality policy decides when the source side of a transfer is proven
to the destination chain:

- ConfirmationDepthPolicy: N blocks on top of the inclusion block
- WormholeVaaPolicy: a guardian-signed VAA is available
- CircleAttestationPolicy: Circle's attestation service signed the
  CCTP message

HTTP policies treat 404s and transport errors as "not yet" and throttle
lookups per transfer so fast chains do not hammer the attestation APIs.
"""

import base64
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import CHAINS, BridgeConfig, ChainNetwork
from ..models import Transfer
from ..monitoring import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Attestation:
    """Proof that the source action is final, ready for the destination."""

    payload: str  # 0x-prefixed hex
    kind: str
    metadata: dict[str, Any] = field(default_factory=dict)


class FinalityPolicy(ABC):
    """Decides whether a transfer's source action is final."""

    @abstractmethod
    async def check(self, transfer: Transfer, source_height: int) -> Attestation | None:
        """
        Return proof of finality, or None if not final yet.

        Args:
            transfer: Transfer in awaiting_attestation
            source_height: Latest observed height on the source chain
        """
        pass

    async def close(self) -> None:
        pass


class ConfirmationDepthPolicy(FinalityPolicy):
    """Final once the inclusion block is buried under the chain's finality depth."""

    def __init__(self, depths: dict[ChainNetwork, int] | None = None):
        self._depths = depths or {n: c.confirmations_required for n, c in CHAINS.items()}

    def depth(self, network: ChainNetwork) -> int:
        return self._depths.get(network, 1)

    def is_final(self, network: ChainNetwork, block_number: int, head: int) -> bool:
        return head - block_number + 1 >= self.depth(network)

    async def check(self, transfer: Transfer, source_height: int) -> Attestation | None:
        if transfer.source_block_number is None or transfer.source_tx_hash is None:
            return None
        if not self.is_final(transfer.source_chain, transfer.source_block_number, source_height):
            return None
        tx_hash = transfer.source_tx_hash
        payload = tx_hash if tx_hash.startswith("0x") else "0x" + tx_hash.encode().hex()
        return Attestation(
            payload=payload,
            kind="confirmations",
            metadata={"confirmed_at_height": source_height},
        )


class HttpAttestationPolicy(FinalityPolicy):
    """Shared plumbing for attestation services reached over HTTP."""

    def __init__(
        self,
        config: BridgeConfig,
        http_client: httpx.AsyncClient | None = None,
        min_check_interval: float = 15.0,
    ):
        self.config = config
        self._client = http_client
        self._owns_client = http_client is None
        self._min_check_interval = min_check_interval
        self._last_checked: dict[str, float] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.attestation_http_timeout_seconds)
        return self._client

    def _throttled(self, transfer_id: str) -> bool:
        now = time.monotonic()
        last = self._last_checked.get(transfer_id)
        if last is not None and now - last < self._min_check_interval:
            return True
        self._last_checked[transfer_id] = now
        return False

    async def _get_json(self, url: str, **params: Any) -> dict[str, Any] | None:
        """GET a JSON document; None when absent or unreachable."""
        try:
            response = await self._get_client().get(url, params=params or None)
        except httpx.HTTPError as e:
            logger.warning("attestation_lookup_unreachable", url=url, error=str(e))
            return None
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.warning(
                "attestation_lookup_failed", url=url, status_code=response.status_code
            )
            return None
        data: dict[str, Any] = response.json()
        return data

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class WormholeVaaPolicy(HttpAttestationPolicy):
    """
    Fetch the signed VAA for a Wormhole transfer.

    Uses the guardian REST API by (emitter chain, emitter, sequence) when
    the sequence was read from the source logs, otherwise Wormholescan by
    source transaction hash.
    """

    async def check(self, transfer: Transfer, source_height: int) -> Attestation | None:
        if transfer.source_tx_hash is None or self._throttled(transfer.id):
            return None

        sequence = transfer.metadata.get("wormhole_sequence")
        emitter = transfer.metadata.get("wormhole_emitter")
        raw_vaa: str | None = None

        if sequence is not None and emitter:
            chain_id = self.config.get_chain(transfer.source_chain).wormhole_chain_id
            url = (
                f"{self.config.wormhole_guardian_url}/v1/signed_vaa/"
                f"{chain_id}/{emitter}/{sequence}"
            )
            data = await self._get_json(url)
            if data:
                raw_vaa = data.get("vaaBytes")
        else:
            url = f"{self.config.wormholescan_url}/api/v1/operations"
            data = await self._get_json(url, txHash=transfer.source_tx_hash)
            for operation in (data or {}).get("operations", []):
                raw_vaa = (operation.get("vaa") or {}).get("raw")
                if raw_vaa:
                    break

        if not raw_vaa:
            return None

        vaa = base64.b64decode(raw_vaa)
        logger.info(
            "wormhole_vaa_found",
            transfer_id=transfer.id,
            sequence=sequence,
            size=len(vaa),
        )
        return Attestation(payload="0x" + vaa.hex(), kind="wormhole_vaa")


class CircleAttestationPolicy(HttpAttestationPolicy):
    """Fetch Circle's attestation for a CCTP burn message."""

    async def check(self, transfer: Transfer, source_height: int) -> Attestation | None:
        message_hash = transfer.metadata.get("cctp_message_hash")
        if not message_hash or self._throttled(transfer.id):
            return None

        data = await self._get_json(
            f"{self.config.circle_attestation_url}/attestations/{message_hash}"
        )
        if not data or data.get("status") != "complete":
            return None

        attestation = data.get("attestation")
        if not attestation or attestation == "PENDING":
            return None
        logger.info("cctp_attestation_found", transfer_id=transfer.id, message_hash=message_hash)
        return Attestation(
            payload=attestation,
            kind="cctp_attestation",
            metadata={"message": transfer.metadata.get("cctp_message")},
        )
