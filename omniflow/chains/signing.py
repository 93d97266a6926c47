"""
Transaction Signing Interface

The orchestrator never holds private keys. Connectors hand an unsigned,
chain-specific payload to a signer supplied by the wallet layer and
broadcast the signed bytes it returns.

Payloads:
- EVM: a transaction dict ready for eth_account style signing
- Solana: a solders Transaction, partially signed by any throwaway
  account keypairs the instruction needs
"""

from typing import Any, Protocol, runtime_checkable

from ..config import ChainNetwork


class SigningError(Exception):
    """Raised when no signer is available or the signer rejects a request."""
    pass


@runtime_checkable
class TransactionSigner(Protocol):
    """A wallet able to sign for one or more addresses."""

    async def sign(self, network: ChainNetwork, address: str, payload: Any) -> bytes:
        """Return the raw signed transaction bytes."""
        ...


class SignerRegistry:
    """
    Lookup of signers keyed by (network, address).

    Addresses are compared case-insensitively for EVM chains.
    """

    def __init__(self) -> None:
        self._signers: dict[tuple[ChainNetwork, str], TransactionSigner] = {}
        self._defaults: dict[ChainNetwork, TransactionSigner] = {}

    @staticmethod
    def _key(network: ChainNetwork, address: str) -> tuple[ChainNetwork, str]:
        if network == ChainNetwork.SOLANA:
            return (network, address)
        return (network, address.lower())

    def register(self, network: ChainNetwork, address: str, signer: TransactionSigner) -> None:
        self._signers[self._key(network, address)] = signer

    def register_default(self, network: ChainNetwork, signer: TransactionSigner) -> None:
        """Signer used for any address on the network without its own entry."""
        self._defaults[network] = signer

    def get(self, network: ChainNetwork, address: str) -> TransactionSigner:
        signer = self._signers.get(self._key(network, address)) or self._defaults.get(network)
        if signer is None:
            raise SigningError(f"No signer registered for {address} on {network.value}")
        return signer

    async def sign(self, network: ChainNetwork, address: str, payload: Any) -> bytes:
        signer = self.get(network, address)
        try:
            return await signer.sign(network, address, payload)
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"Signer rejected request for {address}: {e}") from e
