"""
Tests for the signer registry.
"""

import pytest

from omniflow.chains import SignerRegistry, SigningError, TransactionSigner
from omniflow.config import ChainNetwork

EVM_ADDRESS = "0xAbCdEf0000000000000000000000000000000001"
SOLANA_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class NamedSigner:
    def __init__(self, name):
        self.name = name

    async def sign(self, network, address, payload):
        return f"{self.name}:{payload}".encode()


class BrokenSigner:
    async def sign(self, network, address, payload):
        raise RuntimeError("hardware wallet locked")


class TestSignerRegistry:
    """Tests for SignerRegistry lookups and signing."""

    def test_signer_protocol(self):
        """Test wallet objects satisfy the signer protocol."""
        assert isinstance(NamedSigner("a"), TransactionSigner)

    async def test_evm_addresses_case_insensitive(self):
        """Test EVM lookups ignore address case."""
        registry = SignerRegistry()
        registry.register(ChainNetwork.ETHEREUM, EVM_ADDRESS, NamedSigner("hot"))

        raw = await registry.sign(ChainNetwork.ETHEREUM, EVM_ADDRESS.lower(), "tx")
        assert raw == b"hot:tx"

    def test_solana_addresses_case_sensitive(self):
        """Test Solana lookups match the exact base58 string."""
        registry = SignerRegistry()
        registry.register(ChainNetwork.SOLANA, SOLANA_ADDRESS, NamedSigner("sol"))

        assert registry.get(ChainNetwork.SOLANA, SOLANA_ADDRESS).name == "sol"
        with pytest.raises(SigningError):
            registry.get(ChainNetwork.SOLANA, SOLANA_ADDRESS.lower())

    def test_default_signer(self):
        """Test the network default covers unregistered addresses."""
        registry = SignerRegistry()
        registry.register_default(ChainNetwork.POLYGON, NamedSigner("default"))
        registry.register(ChainNetwork.POLYGON, EVM_ADDRESS, NamedSigner("own"))

        assert registry.get(ChainNetwork.POLYGON, EVM_ADDRESS).name == "own"
        assert registry.get(ChainNetwork.POLYGON, "0x" + "9" * 40).name == "default"

    def test_defaults_are_per_network(self):
        """Test a default on one network does not leak to another."""
        registry = SignerRegistry()
        registry.register_default(ChainNetwork.POLYGON, NamedSigner("default"))

        with pytest.raises(SigningError, match="No signer registered"):
            registry.get(ChainNetwork.ETHEREUM, EVM_ADDRESS)

    async def test_signer_failure_wrapped(self):
        """Test signer exceptions surface as SigningError."""
        registry = SignerRegistry()
        registry.register_default(ChainNetwork.ETHEREUM, BrokenSigner())

        with pytest.raises(SigningError, match="hardware wallet locked") as exc_info:
            await registry.sign(ChainNetwork.ETHEREUM, EVM_ADDRESS, "tx")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
