"""
OmniFlow Bridge Configuration

This module defines the chain table and all runtime settings for the
cross-chain transfer orchestrator (Ethereum, Polygon, BSC, Solana).

Chain metadata is static and loaded once into a read-only mapping.
Runtime settings are loaded from environment variables with sensible
defaults for development environments.

SECURITY NOTE: No private keys are configured here. Signing is delegated
to the external wallet layer through omniflow.chains.signing.
"""

import copy
import logging
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ChainNetwork(str, Enum):
    """Blockchain networks the orchestrator can bridge between."""

    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    BSC = "bsc"
    SOLANA = "solana"


class ChainFamily(str, Enum):
    """Execution model of a chain."""

    EVM = "evm"
    NON_EVM = "non_evm"


class BridgeEnvironment(str, Enum):
    """Deployment environment."""

    PRODUCTION = "production"
    TESTNET = "testnet"
    LOCAL = "local"


class Chain(BaseModel):
    """Static description of a supported network."""

    network: ChainNetwork
    chain_id: int = Field(description="Numeric chain identifier")
    name: str
    native_symbol: str
    native_decimals: int = 18
    family: ChainFamily = ChainFamily.EVM
    rpc_url: str
    ws_url: str
    explorer_url: str
    confirmations_required: int = Field(
        description="Blocks after inclusion before a transaction is final"
    )
    base_gas_price_gwei: Decimal = Field(
        default=Decimal("0"), description="Reference gas price used for congestion scoring"
    )
    wormhole_chain_id: int
    cctp_domain: int | None = None
    contracts: dict[str, str] = Field(default_factory=dict)
    tokens: dict[str, str] = Field(
        default_factory=dict, description="Asset symbol to token address/mint"
    )

    model_config = {"frozen": True}

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM


CHAINS: MappingProxyType[ChainNetwork, Chain] = MappingProxyType({
    ChainNetwork.ETHEREUM: Chain(
        network=ChainNetwork.ETHEREUM,
        chain_id=1,
        name="Ethereum",
        native_symbol="ETH",
        rpc_url="https://eth.llamarpc.com",
        ws_url="wss://ethereum-rpc.publicnode.com",
        explorer_url="https://etherscan.io",
        confirmations_required=12,
        base_gas_price_gwei=Decimal("20"),
        wormhole_chain_id=2,
        cctp_domain=0,
        contracts={
            "wormhole_core": "0x98f3c9e6E3fAce36bAAd05FE09d375Ef1464288B",
            "wormhole_token_bridge": "0x3ee18B2214AFF97000D974cf647E7C347E8fa585",
            "cctp_token_messenger": "0xBd3fa81B58Ba92a82136038B25aDec7066af3155",
            "cctp_message_transmitter": "0x0a992d191DEeC32aFe36203Ad87D7d289a738F81",
        },
        tokens={
            "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        },
    ),
    ChainNetwork.POLYGON: Chain(
        network=ChainNetwork.POLYGON,
        chain_id=137,
        name="Polygon",
        native_symbol="MATIC",
        rpc_url="https://polygon-rpc.com",
        ws_url="wss://polygon-bor-rpc.publicnode.com",
        explorer_url="https://polygonscan.com",
        confirmations_required=64,
        base_gas_price_gwei=Decimal("30"),
        wormhole_chain_id=5,
        cctp_domain=7,
        contracts={
            "wormhole_core": "0x7A4B5a56256163F07b2C80A7cA55aBE66c4ec4d7",
            "wormhole_token_bridge": "0x5a58505a96D1dbf8dF91cB21B54419FC36e93fdE",
            "cctp_token_messenger": "0x9daF8c91AEFAE50b9c0E69629D3F6Ca40cA3B3FE",
            "cctp_message_transmitter": "0xF3be9355363857F3e001be68856A2f96b4C39Ba9",
        },
        tokens={
            "USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
            "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        },
    ),
    ChainNetwork.BSC: Chain(
        network=ChainNetwork.BSC,
        chain_id=56,
        name="BNB Smart Chain",
        native_symbol="BNB",
        rpc_url="https://bsc-dataseed.binance.org",
        ws_url="wss://bsc-rpc.publicnode.com",
        explorer_url="https://bscscan.com",
        confirmations_required=15,
        base_gas_price_gwei=Decimal("5"),
        wormhole_chain_id=4,
        contracts={
            "wormhole_core": "0x98f3c9e6E3fAce36bAAd05FE09d375Ef1464288B",
            "wormhole_token_bridge": "0xB6F6D86a8f9879A9c87f643768d9efc38c1Da6E7",
        },
        tokens={
            "USDC": "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
            "USDT": "0x55d398326f99059fF775485246999027B3197955",
        },
    ),
    ChainNetwork.SOLANA: Chain(
        network=ChainNetwork.SOLANA,
        chain_id=1001,
        name="Solana",
        native_symbol="SOL",
        native_decimals=9,
        family=ChainFamily.NON_EVM,
        rpc_url="https://api.mainnet-beta.solana.com",
        ws_url="wss://api.mainnet-beta.solana.com",
        explorer_url="https://solscan.io",
        confirmations_required=32,
        wormhole_chain_id=1,
        cctp_domain=5,
        contracts={
            "wormhole_core": "worm2ZoG2kUd4vFXhvjh93UUH596ayRfgQ2MgjNMTth",
            "wormhole_token_bridge": "wormDTUJ6AWPNvk59vGQbDvGJmqbDTdgWgAqcLBCgUb",
            "cctp_token_messenger": "CCTPiPYPc6AsJuwueEnWgSgucamXDZwBd53dQ11YiKX3",
            "cctp_message_transmitter": "CCTPmbSD7gX1bxKPAmg77w8oFzNFpaQiQUWD43TKaecd",
        },
        tokens={
            "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
            "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        },
    ),
})

# Testnet deployments applied outside production. Fields not listed here
# (finality depths, CCTP domains, decimals) match the production table.
TESTNET_OVERRIDES: MappingProxyType[ChainNetwork, dict[str, Any]] = MappingProxyType({
    ChainNetwork.ETHEREUM: {
        "chain_id": 11155111,
        "name": "Ethereum Sepolia",
        "rpc_url": "https://rpc.sepolia.org",
        "ws_url": "wss://ethereum-sepolia-rpc.publicnode.com",
        "explorer_url": "https://sepolia.etherscan.io",
        "wormhole_chain_id": 10002,
        "contracts": {
            "wormhole_core": "0x4a8bc80Ed5a4067f1CCf107057b8270E0cC11A78",
            "wormhole_token_bridge": "0xDB5492265f6038831E89f495670FF909aDe94bd9",
            "cctp_token_messenger": "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5",
            "cctp_message_transmitter": "0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
        },
        "tokens": {"USDC": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"},
    },
    ChainNetwork.POLYGON: {
        "chain_id": 80002,
        "name": "Polygon Amoy",
        "rpc_url": "https://rpc-amoy.polygon.technology",
        "ws_url": "wss://polygon-amoy-bor-rpc.publicnode.com",
        "explorer_url": "https://amoy.polygonscan.com",
        "wormhole_chain_id": 10007,
        "contracts": {
            "wormhole_core": "0x6b9C8671cdDC8dEab9c719bB87cBd3e782bA6a35",
            "wormhole_token_bridge": "0xC7A204bDBFe983FCD8d8E61D02b475D4073fF97e",
            "cctp_token_messenger": "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5",
            "cctp_message_transmitter": "0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
        },
        "tokens": {"USDC": "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582"},
    },
    ChainNetwork.BSC: {
        "chain_id": 97,
        "name": "BNB Smart Chain Testnet",
        "rpc_url": "https://data-seed-prebsc-1-s1.binance.org:8545",
        "ws_url": "wss://bsc-testnet-rpc.publicnode.com",
        "explorer_url": "https://testnet.bscscan.com",
        "contracts": {
            "wormhole_core": "0x68605AD7b15c732a30b1BbC62BE8F2A509D74b4D",
            "wormhole_token_bridge": "0x9dcF9D205C9De35334D646BeE44b2D2859712A09",
        },
        "tokens": {},
    },
    ChainNetwork.SOLANA: {
        "name": "Solana Devnet",
        "rpc_url": "https://api.devnet.solana.com",
        "ws_url": "wss://api.devnet.solana.com",
        "explorer_url": "https://solscan.io/?cluster=devnet",
        "contracts": {
            "wormhole_core": "3u8hJUVTA4jH1wYAyUur7FFZVQ8H635K3tSHHF4ssjQ5",
            "wormhole_token_bridge": "DZnkkTmCiFWfYTfT41X3Rd1kDgozqzxWaHqsw6W4x2oe",
            "cctp_token_messenger": "CCTPiPYPc6AsJuwueEnWgSgucamXDZwBd53dQ11YiKX3",
            "cctp_message_transmitter": "CCTPmbSD7gX1bxKPAmg77w8oFzNFpaQiQUWD43TKaecd",
        },
        "tokens": {"USDC": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"},
    },
})

ATTESTATION_URLS: dict[BridgeEnvironment, dict[str, str]] = {
    BridgeEnvironment.PRODUCTION: {
        "wormhole_guardian_url": "https://wormhole-v2-mainnet-api.certus.one",
        "wormholescan_url": "https://api.wormholescan.io",
        "circle_attestation_url": "https://iris-api.circle.com",
    },
    BridgeEnvironment.TESTNET: {
        "wormhole_guardian_url": "https://wormhole-v2-testnet-api.certus.one",
        "wormholescan_url": "https://api.testnet.wormholescan.io",
        "circle_attestation_url": "https://iris-api-sandbox.circle.com",
    },
}


class BridgeConfig(BaseSettings):
    """
    Runtime configuration for the bridge orchestrator.

    All settings can be overridden via environment variables prefixed with
    OMNIFLOW_. For example, OMNIFLOW_POLL_INTERVAL_SECONDS sets the
    poll_interval_seconds field.
    """

    # Environment Configuration
    environment: BridgeEnvironment = Field(
        default=BridgeEnvironment.TESTNET,
        description="Deployment environment (production, testnet, local)",
    )
    enabled_chains: list[ChainNetwork] = Field(
        default=[
            ChainNetwork.ETHEREUM,
            ChainNetwork.POLYGON,
            ChainNetwork.BSC,
            ChainNetwork.SOLANA,
        ],
        description="Chains the orchestrator connects to",
    )
    rpc_urls: dict[ChainNetwork, str] = Field(
        default_factory=dict, description="Per-chain HTTP RPC overrides"
    )
    ws_urls: dict[ChainNetwork, str] = Field(
        default_factory=dict, description="Per-chain websocket overrides"
    )

    # Connector behaviour
    rpc_timeout_seconds: float = Field(default=15.0, gt=0, description="Per-call RPC timeout")
    rpc_retry_attempts: int = Field(default=3, ge=1, description="Attempts per RPC call")
    rpc_retry_min_wait: float = Field(default=0.5, ge=0)
    rpc_retry_max_wait: float = Field(default=8.0, ge=0)

    # Monitoring
    poll_interval_seconds: float = Field(
        default=5.0, gt=0, description="Poll fallback interval per chain"
    )
    reconnect_initial_seconds: float = Field(default=1.0, gt=0)
    reconnect_max_seconds: float = Field(default=60.0, gt=0)
    attestation_window_multiplier: float = Field(
        default=3.0,
        gt=0,
        description="Nominal-time multiple after which attestation is flagged overdue",
    )
    approval_confirmations: int = Field(default=1, ge=1)
    approval_timeout_seconds: float = Field(default=180.0, gt=0)

    # Network status
    status_interval_seconds: float = Field(default=30.0, gt=0)
    status_timeout_seconds: float = Field(default=5.0, gt=0)

    # Estimation
    gas_estimate_ttl_seconds: int = Field(default=30, ge=1, le=30)
    large_transfer_thresholds: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "wormhole": Decimal("1000"),
            "cctp": Decimal("1000"),
            "native": Decimal("1000"),
        },
        description="Per-protocol amount above which the size surcharge applies",
    )
    large_transfer_surcharge: Decimal = Field(default=Decimal("0.20"), ge=0)
    congestion_min_multiplier: Decimal = Field(default=Decimal("0.8"), gt=0)
    congestion_max_multiplier: Decimal = Field(default=Decimal("1.5"), gt=0)
    native_usd_prices: dict[ChainNetwork, Decimal] = Field(
        default_factory=lambda: {
            ChainNetwork.ETHEREUM: Decimal("2000"),
            ChainNetwork.POLYGON: Decimal("0.80"),
            ChainNetwork.BSC: Decimal("300"),
            ChainNetwork.SOLANA: Decimal("100"),
        },
        description="Reference prices for gas cost display",
    )

    # Attestation services
    # Empty values resolve to the mainnet or sandbox service for the environment
    wormhole_guardian_url: str = Field(default="", validate_default=True)
    wormholescan_url: str = Field(default="", validate_default=True)
    circle_attestation_url: str = Field(default="", validate_default=True)
    attestation_http_timeout_seconds: float = Field(default=10.0, gt=0)
    attestation_poll_interval_seconds: float = Field(
        default=15.0, ge=0, description="Minimum gap between attestation lookups per transfer"
    )
    wormhole_message_fee_wei: int = Field(
        default=0, ge=0, description="Core bridge message fee sent with transfers"
    )

    # Ledger
    redis_url: str | None = Field(default=None, description="Redis URL for the ledger")
    ledger_prefix: str = Field(default="omniflow:")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    @field_validator("enabled_chains")
    @classmethod
    def validate_enabled_chains(cls, v: list[ChainNetwork]) -> list[ChainNetwork]:
        """At least one chain must be configured."""
        if not v:
            raise ValueError("enabled_chains must contain at least one chain")
        return v

    @field_validator("congestion_max_multiplier")
    @classmethod
    def validate_multiplier_bounds(cls, v: Decimal, info: ValidationInfo) -> Decimal:
        """Reject inverted congestion bounds."""
        lower = info.data.get("congestion_min_multiplier")
        if lower is not None and v < lower:
            raise ValueError("congestion_max_multiplier must be >= congestion_min_multiplier")
        return v

    @field_validator("wormhole_guardian_url", "wormholescan_url", "circle_attestation_url")
    @classmethod
    def default_attestation_url(cls, v: str, info: ValidationInfo) -> str:
        if v:
            return v.rstrip("/")
        environment = info.data.get("environment", BridgeEnvironment.TESTNET)
        if environment != BridgeEnvironment.PRODUCTION:
            environment = BridgeEnvironment.TESTNET
        return ATTESTATION_URLS[environment][info.field_name]

    @field_validator("reconnect_max_seconds")
    @classmethod
    def validate_reconnect_bounds(cls, v: float, info: ValidationInfo) -> float:
        initial = info.data.get("reconnect_initial_seconds")
        if initial is not None and v < initial:
            raise ValueError("reconnect_max_seconds must be >= reconnect_initial_seconds")
        return v

    def get_chain(self, network: ChainNetwork) -> Chain:
        """
        Get the chain description for the configured environment.

        Outside production the chain id, Wormhole id, contracts and tokens
        are the testnet deployments. RPC overrides apply in every environment.
        """
        update: dict[str, Any] = {}
        if self.environment != BridgeEnvironment.PRODUCTION:
            update = copy.deepcopy(TESTNET_OVERRIDES[network])
        update["rpc_url"] = self.get_rpc_endpoint(network)
        update["ws_url"] = self.get_ws_endpoint(network)
        return CHAINS[network].model_copy(update=update)

    def get_rpc_endpoint(self, network: ChainNetwork) -> str:
        """Get the HTTP RPC endpoint for a chain."""
        if network in self.rpc_urls:
            return self.rpc_urls[network]
        if self.environment != BridgeEnvironment.PRODUCTION:
            return str(TESTNET_OVERRIDES[network]["rpc_url"])
        return CHAINS[network].rpc_url

    def get_ws_endpoint(self, network: ChainNetwork) -> str:
        """Get the websocket endpoint for a chain."""
        if network in self.ws_urls:
            return self.ws_urls[network]
        if self.environment != BridgeEnvironment.PRODUCTION:
            return str(TESTNET_OVERRIDES[network]["ws_url"])
        return CHAINS[network].ws_url

    def get_contract_address(self, network: ChainNetwork, contract: str) -> str | None:
        """Get a contract address for a specific chain."""
        return self.get_chain(network).contracts.get(contract)

    def large_transfer_threshold(self, protocol: str) -> Decimal:
        return self.large_transfer_thresholds.get(protocol, Decimal("1000"))

    def is_chain_enabled(self, network: ChainNetwork) -> bool:
        """Check if a specific chain is enabled."""
        return network in self.enabled_chains

    def log_summary(self) -> dict[str, Any]:
        """Non-sensitive settings for startup logging."""
        return {
            "environment": self.environment.value,
            "enabled_chains": [c.value for c in self.enabled_chains],
            "ledger": "redis" if self.redis_url else "memory",
            "poll_interval_seconds": self.poll_interval_seconds,
        }

    model_config = {
        "env_prefix": "OMNIFLOW_",
        "env_file": ".env",
        "extra": "ignore",
    }


# Singleton instance for global access
_config: BridgeConfig | None = None


def get_bridge_config() -> BridgeConfig:
    """
    Get the global bridge configuration instance.

    This function implements a singleton pattern to ensure consistent
    configuration across the application.
    """
    global _config
    if _config is None:
        _config = BridgeConfig()
        logger.info(f"Bridge configuration loaded: {_config.log_summary()}")
    return _config


def configure_bridge(config: BridgeConfig) -> None:
    """
    Set a custom configuration instance.

    Useful for testing or when configuration needs to be loaded
    from a non-standard source.
    """
    global _config
    _config = config
