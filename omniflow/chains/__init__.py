"""
Chain Connectors

Uniform async access to EVM chains (web3.py) and Solana (solana-py),
with retries, timeouts and block subscriptions.
"""

from .base_client import (
    BaseChainClient,
    BroadcastUncertainError,
    ChainClientError,
    ConnectorUnavailableError,
    ContractNotFoundError,
    InsufficientFundsError,
    MultiChainManager,
    TransactionFailedError,
    get_chain_manager,
)
from .signing import SignerRegistry, SigningError, TransactionSigner

__all__ = [
    "BaseChainClient",
    "BroadcastUncertainError",
    "ChainClientError",
    "ConnectorUnavailableError",
    "ContractNotFoundError",
    "InsufficientFundsError",
    "MultiChainManager",
    "TransactionFailedError",
    "get_chain_manager",
    "SignerRegistry",
    "SigningError",
    "TransactionSigner",
]
