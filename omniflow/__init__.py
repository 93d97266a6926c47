"""
OmniFlow Bridge

Cross-chain asset transfer orchestrator for Ethereum, Polygon, BSC and
Solana. Routes transfers over Wormhole and Circle CCTP, estimates fees and
times, drives each transfer through approval, source submission,
attestation and destination redemption, and keeps a durable ledger of
every transfer.

Usage:
    from omniflow.bridge.service import get_bridge_service
    from omniflow.config import ChainNetwork
    from omniflow.models import TransferRequest

    service = await get_bridge_service()
    estimate = await service.estimate(
        ChainNetwork.ETHEREUM, ChainNetwork.SOLANA, "USDC", "100.00"
    )
    transfer_id = await service.create_transfer(TransferRequest(...))
"""

__version__ = "0.1.0"
