"""
OmniFlow Network Status

Per-chain health and congestion snapshots.
"""

from .status import NetworkStatusAggregator

__all__ = ["NetworkStatusAggregator"]
