"""
OmniFlow API

FastAPI router exposing the bridge orchestrator over HTTP.
"""

from .routes import APIResponse, bridge_router, create_bridge_router, get_service

__all__ = [
    "APIResponse",
    "bridge_router",
    "create_bridge_router",
    "get_service",
]
