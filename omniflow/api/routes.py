"""
FastAPI Router for the Bridge Orchestrator

REST endpoints over the BridgeService facade:

- GET  /bridge/routes                   list routes
- POST /bridge/estimate                 fee and time estimate
- POST /bridge/transfers                create a transfer
- GET  /bridge/transfers                list transfers
- GET  /bridge/transfers/{id}           get one transfer
- POST /bridge/transfers/{id}/cancel    cancel before source submission
- GET  /bridge/network-status           latest chain health sample
- GET  /bridge/analytics                success rate, completion time, 24h activity

Amounts are exchanged as decimal strings. Bridge errors map to 400/404/409;
anything unexpected is logged and returned as a sanitized 500.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ..bridge.errors import (
    BridgeError,
    CancellationNotAllowedError,
    TransferNotFoundError,
)
from ..bridge.service import BridgeService, get_bridge_service
from ..config import ChainNetwork
from ..models import TransferFilter, TransferRequest, TransferStatus, parse_amount
from ..monitoring import get_logger

logger = get_logger(__name__)


def _sanitized_error(context: str, e: Exception) -> HTTPException:
    """Log the real error and return a generic 500 to the client."""
    logger.error("bridge_api_error", context=context, error=str(e), exc_info=True)
    return HTTPException(
        status_code=500,
        detail=f"Internal error during {context}. Please try again or contact support.",
    )


def _bridge_error(e: BridgeError) -> HTTPException:
    if isinstance(e, TransferNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CancellationNotAllowedError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ==================== Request/Response Models ====================

class APIResponse(BaseModel):
    """Standard API response wrapper."""
    success: bool = True
    data: Any | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EstimateRequest(BaseModel):
    """Body for POST /bridge/estimate."""
    source_chain: ChainNetwork
    destination_chain: ChainNetwork
    asset: str = Field(min_length=1)
    amount: Decimal
    sender_address: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Decimal:
        return parse_amount(v)


# ==================== Dependency Injection ====================

async def get_service() -> BridgeService:
    """Resolve the process-wide bridge service. Overridden in tests."""
    return await get_bridge_service()


# ==================== Bridge Routes ====================

bridge_router = APIRouter(prefix="/bridge", tags=["Bridge"])


@bridge_router.get("/routes", response_model=APIResponse)
async def list_routes(service: BridgeService = Depends(get_service)):
    """List every configured route, supported or not."""
    try:
        routes = service.list_routes()
        return APIResponse(data=[r.model_dump(mode="json") for r in routes])
    except Exception as e:
        raise _sanitized_error("route listing", e)


@bridge_router.post("/estimate", response_model=APIResponse)
async def estimate(
    request: EstimateRequest,
    service: BridgeService = Depends(get_service),
):
    """
    Estimate fee and time for a transfer.

    Unsupported-but-listed routes return supported=false with informational
    fee and time rather than an error.
    """
    try:
        result = await service.estimate(
            request.source_chain,
            request.destination_chain,
            request.asset,
            request.amount,
            request.sender_address,
        )
        return APIResponse(data=result.model_dump(mode="json"))
    except BridgeError as e:
        raise _bridge_error(e)
    except Exception as e:
        raise _sanitized_error("fee estimation", e)


@bridge_router.post("/transfers", response_model=APIResponse, status_code=202)
async def create_transfer(
    request: TransferRequest,
    service: BridgeService = Depends(get_service),
):
    """
    Create a transfer.

    Returns immediately with the transfer id; progress is read back through
    GET /bridge/transfers/{id}.
    """
    try:
        transfer_id = await service.create_transfer(request)
        return APIResponse(data={"transfer_id": transfer_id})
    except BridgeError as e:
        raise _bridge_error(e)
    except Exception as e:
        raise _sanitized_error("transfer creation", e)


@bridge_router.get("/transfers", response_model=APIResponse)
async def list_transfers(
    address: str | None = Query(None, description="Sender or recipient"),
    sender_address: str | None = None,
    recipient_address: str | None = None,
    status: list[TransferStatus] | None = Query(None),
    source_chain: ChainNetwork | None = None,
    destination_chain: ChainNetwork | None = None,
    limit: int = Query(50, ge=1, le=500),
    service: BridgeService = Depends(get_service),
):
    """List transfers, newest first."""
    try:
        transfers = await service.list_transfers(
            TransferFilter(
                address=address,
                sender_address=sender_address,
                recipient_address=recipient_address,
                statuses=status,
                source_chain=source_chain,
                destination_chain=destination_chain,
                limit=limit,
            )
        )
        return APIResponse(data=[t.model_dump(mode="json") for t in transfers])
    except Exception as e:
        raise _sanitized_error("transfer listing", e)


@bridge_router.get("/transfers/{transfer_id}", response_model=APIResponse)
async def get_transfer(
    transfer_id: str,
    service: BridgeService = Depends(get_service),
):
    """Get one transfer by id."""
    try:
        transfer = await service.get_transfer(transfer_id)
        return APIResponse(data=transfer.model_dump(mode="json"))
    except BridgeError as e:
        raise _bridge_error(e)
    except Exception as e:
        raise _sanitized_error("transfer retrieval", e)


@bridge_router.post("/transfers/{transfer_id}/cancel", response_model=APIResponse)
async def cancel_transfer(
    transfer_id: str,
    service: BridgeService = Depends(get_service),
):
    """Cancel a transfer that has not submitted its source transaction."""
    try:
        transfer = await service.cancel_transfer(transfer_id)
        return APIResponse(data=transfer.model_dump(mode="json"))
    except BridgeError as e:
        raise _bridge_error(e)
    except Exception as e:
        raise _sanitized_error("transfer cancellation", e)


@bridge_router.get("/network-status", response_model=APIResponse)
async def get_network_status(service: BridgeService = Depends(get_service)):
    """Latest health and congestion sample per chain."""
    try:
        statuses = await service.get_network_status()
        return APIResponse(data=[s.model_dump(mode="json") for s in statuses])
    except Exception as e:
        raise _sanitized_error("network status retrieval", e)


@bridge_router.get("/analytics", response_model=APIResponse)
async def get_analytics(service: BridgeService = Depends(get_service)):
    """Aggregate metrics over the transfer ledger."""
    try:
        metrics = await service.get_metrics()
        return APIResponse(data=metrics.model_dump(mode="json"))
    except Exception as e:
        raise _sanitized_error("analytics retrieval", e)


# ==================== Router Aggregation ====================

def create_bridge_router() -> APIRouter:
    """
    Create the router for all bridge endpoints.

    Usage:
        from omniflow.api import create_bridge_router

        app = FastAPI()
        app.include_router(create_bridge_router(), prefix="/api/v1")
    """
    main_router = APIRouter()
    main_router.include_router(bridge_router)
    return main_router
