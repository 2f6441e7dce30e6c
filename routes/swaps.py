"""
Swap endpoints.

Thin REST layer over SwapManager. server.py calls configure() once at
startup with the manager it built.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from xswap import __version__
from xswap.core import SwapRequest, SwapStatus
from xswap.errors import (
    ConflictError, NotActive, NotFound, PartialProtocolFailure, SecretMismatchError,
    StatePreconditionError, SwapError, TimingError, ValidationError,
)
from xswap.swap.manager import SwapManager

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Manager wiring (set by server.py at init)
# ---------------------------------------------------------------------------

_manager: Optional[SwapManager] = None


def configure(manager: SwapManager):
    """Attach the swap manager. Called once at startup by server.py."""
    global _manager
    _manager = manager


def _get_manager() -> SwapManager:
    if _manager is None:
        raise HTTPException(503, "Swap manager not configured")
    return _manager


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

# First match wins; order subclasses before their bases
_STATUS_CODES = [
    (ValidationError, 400),
    (SecretMismatchError, 400),
    (NotFound, 404),
    (ConflictError, 409),
    (StatePreconditionError, 409),
    (TimingError, 409),
    (NotActive, 409),
    (PartialProtocolFailure, 502),
]


def http_error(e: SwapError) -> HTTPException:
    """Tagged swap error -> HTTPException with the error payload as detail."""
    status = 502
    for error_type, code in _STATUS_CODES:
        if isinstance(e, error_type):
            status = code
            break
    if status >= 500:
        log.error(f"Swap request failed ({e.code}): {e}")
    return HTTPException(status, detail=e.to_dict())


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SwapInitiateRequest(BaseModel):
    src_chain: str = Field(..., description="Source chain (ETH, NEAR, APTOS)")
    dst_chain: str = Field(..., description="Destination chain")
    src_token: str
    dst_token: str
    src_amount: int = Field(..., description="Smallest units (wei, yocto, octa)")
    dst_amount: int
    recipient: str = Field(..., description="Maker address on the destination chain")
    maker: str = "unknown"
    resolver: Optional[str] = None
    timeout_minutes: int = 60
    nonce: Optional[int] = None


class SwapActionResponse(BaseModel):
    success: bool
    order_hash: str
    status: str
    swap: Dict[str, Any]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/api/status")
def get_status():
    """Health check."""
    manager = _get_manager()
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": int(time.time()),
        "swaps_active": len(manager.get_all_active_swaps()),
        "swaps_total": len(manager.get_all_swaps()),
    }


@router.get("/api/pairs")
def get_pairs():
    """Swap directions this server can run."""
    manager = _get_manager()
    pairs = []
    for orchestrator in manager.orchestrators():
        for direction in orchestrator.directions:
            src_adapter, dst_adapter = orchestrator.legs(direction)
            pairs.append({
                "direction": direction.name,
                "src_chain": direction.src.value,
                "dst_chain": direction.dst.value,
                "src_time_unit": src_adapter.time_unit.value,
                "dst_time_unit": dst_adapter.time_unit.value,
                "hash_algorithm": orchestrator.hash_algorithm.value,
            })
    return {"pairs": pairs}


@router.post("/api/swap/initiate", response_model=SwapActionResponse)
def initiate_swap(req: SwapInitiateRequest):
    """Escrow both legs of a new swap."""
    manager = _get_manager()
    try:
        order = manager.initiate_swap(SwapRequest(
            src_chain=req.src_chain,
            dst_chain=req.dst_chain,
            src_token=req.src_token,
            dst_token=req.dst_token,
            src_amount=req.src_amount,
            dst_amount=req.dst_amount,
            recipient=req.recipient,
            maker=req.maker,
            resolver=req.resolver,
            timeout_minutes=req.timeout_minutes,
            nonce=req.nonce,
        ))
    except SwapError as e:
        raise http_error(e)

    return SwapActionResponse(success=True, order_hash=order.order_hash,
                              status=order.status.value, swap=order.to_dict())


@router.post("/api/swap/{order_hash}/complete", response_model=SwapActionResponse)
def complete_swap(order_hash: str):
    """Claim both legs (reveal the secret, then claim the source)."""
    manager = _get_manager()
    try:
        order = manager.complete_swap(order_hash)
    except SwapError as e:
        raise http_error(e)

    return SwapActionResponse(success=True, order_hash=order.order_hash,
                              status=order.status.value, swap=order.to_dict())


@router.post("/api/swap/{order_hash}/cancel", response_model=SwapActionResponse)
def cancel_swap(order_hash: str):
    """Refund both legs once the timelocks allow it."""
    manager = _get_manager()
    try:
        order = manager.cancel_swap(order_hash)
    except SwapError as e:
        raise http_error(e)

    return SwapActionResponse(success=True, order_hash=order.order_hash,
                              status=order.status.value, swap=order.to_dict())


@router.post("/api/swap/{order_hash}/refresh", response_model=SwapActionResponse)
def refresh_swap(order_hash: str):
    """Re-read both escrow legs from chain."""
    manager = _get_manager()
    try:
        order = manager.refresh_swap(order_hash)
    except SwapError as e:
        raise http_error(e)

    return SwapActionResponse(success=True, order_hash=order.order_hash,
                              status=order.status.value, swap=order.to_dict())


@router.get("/api/swap/{order_hash}")
def get_swap(order_hash: str):
    """Swap record with state machine and timing snapshot."""
    details = _get_manager().get_swap_details(order_hash)
    if details is None:
        raise HTTPException(404, detail=NotFound(f"Swap not found: {order_hash}",
                                                 order_hash=order_hash).to_dict())
    return details.to_dict()


@router.get("/api/swaps")
def list_swaps(status: Optional[str] = Query(None, description="Filter by status"),
               active: bool = Query(False, description="Only active swaps")):
    """List swaps."""
    manager = _get_manager()
    orders = manager.get_all_active_swaps() if active else manager.get_all_swaps()

    if status:
        try:
            wanted = SwapStatus(status.upper())
        except ValueError:
            raise HTTPException(400, f"Unknown status: {status}")
        orders = [o for o in orders if o.status == wanted]

    orders = sorted(orders, key=lambda o: o.created_at, reverse=True)
    swaps: List[Dict[str, Any]] = [o.to_dict() for o in orders]
    return {"count": len(swaps), "swaps": swaps}


@router.get("/api/stats")
def get_stats():
    """Registry statistics."""
    return _get_manager().get_statistics()
