"""
Swap report endpoints.

Mounted by server.py under /api/reports. The report service is injected
once at startup through configure().
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Query
from fastapi.responses import Response

from portal_sdk.swap.report import SwapReportService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reports", tags=["reports"])

# ---------------------------------------------------------------------------
# Service (set by server.py at init)
# ---------------------------------------------------------------------------

_service: Optional[SwapReportService] = None


def configure(service: SwapReportService):
    """Configure report routes. Called once at startup by server.py."""
    global _service
    _service = service


def _reports() -> SwapReportService:
    if _service is None:
        raise HTTPException(503, "Report service not initialized")
    return _service


# ---------------------------------------------------------------------------
# Swaps
# ---------------------------------------------------------------------------

@router.get("/swaps")
async def list_swaps():
    swaps = _reports().get_all_swaps()
    return {"count": len(swaps), "swaps": [s.to_dict() for s in swaps]}


@router.post("/swaps")
async def track_swap(payload: Dict[str, Any] = Body(...)):
    """Track a swap created outside this server (client payload or record)."""
    record = _reports().track_swap(payload)
    return {"swapId": record.swap_id, "swap": record.to_dict()}


@router.get("/swaps/{swap_id}")
async def get_swap_details(swap_id: str):
    """Persisted record with a live query of both chains."""
    return await _reports().get_swap_details(swap_id)


@router.post("/swaps/{swap_id}/report")
async def generate_report(swap_id: str):
    return await _reports().generate_report(swap_id)


@router.get("/swaps/{swap_id}/export")
async def export_report(swap_id: str, format: str = Query("json")):
    data = await _reports().export_report(swap_id, format)
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="swap_{swap_id}_report.{format}"'},
    )


@router.get("/summary")
async def get_summary():
    return _reports().summary()


# ---------------------------------------------------------------------------
# Chain status
# ---------------------------------------------------------------------------

@router.get("/bitcoin/htlc/{address}/status")
async def get_bitcoin_htlc_status(address: str, hashlock: Optional[str] = None):
    return await _reports().get_bitcoin_status(address, hashlock)


@router.get("/ethereum/escrow/{address}/status")
async def get_ethereum_escrow_status(address: str):
    return await _reports().get_ethereum_status(address)
