"""
Relayer endpoints: register a swap for Bitcoin-funding monitoring and
query what the relayer is watching.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from portal_sdk.swap.relayer import Relayer, MonitoredSwap

log = logging.getLogger(__name__)

router = APIRouter(prefix="/relayer", tags=["relayer"])

_relayer: Optional[Relayer] = None


def configure(relayer: Relayer):
    """Configure relayer routes. Called once at startup by server.py."""
    global _relayer
    _relayer = relayer


def _get_relayer() -> Relayer:
    if _relayer is None:
        raise HTTPException(503, "Relayer not initialized")
    return _relayer


class MonitorSwapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    htlc_address: str = Field(..., alias="htlcAddress")
    order_hash: Optional[str] = Field(None, alias="orderHash")
    maker: Optional[str] = None
    receiver: Optional[str] = None
    htlc_hashlock: Optional[str] = Field(None, alias="htlcHashlock")
    htlc_timeout: Optional[int] = Field(None, alias="htlcTimeout")
    bitcoin_txid: Optional[str] = Field(None, alias="bitcoinTxid")
    swap_id: Optional[str] = Field(None, alias="swapId")


@router.post("/monitor-swap")
async def monitor_swap(req: MonitorSwapRequest):
    entry = _get_relayer().monitor_swap(MonitoredSwap(**req.model_dump()))
    return {
        "message": "Swap monitoring started",
        "orderId": entry.order_id,
        "status": entry.status.value,
    }


@router.get("/swap-status/{order_id}")
async def swap_status(order_id: str):
    return _get_relayer().get_status(order_id).to_dict()


@router.get("/active-swaps")
async def active_swaps():
    relayer = _get_relayer()
    return {
        "swaps": [
            {
                "orderId": s.order_id,
                "status": s.status.value,
                "watching": relayer.is_watching(s.order_id),
                "createdAt": s.created_at,
            }
            for s in relayer.active_swaps()
        ]
    }
