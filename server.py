#!/usr/bin/env python3
"""
Thunder Portal Server
Trustless BTC <-> ETH atomic swaps over a shared SHA256 hashlock.

Endpoints:
  GET  /health                          - Health check
  POST /execute-real-swap               - Initiate + set up both legs
  POST /execute-real-swap-with-lop      - Same, registered with the Limit Order Protocol
  POST /execute-real-partial-swap       - Chunked order filled by competing resolvers
  GET  /partial-orders/{orderId}        - Partial order fill status
  POST /swaps/{swapId}/complete         - Reveal preimage on Ethereum, claim Bitcoin
  POST /swaps/{swapId}/refund           - Refund legs whose timeout elapsed
  POST /swaps/{swapId}/abandon          - Stop driving a swap

  # Reports (routes/reports.py)
  GET  /api/reports/...

  # Relayer (routes/relayer.py)
  POST /relayer/monitor-swap
  GET  /relayer/swap-status/{orderId}
  GET  /relayer/active-swaps
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from portal_sdk.config import PortalConfig
from portal_sdk.core import SwapMode, SwapRecord
from portal_sdk.errors import (
    SwapError, ValidationError, ConfigurationError, SwapNotFoundError, RpcError,
    InsufficientFundsError, DuplicateEscrowError, PreimageMismatchError,
    InvalidStateError, ConfirmationTimeout,
)
from portal_sdk.chains.btc import BTCClient
from portal_sdk.chains.evm import EVMClient
from portal_sdk.htlc.btc import BTCHtlc
from portal_sdk.htlc.evm import EVMEscrow, LimitOrderProtocol
from portal_sdk.store import SwapStore, JsonFileSwapStore
from portal_sdk.swap.coordinator import SwapCoordinator, SwapRequest
from portal_sdk.swap.partial import (
    PartialFillCoordinator, ResolverAssignment, DEFAULT_RESOLVERS, validate_ranges,
)
from portal_sdk.swap.relayer import Relayer
from portal_sdk.swap.report import SwapReportService

from routes import reports as reports_routes
from routes import relayer as relayer_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# SERVICES
# =============================================================================


@dataclass
class Services:
    """Everything the endpoints need, built once at startup."""
    config: PortalConfig
    store: SwapStore
    coordinator: SwapCoordinator
    partial: PartialFillCoordinator
    reports: SwapReportService
    relayer: Relayer
    clients: list = field(default_factory=list)    # Closed on shutdown
    ethereum_ready: bool = False


_services: Optional[Services] = None


def build_services(config: PortalConfig) -> Services:
    """Wire chain clients, adapters and swap services from config."""
    btc_client = BTCClient(config.btc)
    btc_htlc = BTCHtlc(btc_client)

    evm_client = EVMClient(config.evm)
    escrow = None
    lop = None
    try:
        escrow = EVMEscrow(evm_client)
    except ConfigurationError as e:
        log.warning(f"Ethereum escrow disabled: {e}")
    if config.evm.lop_address:
        lop = LimitOrderProtocol(evm_client)

    resolver_address = evm_client.account.address if evm_client.account else ""
    if escrow is not None and not resolver_address:
        log.warning("RESOLVER_PRIVATE_KEY not set; Ethereum transactions will fail")

    store = JsonFileSwapStore(config.data_dir)
    coordinator = SwapCoordinator(
        btc_htlc, escrow, store, config.coordinator,
        resolver_address=resolver_address, lop=lop,
    )
    return Services(
        config=config,
        store=store,
        coordinator=coordinator,
        partial=PartialFillCoordinator(coordinator),
        reports=SwapReportService(store, btc=btc_htlc, eth=escrow),
        relayer=Relayer(btc_htlc, escrow, config.relayer, coordinator=coordinator),
        clients=[btc_htlc],
        ethereum_ready=escrow is not None and bool(resolver_address),
    )


def install(services: Services):
    """Make `services` the live set and hand them to the routers."""
    global _services
    _services = services
    reports_routes.configure(services.reports)
    relayer_routes.configure(services.relayer)


def _svc() -> Services:
    if _services is None:
        raise ConfigurationError("Services not initialized")
    return _services


def _require_ethereum(services: Services):
    if not services.ethereum_ready:
        raise ConfigurationError(
            "Ethereum not configured (FACTORY_ADDRESS and RESOLVER_PRIVATE_KEY are required)"
        )


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ExecuteSwapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    bitcoin_amount: Decimal = Field(..., alias="bitcoinAmount", gt=0)
    ethereum_amount: Decimal = Field(..., alias="ethereumAmount", gt=0)
    user_address: str = Field(..., alias="userAddress")
    mode: Optional[str] = None                          # simple | lop
    claimer_pubkey: Optional[str] = Field(None, alias="claimerPubkey")


class ResolverRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    chunks: Tuple[int, int]                             # [lo, hi] inclusive
    address: str
    claimer_pubkey: Optional[str] = Field(None, alias="claimerPubkey")


class PartialSwapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", min_length=1)
    bitcoin_amount: Decimal = Field(..., alias="bitcoinAmount", gt=0)
    ethereum_amount: Decimal = Field(..., alias="ethereumAmount", gt=0)
    resolvers: Optional[List[ResolverRange]] = None     # Defaults to the four dev resolvers
    complete: bool = True


def _parse_mode(value: Optional[str], default: SwapMode) -> SwapMode:
    if value is None:
        return default
    try:
        mode = SwapMode(value)
    except ValueError:
        raise ValidationError(f"Unknown mode: {value}")
    if mode == SwapMode.PARTIAL:
        raise ValidationError("Use /execute-real-partial-swap for partial swaps")
    return mode


def swap_response(swap: SwapRecord) -> dict:
    """Client-facing view of a set-up swap. Never includes the preimage before reveal."""
    return {
        "swapId": swap.swap_id,
        "orderId": swap.order_id,
        "mode": swap.mode,
        "state": swap.state.value,
        "status": swap.overall_status.value,
        "preimageHash": swap.preimage_hash,
        "bitcoin": {
            "htlcAddress": swap.bitcoin.htlc_address,
            "fundingTxid": swap.bitcoin.funding_txid,
            "claimTxid": swap.bitcoin.claim_txid,
            "refundTxid": swap.bitcoin.refund_txid,
            "timelock": swap.bitcoin.timelock,
        },
        "ethereum": {
            "escrowAddress": swap.ethereum.escrow_address,
            "orderHash": swap.ethereum.order_hash,
            "fundingTxid": swap.ethereum.funding_txid,
            "claimTxid": swap.ethereum.claim_txid,
            "refundTxid": swap.ethereum.refund_txid,
            "timeout": swap.ethereum.timeout,
        },
        "lopTxid": swap.lop_txid,
        "revealedPreimage": swap.revealed_preimage,
        "instructions": [
            f"POST /swaps/{swap.swap_id}/complete to reveal the preimage and claim both legs",
            f"POST /swaps/{swap.swap_id}/refund after the timeouts if the swap stalls",
            f"GET /api/reports/swaps/{swap.swap_id} for live chain status",
        ],
    }


# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="Thunder Portal",
    description="Trustless BTC <-> ETH atomic swaps",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(reports_routes.router)
app.include_router(relayer_routes.router)

# =============================================================================
# ERRORS
# =============================================================================

ERROR_STATUS = {
    ValidationError: 400,
    InsufficientFundsError: 400,
    SwapNotFoundError: 404,
    DuplicateEscrowError: 409,
    InvalidStateError: 409,
    PreimageMismatchError: 409,
    RpcError: 502,
    ConfigurationError: 503,
    ConfirmationTimeout: 504,
}


def status_for(exc: SwapError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


@app.exception_handler(SwapError)
async def swap_error_handler(request: Request, exc: SwapError):
    status = status_for(exc)
    if status >= 500:
        log.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": "ValidationError", "details": details})


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health")
async def health():
    """Health check."""
    services = _services
    swaps = services.store.all() if services else []
    return {
        "status": "ok",
        "service": "thunder-portal",
        "version": "0.1.0",
        "timestamp": int(time.time()),
        "ethereum": bool(services and services.ethereum_ready),
        "limitOrderProtocol": bool(services and services.coordinator.lop is not None),
        "swapsTotal": len(swaps),
        "swapsActive": len([s for s in swaps if not s.is_terminal]),
    }


async def _execute(req: ExecuteSwapRequest, mode: SwapMode) -> dict:
    services = _svc()
    _require_ethereum(services)
    request = SwapRequest(
        order_id=req.order_id,
        bitcoin_amount=req.bitcoin_amount,
        ethereum_amount=req.ethereum_amount,
        user_address=req.user_address,
        mode=mode,
        claimer_pubkey=req.claimer_pubkey,
    )
    log.info(f"Executing {mode.value} swap for order {req.order_id}: "
             f"{req.bitcoin_amount} BTC <-> {req.ethereum_amount} ETH")
    swap = await services.coordinator.execute(request)
    return swap_response(swap)


@app.post("/execute-real-swap")
async def execute_real_swap(req: ExecuteSwapRequest):
    return await _execute(req, _parse_mode(req.mode, SwapMode.SIMPLE))


@app.post("/execute-real-swap-with-lop")
async def execute_real_swap_with_lop(req: ExecuteSwapRequest):
    return await _execute(req, SwapMode.LIMIT_ORDER)


@app.post("/execute-real-partial-swap")
async def execute_real_partial_swap(req: PartialSwapRequest):
    services = _svc()
    _require_ethereum(services)

    if req.resolvers:
        assignments = [
            ResolverAssignment(r.name, r.chunks[0], r.chunks[1], r.address, r.claimer_pubkey)
            for r in req.resolvers
        ]
    else:
        assignments = list(DEFAULT_RESOLVERS)
    validate_ranges(assignments)

    state = services.partial.create_order(req.order_id, req.bitcoin_amount, req.ethereum_amount)
    state = await services.partial.fill(state.order, assignments, complete=req.complete)
    return state.to_dict()


@app.get("/partial-orders/{order_id}")
async def get_partial_order(order_id: str):
    return _svc().partial.refresh(order_id).to_dict()


@app.post("/swaps/{swap_id}/complete")
async def complete_swap(swap_id: str):
    swap = await _svc().coordinator.complete(swap_id)
    return swap_response(swap)


@app.post("/swaps/{swap_id}/refund")
async def refund_swap(swap_id: str):
    swap = await _svc().coordinator.refund(swap_id)
    return swap_response(swap)


@app.post("/swaps/{swap_id}/abandon")
async def abandon_swap(swap_id: str):
    swap = await _svc().coordinator.abandon(swap_id)
    return swap_response(swap)


# =============================================================================
# LIFECYCLE
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Build services from the environment unless already installed."""
    if _services is None:
        install(build_services(PortalConfig.from_env()))
    log.info(f"Swap data directory: {_services.config.data_dir}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    if _services is None:
        return
    await _services.relayer.stop()
    for client in _services.clients:
        await client.close()
    log.info("Thunder Portal stopped")


if __name__ == "__main__":
    import uvicorn
    config = PortalConfig.from_env()
    install(build_services(config))
    log.info(f"Starting Thunder Portal on port {config.port}")
    log.info(f"Docs: http://0.0.0.0:{config.port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=config.port)
