"""
Thunder Portal SDK - Trustless BTC <-> ETH Atomic Swaps

Coordinates HTLC swaps between a Bitcoin P2WSH HTLC and an Ethereum
escrow sharing one SHA256 hashlock, with optional partial fulfillment
through a Merkle tree of 101 chunk secrets.

Usage:
    from portal_sdk import SwapCoordinator, SwapRequest, BTCHtlc, EVMEscrow

    coordinator = SwapCoordinator(btc_htlc, evm_escrow, store,
                                  resolver_address=evm_client.address)
    swap = await coordinator.execute(SwapRequest(
        order_id="order-1",
        bitcoin_amount=Decimal("0.001"),
        ethereum_amount=Decimal("0.01"),
        user_address="0x...",
    ))
    swap = await coordinator.complete(swap.swap_id)
"""

from .core import (
    SwapState,
    SwapMode,
    OverallStatus,
    ChainStatus,
    SwapRecord,
    generate_secret,
    generate_simple_commitment,
    verify_preimage,
    btc_to_sats,
    sats_to_btc,
)
from .errors import (
    SwapError,
    RpcError,
    ValidationError,
    InvalidStateError,
    PreimageMismatchError,
    DuplicateEscrowError,
    ConfirmationTimeout,
)
from .config import BTCConfig, EVMConfig, CoordinatorConfig, RelayerConfig, PortalConfig
from .merkle import MerkleChunkTree, build_tree, generate_chunk_secrets, verify_chunk

from .chains.btc import BTCClient
from .chains.evm import EVMClient, NonceManager

from .htlc.btc import BTCHtlc
from .htlc.evm import EVMEscrow, LimitOrderProtocol

from .store import SwapStore, MemorySwapStore, JsonFileSwapStore

from .swap.coordinator import SwapCoordinator, SwapRequest
from .swap.partial import PartialFillCoordinator, ChunkedOrder, ResolverAssignment
from .swap.relayer import Relayer, MonitoredSwap
from .swap.report import SwapReportService, determine_overall_status

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapState",
    "SwapMode",
    "OverallStatus",
    "ChainStatus",
    "SwapRecord",
    # Utilities
    "generate_secret",
    "generate_simple_commitment",
    "verify_preimage",
    "btc_to_sats",
    "sats_to_btc",
    # Errors
    "SwapError",
    "RpcError",
    "ValidationError",
    "InvalidStateError",
    "PreimageMismatchError",
    "DuplicateEscrowError",
    "ConfirmationTimeout",
    # Config
    "BTCConfig",
    "EVMConfig",
    "CoordinatorConfig",
    "RelayerConfig",
    "PortalConfig",
    # Merkle
    "MerkleChunkTree",
    "build_tree",
    "generate_chunk_secrets",
    "verify_chunk",
    # Clients
    "BTCClient",
    "EVMClient",
    "NonceManager",
    # HTLC
    "BTCHtlc",
    "EVMEscrow",
    "LimitOrderProtocol",
    # Store
    "SwapStore",
    "MemorySwapStore",
    "JsonFileSwapStore",
    # Swap
    "SwapCoordinator",
    "SwapRequest",
    "PartialFillCoordinator",
    "ChunkedOrder",
    "ResolverAssignment",
    "Relayer",
    "MonitoredSwap",
    "SwapReportService",
    "determine_overall_status",
]
