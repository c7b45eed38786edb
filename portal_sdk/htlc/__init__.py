"""
HTLC (Hash Time-Locked Contract) implementations for each chain.

HTLCs enable trustless atomic swaps by ensuring:
1. Funds can only be claimed with knowledge of a secret (preimage)
2. Funds can be refunded after a timeout if not claimed

- BTC: P2WSH script built by the HTLC micro-API, funded from the node wallet
- EVM: one escrow contract per order, deployed by the escrow factory
"""

from .btc import BTCHtlc, HTLCInfo
from .evm import EVMEscrow, EscrowStatus, LimitOrderProtocol

__all__ = ["BTCHtlc", "HTLCInfo", "EVMEscrow", "EscrowStatus", "LimitOrderProtocol"]
