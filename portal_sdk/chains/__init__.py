"""
Chain clients for Thunder Portal SDK.

- BTC: Bitcoin Core JSON-RPC over HTTP
- EVM: web3 provider + resolver signer with per-signer nonce tracking
"""

from .btc import BTCClient
from .evm import EVMClient, NonceManager

__all__ = ["BTCClient", "EVMClient", "NonceManager"]
