"""
EVM RPC Client for Thunder Portal SDK.

Wraps an async web3 provider and the resolver's signing key. All
transactions from one signer go through a NonceManager so concurrent
swaps sharing a key queue instead of racing for the same nonce.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..config import EVMConfig
from ..core import WEI_PER_ETH
from ..errors import RpcError, ConfirmationTimeout, ConfigurationError

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class NonceManager:
    """
    Per-signer nonce tracking.

    The first transaction of a signer reads the pending nonce from the
    node; later ones increment locally while holding that signer's lock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._next: Dict[str, int] = {}

    def lock_for(self, address: str) -> asyncio.Lock:
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def next_nonce(self, address: str, fetch) -> int:
        """Nonce for the next tx. Caller must hold `lock_for(address)`."""
        key = address.lower()
        if key not in self._next:
            self._next[key] = await fetch(address)
        return self._next[key]

    def commit(self, address: str):
        """The reserved nonce was used by a broadcast tx."""
        self._next[address.lower()] += 1

    def reset(self, address: str):
        """Drop the cached nonce; it is re-read on the next tx."""
        self._next.pop(address.lower(), None)


def eth_to_wei(amount) -> int:
    return int(Decimal(str(amount)) * WEI_PER_ETH)


def wei_to_eth(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_ETH


def to_bytes32(value) -> bytes:
    """Accept bytes or (0x-)hex and return exactly 32 bytes."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        text = value[2:] if value.startswith("0x") else value
        raw = bytes.fromhex(text)
    if len(raw) != 32:
        raise ValueError(f"bytes32 must be 32 bytes, got {len(raw)}")
    return raw


def _hex(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


class EVMClient:
    """Async web3 client bound to one signing account."""

    def __init__(self, config: EVMConfig, w3: Optional[AsyncWeb3] = None,
                 nonces: Optional[NonceManager] = None):
        self.config = config
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.nonces = nonces or NonceManager()
        self.account = None
        if config.private_key:
            key = config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self.account = Account.from_key(key)

    @property
    def address(self) -> str:
        if not self.account:
            raise ConfigurationError("No signer configured (RESOLVER_PRIVATE_KEY)")
        return self.account.address

    def contract(self, address: str, abi: list):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def _pending_nonce(self, address: str) -> int:
        return await self.w3.eth.get_transaction_count(address, "pending")

    # =========================================================================
    # Transactions
    # =========================================================================

    async def send(self, fn, gas: int, value: int = 0, label: str = "") -> str:
        """
        Build, sign and broadcast a contract call from the signer.

        Returns the tx hash (0x-hex). Holds the signer lock only until
        the tx is broadcast.
        """
        sender = self.address
        async with self.nonces.lock_for(sender):
            try:
                nonce = await self.nonces.next_nonce(sender, self._pending_nonce)
                tx = await fn.build_transaction({
                    "from": sender,
                    "nonce": nonce,
                    "gas": gas,
                    "value": value,
                    "chainId": self.config.chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                raise RpcError(f"Reverted: {e}", method=label or "send")
            except (OSError, asyncio.TimeoutError) as e:
                self.nonces.reset(sender)
                raise RpcError(str(e) or type(e).__name__, method=label or "send", transient=True)
            except (Web3Exception, ValueError) as e:
                # Covers "nonce too low" after an out-of-band tx from the same key
                self.nonces.reset(sender)
                raise RpcError(str(e), method=label or "send")
            self.nonces.commit(sender)

        tx_hex = _hex(tx_hash)
        log.info(f"{label or 'tx'} sent: {tx_hex} (nonce={nonce})")
        return tx_hex

    async def wait_for_receipt(self, tx_hash: str, label: str = "") -> Dict[str, Any]:
        """Wait for a receipt; a reverted receipt is an RpcError."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout
            )
        except TimeExhausted:
            raise ConfirmationTimeout(f"No receipt for {tx_hash} after {self.config.receipt_timeout}s")
        except (OSError, asyncio.TimeoutError) as e:
            raise RpcError(str(e) or type(e).__name__, method="eth_getTransactionReceipt", transient=True)

        if receipt["status"] != 1:
            raise RpcError(f"Transaction {tx_hash} failed", method=label or "receipt")
        return receipt

    async def transact(self, fn, gas: int, value: int = 0, label: str = "") -> tuple[str, Dict]:
        """send() + wait_for_receipt()."""
        tx_hash = await self.send(fn, gas=gas, value=value, label=label)
        receipt = await self.wait_for_receipt(tx_hash, label=label)
        return tx_hash, receipt

    async def _rpc(self, awaitable, method: str) -> Any:
        """Await a node request, mapping web3 and transport errors to RpcError."""
        try:
            return await awaitable
        except ContractLogicError as e:
            raise RpcError(f"Reverted: {e}", method=method)
        except (OSError, asyncio.TimeoutError) as e:
            raise RpcError(str(e) or type(e).__name__, method=method, transient=True)
        except (Web3Exception, ValueError) as e:
            raise RpcError(str(e), method=method)

    async def call(self, fn, label: str = "") -> Any:
        """Read-only contract call."""
        return await self._rpc(fn.call(), label or "eth_call")

    # =========================================================================
    # Basic Operations
    # =========================================================================

    async def get_block_timestamp(self) -> int:
        """Timestamp of the latest block."""
        block = await self._rpc(self.w3.eth.get_block("latest"), "eth_getBlockByNumber")
        return int(block["timestamp"])

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        return await self._rpc(self.w3.eth.get_transaction(tx_hash), "eth_getTransactionByHash")

    async def get_eth_balance(self, address: str) -> Decimal:
        """Get ETH balance in ETH (not wei)."""
        wei = await self._rpc(
            self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address)), "eth_getBalance"
        )
        return wei_to_eth(wei)

    @staticmethod
    def is_valid_address(address: str) -> bool:
        """Check if address is valid."""
        return bool(address) and AsyncWeb3.is_address(address)
