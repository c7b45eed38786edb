"""
EVM escrow implementation for Thunder Portal SDK.

One escrow contract per order, deployed by the EscrowFactory:

    factory.createEscrow(orderHash, maker, receiver, hashlock, timeout)
    escrow.createHTLC()            payable, locks msg.value
    escrow.claimHTLC(preimage)     requires sha256(preimage) == hashlock
    escrow.refundHTLC()            after timeout, if not claimed

The hashlock is SHA256 on both chains; Keccak-256 is used for the order
hash only.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict

from web3 import AsyncWeb3

from ..core import sha256, strip_0x, btc_to_sats, ChainStatus
from ..chains.evm import EVMClient, ZERO_ADDRESS, eth_to_wei, wei_to_eth, to_bytes32
from ..errors import (
    DuplicateEscrowError, PreimageMismatchError, InvalidStateError,
    ConfigurationError, ValidationError, RpcError,
)

log = logging.getLogger(__name__)


# Contract ABIs (minimal - only functions we use)
FACTORY_ABI = [
    {
        "name": "createEscrow",
        "type": "function",
        "inputs": [
            {"name": "orderHash", "type": "bytes32"},
            {"name": "maker", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "htlcHashlock", "type": "bytes32"},
            {"name": "htlcTimeout", "type": "uint256"}
        ],
        "outputs": [{"name": "escrow", "type": "address"}]
    },
    {
        "name": "escrows",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "address"}]
    },
    {
        "name": "EscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "orderHash", "type": "bytes32", "indexed": True},
            {"name": "escrow", "type": "address", "indexed": True}
        ]
    },
]

ESCROW_ABI = [
    {
        "name": "createHTLC",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [],
        "outputs": []
    },
    {
        "name": "claimHTLC",
        "type": "function",
        "inputs": [{"name": "preimage", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "refundHTLC",
        "type": "function",
        "inputs": [],
        "outputs": []
    },
    {
        "name": "getStatus",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [
            {"name": "active", "type": "bool"},
            {"name": "amount", "type": "uint256"},
            {"name": "timeout", "type": "uint256"},
            {"name": "claimed", "type": "bool"}
        ]
    },
]

LIMIT_ORDER_PROTOCOL_ABI = [
    {
        "name": "initiateCrossChainSwap",
        "type": "function",
        "inputs": [
            {"name": "orderHash", "type": "bytes32"},
            {"name": "bitcoinAmount", "type": "uint256"},
            {"name": "ethereumAmount", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "fillOrder",
        "type": "function",
        "inputs": [
            {"name": "orderHash", "type": "bytes32"},
            {"name": "maker", "type": "address"},
            {"name": "taker", "type": "address"},
            {"name": "makingAmount", "type": "uint256"},
            {"name": "takingAmount", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "isOrderFilled",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "orderHash", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "remainingAmount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
]


@dataclass
class EscrowStatus:
    """Result of escrow.getStatus()."""
    active: bool
    amount: int         # wei
    timeout: int        # unix timestamp
    claimed: bool

    def chain_status(self, funded: bool = True) -> str:
        """
        Map contract flags onto a ChainStatus value.

        `funded` tells an unfunded escrow (inactive, zero amount) apart
        from a refunded one; getStatus() alone cannot.
        """
        if self.claimed:
            return ChainStatus.CLAIMED.value
        if self.active and self.amount > 0:
            return ChainStatus.FUNDED.value
        if not self.active and self.amount == 0 and funded:
            return ChainStatus.REFUNDED.value
        return ChainStatus.CREATED.value

    def to_dict(self) -> Dict:
        return {
            "active": self.active,
            "amount": str(wei_to_eth(self.amount)),
            "timeout": self.timeout,
            "claimed": self.claimed,
        }


def _bytes32(value, name: str) -> bytes:
    try:
        return to_bytes32(value)
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f"{name}: {e}")


class EVMEscrow:
    """
    Escrow factory + per-order escrow adapter.

    Every write goes through EVMClient, i.e. through the signer's nonce
    queue. Failed transactions raise; nothing is ever faked.
    """

    def __init__(self, client: EVMClient, factory_address: Optional[str] = None):
        self.client = client
        self.config = client.config
        address = factory_address or self.config.factory_address
        if not address or address == ZERO_ADDRESS:
            raise ConfigurationError("FACTORY_ADDRESS not configured")
        self.factory = client.contract(address, FACTORY_ABI)

    def _escrow(self, escrow_address: str):
        return self.client.contract(escrow_address, ESCROW_ABI)

    async def get_escrow(self, order_hash) -> Optional[str]:
        """Escrow deployed for `order_hash`, or None."""
        address = await self.client.call(
            self.factory.functions.escrows(_bytes32(order_hash, "order_hash")),
            label="escrows",
        )
        if not address or int(address, 16) == 0:
            return None
        return address

    async def create_escrow(self, order_hash, maker: str, receiver: str,
                            hashlock, timeout: int) -> str:
        """
        Deploy the escrow for an order and return its address.

        Raises DuplicateEscrowError if one already exists for `order_hash`.
        """
        order_hash_b = _bytes32(order_hash, "order_hash")
        hashlock_b = _bytes32(hashlock, "hashlock")
        for name, addr in (("maker", maker), ("receiver", receiver)):
            if not EVMClient.is_valid_address(addr):
                raise ValidationError(f"Invalid {name} address: {addr!r}")

        existing = await self.get_escrow(order_hash_b)
        if existing:
            raise DuplicateEscrowError(
                f"Escrow already exists for order 0x{order_hash_b.hex()}",
                details=existing,
            )

        fn = self.factory.functions.createEscrow(
            order_hash_b,
            AsyncWeb3.to_checksum_address(maker),
            AsyncWeb3.to_checksum_address(receiver),
            hashlock_b,
            int(timeout),
        )
        tx_hash, _ = await self.client.transact(
            fn, gas=self.config.gas_create_escrow, label="createEscrow"
        )

        escrow_address = await self.get_escrow(order_hash_b)
        if not escrow_address:
            raise RpcError(f"Factory has no escrow after tx {tx_hash}", method="createEscrow")

        log.info(f"Created escrow {escrow_address} for order 0x{order_hash_b.hex()[:16]}...")
        return escrow_address

    async def fund_escrow(self, escrow_address: str, amount_eth) -> Dict:
        """Lock `amount_eth` in the escrow (createHTLC)."""
        value = eth_to_wei(amount_eth)
        if value <= 0:
            raise ValidationError(f"Escrow amount must be positive: {amount_eth}")

        tx_hash, _ = await self.client.transact(
            self._escrow(escrow_address).functions.createHTLC(),
            gas=self.config.gas_fund_escrow, value=value, label="createHTLC",
        )
        log.info(f"Funded escrow {escrow_address} with {amount_eth} ETH: {tx_hash}")
        return {"txid": tx_hash}

    async def get_status(self, escrow_address: str) -> EscrowStatus:
        active, amount, timeout, claimed = await self.client.call(
            self._escrow(escrow_address).functions.getStatus(), label="getStatus"
        )
        return EscrowStatus(active=bool(active), amount=int(amount),
                            timeout=int(timeout), claimed=bool(claimed))

    async def claim_escrow(self, escrow_address: str, preimage,
                           hashlock=None) -> Dict:
        """
        Claim the escrow by revealing `preimage`.

        The preimage is checked against `hashlock` and the escrow state is
        checked before any transaction is sent.
        """
        preimage_b = _bytes32(preimage, "preimage")
        if hashlock is not None and sha256(preimage_b) != _bytes32(hashlock, "hashlock"):
            raise PreimageMismatchError(
                f"SHA256(preimage) does not match hashlock of {escrow_address}"
            )

        status = await self.get_status(escrow_address)
        if status.claimed:
            raise InvalidStateError(f"Escrow {escrow_address} already claimed")
        if not status.active:
            raise InvalidStateError(f"Escrow {escrow_address} is not active")

        tx_hash, _ = await self.client.transact(
            self._escrow(escrow_address).functions.claimHTLC(preimage_b),
            gas=self.config.gas_claim, label="claimHTLC",
        )
        log.info(f"Claimed escrow {escrow_address}: {tx_hash}")
        return {"txid": tx_hash}

    async def refund_escrow(self, escrow_address: str) -> Dict:
        """Refund the escrow to its maker after timeout."""
        status = await self.get_status(escrow_address)
        if status.claimed:
            raise InvalidStateError(f"Escrow {escrow_address} already claimed")
        if not status.active:
            raise InvalidStateError(f"Escrow {escrow_address} is not active")
        now = await self.client.get_block_timestamp()
        if now < status.timeout:
            raise InvalidStateError(
                f"Escrow {escrow_address} timeout not reached",
                details=f"timeout={status.timeout}, now={now}",
            )

        tx_hash, _ = await self.client.transact(
            self._escrow(escrow_address).functions.refundHTLC(),
            gas=self.config.gas_refund, label="refundHTLC",
        )
        log.info(f"Refunded escrow {escrow_address}: {tx_hash}")
        return {"txid": tx_hash}

    async def get_revealed_preimage(self, escrow_address: str, claim_txid: str) -> str:
        """Preimage (hex) from the calldata of a claimHTLC transaction."""
        tx = await self.client.get_transaction(claim_txid)
        escrow = self._escrow(escrow_address)
        try:
            fn, args = escrow.decode_function_input(tx["input"])
        except ValueError as e:
            raise ValidationError(f"Tx {claim_txid} is not a claimHTLC call", details=str(e))
        if fn.fn_name != "claimHTLC":
            raise ValidationError(f"Tx {claim_txid} is not a claimHTLC call")
        return bytes(args["preimage"]).hex()

    async def get_timestamp(self) -> int:
        return await self.client.get_block_timestamp()


class LimitOrderProtocol:
    """Order registration/fill on the Limit Order Protocol contract."""

    def __init__(self, client: EVMClient, address: Optional[str] = None):
        self.client = client
        address = address or client.config.lop_address
        if not address or address == ZERO_ADDRESS:
            raise ConfigurationError("LIMIT_ORDER_PROTOCOL_ADDRESS not configured")
        self.contract = client.contract(address, LIMIT_ORDER_PROTOCOL_ABI)

    async def initiate_cross_chain_swap(self, order_hash, btc_amount, eth_amount) -> Dict:
        """Register an order; amounts are sats and wei on-chain."""
        tx_hash, _ = await self.client.transact(
            self.contract.functions.initiateCrossChainSwap(
                _bytes32(order_hash, "order_hash"),
                btc_to_sats(btc_amount),
                eth_to_wei(eth_amount),
            ),
            gas=self.client.config.gas_fund_escrow, label="initiateCrossChainSwap",
        )
        return {"txid": tx_hash}

    async def fill_order(self, order_hash, maker: str, taker: str,
                         eth_amount, btc_amount) -> Dict:
        """Mark an order filled: maker gives ETH, taker gives BTC."""
        tx_hash, _ = await self.client.transact(
            self.contract.functions.fillOrder(
                _bytes32(order_hash, "order_hash"),
                AsyncWeb3.to_checksum_address(maker),
                AsyncWeb3.to_checksum_address(taker),
                eth_to_wei(eth_amount),
                btc_to_sats(btc_amount),
            ),
            gas=self.client.config.gas_fund_escrow, label="fillOrder",
        )
        return {"txid": tx_hash}

    async def is_order_filled(self, order_hash) -> bool:
        return bool(await self.client.call(
            self.contract.functions.isOrderFilled(_bytes32(order_hash, "order_hash")),
            label="isOrderFilled",
        ))

    async def remaining_amount(self, order_hash) -> Decimal:
        """Remaining ETH on the order."""
        wei = await self.client.call(
            self.contract.functions.remainingAmount(_bytes32(order_hash, "order_hash")),
            label="remainingAmount",
        )
        return wei_to_eth(int(wei))
