"""
In-memory chain adapters for tests.

FakeBitcoinHtlc and FakeEthereumEscrow implement the adapter methods the
coordinator, report service and relayer call, with the same error types
as the real adapters. Heights and timestamps only move when a test
advances them.

Failure injection: `fail_next["<method>"] = [exc, ...]` raises each
exception in turn on the next calls to that method.
"""

import hashlib
import itertools
from decimal import Decimal
from typing import Dict, List, Optional

from portal_sdk.core import ChainStatus, strip_0x
from portal_sdk.errors import (
    ConfirmationTimeout, DuplicateEscrowError, InvalidStateError, PreimageMismatchError,
)
from portal_sdk.chains.evm import eth_to_wei
from portal_sdk.htlc.btc import HTLCInfo, create_htlc_script, script_to_p2wsh_address
from portal_sdk.htlc.evm import EscrowStatus

CLAIMER_PUBKEY = "02" + "11" * 32
REFUND_PUBKEY = "03" + "22" * 32
RESOLVER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
USER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

_txids = itertools.count(1)


def fake_txid() -> str:
    return hashlib.sha256(f"tx-{next(_txids)}".encode()).hexdigest()


class _Failures:
    def __init__(self):
        self.fail_next: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []

    def _enter(self, method: str):
        self.calls.append(method)
        pending = self.fail_next.get(method)
        if pending:
            raise pending.pop(0)


class FakeBitcoinHtlc(_Failures):
    """Regtest-like Bitcoin side: a block height and a set of HTLCs."""

    def __init__(self, height: int = 100, confirms: bool = True):
        super().__init__()
        self.height = height
        self.confirms = confirms        # False: funding never confirms
        self.htlcs: Dict[str, Dict] = {}
        self.by_order: Dict[str, str] = {}
        self.tx_confirmations: Dict[str, int] = {}

    def mine(self, blocks: int = 1):
        self.height += blocks
        for txid in self.tx_confirmations:
            self.tx_confirmations[txid] += blocks

    async def create_htlc(self, hashlock: str, claimer_pubkey: str, timeout_blocks: int) -> HTLCInfo:
        self._enter("create_htlc")
        timelock = self.height + timeout_blocks
        script = create_htlc_script(hashlock, claimer_pubkey, REFUND_PUBKEY, timelock)
        address = script_to_p2wsh_address(script, "regtest")
        self.htlcs[address] = {
            "hashlock": strip_0x(hashlock).lower(),
            "timelock": timelock,
            "amount": Decimal(0),
            "funding_txid": None,
            "claim_txid": None,
            "refund_txid": None,
            "preimage": None,
        }
        return HTLCInfo(
            htlc_address=address,
            redeem_script=script.hex(),
            hashlock=strip_0x(hashlock).lower(),
            timeout_blocks=timeout_blocks,
            timelock=timelock,
        )

    async def fund_htlc(self, htlc_address: str, amount_btc) -> Dict:
        self._enter("fund_htlc")
        htlc = self.htlcs[htlc_address]
        txid = fake_txid()
        htlc["amount"] = Decimal(str(amount_btc))
        htlc["funding_txid"] = txid
        self.tx_confirmations[txid] = 0
        return {"txid": txid, "hex": "00", "funded": True}

    async def wait_for_confirmations(self, txid: str, confirmations: int = 1,
                                     timeout_ms: int = 0) -> int:
        self._enter("wait_for_confirmations")
        if not self.confirms:
            raise ConfirmationTimeout(f"Timeout waiting for {confirmations} confirmations on {txid}")
        self.mine(max(0, confirmations - self.tx_confirmations.get(txid, 0)))
        return self.tx_confirmations[txid]

    async def get_confirmations(self, txid: str) -> int:
        self._enter("get_confirmations")
        return self.tx_confirmations.get(txid, 0)

    async def check_funding(self, htlc_address: str) -> Dict:
        self._enter("check_funding")
        htlc = self.htlcs.get(htlc_address)
        if not htlc or not htlc["funding_txid"] or htlc["claim_txid"] or htlc["refund_txid"]:
            return {"funded": False, "amount": Decimal(0), "utxos": []}
        utxo = {
            "txid": htlc["funding_txid"],
            "amount": htlc["amount"],
            "confirmations": self.tx_confirmations[htlc["funding_txid"]],
        }
        return {"funded": True, "amount": htlc["amount"], "utxos": [utxo]}

    def _for_order(self, order_id: str, hashlock: Optional[str] = None) -> Dict:
        address = self.by_order.get(order_id)
        if address is None and hashlock is not None:
            address = next((a for a, h in self.htlcs.items() if h["hashlock"] == hashlock), None)
        if address is None:
            # Unregistered orders map to the most recent HTLC
            address = next(reversed(self.htlcs))
        return self.htlcs[address]

    def register_order(self, order_id: str, htlc_address: str):
        self.by_order[order_id] = htlc_address

    async def claim_htlc(self, order_id: str, preimage_hex: str) -> Dict:
        self._enter("claim_htlc")
        preimage = bytes.fromhex(strip_0x(preimage_hex))
        htlc = self._for_order(order_id, hashlib.sha256(preimage).hexdigest())
        if hashlib.sha256(preimage).hexdigest() != htlc["hashlock"]:
            raise PreimageMismatchError("Preimage does not match HTLC hashlock")
        if htlc["claim_txid"] or htlc["refund_txid"]:
            raise InvalidStateError("HTLC already spent")
        htlc["claim_txid"] = fake_txid()
        htlc["preimage"] = preimage.hex()
        return {"txid": htlc["claim_txid"], "status": "broadcast"}

    async def refund_htlc(self, order_id: str) -> Dict:
        self._enter("refund_htlc")
        htlc = self._for_order(order_id)
        if self.height < htlc["timelock"]:
            raise InvalidStateError(f"Timelock not reached ({self.height} < {htlc['timelock']})")
        if htlc["claim_txid"] or htlc["refund_txid"]:
            raise InvalidStateError("HTLC already spent")
        htlc["refund_txid"] = fake_txid()
        return {"txid": htlc["refund_txid"], "status": "broadcast"}

    async def get_block_count(self) -> int:
        self._enter("get_block_count")
        return self.height

    async def get_htlc_status(self, htlc_address: str, hashlock: Optional[str] = None) -> Dict:
        self._enter("get_htlc_status")
        htlc = self.htlcs.get(htlc_address)
        status = ChainStatus.PENDING.value
        if htlc:
            if htlc["claim_txid"]:
                status = ChainStatus.CLAIMED.value
            elif htlc["refund_txid"]:
                status = ChainStatus.REFUNDED.value
            elif htlc["funding_txid"]:
                status = ChainStatus.FUNDED.value
        spent = htlc and (htlc["claim_txid"] or htlc["refund_txid"])
        return {
            "address": htlc_address,
            "balance": Decimal(0) if not htlc or spent else htlc["amount"],
            "status": status,
            "transactions": [],
            "claimTx": htlc and htlc["claim_txid"],
            "refundTx": htlc and htlc["refund_txid"],
            "preimage": htlc and htlc["preimage"],
        }


class FakeEthereumEscrow(_Failures):
    """Dev-chain-like Ethereum side: a clock and one escrow per order hash."""

    def __init__(self, now: int = 1_700_000_000):
        super().__init__()
        self.now = now
        self.escrows: Dict[str, Dict] = {}
        self.by_order_hash: Dict[str, str] = {}
        self.claim_inputs: Dict[str, str] = {}
        self._addresses = itertools.count(1)

    def advance(self, seconds: int):
        self.now += seconds

    async def get_timestamp(self) -> int:
        self._enter("get_timestamp")
        return self.now

    async def get_escrow(self, order_hash) -> Optional[str]:
        return self.by_order_hash.get(strip_0x(order_hash).lower())

    async def create_escrow(self, order_hash, maker: str, receiver: str,
                            hashlock, timeout: int) -> str:
        self._enter("create_escrow")
        key = strip_0x(order_hash).lower()
        if key in self.by_order_hash:
            existing = self.by_order_hash[key]
            raise DuplicateEscrowError(f"Escrow already exists for order {order_hash}",
                                       details=existing)
        address = "0x" + f"{next(self._addresses):040x}"
        self.escrows[address] = {
            "maker": maker,
            "receiver": receiver,
            "hashlock": strip_0x(hashlock).lower(),
            "timeout": timeout,
            "amount": 0,
            "active": False,
            "claimed": False,
        }
        self.by_order_hash[key] = address
        return address

    async def fund_escrow(self, escrow_address: str, amount_eth) -> Dict:
        self._enter("fund_escrow")
        escrow = self.escrows[escrow_address]
        escrow["amount"] = eth_to_wei(amount_eth)
        escrow["active"] = True
        return {"txid": "0x" + fake_txid()}

    async def get_status(self, escrow_address: str) -> EscrowStatus:
        self._enter("get_status")
        e = self.escrows[escrow_address]
        return EscrowStatus(active=e["active"], amount=e["amount"],
                            timeout=e["timeout"], claimed=e["claimed"])

    async def claim_escrow(self, escrow_address: str, preimage, hashlock: Optional[str] = None) -> Dict:
        self._enter("claim_escrow")
        escrow = self.escrows[escrow_address]
        if isinstance(preimage, str):
            preimage = bytes.fromhex(strip_0x(preimage))
        if hashlib.sha256(preimage).hexdigest() != escrow["hashlock"]:
            raise PreimageMismatchError("Preimage does not match escrow hashlock")
        if escrow["claimed"] or not escrow["active"]:
            raise InvalidStateError("Escrow is not claimable")
        escrow["claimed"] = True
        escrow["active"] = False
        escrow["amount"] = 0
        txid = "0x" + fake_txid()
        self.claim_inputs[txid] = preimage.hex()
        return {"txid": txid}

    async def refund_escrow(self, escrow_address: str) -> Dict:
        self._enter("refund_escrow")
        escrow = self.escrows[escrow_address]
        if escrow["claimed"] or not escrow["active"]:
            raise InvalidStateError("Escrow is not refundable")
        if self.now < escrow["timeout"]:
            raise InvalidStateError("Escrow timeout not reached")
        escrow["active"] = False
        escrow["amount"] = 0
        return {"txid": "0x" + fake_txid()}

    async def get_revealed_preimage(self, escrow_address: str, claim_txid: str) -> str:
        self._enter("get_revealed_preimage")
        return "0x" + self.claim_inputs[claim_txid]


class FakeLop(_Failures):
    """Limit Order Protocol that records registrations and fills."""

    def __init__(self):
        super().__init__()
        self.orders: Dict[str, Dict] = {}

    async def initiate_cross_chain_swap(self, order_hash, btc_amount, eth_amount) -> Dict:
        self._enter("initiate_cross_chain_swap")
        self.orders[order_hash] = {"btc": btc_amount, "eth": eth_amount, "filled": False}
        return {"txid": "0x" + fake_txid()}

    async def fill_order(self, order_hash, maker: str, taker: str, eth_amount, btc_amount) -> Dict:
        self._enter("fill_order")
        self.orders[order_hash]["filled"] = True
        return {"txid": "0x" + fake_txid()}

    async def is_order_filled(self, order_hash) -> bool:
        return self.orders.get(order_hash, {}).get("filled", False)
