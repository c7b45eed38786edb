"""
Partial order fulfillment.

An order is split into 100 chunks (1% each) with 101 independent secrets
committed to by a Merkle root (see merkle.py). Competing resolvers take
disjoint index ranges [lo, hi]; each range runs its own simple swap,
hashlocked with SHA256(secrets[hi]), so no resolver can claim with
another's secret.

Partial fills are final: an order that stops short of 100% is
PARTIALLY_FILLED, never rolled back.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Dict, Optional, Set

from ..core import (
    SwapMode, SwapState, sha256, order_hash_for, now_ms,
    CHUNK_COUNT,
)
from ..merkle import ChunkSecrets, MerkleChunkTree, generate_chunk_secrets, verify_chunk_secret
from ..errors import SwapError, ValidationError, PreimageMismatchError, SwapNotFoundError, InvalidStateError
from .coordinator import SwapCoordinator, SwapRequest, ModeStrategy

log = logging.getLogger(__name__)

BTC_QUANTUM = Decimal("0.00000001")
ETH_QUANTUM = Decimal("0.000000000000000001")


class FillStatus(Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FILLED = "FILLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OrderFillStatus(Enum):
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"


@dataclass
class ResolverAssignment:
    """One resolver's claim on chunk indices lo..hi (inclusive)."""
    name: str
    lo: int
    hi: int
    address: str                        # Ethereum escrow receiver
    claimer_pubkey: Optional[str] = None

    @property
    def fill_percent(self) -> int:
        return self.hi - self.lo + 1

    @property
    def indices(self) -> range:
        return range(self.lo, self.hi + 1)


# Default competing resolvers (local dev-chain accounts)
DEFAULT_RESOLVERS = [
    ResolverAssignment("Resolver A", 0, 19, "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"),
    ResolverAssignment("Resolver B", 20, 44, "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"),
    ResolverAssignment("Resolver C", 45, 69, "0x90F79bf6EB2c4f870365E785982E1f101E93b906"),
    ResolverAssignment("Resolver D", 70, 99, "0x15d34AAf54267DB7D7c367839AAf71A00a2C6A65"),
]


def validate_ranges(assignments: List[ResolverAssignment]):
    """Ranges must lie in [0, 99] and be pairwise disjoint."""
    if not assignments:
        raise ValidationError("At least one resolver assignment is required")

    names = set()
    for a in assignments:
        if a.name in names:
            raise ValidationError(f"Duplicate resolver: {a.name}")
        names.add(a.name)
        if not (0 <= a.lo <= a.hi < CHUNK_COUNT):
            raise ValidationError(f"Range [{a.lo}, {a.hi}] of {a.name} is out of [0, {CHUNK_COUNT - 1}]")

    ordered = sorted(assignments, key=lambda a: a.lo)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.lo <= prev.hi:
            raise ValidationError(
                f"Ranges overlap: {prev.name} [{prev.lo}, {prev.hi}] and {cur.name} [{cur.lo}, {cur.hi}]"
            )


@dataclass
class ChunkedOrder:
    """An order with 101 chunk secrets and their Merkle commitment."""
    order_id: str
    bitcoin_amount: Decimal
    ethereum_amount: Decimal
    secrets: ChunkSecrets
    tree: MerkleChunkTree
    created_at: int = 0

    @classmethod
    def create(cls, order_id: str, bitcoin_amount, ethereum_amount) -> "ChunkedOrder":
        secrets = generate_chunk_secrets()
        tree = MerkleChunkTree.from_hashed_secrets(secrets.hashed_secrets)
        order = cls(
            order_id=order_id,
            bitcoin_amount=Decimal(str(bitcoin_amount)),
            ethereum_amount=Decimal(str(ethereum_amount)),
            secrets=secrets,
            tree=tree,
            created_at=now_ms(),
        )
        log.info(f"Chunked order {order_id}: root={tree.root_hex[:18]}..., depth={tree.depth}")
        return order

    @property
    def merkle_root(self) -> str:
        return self.tree.root_hex

    def designated_index(self, assignment: ResolverAssignment) -> int:
        """Index whose secret locks a range: the last chunk of the range."""
        return assignment.hi

    def share(self, assignment: ResolverAssignment) -> tuple[Decimal, Decimal]:
        """(btc, eth) pro-rated by the range's fill percentage."""
        pct = Decimal(assignment.fill_percent) / CHUNK_COUNT
        return (
            (self.bitcoin_amount * pct).quantize(BTC_QUANTUM),
            (self.ethereum_amount * pct).quantize(ETH_QUANTUM),
        )

    def to_dict(self) -> Dict:
        # Secrets stay in memory only
        return {
            "orderId": self.order_id,
            "bitcoinAmount": str(self.bitcoin_amount),
            "ethereumAmount": str(self.ethereum_amount),
            "merkleRoot": self.merkle_root,
            "treeDepth": self.tree.depth,
            "totalSecrets": len(self.secrets),
            "createdAt": self.created_at,
        }


@dataclass
class FillRecord:
    """Progress of one resolver's range."""
    resolver: str
    lo: int
    hi: int
    address: str
    hashlock: str
    order_hash: str
    bitcoin_amount: Decimal
    ethereum_amount: Decimal
    status: FillStatus = FillStatus.PENDING
    swap_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def fill_percent(self) -> int:
        return self.hi - self.lo + 1

    def to_dict(self) -> Dict:
        return {
            "resolver": self.resolver,
            "chunks": [self.lo, self.hi],
            "fillPercent": self.fill_percent,
            "address": self.address,
            "hashlock": self.hashlock,
            "orderHash": self.order_hash,
            "bitcoinAmount": str(self.bitcoin_amount),
            "ethereumAmount": str(self.ethereum_amount),
            "status": self.status.value,
            "swapId": self.swap_id,
            "error": self.error,
        }


def overall_filled(fills: List[FillRecord]) -> int:
    """Percentage of the order covered by FILLED ranges."""
    return sum(f.fill_percent for f in fills if f.status == FillStatus.FILLED)


def covered_indices(fills: List[FillRecord]) -> Set[int]:
    """Chunk indices covered by FILLED ranges."""
    covered: Set[int] = set()
    for f in fills:
        if f.status == FillStatus.FILLED:
            covered.update(range(f.lo, f.hi + 1))
    return covered


def reserved_assignments(fills: List[FillRecord]) -> List[ResolverAssignment]:
    """Ranges already taken by earlier fills of an order."""
    return [ResolverAssignment(f.resolver, f.lo, f.hi, f.address) for f in fills]


def aggregate_status(fills: List[FillRecord]) -> OrderFillStatus:
    if overall_filled(fills) >= CHUNK_COUNT:
        return OrderFillStatus.FILLED
    if any(f.status in (FillStatus.PENDING, FillStatus.ACTIVE) for f in fills):
        return OrderFillStatus.OPEN
    if overall_filled(fills) > 0:
        return OrderFillStatus.PARTIALLY_FILLED
    return OrderFillStatus.OPEN


class PartialFillMode(ModeStrategy):
    """
    Per-resolver swap of a chunked order.

    Before any funds move, the designated secret must verify against the
    order's Merkle root and match the swap's hashlock.
    """
    mode = SwapMode.PARTIAL

    def __init__(self, order: ChunkedOrder, index: int):
        self.order = order
        self.index = index

    async def _verify(self, swap):
        secret = self.order.secrets.secrets[self.index]
        proof = self.order.tree.get_proof(self.index)
        if not verify_chunk_secret(self.index, secret, proof, self.order.tree.root):
            raise PreimageMismatchError(f"Chunk {self.index} does not verify against the order root")
        if sha256(secret).hex() != swap.preimage_hash:
            raise PreimageMismatchError(f"Swap hashlock is not chunk {self.index}'s hashed secret")

    async def before_setup(self, coordinator, swap):
        await coordinator.attempt(swap, "verify_chunk_proof", lambda: self._verify(swap))


@dataclass
class PartialOrderState:
    order: ChunkedOrder
    fills: List[FillRecord] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = self.order.to_dict()
        data.update({
            "fills": [f.to_dict() for f in self.fills],
            "overallFilled": overall_filled(self.fills),
            "coveredIndices": len(covered_indices(self.fills)),
            "status": aggregate_status(self.fills).value,
        })
        return data


class PartialFillCoordinator:
    """Fans a chunked order out to resolvers, one swap per range, concurrently."""

    def __init__(self, coordinator: SwapCoordinator):
        self.coordinator = coordinator
        self.orders: Dict[str, PartialOrderState] = {}

    def get_order(self, order_id: str) -> PartialOrderState:
        state = self.orders.get(order_id)
        if state is None:
            raise SwapNotFoundError(f"Partial order {order_id} not found")
        return state

    def create_order(self, order_id: str, bitcoin_amount, ethereum_amount) -> PartialOrderState:
        if order_id in self.orders:
            raise InvalidStateError(f"Partial order {order_id} already exists")
        state = PartialOrderState(order=ChunkedOrder.create(order_id, bitcoin_amount, ethereum_amount))
        self.orders[order_id] = state
        return state

    async def _fill_one(self, order: ChunkedOrder, assignment: ResolverAssignment,
                        fill: FillRecord, complete: bool):
        index = order.designated_index(assignment)
        request = SwapRequest(
            order_id=f"{order.order_id}-{assignment.name}",
            bitcoin_amount=fill.bitcoin_amount,
            ethereum_amount=fill.ethereum_amount,
            user_address=assignment.address,
            mode=SwapMode.PARTIAL,
            claimer_pubkey=assignment.claimer_pubkey,
            order_hash=fill.order_hash,
            preimage=order.secrets.secrets[index],
        )
        try:
            swap = await self.coordinator.execute(request, PartialFillMode(order, index))
            fill.swap_id = swap.swap_id
            fill.status = FillStatus.ACTIVE
            if complete:
                await self.coordinator.complete(swap.swap_id)
                fill.status = FillStatus.FILLED
                log.info(f"[{order.order_id}] {assignment.name} filled "
                         f"[{assignment.lo}, {assignment.hi}] ({fill.fill_percent}%)")
        except SwapError as e:
            fill.status = FillStatus.FAILED
            fill.error = f"{type(e).__name__}: {e.details}"
            log.error(f"[{order.order_id}] {assignment.name} failed: {e}")
            raise

    async def fill(self, order: ChunkedOrder, assignments: List[ResolverAssignment],
                   complete: bool = True) -> PartialOrderState:
        """
        Run one swap per assignment concurrently.

        A failed range does not affect the others; the result reports
        whatever percentage was filled. Ranges from earlier calls stay
        reserved, failed ones included.
        """
        if not assignments:
            raise ValidationError("At least one resolver assignment is required")
        state = self.orders.setdefault(order.order_id, PartialOrderState(order=order))
        validate_ranges(reserved_assignments(state.fills) + list(assignments))

        fills = []
        for a in assignments:
            btc_amount, eth_amount = order.share(a)
            fills.append(FillRecord(
                resolver=a.name,
                lo=a.lo,
                hi=a.hi,
                address=a.address,
                hashlock=order.secrets.hash_hex(order.designated_index(a)),
                order_hash=order_hash_for(f"{order.order_id}-{a.name}"),
                bitcoin_amount=btc_amount,
                ethereum_amount=eth_amount,
            ))
        state.fills.extend(fills)

        results = await asyncio.gather(
            *(self._fill_one(order, a, f, complete) for a, f in zip(assignments, fills)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, SwapError):
                raise result

        log.info(f"[{order.order_id}] {overall_filled(state.fills)}% filled, "
                 f"status={aggregate_status(state.fills).value}")
        return state

    def refresh(self, order_id: str) -> PartialOrderState:
        """Update fill statuses from the swap records."""
        state = self.get_order(order_id)
        for f in state.fills:
            if not f.swap_id:
                continue
            record = self.coordinator.store.get(f.swap_id)
            if record is None:
                continue
            if record.state == SwapState.BOTH_CLAIMED:
                f.status = FillStatus.FILLED
            elif record.state == SwapState.TIMEOUT_REFUNDED:
                f.status = FillStatus.REFUNDED
            elif record.state == SwapState.ERROR:
                f.status = FillStatus.FAILED
        return state
