"""
Swap Coordinator for Thunder Portal SDK.

Drives one BTC <-> ETH atomic swap through its states:

    INITIATED
      -> BITCOIN_HTLC_CREATED      create_bitcoin_htlc()
      -> BITCOIN_FUNDED            fund_bitcoin() + confirmations
      -> ETHEREUM_ESCROW_CREATED   create_ethereum_escrow()
      -> ETHEREUM_FUNDED           fund_ethereum()
      -> PREIMAGE_REVEALED         reveal_preimage()  (claims the escrow)
      -> BOTH_CLAIMED              claim_bitcoin()    (preimage read back from Ethereum)

Any non-terminal state may escape to TIMEOUT_REFUNDED (refund()) or
ERROR (adapter failure). A swap in ERROR can still be refunded, since
refund is the only way to recover locked funds.

Swap Flow:
1. Generate preimage, hashlock = SHA256(preimage)
2. Create + fund Bitcoin HTLC (timeout T_btc, in blocks)
3. Create + fund Ethereum escrow with the same hashlock (timeout T_eth < T_btc)
4. Claim the Ethereum escrow, revealing the preimage
5. Claim the Bitcoin HTLC with the preimage read from the Ethereum claim
6. Mark COMPLETED
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, List, Set, Callable, Awaitable, Any

from eth_utils import is_address

from ..config import CoordinatorConfig
from ..core import (
    SwapRecord, SwapState, SwapMode, ChainStatus, TERMINAL_STATES,
    generate_simple_commitment, sha256, strip_0x, verify_preimage,
    order_hash_for, make_swap_id, now_ms, validate_timeout_ordering,
)
from ..errors import (
    SwapError, RpcError, ValidationError, InvalidStateError, SwapNotFoundError,
    PreimageMismatchError, ConfirmationTimeout, ConfigurationError, is_transient,
)
from ..store import SwapStore

log = logging.getLogger(__name__)


# Forward edges of the happy path. Escapes to TIMEOUT_REFUNDED / ERROR
# from non-terminal states are handled in can_transition().
TRANSITIONS: Dict[SwapState, Set[SwapState]] = {
    SwapState.INITIATED: {SwapState.BITCOIN_HTLC_CREATED},
    SwapState.BITCOIN_HTLC_CREATED: {SwapState.BITCOIN_FUNDED},
    SwapState.BITCOIN_FUNDED: {SwapState.ETHEREUM_ESCROW_CREATED},
    SwapState.ETHEREUM_ESCROW_CREATED: {SwapState.ETHEREUM_FUNDED},
    SwapState.ETHEREUM_FUNDED: {SwapState.PREIMAGE_REVEALED},
    SwapState.PREIMAGE_REVEALED: {SwapState.BOTH_CLAIMED},
    SwapState.BOTH_CLAIMED: set(),
    SwapState.TIMEOUT_REFUNDED: set(),
    SwapState.ERROR: {SwapState.TIMEOUT_REFUNDED},
}

# States from which refund() may run
REFUNDABLE_STATES = (
    SwapState.BITCOIN_HTLC_CREATED,
    SwapState.BITCOIN_FUNDED,
    SwapState.ETHEREUM_ESCROW_CREATED,
    SwapState.ETHEREUM_FUNDED,
    SwapState.PREIMAGE_REVEALED,
    SwapState.ERROR,
)

# States no step leaves; per-swap bookkeeping is dropped on reaching them
FINISHED_STATES = (SwapState.BOTH_CLAIMED, SwapState.TIMEOUT_REFUNDED)


def can_transition(src: SwapState, dst: SwapState) -> bool:
    if dst in TRANSITIONS[src]:
        return True
    return src not in TERMINAL_STATES and dst in (SwapState.TIMEOUT_REFUNDED, SwapState.ERROR)


@dataclass
class SwapRequest:
    """Client request for a new swap."""
    order_id: str
    bitcoin_amount: Decimal
    ethereum_amount: Decimal
    user_address: str                           # Ethereum escrow receiver
    mode: SwapMode = SwapMode.SIMPLE
    claimer_pubkey: Optional[str] = None        # Bitcoin claim-path pubkey
    btc_timeout_blocks: Optional[int] = None
    eth_timeout_seconds: Optional[int] = None
    order_hash: Optional[str] = None            # Defaults to keccak256(order_id)
    preimage: Optional[bytes] = None            # Supplied secret (partial fills)

    def validate(self) -> "SwapRequest":
        if not self.order_id or not isinstance(self.order_id, str):
            raise ValidationError("orderId is required")
        if any(c in self.order_id for c in "/\\") or self.order_id.startswith("."):
            raise ValidationError(f"Invalid orderId: {self.order_id!r}")
        try:
            self.bitcoin_amount = Decimal(str(self.bitcoin_amount))
            self.ethereum_amount = Decimal(str(self.ethereum_amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Amounts must be decimal numbers")
        if not self.bitcoin_amount.is_finite() or self.bitcoin_amount <= 0:
            raise ValidationError(f"bitcoinAmount must be positive: {self.bitcoin_amount}")
        if not self.ethereum_amount.is_finite() or self.ethereum_amount <= 0:
            raise ValidationError(f"ethereumAmount must be positive: {self.ethereum_amount}")
        if not self.user_address or not is_address(self.user_address):
            raise ValidationError(f"Invalid userAddress: {self.user_address!r}")
        if self.preimage is not None and len(self.preimage) != 32:
            raise ValidationError("Preimage must be 32 bytes")
        return self


# =============================================================================
# Modes
# =============================================================================

class ModeStrategy:
    """Hooks a mode adds around the shared state machine. Default: simple swap."""
    mode = SwapMode.SIMPLE

    async def before_setup(self, coordinator: "SwapCoordinator", swap: SwapRecord):
        pass

    async def before_reveal(self, coordinator: "SwapCoordinator", swap: SwapRecord):
        pass


class SimpleMode(ModeStrategy):
    mode = SwapMode.SIMPLE


class LimitOrderMode(ModeStrategy):
    """
    Registers the order with the Limit Order Protocol before any funds
    move, and marks it filled before the preimage is revealed.
    """
    mode = SwapMode.LIMIT_ORDER

    def __init__(self, lop):
        self.lop = lop

    async def before_setup(self, coordinator, swap):
        result = await coordinator.attempt(
            swap, "initiate_cross_chain_swap",
            lambda: self.lop.initiate_cross_chain_swap(
                swap.ethereum.order_hash, swap.bitcoin_amount, swap.ethereum_amount
            ),
        )
        swap.lop_txid = result["txid"]
        await coordinator.save(swap)
        log.info(f"[{swap.swap_id}] Order registered with LOP: {swap.lop_txid}")

    async def before_reveal(self, coordinator, swap):
        result = await coordinator.attempt(
            swap, "fill_order",
            lambda: self.lop.fill_order(
                swap.ethereum.order_hash, coordinator.resolver_address, swap.user_address,
                swap.ethereum_amount, swap.bitcoin_amount,
            ),
        )
        swap.lop_fill_txid = result["txid"]
        await coordinator.save(swap)
        log.info(f"[{swap.swap_id}] Order filled on LOP: {swap.lop_fill_txid}")


# =============================================================================
# Coordinator
# =============================================================================

class SwapCoordinator:
    """
    Runs swaps against a Bitcoin HTLC adapter and an Ethereum escrow adapter.

    Each swap has its own asyncio.Lock. The lock guards reads and writes of
    the record only; it is never held while waiting on a chain. A swap with
    a step in progress rejects a second concurrent step.
    """

    def __init__(self, btc, eth, store: SwapStore,
                 config: Optional[CoordinatorConfig] = None,
                 resolver_address: str = "", lop=None):
        self.btc = btc
        self.eth = eth
        self.store = store
        self.config = (config or CoordinatorConfig()).validate()
        self.resolver_address = resolver_address
        self.lop = lop

        self._locks: Dict[str, asyncio.Lock] = {}
        self._busy: Set[str] = set()
        self._preimages: Dict[str, bytes] = {}      # Never persisted before reveal
        self._strategies: Dict[str, ModeStrategy] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._abandoned: Set[str] = set()

    # =========================================================================
    # Records
    # =========================================================================

    def _lock_for(self, swap_id: str) -> asyncio.Lock:
        if swap_id not in self._locks:
            self._locks[swap_id] = asyncio.Lock()
        return self._locks[swap_id]

    def get_swap(self, swap_id: str) -> SwapRecord:
        record = self.store.get(swap_id)
        if record is None:
            raise SwapNotFoundError(f"Swap {swap_id} not found")
        return record

    def list_swaps(self) -> List[SwapRecord]:
        return self.store.all()

    def holds_preimage(self, swap_id: str) -> bool:
        return swap_id in self._preimages

    async def save(self, swap: SwapRecord):
        async with self._lock_for(swap.swap_id):
            swap.updated_at = now_ms()
            self.store.save(swap)

    async def _advance(self, swap: SwapRecord, state: SwapState):
        async with self._lock_for(swap.swap_id):
            if not can_transition(swap.state, state):
                raise InvalidStateError(
                    f"Illegal transition {swap.state.value} -> {state.value} for {swap.swap_id}"
                )
            log.info(f"[{swap.swap_id}] {swap.state.value} -> {state.value}")
            swap.state = state
            swap.updated_at = now_ms()
            if state in TERMINAL_STATES:
                swap.completed_at = swap.updated_at
            self.store.save(swap)

    async def _fail(self, swap: SwapRecord, exc: SwapError, label: str, fatal: bool = True):
        """Record an adapter failure; fatal ones move the swap to ERROR."""
        async with self._lock_for(swap.swap_id):
            swap.error = type(exc).__name__
            swap.details = f"{label}: {exc.details}"
            swap.updated_at = now_ms()
            # A confirmation timeout leaves the swap where it is: refund() is the way out
            if fatal and not isinstance(exc, ConfirmationTimeout) and not swap.is_terminal:
                swap.state = SwapState.ERROR
                swap.completed_at = swap.updated_at
            self.store.save(swap)
        log.error(f"[{swap.swap_id}] {label} failed: {exc} (state={swap.state.value})")

    @asynccontextmanager
    async def _step(self, swap_id: str, *expected: SwapState):
        """Claim a swap for one step if it is in one of `expected`."""
        async with self._lock_for(swap_id):
            swap = self.store.get(swap_id)
            if swap is None or swap.state in FINISHED_STATES:
                self._release(swap_id)
            if swap is None:
                raise SwapNotFoundError(f"Swap {swap_id} not found")
            if swap_id in self._busy:
                raise InvalidStateError(f"Swap {swap_id} has an operation in progress")
            if swap.state not in expected:
                raise InvalidStateError(
                    f"Swap {swap_id} is {swap.state.value}, "
                    f"expected {' or '.join(s.value for s in expected)}"
                )
            self._busy.add(swap_id)
        try:
            yield swap
        finally:
            self._busy.discard(swap_id)
            if swap.state in FINISHED_STATES:
                self._release(swap_id)

    def _release(self, swap_id: str):
        self._locks.pop(swap_id, None)
        self._strategies.pop(swap_id, None)
        self._preimages.pop(swap_id, None)

    async def attempt(self, swap: SwapRecord, label: str,
                      call: Callable[[], Awaitable[Any]], fatal: bool = True) -> Any:
        """
        Run an adapter call, retrying once on a transient RpcError.

        Any SwapError that escapes is recorded on the swap and re-raised.
        """
        attempts = self.config.max_attempts
        for n in range(1, attempts + 1):
            try:
                return await call()
            except RpcError as e:
                if n < attempts and is_transient(e):
                    log.warning(f"[{swap.swap_id}] {label}: transient error, retrying ({e})")
                    continue
                await self._fail(swap, e, label, fatal)
                raise
            except SwapError as e:
                await self._fail(swap, e, label, fatal)
                raise

    def _strategy_for(self, mode: SwapMode) -> ModeStrategy:
        if mode == SwapMode.SIMPLE:
            return SimpleMode()
        if mode == SwapMode.LIMIT_ORDER:
            if self.lop is None:
                raise ConfigurationError("Limit Order Protocol not configured")
            return LimitOrderMode(self.lop)
        raise ValidationError("Partial swaps run through PartialFillCoordinator")

    def _strategy_of(self, swap: SwapRecord) -> ModeStrategy:
        if swap.swap_id in self._strategies:
            return self._strategies[swap.swap_id]
        if swap.mode == SwapMode.LIMIT_ORDER.value and self.lop is not None:
            return LimitOrderMode(self.lop)
        return SimpleMode()

    # =========================================================================
    # 1. Initiate
    # =========================================================================

    async def initiate(self, request: SwapRequest,
                       strategy: Optional[ModeStrategy] = None) -> SwapRecord:
        """Generate the commitment and persist a new INITIATED swap."""
        request.validate()
        strategy = strategy or self._strategy_for(request.mode)

        btc_blocks = request.btc_timeout_blocks or self.config.btc_timeout_blocks
        eth_seconds = request.eth_timeout_seconds or self.config.eth_timeout_seconds
        validate_timeout_ordering(btc_blocks, eth_seconds)

        existing = self.store.find_by_order(request.order_id)
        if existing and not existing.is_terminal:
            raise InvalidStateError(
                f"Order {request.order_id} already has an active swap",
                details=existing.swap_id,
            )

        if request.preimage is not None:
            preimage = bytes(request.preimage)
        else:
            preimage = generate_simple_commitment().preimage
        hashlock = sha256(preimage).hex()

        now = now_ms()
        swap = SwapRecord(
            swap_id=make_swap_id(request.order_id),
            order_id=request.order_id,
            preimage_hash=hashlock,
            bitcoin_amount=request.bitcoin_amount,
            ethereum_amount=request.ethereum_amount,
            user_address=request.user_address,
            mode=strategy.mode.value,
            created_at=now,
            updated_at=now,
        )
        swap.bitcoin.hashlock = hashlock
        swap.ethereum.hashlock = hashlock
        swap.ethereum.order_hash = request.order_hash or order_hash_for(request.order_id)

        self._preimages[swap.swap_id] = preimage
        self._strategies[swap.swap_id] = strategy
        self.store.save(swap)

        log.info(f"[{swap.swap_id}] Initiated {strategy.mode.value} swap: "
                 f"{swap.bitcoin_amount} BTC <-> {swap.ethereum_amount} ETH, "
                 f"hashlock={hashlock[:16]}...")
        return swap

    # =========================================================================
    # 2. Bitcoin HTLC
    # =========================================================================

    async def create_bitcoin_htlc(self, swap_id: str, claimer_pubkey: Optional[str] = None,
                                  timeout_blocks: Optional[int] = None) -> SwapRecord:
        async with self._step(swap_id, SwapState.INITIATED) as swap:
            pubkey = claimer_pubkey or self.config.claimer_pubkey
            blocks = timeout_blocks or self.config.btc_timeout_blocks

            info = await self.attempt(
                swap, "create_htlc",
                lambda: self.btc.create_htlc(swap.preimage_hash, pubkey, blocks),
            )
            if strip_0x(info.hashlock).lower() != swap.preimage_hash:
                err = PreimageMismatchError(f"HTLC hashlock {info.hashlock} != {swap.preimage_hash}")
                await self._fail(swap, err, "create_htlc")
                raise err

            swap.bitcoin.htlc_address = info.htlc_address
            swap.bitcoin.redeem_script = info.redeem_script
            swap.bitcoin.timelock = info.timelock
            swap.bitcoin.status = ChainStatus.CREATED.value
            await self._advance(swap, SwapState.BITCOIN_HTLC_CREATED)
        return swap

    async def fund_bitcoin(self, swap_id: str, wait: bool = True) -> SwapRecord:
        """
        Fund the HTLC and (by default) wait for confirmations.

        With wait=False only the funding tx is broadcast; confirmation is
        reported later through confirm_bitcoin_funding() (relayer flow).
        """
        async with self._step(swap_id, SwapState.BITCOIN_HTLC_CREATED) as swap:
            if not swap.bitcoin.funding_txid:
                result = await self.attempt(
                    swap, "fund_htlc",
                    lambda: self.btc.fund_htlc(swap.bitcoin.htlc_address, swap.bitcoin_amount),
                )
                swap.bitcoin.funding_txid = result["txid"]
                await self.save(swap)

            if not wait:
                return swap

            await self.attempt(
                swap, "wait_for_confirmations",
                lambda: self.btc.wait_for_confirmations(
                    swap.bitcoin.funding_txid,
                    self.config.btc_confirmations,
                    self.config.confirmation_timeout_ms,
                ),
            )
            swap.bitcoin.status = ChainStatus.FUNDED.value
            await self._advance(swap, SwapState.BITCOIN_FUNDED)
        return swap

    async def confirm_bitcoin_funding(self, swap_id: str) -> SwapRecord:
        """Record an externally observed funding confirmation."""
        async with self._step(swap_id, SwapState.BITCOIN_HTLC_CREATED) as swap:
            if not swap.bitcoin.funding_txid:
                raise InvalidStateError(f"Swap {swap_id} has no funding transaction")
            swap.bitcoin.status = ChainStatus.FUNDED.value
            await self._advance(swap, SwapState.BITCOIN_FUNDED)
        return swap

    # =========================================================================
    # 3. Ethereum escrow
    # =========================================================================

    async def create_ethereum_escrow(self, swap_id: str,
                                     timeout_seconds: Optional[int] = None) -> SwapRecord:
        async with self._step(swap_id, SwapState.BITCOIN_FUNDED) as swap:
            if not (swap.bitcoin.hashlock == swap.ethereum.hashlock == swap.preimage_hash):
                err = PreimageMismatchError("Bitcoin and Ethereum hashlocks differ")
                await self._fail(swap, err, "create_escrow")
                raise err

            now = await self.attempt(swap, "get_timestamp", self.eth.get_timestamp)
            timeout = now + (timeout_seconds or self.config.eth_timeout_seconds)

            address = await self.attempt(
                swap, "create_escrow",
                lambda: self.eth.create_escrow(
                    swap.ethereum.order_hash, self.resolver_address, swap.user_address,
                    "0x" + swap.ethereum.hashlock, timeout,
                ),
            )
            swap.ethereum.escrow_address = address
            swap.ethereum.timeout = timeout
            swap.ethereum.status = ChainStatus.CREATED.value
            await self._advance(swap, SwapState.ETHEREUM_ESCROW_CREATED)
        return swap

    async def fund_ethereum(self, swap_id: str) -> SwapRecord:
        async with self._step(swap_id, SwapState.ETHEREUM_ESCROW_CREATED) as swap:
            result = await self.attempt(
                swap, "fund_escrow",
                lambda: self.eth.fund_escrow(swap.ethereum.escrow_address, swap.ethereum_amount),
            )
            swap.ethereum.funding_txid = result["txid"]
            swap.ethereum.status = ChainStatus.FUNDED.value
            await self._advance(swap, SwapState.ETHEREUM_FUNDED)
        return swap

    # =========================================================================
    # 4-5. Reveal and claim
    # =========================================================================

    async def reveal_preimage(self, swap_id: str) -> SwapRecord:
        """Claim the Ethereum escrow, which makes the preimage public."""
        async with self._step(swap_id, SwapState.ETHEREUM_FUNDED) as swap:
            preimage = self._preimages.get(swap_id)
            if preimage is None:
                raise InvalidStateError(f"Preimage for {swap_id} is not held by this coordinator")

            await self._strategy_of(swap).before_reveal(self, swap)

            result = await self.attempt(
                swap, "claim_escrow",
                lambda: self.eth.claim_escrow(
                    swap.ethereum.escrow_address, preimage, hashlock=swap.ethereum.hashlock
                ),
            )
            swap.ethereum.claim_txid = result["txid"]
            swap.ethereum.status = ChainStatus.CLAIMED.value
            swap.revealed_preimage = preimage.hex()
            await self._advance(swap, SwapState.PREIMAGE_REVEALED)
        return swap

    async def claim_bitcoin(self, swap_id: str) -> SwapRecord:
        """Claim the Bitcoin HTLC with the preimage read from the Ethereum claim."""
        async with self._step(swap_id, SwapState.PREIMAGE_REVEALED) as swap:
            preimage_hex = await self.attempt(
                swap, "read_preimage",
                lambda: self.eth.get_revealed_preimage(
                    swap.ethereum.escrow_address, swap.ethereum.claim_txid
                ),
            )
            if not verify_preimage(preimage_hex, swap.bitcoin.hashlock):
                err = PreimageMismatchError(
                    f"Preimage from {swap.ethereum.claim_txid} does not match Bitcoin hashlock"
                )
                await self._fail(swap, err, "claim_htlc")
                raise err

            result = await self.attempt(
                swap, "claim_htlc",
                lambda: self.btc.claim_htlc(swap.order_id, strip_0x(preimage_hex)),
            )
            swap.bitcoin.claim_txid = result["txid"]
            swap.bitcoin.status = ChainStatus.CLAIMED.value
            await self._advance(swap, SwapState.BOTH_CLAIMED)

        self._preimages.pop(swap_id, None)
        log.info(f"[{swap_id}] Swap completed")
        return swap

    # =========================================================================
    # Refund / abandon
    # =========================================================================

    async def refund(self, swap_id: str) -> SwapRecord:
        """
        Refund every funded, unclaimed leg whose timeout has elapsed.

        The swap becomes TIMEOUT_REFUNDED once no funded leg is left
        locked. Raises InvalidStateError if no timeout has elapsed.
        """
        async with self._step(swap_id, *REFUNDABLE_STATES) as swap:
            refunded, waiting = [], []

            btc_leg = swap.bitcoin
            if btc_leg.funding_txid and not btc_leg.claim_txid and not btc_leg.refund_txid:
                height = await self.attempt(swap, "get_block_count", self.btc.get_block_count,
                                            fatal=False)
                if btc_leg.timelock is not None and height >= btc_leg.timelock:
                    result = await self.attempt(
                        swap, "refund_htlc", lambda: self.btc.refund_htlc(swap.order_id),
                        fatal=False,
                    )
                    btc_leg.refund_txid = result["txid"]
                    btc_leg.status = ChainStatus.REFUNDED.value
                    refunded.append("bitcoin")
                else:
                    waiting.append(f"bitcoin (height {height} < {btc_leg.timelock})")

            eth_leg = swap.ethereum
            if eth_leg.funding_txid and not eth_leg.claim_txid and not eth_leg.refund_txid:
                now = await self.attempt(swap, "get_timestamp", self.eth.get_timestamp,
                                         fatal=False)
                if eth_leg.timeout is not None and now >= eth_leg.timeout:
                    result = await self.attempt(
                        swap, "refund_escrow",
                        lambda: self.eth.refund_escrow(eth_leg.escrow_address),
                        fatal=False,
                    )
                    eth_leg.refund_txid = result["txid"]
                    eth_leg.status = ChainStatus.REFUNDED.value
                    refunded.append("ethereum")
                else:
                    waiting.append(f"ethereum (now {now} < {eth_leg.timeout})")

            if not refunded:
                if not waiting:
                    raise InvalidStateError(f"Swap {swap_id} has no funded leg to refund")
                raise InvalidStateError(
                    f"No timeout has elapsed for swap {swap_id}", details="; ".join(waiting)
                )

            log.info(f"[{swap_id}] Refunded: {', '.join(refunded)}")
            if waiting:
                await self.save(swap)
            else:
                await self._advance(swap, SwapState.TIMEOUT_REFUNDED)
        return swap

    async def abandon(self, swap_id: str) -> SwapRecord:
        """
        Stop driving a swap.

        A swap with nothing funded goes to ERROR. A funded swap keeps its
        state so the refund path stays open after the timeouts.
        """
        task = self._tasks.get(swap_id)
        if task and not task.done():
            self._abandoned.add(swap_id)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        async with self._lock_for(swap_id):
            swap = self.get_swap(swap_id)
            if swap.is_terminal:
                raise InvalidStateError(f"Swap {swap_id} is already {swap.state.value}")
            swap.error = "Abandoned"
            swap.updated_at = now_ms()
            if swap.bitcoin.funding_txid or swap.ethereum.funding_txid:
                swap.details = "Abandoned; funded legs are refundable after their timeouts"
            else:
                swap.details = "Abandoned before funding"
                swap.state = SwapState.ERROR
                swap.completed_at = swap.updated_at
            self.store.save(swap)

        if swap.state == SwapState.ERROR:
            self._preimages.pop(swap_id, None)
        log.info(f"[{swap_id}] Abandoned in state {swap.state.value}")
        return swap

    # =========================================================================
    # Flows
    # =========================================================================

    async def _setup(self, swap_id: str, request: SwapRequest, strategy: ModeStrategy) -> SwapRecord:
        async with self._step(swap_id, SwapState.INITIATED) as swap:
            await strategy.before_setup(self, swap)
        await self.create_bitcoin_htlc(swap_id, request.claimer_pubkey, request.btc_timeout_blocks)
        await self.fund_bitcoin(swap_id)
        await self.create_ethereum_escrow(swap_id, request.eth_timeout_seconds)
        return await self.fund_ethereum(swap_id)

    async def execute(self, request: SwapRequest,
                      strategy: Optional[ModeStrategy] = None) -> SwapRecord:
        """
        Initiate a swap and set up both legs (steps 1-3).

        Returns the swap in ETHEREUM_FUNDED. The setup runs as its own task
        so abandon() can cancel it.
        """
        strategy = strategy or self._strategy_for(request.mode)
        swap = await self.initiate(request, strategy)
        swap_id = swap.swap_id

        task = asyncio.ensure_future(self._setup(swap_id, request, strategy))
        self._tasks[swap_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if swap_id in self._abandoned and task.cancelled():
                raise InvalidStateError(f"Swap {swap_id} was abandoned")
            raise
        finally:
            self._tasks.pop(swap_id, None)
            self._abandoned.discard(swap_id)

    async def complete(self, swap_id: str) -> SwapRecord:
        """Reveal the preimage on Ethereum and claim Bitcoin (steps 4-6)."""
        swap = self.get_swap(swap_id)
        if swap.state == SwapState.ETHEREUM_FUNDED:
            swap = await self.reveal_preimage(swap_id)
        if swap.state == SwapState.PREIMAGE_REVEALED:
            return await self.claim_bitcoin(swap_id)
        raise InvalidStateError(
            f"Swap {swap_id} is {swap.state.value}, cannot complete",
        )

    async def run(self, request: SwapRequest,
                  strategy: Optional[ModeStrategy] = None) -> SwapRecord:
        """execute() followed by complete()."""
        swap = await self.execute(request, strategy)
        return await self.complete(swap.swap_id)
