"""
Relayer for Thunder Portal SDK.

Watches Bitcoin HTLC funding and creates the matching Ethereum escrow once
the funding is confirmed. Each monitored swap is one asyncio task:

    poll every `poll_interval` until funded  -> create escrow
    give up after `max_monitor_seconds`      -> TIMEOUT
    stop() / unwatch()                       -> STOPPED

All three end in the same finally block.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List

from ..config import RelayerConfig
from ..core import now_ms
from ..errors import SwapError, RpcError, InvalidStateError, SwapNotFoundError, ValidationError

log = logging.getLogger(__name__)


class RelayStatus(Enum):
    AWAITING_BITCOIN_FUNDING = "AWAITING_BITCOIN_FUNDING"
    AWAITING_ETHEREUM_FUNDING = "AWAITING_ETHEREUM_FUNDING"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    STOPPED = "STOPPED"


@dataclass
class MonitoredSwap:
    """A swap the relayer is watching."""
    order_id: str
    htlc_address: str
    order_hash: Optional[str] = None
    maker: Optional[str] = None
    receiver: Optional[str] = None
    htlc_hashlock: Optional[str] = None
    htlc_timeout: Optional[int] = None
    bitcoin_txid: Optional[str] = None
    swap_id: Optional[str] = None           # Set when the coordinator owns the swap

    status: RelayStatus = RelayStatus.AWAITING_BITCOIN_FUNDING
    bitcoin_funded: bool = False
    ethereum_escrow_created: bool = False
    escrow_address: Optional[str] = None
    confirmations: int = 0
    error: Optional[str] = None
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict:
        return {
            "orderId": self.order_id,
            "swapId": self.swap_id,
            "status": self.status.value,
            "bitcoinFunded": self.bitcoin_funded,
            "ethereumEscrowCreated": self.ethereum_escrow_created,
            "escrowAddress": self.escrow_address,
            "confirmations": self.confirmations,
            "error": self.error,
            "createdAt": self.created_at,
        }


class Relayer:
    """
    Bitcoin-funding -> Ethereum-escrow relay.

    With a coordinator and a swap_id the coordinator advances the swap;
    otherwise the escrow is created directly from the monitored fields.
    """

    def __init__(self, btc, eth=None, config: Optional[RelayerConfig] = None,
                 coordinator=None):
        self.btc = btc
        self.eth = eth
        self.config = config or RelayerConfig()
        self.coordinator = coordinator
        self.swaps: Dict[str, MonitoredSwap] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def monitor_swap(self, entry: MonitoredSwap) -> MonitoredSwap:
        """Register a swap and start its watch task."""
        if not entry.order_id or not entry.htlc_address:
            raise ValidationError("orderId and htlcAddress are required")
        if entry.swap_id is None:
            missing = [n for n in ("order_hash", "maker", "receiver", "htlc_hashlock", "htlc_timeout")
                       if getattr(entry, n) is None]
            if missing:
                raise ValidationError(f"Missing escrow fields: {', '.join(missing)}")

        task = self._tasks.get(entry.order_id)
        if task and not task.done():
            raise InvalidStateError(f"Order {entry.order_id} is already being monitored")

        self.swaps.pop(entry.order_id, None)
        self.swaps[entry.order_id] = entry
        self._tasks[entry.order_id] = asyncio.ensure_future(self._watch(entry))
        self._prune()
        log.info(f"[RELAYER] Monitoring {entry.order_id} at {entry.htlc_address}")
        return entry

    def _prune(self):
        """Drop the oldest finished watches beyond `max_finished`."""
        finished = [oid for oid in self.swaps if not self.is_watching(oid)]
        for order_id in finished[:max(0, len(finished) - self.config.max_finished)]:
            del self.swaps[order_id]

    def get_status(self, order_id: str) -> MonitoredSwap:
        entry = self.swaps.get(order_id)
        if entry is None:
            raise SwapNotFoundError(f"Order {order_id} is not monitored")
        return entry

    def active_swaps(self) -> List[MonitoredSwap]:
        return list(self.swaps.values())

    def is_watching(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return bool(task and not task.done())

    def _mark_stopped(self, order_id: str):
        # A task cancelled before its first step never reaches _watch's handlers
        self._tasks.pop(order_id, None)
        entry = self.swaps.get(order_id)
        if entry and entry.status == RelayStatus.AWAITING_BITCOIN_FUNDING:
            entry.status = RelayStatus.STOPPED

    async def unwatch(self, order_id: str):
        task = self._tasks.get(order_id)
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._mark_stopped(order_id)

    async def stop(self):
        """Cancel every watch task."""
        running = {oid: t for oid, t in self._tasks.items() if not t.done()}
        for t in running.values():
            t.cancel()
        await asyncio.gather(*running.values(), return_exceptions=True)
        for order_id in running:
            self._mark_stopped(order_id)
        log.info(f"[RELAYER] Stopped ({len(running)} watches cancelled)")

    # =========================================================================
    # Watch loop
    # =========================================================================

    async def _confirmations(self, entry: MonitoredSwap) -> int:
        if entry.bitcoin_txid:
            return await self.btc.get_confirmations(entry.bitcoin_txid)
        funding = await self.btc.check_funding(entry.htlc_address)
        return max((u.get("confirmations", 0) for u in funding["utxos"]), default=0)

    async def _wait_funded(self, entry: MonitoredSwap):
        while True:
            try:
                entry.confirmations = await self._confirmations(entry)
                if entry.confirmations >= self.config.confirmations:
                    return
            except RpcError as e:
                log.warning(f"[RELAYER] {entry.order_id}: poll failed: {e}")
            await asyncio.sleep(self.config.poll_interval)

    async def _create_escrow(self, entry: MonitoredSwap) -> str:
        if entry.swap_id and self.coordinator is not None:
            await self.coordinator.confirm_bitcoin_funding(entry.swap_id)
            swap = await self.coordinator.create_ethereum_escrow(entry.swap_id)
            return swap.ethereum.escrow_address
        if self.eth is None:
            raise InvalidStateError("No Ethereum adapter configured")
        return await self.eth.create_escrow(
            entry.order_hash, entry.maker, entry.receiver, entry.htlc_hashlock, entry.htlc_timeout
        )

    async def _watch(self, entry: MonitoredSwap):
        try:
            await asyncio.wait_for(self._wait_funded(entry), self.config.max_monitor_seconds)
            entry.bitcoin_funded = True
            log.info(f"[RELAYER] Bitcoin HTLC funded for {entry.order_id} "
                     f"({entry.confirmations} confirmations)")

            entry.escrow_address = await self._create_escrow(entry)
            entry.ethereum_escrow_created = True
            entry.status = RelayStatus.AWAITING_ETHEREUM_FUNDING
            log.info(f"[RELAYER] Ethereum escrow for {entry.order_id}: {entry.escrow_address}")
        except asyncio.TimeoutError:
            entry.status = RelayStatus.TIMEOUT
            log.info(f"[RELAYER] Timeout monitoring {entry.order_id}")
        except asyncio.CancelledError:
            entry.status = RelayStatus.STOPPED
            raise
        except SwapError as e:
            entry.status = RelayStatus.FAILED
            entry.error = f"{type(e).__name__}: {e.details}"
            log.error(f"[RELAYER] {entry.order_id} failed: {e}")
        finally:
            self._tasks.pop(entry.order_id, None)
