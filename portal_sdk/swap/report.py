"""
Swap report / status service.

Merges persisted swap records with live chain observations and derives a
single overall status. Chain queries are best effort: a failing adapter
degrades its side to ERROR instead of failing the report.
"""

import csv
import io
import json
import time
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, List, Any, Union

from ..core import (
    SwapRecord, SwapState, OverallStatus, ChainStatus, BitcoinLeg, EthereumLeg,
    make_swap_id, now_ms, BTC_BLOCK_SECONDS,
    ETH_TIMEOUT_WARNING_SECONDS, BTC_TIMEOUT_WARNING_SECONDS,
)
from ..errors import ValidationError, SwapNotFoundError
from ..store import SwapStore

log = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

_KNOWN = {
    ChainStatus.FUNDED.value,
    ChainStatus.CLAIMED.value,
    ChainStatus.REFUNDED.value,
    ChainStatus.ERROR.value,
    ChainStatus.PENDING.value,
}


def _normalize(status: Any) -> str:
    text = str(status).upper() if status is not None else ""
    return text if text in _KNOWN else ChainStatus.PENDING.value


def derive_status(bitcoin_status: Any, ethereum_status: Any) -> OverallStatus:
    """
    Overall status from the two chain statuses.

    Total over any pair of inputs; unknown values count as PENDING.
    """
    btc = _normalize(bitcoin_status)
    eth = _normalize(ethereum_status)

    if btc == "CLAIMED" and eth == "CLAIMED":
        return OverallStatus.COMPLETED
    if btc == "REFUNDED" or eth == "REFUNDED":
        return OverallStatus.REFUNDED
    if btc == "ERROR" or eth == "ERROR":
        return OverallStatus.ERROR
    if btc == "FUNDED" and eth == "FUNDED":
        return OverallStatus.ACTIVE
    return OverallStatus.PENDING


def determine_overall_status(details: Dict) -> OverallStatus:
    current = (details or {}).get("currentStatus") or {}
    return derive_status(
        (current.get("bitcoin") or {}).get("status"),
        (current.get("ethereum") or {}).get("status"),
    )


def _iso(ms: Optional[int]) -> Optional[str]:
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def generate_timeline(details: Dict) -> List[Dict]:
    """Protocol events known from the record and the live chain view."""
    swap = details["swap"]
    btc = swap.get("bitcoin") or {}
    eth = swap.get("ethereum") or {}
    current = details.get("currentStatus") or {}
    btc_now = current.get("bitcoin") or {}
    eth_now = current.get("ethereum") or {}

    timeline = [{
        "timestamp": _iso(swap.get("created_at")),
        "event": "SWAP_INITIATED",
        "description": "Atomic swap process started",
    }]

    if btc.get("htlc_address"):
        timeline.append({"event": "BITCOIN_HTLC_CREATED", "address": btc["htlc_address"]})
    if btc.get("funding_txid"):
        timeline.append({"event": "BITCOIN_HTLC_FUNDED", "txid": btc["funding_txid"],
                         "amount": swap.get("bitcoin_amount")})
    if eth.get("escrow_address"):
        timeline.append({"event": "ETHEREUM_ESCROW_CREATED", "address": eth["escrow_address"]})
    if eth.get("funding_txid"):
        timeline.append({"event": "ETHEREUM_ESCROW_FUNDED", "txid": eth["funding_txid"],
                         "amount": swap.get("ethereum_amount")})

    if eth.get("claim_txid") or eth_now.get("status") == ChainStatus.CLAIMED.value:
        timeline.append({"event": "ETHEREUM_ESCROW_CLAIMED", "txid": eth.get("claim_txid")})
    if btc.get("claim_txid") or btc_now.get("status") == ChainStatus.CLAIMED.value:
        timeline.append({"event": "BITCOIN_HTLC_CLAIMED",
                         "txid": btc.get("claim_txid") or btc_now.get("claimTx")})

    if eth.get("refund_txid") or eth_now.get("status") == ChainStatus.REFUNDED.value:
        timeline.append({"event": "ETHEREUM_ESCROW_REFUNDED", "txid": eth.get("refund_txid")})
    if btc.get("refund_txid") or btc_now.get("status") == ChainStatus.REFUNDED.value:
        timeline.append({"event": "BITCOIN_HTLC_REFUNDED",
                         "txid": btc.get("refund_txid") or btc_now.get("refundTx")})

    if swap.get("completed_at"):
        timeline.append({"timestamp": _iso(swap["completed_at"]),
                         "event": "SWAP_" + (swap.get("state") or "").upper()})
    return timeline


def generate_recommendations(details: Dict, now: Optional[float] = None) -> List[Dict]:
    """
    Advisory actions. Never acts on its own.

    HIGH when an ACTIVE swap is within 1h of the Ethereum timeout or 2h of
    the (estimated) Bitcoin timeout; CRITICAL when in ERROR.
    """
    now = time.time() if now is None else now
    overall = determine_overall_status(details)
    current = details.get("currentStatus") or {}
    recommendations = []

    if overall == OverallStatus.ACTIVE:
        eth_timeout = (current.get("ethereum") or {}).get("timeout")
        if eth_timeout is None:
            eth_timeout = ((details.get("swap") or {}).get("ethereum") or {}).get("timeout")
        if eth_timeout is not None and eth_timeout - now < ETH_TIMEOUT_WARNING_SECONDS:
            recommendations.append({
                "priority": "HIGH",
                "action": "Complete swap immediately",
                "reason": "Ethereum escrow timeout approaching",
            })

        btc_timeout = (current.get("bitcoin") or {}).get("timeout")
        if btc_timeout is not None and btc_timeout - now < BTC_TIMEOUT_WARNING_SECONDS:
            recommendations.append({
                "priority": "HIGH",
                "action": "Complete or refund swap",
                "reason": "Bitcoin HTLC timeout approaching",
            })

    if overall == OverallStatus.ERROR:
        recommendations.append({
            "priority": "CRITICAL",
            "action": "Investigate error and contact support",
            "reason": "Swap encountered an error",
        })

    return recommendations


def report_to_csv(report: Dict) -> str:
    rows = [
        ["Field", "Value"],
        ["Report ID", report["reportId"]],
        ["Generated At", report["generatedAt"]],
        ["Swap ID", report["swap"]["id"]],
        ["Order ID", report["swap"]["orderId"]],
        ["Status", report["swap"]["status"]],
        ["Preimage Hash", report["swap"]["preimageHash"]],
        ["", ""],
        ["Bitcoin HTLC Address", report["bitcoin"].get("htlcAddress")],
        ["Bitcoin Amount", report["bitcoin"].get("amount")],
        ["Bitcoin Status", report["bitcoin"].get("status")],
        ["Bitcoin Balance", report["bitcoin"].get("balance")],
        ["Bitcoin Funding TX", report["bitcoin"].get("fundingTxid")],
        ["", ""],
        ["Ethereum Escrow Address", report["ethereum"].get("escrowAddress")],
        ["Ethereum Amount", report["ethereum"].get("amount")],
        ["Ethereum Status", report["ethereum"].get("status")],
        ["Ethereum Active", report["ethereum"].get("active")],
        ["Ethereum Funding TX", report["ethereum"].get("fundingTxid")],
    ]
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow(["" if cell is None else cell for cell in row])
    return out.getvalue().rstrip("\n")


class SwapReportService:
    """
    Report service over a SwapStore.

    `btc` must provide get_htlc_status(address, hashlock) and
    get_block_count(); `eth` must provide get_status(address).
    Either may be None, in which case that side is reported from the
    record alone.
    """

    def __init__(self, store: SwapStore, btc=None, eth=None):
        self.store = store
        self.btc = btc
        self.eth = eth

    # =========================================================================
    # Records
    # =========================================================================

    def track_swap(self, data: Union[SwapRecord, Dict]) -> SwapRecord:
        """Persist a swap given as a record, its dict form, or a client payload."""
        if isinstance(data, SwapRecord):
            record = data
        elif "swap_id" in data:
            record = SwapRecord.from_dict(data)
        else:
            record = self._from_payload(data)
        self.store.save(record)
        log.info(f"Tracking swap {record.swap_id}")
        return record

    @staticmethod
    def _from_payload(data: Dict) -> SwapRecord:
        """Client payload: orderId, preimageHash, amounts, bitcoin{}, ethereum{}."""
        try:
            order_id = data["orderId"]
            btc = data.get("bitcoin") or {}
            eth = data.get("ethereum") or {}
            now = now_ms()
            return SwapRecord(
                swap_id=make_swap_id(order_id),
                order_id=order_id,
                preimage_hash=data.get("preimageHash", ""),
                bitcoin_amount=Decimal(str(data["bitcoinAmount"])),
                ethereum_amount=Decimal(str(data["ethereumAmount"])),
                user_address=data.get("userAddress", ""),
                state=SwapState.INITIATED,
                bitcoin=BitcoinLeg(
                    htlc_address=btc.get("htlcAddress"),
                    funding_txid=btc.get("fundingTxid"),
                    hashlock=data.get("preimageHash"),
                ),
                ethereum=EthereumLeg(
                    escrow_address=eth.get("escrowAddress"),
                    funding_txid=eth.get("fundingTxid"),
                    hashlock=data.get("preimageHash"),
                ),
                created_at=now,
                updated_at=now,
            )
        except (KeyError, TypeError, ArithmeticError, ValueError) as e:
            raise ValidationError(f"Malformed swap payload: {e}")

    def get_swap(self, swap_id: str) -> SwapRecord:
        record = self.store.get(swap_id)
        if record is None:
            raise SwapNotFoundError(f"Swap {swap_id} not found")
        return record

    def get_all_swaps(self) -> List[SwapRecord]:
        """Every readable record, newest first. Malformed files are skipped by the store."""
        return self.store.all()

    # =========================================================================
    # Live status
    # =========================================================================

    async def get_bitcoin_status(self, address: str, hashlock: Optional[str] = None,
                                 timelock: Optional[int] = None) -> Dict:
        if self.btc is None:
            return {"address": address, "status": ChainStatus.PENDING.value}
        try:
            status = await self.btc.get_htlc_status(address, hashlock)
            status["balance"] = str(status.get("balance", 0))
            if timelock is not None:
                height = await self.btc.get_block_count()
                status["blocksRemaining"] = timelock - height
                status["timeout"] = int(time.time()) + (timelock - height) * BTC_BLOCK_SECONDS
            return status
        except Exception as e:
            log.error(f"Error fetching Bitcoin HTLC status for {address}: {e}")
            return {"address": address, "status": ChainStatus.ERROR.value, "error": str(e)}

    async def get_ethereum_status(self, address: str, funded: bool = True) -> Dict:
        if self.eth is None:
            return {"address": address, "status": ChainStatus.PENDING.value}
        try:
            status = await self.eth.get_status(address)
            data = {"address": address, "status": status.chain_status(funded)}
            data.update(status.to_dict())
            return data
        except Exception as e:
            log.error(f"Error fetching Ethereum escrow status for {address}: {e}")
            return {"address": address, "status": ChainStatus.ERROR.value, "error": str(e)}

    async def get_swap_details(self, swap_id: str) -> Dict:
        """Persisted record merged with a live query of both chains."""
        record = self.get_swap(swap_id)

        if record.bitcoin.htlc_address:
            bitcoin = await self.get_bitcoin_status(
                record.bitcoin.htlc_address, record.bitcoin.hashlock, record.bitcoin.timelock
            )
        else:
            bitcoin = {"address": None, "status": ChainStatus.PENDING.value}

        if record.ethereum.escrow_address:
            ethereum = await self.get_ethereum_status(
                record.ethereum.escrow_address, funded=bool(record.ethereum.funding_txid)
            )
        else:
            ethereum = {"address": None, "status": ChainStatus.PENDING.value}

        details = {
            "swap": record.to_dict(),
            "currentStatus": {"bitcoin": bitcoin, "ethereum": ethereum},
        }
        details["overallStatus"] = determine_overall_status(details).value
        return details

    # =========================================================================
    # Reports
    # =========================================================================

    async def generate_report(self, swap_id: str) -> Dict:
        """Build a report for one swap and persist it as report_<millis>.json."""
        details = await self.get_swap_details(swap_id)
        swap = details["swap"]
        current = details["currentStatus"]

        report = {
            "reportId": f"report_{now_ms()}",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "swap": {
                "id": swap["swap_id"],
                "orderId": swap["order_id"],
                "createdAt": _iso(swap["created_at"]),
                "preimageHash": swap["preimage_hash"],
                "mode": swap["mode"],
                "state": swap["state"],
                "status": details["overallStatus"],
            },
            "bitcoin": {
                "htlcAddress": swap["bitcoin"]["htlc_address"],
                "fundingTxid": swap["bitcoin"]["funding_txid"],
                "amount": swap["bitcoin_amount"],
                **{k: v for k, v in current["bitcoin"].items() if k != "transactions"},
            },
            "ethereum": {
                "escrowAddress": swap["ethereum"]["escrow_address"],
                "fundingTxid": swap["ethereum"]["funding_txid"],
                "amount": swap["ethereum_amount"],
                **{k: v for k, v in current["ethereum"].items() if k != "amount"},
            },
            "timeline": generate_timeline(details),
            "recommendations": generate_recommendations(details),
        }
        self.store.save_report(json.loads(json.dumps(report, default=str)))
        return report

    async def export_report(self, swap_id: str, fmt: str = "json") -> str:
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {fmt}")
        report = await self.generate_report(swap_id)
        if fmt == "csv":
            return report_to_csv(report)
        return json.dumps(report, indent=2, default=str)

    def summary(self) -> Dict:
        """Counts and totals over all persisted swaps (no chain queries)."""
        swaps = self.get_all_swaps()
        by_status = {s.value: 0 for s in OverallStatus}
        by_mode: Dict[str, int] = {}
        total_btc = Decimal(0)
        total_eth = Decimal(0)

        for record in swaps:
            by_status[record.overall_status.value] += 1
            by_mode[record.mode] = by_mode.get(record.mode, 0) + 1
            if record.overall_status == OverallStatus.COMPLETED:
                total_btc += record.bitcoin_amount
                total_eth += record.ethereum_amount

        return {
            "totalSwaps": len(swaps),
            "byStatus": by_status,
            "byMode": by_mode,
            "completedVolume": {"bitcoin": str(total_btc), "ethereum": str(total_eth)},
            "recentSwaps": [
                {
                    "id": r.swap_id,
                    "orderId": r.order_id,
                    "status": r.overall_status.value,
                    "createdAt": _iso(r.created_at),
                }
                for r in swaps[:10]
            ],
        }
