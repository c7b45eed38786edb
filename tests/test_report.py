#!/usr/bin/env python3
"""
Swap report tests.

Status derivation is checked over every pair of chain statuses; the
service runs against the in-memory chain adapters.
"""

import sys
import os
import csv
import io
import json
import shutil
import tempfile
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from portal_sdk.config import CoordinatorConfig
from portal_sdk.core import OverallStatus, SwapMode
from portal_sdk.errors import RpcError, SwapNotFoundError, ValidationError
from portal_sdk.store import JsonFileSwapStore, MemorySwapStore
from portal_sdk.swap.coordinator import SwapCoordinator, SwapRequest
from portal_sdk.swap.report import (
    SwapReportService, derive_status, determine_overall_status,
    generate_recommendations, generate_timeline, report_to_csv,
)

from fakes import FakeBitcoinHtlc, FakeEthereumEscrow, CLAIMER_PUBKEY, RESOLVER, USER

STATUSES = ["PENDING", "FUNDED", "CLAIMED", "REFUNDED", "ERROR"]


def expected_status(btc, eth):
    if btc == "CLAIMED" and eth == "CLAIMED":
        return OverallStatus.COMPLETED
    if "REFUNDED" in (btc, eth):
        return OverallStatus.REFUNDED
    if "ERROR" in (btc, eth):
        return OverallStatus.ERROR
    if btc == "FUNDED" and eth == "FUNDED":
        return OverallStatus.ACTIVE
    return OverallStatus.PENDING


def details_for(btc_status, eth_status, eth_timeout=None, btc_timeout=None):
    return {
        "swap": {"created_at": 1_700_000_000_000, "bitcoin": {}, "ethereum": {}},
        "currentStatus": {
            "bitcoin": {"status": btc_status, "timeout": btc_timeout},
            "ethereum": {"status": eth_status, "timeout": eth_timeout},
        },
    }


class TestDeriveStatus(unittest.TestCase):

    def test_all_combinations(self):
        for btc in STATUSES:
            for eth in STATUSES:
                with self.subTest(btc=btc, eth=eth):
                    self.assertEqual(derive_status(btc, eth), expected_status(btc, eth))

    def test_unknown_values_count_as_pending(self):
        self.assertEqual(derive_status("CREATED", "FUNDED"), OverallStatus.PENDING)
        self.assertEqual(derive_status(None, None), OverallStatus.PENDING)
        self.assertEqual(derive_status("weird", "CLAIMED"), OverallStatus.PENDING)
        self.assertEqual(derive_status("funded", "funded"), OverallStatus.ACTIVE)

    def test_missing_details(self):
        self.assertEqual(determine_overall_status({}), OverallStatus.PENDING)
        self.assertEqual(determine_overall_status(None), OverallStatus.PENDING)


class TestRecommendations(unittest.TestCase):
    NOW = 1_700_000_000

    def test_eth_timeout_close(self):
        recs = generate_recommendations(
            details_for("FUNDED", "FUNDED", eth_timeout=self.NOW + 1800), now=self.NOW)
        self.assertEqual(len(recs), 1)
        self.assertEqual(recs[0]["priority"], "HIGH")
        self.assertEqual(recs[0]["action"], "Complete swap immediately")

    def test_btc_timeout_close(self):
        recs = generate_recommendations(
            details_for("FUNDED", "FUNDED", eth_timeout=self.NOW + 10_000,
                        btc_timeout=self.NOW + 3600), now=self.NOW)
        self.assertEqual([r["priority"] for r in recs], ["HIGH"])
        self.assertIn("Bitcoin", recs[0]["reason"])

    def test_far_timeouts_give_nothing(self):
        recs = generate_recommendations(
            details_for("FUNDED", "FUNDED", eth_timeout=self.NOW + 10_000,
                        btc_timeout=self.NOW + 80_000), now=self.NOW)
        self.assertEqual(recs, [])

    def test_error_is_critical(self):
        recs = generate_recommendations(details_for("ERROR", "FUNDED"), now=self.NOW)
        self.assertEqual([r["priority"] for r in recs], ["CRITICAL"])

    def test_only_active_swaps_get_timeout_warnings(self):
        recs = generate_recommendations(
            details_for("CLAIMED", "CLAIMED", eth_timeout=self.NOW), now=self.NOW)
        self.assertEqual(recs, [])


class TestTimeline(unittest.TestCase):

    def test_events_follow_record(self):
        details = details_for("CLAIMED", "CLAIMED")
        details["swap"].update({
            "bitcoin_amount": "0.001",
            "ethereum_amount": "0.01",
            "bitcoin": {"htlc_address": "bcrt1qhtlc", "funding_txid": "aa", "claim_txid": "bb"},
            "ethereum": {"escrow_address": "0x" + "11" * 20, "funding_txid": "0xcc",
                         "claim_txid": "0xdd"},
            "completed_at": 1_700_000_100_000,
            "state": "BOTH_CLAIMED",
        })
        events = [e["event"] for e in generate_timeline(details)]
        self.assertEqual(events, [
            "SWAP_INITIATED",
            "BITCOIN_HTLC_CREATED",
            "BITCOIN_HTLC_FUNDED",
            "ETHEREUM_ESCROW_CREATED",
            "ETHEREUM_ESCROW_FUNDED",
            "ETHEREUM_ESCROW_CLAIMED",
            "BITCOIN_HTLC_CLAIMED",
            "SWAP_BOTH_CLAIMED",
        ])

    def test_new_swap_has_only_initiation(self):
        events = generate_timeline(details_for("PENDING", "PENDING"))
        self.assertEqual([e["event"] for e in events], ["SWAP_INITIATED"])
        self.assertTrue(events[0]["timestamp"].startswith("2023-11-14"))


class ReportTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.btc = FakeBitcoinHtlc()
        self.eth = FakeEthereumEscrow()
        self.store = MemorySwapStore()
        self.coordinator = SwapCoordinator(
            self.btc, self.eth, self.store,
            CoordinatorConfig(claimer_pubkey=CLAIMER_PUBKEY),
            resolver_address=RESOLVER,
        )
        self.service = SwapReportService(self.store, self.btc, self.eth)

    def request(self, order_id="order-r1"):
        return SwapRequest(
            order_id=order_id,
            bitcoin_amount=Decimal("0.001"),
            ethereum_amount=Decimal("0.01"),
            user_address=USER,
            mode=SwapMode.SIMPLE,
        )


class TestReportService(ReportTestCase):

    async def test_active_swap_details(self):
        swap = await self.coordinator.execute(self.request())
        details = await self.service.get_swap_details(swap.swap_id)
        self.assertEqual(details["overallStatus"], "ACTIVE")
        btc = details["currentStatus"]["bitcoin"]
        self.assertEqual(btc["status"], "FUNDED")
        self.assertEqual(btc["blocksRemaining"], swap.bitcoin.timelock - self.btc.height)
        self.assertEqual(details["currentStatus"]["ethereum"]["status"], "FUNDED")

    async def test_completed_swap_report(self):
        swap = await self.coordinator.run(self.request())
        report = await self.service.generate_report(swap.swap_id)
        self.assertEqual(report["swap"]["status"], "COMPLETED")
        self.assertTrue(report["reportId"].startswith("report_"))
        self.assertEqual(report["recommendations"], [])
        self.assertIn("BITCOIN_HTLC_CLAIMED", [e["event"] for e in report["timeline"]])
        self.assertEqual(len(self.store.reports), 1)

    async def test_adapter_failure_degrades_to_error(self):
        swap = await self.coordinator.execute(self.request())
        self.btc.fail_next["get_htlc_status"] = [RpcError("connection refused", transient=True)]
        details = await self.service.get_swap_details(swap.swap_id)
        self.assertEqual(details["currentStatus"]["bitcoin"]["status"], "ERROR")
        self.assertEqual(details["overallStatus"], "ERROR")

        report = await self.service.generate_report(swap.swap_id)
        self.assertEqual(report["swap"]["status"], "ACTIVE")

    async def test_record_without_chain_data_is_pending(self):
        swap = await self.coordinator.initiate(self.request())
        details = await self.service.get_swap_details(swap.swap_id)
        self.assertEqual(details["overallStatus"], "PENDING")
        self.assertEqual(self.btc.calls, [])

    async def test_unknown_swap(self):
        with self.assertRaises(SwapNotFoundError):
            await self.service.get_swap_details("swap_1_missing")

    async def test_csv_export(self):
        swap = await self.coordinator.run(self.request())
        text = await self.service.export_report(swap.swap_id, "csv")
        lines = text.split("\n")
        self.assertEqual(lines[0], '"Field","Value"')
        rows = dict(tuple(r) for r in csv.reader(io.StringIO(text)) if len(r) == 2)
        self.assertEqual(rows["Swap ID"], swap.swap_id)
        self.assertEqual(rows["Status"], "COMPLETED")
        self.assertEqual(rows["Bitcoin HTLC Address"], swap.bitcoin.htlc_address)

    async def test_json_export(self):
        swap = await self.coordinator.run(self.request())
        data = json.loads(await self.service.export_report(swap.swap_id, "json"))
        self.assertEqual(data["swap"]["id"], swap.swap_id)

    async def test_unsupported_format(self):
        swap = await self.coordinator.initiate(self.request())
        with self.assertRaises(ValidationError):
            await self.service.export_report(swap.swap_id, "xml")

    async def test_status_without_adapters(self):
        service = SwapReportService(self.store)
        status = await service.get_bitcoin_status("bcrt1qx")
        self.assertEqual(status["status"], "PENDING")
        status = await service.get_ethereum_status("0x" + "00" * 20)
        self.assertEqual(status["status"], "PENDING")


class TestTrackingAndSummary(ReportTestCase):

    def test_track_client_payload(self):
        record = self.service.track_swap({
            "orderId": "order-t",
            "preimageHash": "ab" * 32,
            "bitcoinAmount": "0.002",
            "ethereumAmount": "0.02",
            "bitcoin": {"htlcAddress": "bcrt1qtracked"},
            "ethereum": {"escrowAddress": "0x" + "22" * 20},
        })
        self.assertTrue(record.swap_id.endswith("_order-t"))
        stored = self.service.get_swap(record.swap_id)
        self.assertEqual(stored.bitcoin.htlc_address, "bcrt1qtracked")
        self.assertEqual(stored.bitcoin_amount, Decimal("0.002"))

    def test_track_malformed_payload(self):
        with self.assertRaises(ValidationError):
            self.service.track_swap({"orderId": "order-bad"})
        with self.assertRaises(ValidationError):
            self.service.track_swap({"orderId": "o", "bitcoinAmount": "x", "ethereumAmount": "1"})

    async def test_summary(self):
        await self.coordinator.run(self.request("order-s1"))
        await self.coordinator.execute(self.request("order-s2"))
        summary = self.service.summary()
        self.assertEqual(summary["totalSwaps"], 2)
        self.assertEqual(summary["byStatus"]["COMPLETED"], 1)
        self.assertEqual(summary["byStatus"]["ACTIVE"], 1)
        self.assertEqual(summary["byMode"], {"simple": 2})
        self.assertEqual(Decimal(summary["completedVolume"]["bitcoin"]), Decimal("0.001"))
        self.assertEqual(len(summary["recentSwaps"]), 2)

    async def test_summary_skips_unreadable_records(self):
        data_dir = tempfile.mkdtemp(prefix="portal-reports-")
        self.addCleanup(shutil.rmtree, data_dir, ignore_errors=True)
        store = JsonFileSwapStore(data_dir)
        coordinator = SwapCoordinator(
            self.btc, self.eth, store,
            CoordinatorConfig(claimer_pubkey=CLAIMER_PUBKEY),
            resolver_address=RESOLVER,
        )
        await coordinator.run(self.request("order-s3"))
        with open(os.path.join(data_dir, "swap_1_bad.json"), "wb") as f:
            f.write(b'{"swap_id": "\xff\xfe"}')

        with self.assertLogs("portal_sdk.store", level="WARNING"):
            summary = SwapReportService(store).summary()
        self.assertEqual(summary["totalSwaps"], 1)
        self.assertEqual(summary["byStatus"]["COMPLETED"], 1)


class TestCsvLayout(unittest.TestCase):

    def test_every_cell_quoted(self):
        report = {
            "reportId": "report_1",
            "generatedAt": "now",
            "swap": {"id": "swap_1_o", "orderId": "o", "status": "PENDING", "preimageHash": "ab"},
            "bitcoin": {"htlcAddress": None, "amount": "0.1"},
            "ethereum": {"escrowAddress": "0x1", "active": False},
        }
        text = report_to_csv(report)
        for line in text.split("\n"):
            self.assertTrue(line.startswith('"') and line.endswith('"'), line)
        self.assertIn('"Bitcoin HTLC Address",""', text)


if __name__ == "__main__":
    unittest.main(verbosity=2)
