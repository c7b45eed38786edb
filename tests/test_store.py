#!/usr/bin/env python3
"""
Swap store tests (in-memory and one-JSON-file-per-swap).
"""

import sys
import os
import json
import shutil
import tempfile
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from portal_sdk.core import SwapRecord, SwapState, SwapMode
from portal_sdk.errors import ValidationError
from portal_sdk.store import MemorySwapStore, JsonFileSwapStore


def record(order_id, created_at, state=SwapState.INITIATED):
    return SwapRecord(
        swap_id=f"swap_{created_at}_{order_id}",
        order_id=order_id,
        preimage_hash="cd" * 32,
        bitcoin_amount=Decimal("0.001"),
        ethereum_amount=Decimal("0.01"),
        user_address="0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC",
        mode=SwapMode.SIMPLE.value,
        state=state,
        created_at=created_at,
        updated_at=created_at,
    )


class StoreContract:
    """Behaviour shared by every store."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_save_and_get(self):
        r = record("order-1", 1000)
        self.store.save(r)
        got = self.store.get(r.swap_id)
        self.assertEqual(got.order_id, "order-1")
        self.assertEqual(got.bitcoin_amount, Decimal("0.001"))
        self.assertIsNone(self.store.get("swap_1_missing"))

    def test_records_are_copies(self):
        r = record("order-1", 1000)
        self.store.save(r)
        r.state = SwapState.ERROR
        self.assertEqual(self.store.get(r.swap_id).state, SwapState.INITIATED)

    def test_all_newest_first(self):
        for order_id, ts in (("a", 1000), ("b", 3000), ("c", 2000)):
            self.store.save(record(order_id, ts))
        self.assertEqual([r.order_id for r in self.store.all()], ["b", "c", "a"])

    def test_save_overwrites(self):
        r = record("order-1", 1000)
        self.store.save(r)
        r.state = SwapState.BITCOIN_HTLC_CREATED
        self.store.save(r)
        self.assertEqual(len(self.store.all()), 1)
        self.assertEqual(self.store.get(r.swap_id).state, SwapState.BITCOIN_HTLC_CREATED)

    def test_find_by_order_returns_latest(self):
        self.store.save(record("order-1", 1000, SwapState.ERROR))
        self.store.save(record("order-1", 2000))
        self.store.save(record("order-2", 3000))
        found = self.store.find_by_order("order-1")
        self.assertEqual(found.created_at, 2000)
        self.assertIsNone(self.store.find_by_order("order-9"))


class TestMemorySwapStore(StoreContract, unittest.TestCase):

    def make_store(self):
        return MemorySwapStore()

    def test_reports_kept(self):
        self.store.save_report({"reportId": "report_1"})
        self.assertEqual(self.store.reports, [{"reportId": "report_1"}])


class TestJsonFileSwapStore(StoreContract, unittest.TestCase):

    def make_store(self):
        self.data_dir = tempfile.mkdtemp(prefix="portal-swaps-")
        self.addCleanup(shutil.rmtree, self.data_dir, ignore_errors=True)
        return JsonFileSwapStore(self.data_dir)

    def test_file_layout(self):
        r = record("order-1", 1000)
        self.store.save(r)
        path = os.path.join(self.data_dir, f"{r.swap_id}.json")
        self.assertTrue(os.path.exists(path))
        with open(path) as f:
            data = json.load(f)
        self.assertEqual(data["order_id"], "order-1")
        self.assertEqual(data["state"], SwapState.INITIATED.value)

    def test_malformed_files_skipped(self):
        self.store.save(record("order-1", 1000))
        with open(os.path.join(self.data_dir, "swap_2000_broken.json"), "w") as f:
            f.write("{not json")
        with open(os.path.join(self.data_dir, "swap_3000_partial.json"), "w") as f:
            json.dump({"swap_id": "swap_3000_partial"}, f)
        with self.assertLogs("portal_sdk.store", level="WARNING"):
            records = self.store.all()
        self.assertEqual([r.order_id for r in records], ["order-1"])

    def test_undecodable_file_skipped(self):
        self.store.save(record("order-1", 1000))
        with open(os.path.join(self.data_dir, "swap_2000_bytes.json"), "wb") as f:
            f.write(b'{"swap_id": "\xff\xfe"}')
        with self.assertLogs("portal_sdk.store", level="WARNING"):
            records = self.store.all()
        self.assertEqual([r.order_id for r in records], ["order-1"])
        with self.assertLogs("portal_sdk.store", level="WARNING"):
            self.assertEqual(self.store.find_by_order("order-1").created_at, 1000)

    def test_get_malformed_raises_validation_error(self):
        with open(os.path.join(self.data_dir, "swap_2000_broken.json"), "w") as f:
            f.write("{not json")
        with open(os.path.join(self.data_dir, "swap_3000_bytes.json"), "wb") as f:
            f.write(b"\xff\xfe\x00")
        for swap_id in ("swap_2000_broken", "swap_3000_bytes"):
            with self.assertRaises(ValidationError) as ctx:
                self.store.get(swap_id)
            self.assertIn(swap_id, str(ctx.exception))

    def test_survives_reopen(self):
        r = record("order-1", 1000)
        self.store.save(r)
        reopened = JsonFileSwapStore(self.data_dir)
        self.assertEqual(reopened.get(r.swap_id).swap_id, r.swap_id)

    def test_path_traversal_rejected(self):
        for bad in ("../escape", "a/b", "a\\b", ".hidden", ""):
            with self.assertRaises(ValidationError):
                self.store.get(bad)

    def test_report_written(self):
        self.store.save_report({"reportId": "report_42", "swap": {"id": "x"}})
        with open(os.path.join(self.data_dir, "report_42.json")) as f:
            self.assertEqual(json.load(f)["swap"]["id"], "x")
        # Reports never show up as swaps
        self.assertEqual(self.store.all(), [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
