"""
Swap record persistence.

Records are stored as plain dicts (SwapRecord.to_dict) and rebuilt on
read, so callers never share a mutable record with the store. Preimages
are only ever present once revealed on-chain.
"""

import json
import os
import threading
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, List, Any

from .core import SwapRecord, now_ms
from .errors import ValidationError

log = logging.getLogger(__name__)


class SwapStore(ABC):
    """Key-value store of swap records, keyed by swap_id."""

    @abstractmethod
    def save(self, record: SwapRecord) -> None:
        ...

    @abstractmethod
    def get(self, swap_id: str) -> Optional[SwapRecord]:
        ...

    @abstractmethod
    def all(self) -> List[SwapRecord]:
        """All readable records, newest first."""
        ...

    @abstractmethod
    def save_report(self, report: Dict[str, Any]) -> str:
        """Persist a report; returns where it was written."""
        ...

    def find_by_order(self, order_id: str) -> Optional[SwapRecord]:
        """Most recent swap for an order id."""
        for record in self.all():
            if record.order_id == order_id:
                return record
        return None


def _sorted(records: List[SwapRecord]) -> List[SwapRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)


class MemorySwapStore(SwapStore):
    """In-process store (tests, ephemeral servers)."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self.reports: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def save(self, record: SwapRecord) -> None:
        with self._lock:
            self._records[record.swap_id] = record.to_dict()

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        with self._lock:
            data = self._records.get(swap_id)
        return SwapRecord.from_dict(data) if data else None

    def all(self) -> List[SwapRecord]:
        with self._lock:
            items = list(self._records.values())
        return _sorted([SwapRecord.from_dict(d) for d in items])

    def save_report(self, report: Dict[str, Any]) -> str:
        with self._lock:
            self.reports.append(report)
        return report.get("reportId", "")


class JsonFileSwapStore(SwapStore):
    """
    One JSON file per swap under `data_dir`.

    Layout:
        <data_dir>/swap_<millis>_<orderId>.json
        <data_dir>/report_<millis>.json
    """

    def __init__(self, data_dir):
        self.data_dir = Path(os.path.expanduser(str(data_dir)))
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, swap_id: str) -> Path:
        if not swap_id or "/" in swap_id or "\\" in swap_id or swap_id.startswith("."):
            raise ValidationError(f"Invalid swap id: {swap_id!r}")
        return self.data_dir / f"{swap_id}.json"

    def _write(self, path: Path, data: Dict[str, Any]):
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)

    def save(self, record: SwapRecord) -> None:
        path = self._path(record.swap_id)
        with self._lock:
            self._write(path, record.to_dict())

    def _read(self, path: Path) -> SwapRecord:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ValidationError(f"Malformed swap record {path.name}", details=str(e))
        return SwapRecord.from_dict(data)

    def get(self, swap_id: str) -> Optional[SwapRecord]:
        path = self._path(swap_id)
        with self._lock:
            if not path.exists():
                return None
            return self._read(path)

    def all(self) -> List[SwapRecord]:
        """Load every swap file; unreadable or malformed ones are skipped."""
        records = []
        with self._lock:
            paths = sorted(self.data_dir.glob("swap_*.json"))
            for path in paths:
                try:
                    records.append(self._read(path))
                except ValidationError as e:
                    log.warning(f"Skipping malformed swap record {path.name}: {e}")
        return _sorted(records)

    def save_report(self, report: Dict[str, Any]) -> str:
        report_id = report.get("reportId") or f"report_{now_ms()}"
        path = self.data_dir / f"{report_id}.json"
        with self._lock:
            self._write(path, report)
        log.info(f"Report written: {path}")
        return str(path)
