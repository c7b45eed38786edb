"""
Swap coordination for Thunder Portal SDK.

Orchestrates atomic swaps across Bitcoin and Ethereum using HTLCs.
"""

from .coordinator import SwapCoordinator, SwapRequest
from .partial import PartialFillCoordinator
from .relayer import Relayer
from .report import SwapReportService

__all__ = ["SwapCoordinator", "SwapRequest", "PartialFillCoordinator", "Relayer", "SwapReportService"]
