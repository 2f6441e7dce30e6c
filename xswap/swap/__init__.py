"""
Swap coordination for xswap.

Orchestrates atomic swaps across chain pairs using HTLCs.
"""

from .orchestrator import (
    PairOrchestrator, EscrowParams, StepResult, AtomicSwapResult, RefundResult, SwapStatusView,
)
from .watcher import SwapMonitor
from .manager import SwapManager, SwapRegistry, RegistryEntry, SwapDetails

__all__ = [
    "PairOrchestrator",
    "EscrowParams",
    "StepResult",
    "AtomicSwapResult",
    "RefundResult",
    "SwapStatusView",
    "SwapMonitor",
    "SwapManager",
    "SwapRegistry",
    "RegistryEntry",
    "SwapDetails",
]
