"""
xswap SDK - Cross-Chain Atomic Swap Library

Coordinates HTLC atomic swaps between independent chains (ETH <-> NEAR,
ETH <-> Aptos). Either both parties receive funds or both can recover them.

Usage:
    from xswap import SwapManager, PairOrchestrator, SwapRequest
    from xswap.chains import EVMEscrowAdapter, NEAREscrowAdapter
    from xswap.config import SwapConfig, EVMConfig, NEARConfig

    # One orchestrator per chain pair, serving both directions
    eth = EVMEscrowAdapter(EVMConfig.from_env())
    near = NEAREscrowAdapter(NEARConfig.from_env())
    manager = SwapManager([PairOrchestrator(eth, near, SwapConfig.from_env())])

    # Escrow both legs, then claim
    order = manager.initiate_swap(SwapRequest(
        src_chain="ETH", dst_chain="NEAR",
        src_token="0x0000000000000000000000000000000000000000", dst_token="NEAR",
        src_amount=10**15, dst_amount=10**23,
        maker="0xMaker...", recipient="maker.testnet",
    ))
    manager.complete_swap(order.order_hash)
"""

from .core import (
    ChainId,
    Direction,
    Party,
    SwapStatus,
    LockState,
    EscrowReceipt,
    ChainOrderView,
    SwapRequest,
    SwapOrder,
    SUPPORTED_PAIRS,
    TOKEN_MAPPINGS,
    to_smallest_unit,
    from_smallest_unit,
)
from .errors import SwapError
from .config import SwapConfig, EVMConfig, NEARConfig
from .htlc import generate_secret, verify_preimage, hashlock_of, create_order_hash

from .chains.base import EscrowAdapter
from .chains.memory import InMemoryEscrowAdapter

from .swap.orchestrator import PairOrchestrator, EscrowParams, StepResult, AtomicSwapResult
from .swap.watcher import SwapMonitor
from .swap.manager import SwapManager, SwapRegistry

__version__ = "0.1.0"
__all__ = [
    # Core types
    "ChainId",
    "Direction",
    "Party",
    "SwapStatus",
    "LockState",
    "EscrowReceipt",
    "ChainOrderView",
    "SwapRequest",
    "SwapOrder",
    "SUPPORTED_PAIRS",
    "TOKEN_MAPPINGS",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "hashlock_of",
    "create_order_hash",
    "to_smallest_unit",
    "from_smallest_unit",
    # Errors / config
    "SwapError",
    "SwapConfig",
    "EVMConfig",
    "NEARConfig",
    # Adapters
    "EscrowAdapter",
    "InMemoryEscrowAdapter",
    # Swap
    "PairOrchestrator",
    "EscrowParams",
    "StepResult",
    "AtomicSwapResult",
    "SwapMonitor",
    "SwapManager",
    "SwapRegistry",
]
