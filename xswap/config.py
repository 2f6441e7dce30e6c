"""
Configuration for xswap.

Plain dataclasses with defaults suitable for testnet; from_env() overlays
environment variables (XSWAP_*, BASE_SEPOLIA_*, NEAR_*, APTOS_*).
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_TIMEOUT_MINUTES = 60
MIN_TIMEOUT_MINUTES = 15
MAX_TIMEOUT_MINUTES = 1440      # 24 hours
SAFETY_MARGIN_MINUTES = 10


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


@dataclass
class SwapConfig:
    """Swap engine configuration."""
    # Timeouts (minutes)
    default_timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    min_timeout_minutes: int = MIN_TIMEOUT_MINUTES
    max_timeout_minutes: int = MAX_TIMEOUT_MINUTES
    safety_margin_minutes: int = SAFETY_MARGIN_MINUTES

    # Escrow preconditions (seconds)
    min_timelock_margin_seconds: int = 300
    max_timelock_horizon_seconds: Optional[int] = None   # max timeout + safety margin

    # Protocol pacing (seconds)
    settle_delay: float = 5.0       # Between the four protocol steps
    poll_interval: float = 30.0     # Monitor tick
    auto_cancel_delay: float = 60.0 # After expiry is observed

    # Registry
    retention_hours: int = 24
    max_concurrent_swaps: int = 10

    # Retry of transient chain errors
    max_retries: int = 3
    retry_delay: float = 5.0        # First backoff, doubled per attempt

    def __post_init__(self):
        if self.max_timelock_horizon_seconds is None:
            self.max_timelock_horizon_seconds = (
                self.max_timeout_minutes + self.safety_margin_minutes
            ) * 60

    @property
    def min_timelock_margin_ms(self) -> int:
        return self.min_timelock_margin_seconds * 1000

    @property
    def max_timelock_horizon_ms(self) -> int:
        return self.max_timelock_horizon_seconds * 1000

    @property
    def retention_ms(self) -> int:
        return self.retention_hours * 3_600_000

    @classmethod
    def from_env(cls) -> "SwapConfig":
        return cls(
            default_timeout_minutes=_env_int("XSWAP_DEFAULT_TIMEOUT_MINUTES", DEFAULT_TIMEOUT_MINUTES),
            min_timeout_minutes=_env_int("XSWAP_MIN_TIMEOUT_MINUTES", MIN_TIMEOUT_MINUTES),
            max_timeout_minutes=_env_int("XSWAP_MAX_TIMEOUT_MINUTES", MAX_TIMEOUT_MINUTES),
            safety_margin_minutes=_env_int("XSWAP_SAFETY_MARGIN_MINUTES", SAFETY_MARGIN_MINUTES),
            min_timelock_margin_seconds=_env_int("XSWAP_MIN_TIMELOCK_MARGIN_SECONDS", 300),
            settle_delay=_env_float("XSWAP_SETTLE_DELAY", 5.0),
            poll_interval=_env_float("XSWAP_POLL_INTERVAL", 30.0),
            auto_cancel_delay=_env_float("XSWAP_AUTO_CANCEL_DELAY", 60.0),
            retention_hours=_env_int("XSWAP_RETENTION_HOURS", 24),
            max_concurrent_swaps=_env_int("XSWAP_MAX_CONCURRENT_SWAPS", 10),
            max_retries=_env_int("XSWAP_MAX_RETRIES", 3),
            retry_delay=_env_float("XSWAP_RETRY_DELAY", 5.0),
        )


@dataclass
class EVMConfig:
    """EVM escrow configuration (Base Sepolia by default)."""
    rpc_url: str = "https://sepolia.base.org"
    chain_id: int = 84532
    htlc_contract: str = ""
    maker_private_key: str = field(default="", repr=False)
    resolver_private_key: str = field(default="", repr=False)
    gas_create: int = 350000
    gas_claim: int = 200000
    gas_refund: int = 150000
    gas_approve: int = 100000
    gas_price_multiplier: float = 1.1
    receipt_timeout: int = 120

    @classmethod
    def from_env(cls) -> "EVMConfig":
        return cls(
            rpc_url=os.environ.get("BASE_SEPOLIA_RPC_URL", "https://sepolia.base.org"),
            chain_id=_env_int("BASE_SEPOLIA_CHAIN_ID", 84532),
            htlc_contract=os.environ.get("BASE_SEPOLIA_HTLC_CONTRACT", ""),
            maker_private_key=os.environ.get("BASE_SEPOLIA_PRIVATE_KEY_1", ""),
            resolver_private_key=os.environ.get("BASE_SEPOLIA_PRIVATE_KEY_2", ""),
        )


@dataclass
class NEARConfig:
    """NEAR escrow configuration (testnet by default)."""
    rpc_url: str = "https://rpc.testnet.near.org"
    network_id: str = "testnet"
    escrow_contract_id: str = ""
    maker_account_id: str = ""
    maker_private_key: str = field(default="", repr=False)     # ed25519:<base58>
    resolver_account_id: str = ""
    resolver_private_key: str = field(default="", repr=False)
    peer_chain: str = "base-sepolia"    # Recorded as src_chain by the escrow contract
    gas_create: int = 100_000_000_000_000    # 100 TGas
    gas_complete: int = 100_000_000_000_000
    gas_refund: int = 100_000_000_000_000
    timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "NEARConfig":
        return cls(
            rpc_url=os.environ.get("NEAR_RPC_URL", "https://rpc.testnet.near.org"),
            network_id=os.environ.get("NEAR_NETWORK_ID", "testnet"),
            escrow_contract_id=os.environ.get("NEAR_ESCROW_CONTRACT_ID", ""),
            maker_account_id=os.environ.get("NEAR_ACCOUNT_ID_1", ""),
            maker_private_key=os.environ.get("NEAR_PRIVATE_KEY_1", ""),
            resolver_account_id=os.environ.get("NEAR_ACCOUNT_ID_2", ""),
            resolver_private_key=os.environ.get("NEAR_PRIVATE_KEY_2", ""),
            peer_chain=os.environ.get("NEAR_PEER_CHAIN", "base-sepolia"),
        )


@dataclass
class AptosConfig:
    """Aptos escrow configuration (testnet by default)."""
    node_url: str = "https://fullnode.testnet.aptoslabs.com/v1"
    escrow_address: str = ""            # Account publishing cross_chain_escrow
    module_name: str = "cross_chain_escrow"
    maker_private_key: str = field(default="", repr=False)     # 0x-hex ed25519 seed
    resolver_private_key: str = field(default="", repr=False)
    max_gas_amount: int = 10000
    gas_unit_price: int = 100
    tx_expiration_seconds: int = 600
    confirm_timeout: float = 60.0
    confirm_poll_interval: float = 1.0
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "AptosConfig":
        return cls(
            node_url=os.environ.get("APTOS_NODE_URL", "https://fullnode.testnet.aptoslabs.com/v1"),
            escrow_address=os.environ.get("APTOS_ESCROW_ADDRESS", ""),
            maker_private_key=os.environ.get("APTOS_PRIVATE_KEY_1", ""),
            resolver_private_key=os.environ.get("APTOS_PRIVATE_KEY_2", ""),
            max_gas_amount=_env_int("APTOS_MAX_GAS_AMOUNT", 10000),
            gas_unit_price=_env_int("APTOS_GAS_UNIT_PRICE", 100),
        )
