#!/usr/bin/env python3
"""
Example: ETH -> NEAR Atomic Swap

Runs the four-transaction HTLC protocol through SwapManager:

1. Maker escrows ETH on Base Sepolia (source leg, longer timelock)
2. Resolver escrows NEAR under the same hashlock (destination leg)
3. Maker claims NEAR, revealing the secret
4. Resolver claims ETH with the revealed secret

With BASE_SEPOLIA_HTLC_CONTRACT and NEAR_ESCROW_CONTRACT_ID set (plus the
BASE_SEPOLIA_PRIVATE_KEY_1/2, NEAR_ACCOUNT_ID_1/2 and NEAR_PRIVATE_KEY_1/2
wallets) it runs against the testnets; otherwise against simulated chains.

Usage:
    python eth_to_near_swap.py
"""

import os
import sys
import logging
from pathlib import Path

# Add SDK to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from xswap import SwapManager, PairOrchestrator, SwapRequest, InMemoryEscrowAdapter
from xswap.core import ChainId, TOKEN_MAPPINGS, to_smallest_unit
from xswap.chains import EVMEscrowAdapter, NEAREscrowAdapter
from xswap.config import SwapConfig, EVMConfig, NEARConfig

logging.basicConfig(
    level=os.environ.get("XSWAP_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


def main():
    # =================================================================
    # 1. Initialize chain adapters
    # =================================================================
    evm_config = EVMConfig.from_env()
    near_config = NEARConfig.from_env()
    live = bool(evm_config.htlc_contract and near_config.escrow_contract_id)

    if live:
        log.info("Initializing live adapters (Base Sepolia <-> NEAR testnet)...")
        eth = EVMEscrowAdapter(evm_config)
        near = NEAREscrowAdapter(near_config)
        swap_config = SwapConfig.from_env()
        maker = eth.wallet_addresses()["maker"]
        recipient = near_config.maker_account_id
    else:
        log.info("No contracts configured, using simulated chains (dry run)")
        eth = InMemoryEscrowAdapter(ChainId.ETH)
        near = InMemoryEscrowAdapter(ChainId.NEAR)
        swap_config = SwapConfig(settle_delay=0, poll_interval=1.0)
        maker = eth.wallet_addresses()["maker"]
        recipient = near.wallet_addresses()["maker"]

    manager = SwapManager([PairOrchestrator(eth, near, swap_config)], config=swap_config,
                          auto_monitor=False)

    manager.on("swapInitiated", lambda o: log.info(f"Event: initiated {o.order_hash[:16]}..."))
    manager.on("swapCompleted", lambda o: log.info(f"Event: completed {o.order_hash[:16]}..."))
    manager.on("swapError", lambda e: log.error(f"Event: error {e['error']}"))

    # =================================================================
    # 2. Escrow both legs
    # =================================================================
    amount_eth = 0.001
    amount_near = 0.1

    request = SwapRequest(
        src_chain=ChainId.ETH,
        dst_chain=ChainId.NEAR,
        src_token=TOKEN_MAPPINGS["ETH"][ChainId.ETH],
        dst_token=TOKEN_MAPPINGS["ETH"][ChainId.NEAR],
        src_amount=to_smallest_unit(amount_eth, ChainId.ETH),
        dst_amount=to_smallest_unit(amount_near, ChainId.NEAR),
        maker=maker,
        recipient=recipient,
        timeout_minutes=60,
    )

    log.info(f"Initiating swap: {amount_eth} ETH -> {amount_near} NEAR")
    order = manager.initiate_swap(request)

    log.info(f"Swap initiated:")
    log.info(f"  Order hash: {order.order_hash}")
    log.info(f"  Hashlock: {order.hashlock}")
    log.info(f"  ETH timelock: {order.timelocks.src_leg.timelock} ms")
    log.info(f"  NEAR timelock: {order.timelocks.dst_leg.timelock} ms")
    log.info(f"  ETH escrow tx: {order.src_escrow.tx_hash}")
    log.info(f"  NEAR escrow tx: {order.dst_escrow.tx_hash}")

    # =================================================================
    # 3. Confirm deposits, then claim
    # =================================================================
    order = manager.refresh_swap(order.order_hash)
    log.info(f"Status after refresh: {order.status.value}")

    order = manager.complete_swap(order.order_hash)

    log.info(f"Swap {order.status.value}:")
    log.info(f"  NEAR claim tx: {order.dst_claim.tx_hash}")
    log.info(f"  ETH claim tx: {order.src_claim.tx_hash}")
    log.info(f"  Revealed secret: {order.revealed_secret[:16]}...")

    details = manager.get_swap_details(order.order_hash)
    log.info(f"  HTLC state: {details.state.value}")
    log.info(f"Statistics: {manager.get_statistics()}")

    manager.shutdown()


if __name__ == "__main__":
    main()
