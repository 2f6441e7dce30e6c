#!/usr/bin/env python3
"""
xswap Server
HTLC atomic swap coordination between ETH (Base Sepolia), NEAR and Aptos.

Endpoints:
  GET  /api/status                     - Health check
  GET  /api/pairs                      - Supported swap directions
  POST /api/swap/initiate              - Escrow both legs of a new swap
  POST /api/swap/{order_hash}/complete - Claim both legs
  POST /api/swap/{order_hash}/cancel   - Refund after expiry
  POST /api/swap/{order_hash}/refresh  - Re-read on-chain lock states
  GET  /api/swap/{order_hash}          - Swap details
  GET  /api/swaps                      - List swaps
  GET  /api/stats                      - Registry statistics

Without a configured HTLC contract plus a NEAR escrow account or Aptos
escrow module the server runs against simulated in-memory chains (dry run).
"""

import os
import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from xswap import __version__
from xswap.core import ChainId
from xswap.config import SwapConfig, EVMConfig, NEARConfig, AptosConfig
from xswap.chains import (
    InMemoryEscrowAdapter, EVMEscrowAdapter, NEAREscrowAdapter, AptosEscrowAdapter,
)
from xswap.swap import PairOrchestrator, SwapManager
from routes import swaps as swap_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=os.environ.get("XSWAP_LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# Seconds between registry cleanups
CLEANUP_INTERVAL = 3600


# =============================================================================
# MANAGER
# =============================================================================

def build_manager() -> SwapManager:
    """Swap manager from environment: live ETH<->NEAR / ETH<->Aptos, or simulated chains."""
    config = SwapConfig.from_env()
    evm_config = EVMConfig.from_env()
    near_config = NEARConfig.from_env()
    aptos_config = AptosConfig.from_env()

    dry_run = os.environ.get("XSWAP_DRY_RUN", "").lower() in ("1", "true", "yes")
    live = (evm_config.htlc_contract and not dry_run
            and (near_config.escrow_contract_id or aptos_config.escrow_address))

    if live:
        eth = EVMEscrowAdapter(evm_config)
        orchestrators = []
        if near_config.escrow_contract_id:
            orchestrators.append(PairOrchestrator(eth, NEAREscrowAdapter(near_config), config))
            log.info(f"Live ETH<->NEAR: ETH contract {evm_config.htlc_contract}, "
                     f"NEAR escrow {near_config.escrow_contract_id}")
        if aptos_config.escrow_address:
            orchestrators.append(PairOrchestrator(eth, AptosEscrowAdapter(aptos_config), config))
            log.info(f"Live ETH<->Aptos: ETH contract {evm_config.htlc_contract}, "
                     f"Aptos module {aptos_config.escrow_address}::{aptos_config.module_name}")
        return SwapManager(orchestrators, config=config)

    log.warning("No escrow contracts configured - running against simulated chains")
    eth = InMemoryEscrowAdapter(ChainId.ETH)
    near = InMemoryEscrowAdapter(ChainId.NEAR)
    aptos = InMemoryEscrowAdapter(ChainId.APTOS)
    return SwapManager([
        PairOrchestrator(eth, near, config),
        PairOrchestrator(eth, aptos, config),
    ], config=config)


manager = build_manager()
swap_routes.configure(manager)

# =============================================================================
# APP
# =============================================================================

app = FastAPI(
    title="xswap",
    description="HTLC cross-chain atomic swaps",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(swap_routes.router)


@app.get("/")
async def root():
    return {
        "name": "xswap",
        "version": __version__,
        "pairs": [d.name for d in manager.supported_directions()],
        "docs": "/docs",
    }


# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Start the periodic registry cleanup."""
    async def _cleanup_loop():
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            try:
                manager.cleanup()
            except Exception as e:
                log.error(f"Registry cleanup error: {e}")
    asyncio.create_task(_cleanup_loop())

    log.info(f"Swap manager ready: {', '.join(d.name for d in manager.supported_directions())}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop monitors and close chain clients."""
    manager.shutdown()
    log.info("Swap manager stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting xswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
