# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP configuration endpoint (FastAPI).

Publishes the runtime configuration snapshot the escrow client needs at
startup: contract addresses, chain and RPC settings, encryption environment.
Read-only; nothing here touches the ledger.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI
from pydantic import BaseModel

from config import AppConfig


class ConfigResponse(BaseModel):
    escrowContractAddress: str = ""
    disputeResolverAddress: str = ""
    chainId: int
    chainName: str
    rpcUrl: str
    rpcUrls: list[str]
    fhenixEnv: str


class HealthResponse(BaseModel):
    status: str = "ok"
    configured: bool = False


# --- App factory ---

def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create FastAPI app with an injected config.

    Without one, the environment is read on every request so a redeploy with
    new variables is picked up without code changes.
    """

    app = FastAPI(title="Private Escrow Config", version="1.0")

    def _current() -> AppConfig:
        return config if config is not None else AppConfig.from_env()

    @app.get("/api/config", response_model=ConfigResponse)
    async def get_config():
        cfg = _current()
        if not cfg.escrow_contract_address:
            print("[server] ESCROW_CONTRACT_ADDRESS is not set", file=sys.stderr)
        return ConfigResponse(**cfg.to_dict())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(configured=bool(_current().escrow_contract_address))

    return app
