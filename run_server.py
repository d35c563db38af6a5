#!/usr/bin/env python3
"""Serve the escrow configuration endpoint.

Settings come from the environment (never from code):
ESCROW_CONTRACT_ADDRESS, DISPUTE_RESOLVER_ADDRESS, CHAIN_ID, RPC_URL,
RPC_URLS, FHENIX_ENV. Listen port from ESCROW_CONFIG_PORT.
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn

from config import AppConfig
from server.app import create_app

PORT = int(os.environ.get("ESCROW_CONFIG_PORT", "8000"))
HOST = os.environ.get("ESCROW_CONFIG_HOST", "0.0.0.0")


def main():
    config = AppConfig.from_env()
    if not config.escrow_contract_address:
        print("[server] ESCROW_CONTRACT_ADDRESS is not set; clients will report it missing",
              file=sys.stderr)
    print(f"[server] Chain {config.chain_id} ({config.chain_name}), FHE env {config.fhenix_env}")
    print(f"[server] Listening on :{PORT}")
    uvicorn.run(create_app(config), host=HOST, port=PORT)


if __name__ == "__main__":
    main()
