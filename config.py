"""Runtime configuration snapshot.

The server side reads plain environment variables and publishes them on
GET /api/config. Clients fetch that snapshot once at startup and fall back to
their own environment when the endpoint is unreachable.
"""

import os
import sys
from dataclasses import dataclass, field

import httpx

from errors import ConfigurationMissing
from protocol import (
    DEFAULT_CHAIN_ID, DEFAULT_CHAIN_NAME, DEFAULT_RPC_URL, DEFAULT_FHENIX_ENV,
    FHENIX_ENVIRONMENTS, NATIVE_CURRENCY,
)


def _split_urls(raw: str) -> list[str]:
    return [u.strip() for u in raw.split(",") if u.strip()]


@dataclass
class AppConfig:
    escrow_contract_address: str = ""
    dispute_resolver_address: str = ""
    chain_id: int = DEFAULT_CHAIN_ID
    chain_name: str = DEFAULT_CHAIN_NAME
    rpc_url: str = DEFAULT_RPC_URL
    rpc_urls: list[str] = field(default_factory=list)
    fhenix_env: str = DEFAULT_FHENIX_ENV

    def __post_init__(self):
        if not self.rpc_urls:
            self.rpc_urls = [self.rpc_url]
        if self.fhenix_env not in FHENIX_ENVIRONMENTS:
            print(f"[config] Unknown FHENIX_ENV {self.fhenix_env!r}, using {DEFAULT_FHENIX_ENV}",
                  file=sys.stderr)
            self.fhenix_env = DEFAULT_FHENIX_ENV

    @classmethod
    def from_env(cls, environ=None) -> "AppConfig":
        env = os.environ if environ is None else environ
        chain_id_str = env.get("CHAIN_ID", "").strip()
        try:
            chain_id = int(chain_id_str) if chain_id_str else DEFAULT_CHAIN_ID
        except ValueError:
            print(f"[config] Ignoring invalid CHAIN_ID {chain_id_str!r}", file=sys.stderr)
            chain_id = DEFAULT_CHAIN_ID
        rpc_url = env.get("RPC_URL", "").strip() or DEFAULT_RPC_URL
        rpc_urls = _split_urls(env.get("RPC_URLS", "")) or [rpc_url]
        return cls(
            escrow_contract_address=env.get("ESCROW_CONTRACT_ADDRESS", "").strip(),
            dispute_resolver_address=env.get("DISPUTE_RESOLVER_ADDRESS", "").strip(),
            chain_id=chain_id,
            chain_name=DEFAULT_CHAIN_NAME,
            rpc_url=rpc_url,
            rpc_urls=rpc_urls,
            fhenix_env=env.get("FHENIX_ENV", "").strip() or DEFAULT_FHENIX_ENV,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Build from the camelCase payload served by /api/config."""
        rpc_url = data.get("rpcUrl") or DEFAULT_RPC_URL
        return cls(
            escrow_contract_address=data.get("escrowContractAddress") or "",
            dispute_resolver_address=data.get("disputeResolverAddress") or "",
            chain_id=int(data.get("chainId") or DEFAULT_CHAIN_ID),
            chain_name=data.get("chainName") or DEFAULT_CHAIN_NAME,
            rpc_url=rpc_url,
            rpc_urls=list(data.get("rpcUrls") or [rpc_url]),
            fhenix_env=data.get("fhenixEnv") or DEFAULT_FHENIX_ENV,
        )

    def to_dict(self) -> dict:
        return {
            "escrowContractAddress": self.escrow_contract_address,
            "disputeResolverAddress": self.dispute_resolver_address,
            "chainId": self.chain_id,
            "chainName": self.chain_name,
            "rpcUrl": self.rpc_url,
            "rpcUrls": list(self.rpc_urls),
            "fhenixEnv": self.fhenix_env,
        }

    def require_escrow_address(self) -> str:
        if not self.escrow_contract_address:
            raise ConfigurationMissing(
                "ESCROW_CONTRACT_ADDRESS is not set. Deploy the contract and set it "
                "in the server environment."
            )
        return self.escrow_contract_address

    def require_resolver_address(self) -> str:
        if not self.dispute_resolver_address:
            raise ConfigurationMissing("DISPUTE_RESOLVER_ADDRESS is not set.")
        return self.dispute_resolver_address

    def chain_params(self) -> dict:
        """Payload for a wallet's add-network request."""
        return {
            "chainId": hex(self.chain_id),
            "chainName": self.chain_name,
            "nativeCurrency": dict(NATIVE_CURRENCY),
            "rpcUrls": [self.rpc_url],
        }


async def fetch_config(url: str, environ=None, timeout: float = 10.0) -> AppConfig:
    """Fetch the config snapshot once. A failed fetch falls back to the environment."""
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, timeout=timeout)
            resp.raise_for_status()
            return AppConfig.from_dict(resp.json())
    except (httpx.HTTPError, ValueError) as e:
        print(f"[config] Could not load {url} ({e}), using environment", file=sys.stderr)
        return AppConfig.from_env(environ)
