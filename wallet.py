"""Wallet/provider boundary.

A wallet owns the signing account and the active network. It reports
accountsChanged / chainChanged notifications to registered listeners, and
signs transactions the ledger gateway has built. Provider errors carry the
EIP-1193 codes (4001 user rejected, 4902 unknown chain).
"""

import inspect
import sys
from abc import ABC, abstractmethod

from eth_account import Account

from errors import WalletError, WalletNotConnected, WrongNetwork
from protocol import DEFAULT_CHAIN_ID, DEFAULT_RPC_URL, USER_REJECTED_CODE, UNRECOGNIZED_CHAIN_CODE

WALLET_EVENTS = ("accountsChanged", "chainChanged")


class Wallet(ABC):
    """Override this to wrap a hardware wallet, a remote signer, whatever."""

    def __init__(self):
        self._listeners: dict[str, list] = {name: [] for name in WALLET_EVENTS}

    @abstractmethod
    async def accounts(self) -> list[str]:
        ...

    @abstractmethod
    async def chain_id(self) -> int:
        ...

    @abstractmethod
    async def switch_chain(self, chain_id: int) -> None:
        """Raise WalletError(code=4902) when the chain is unknown to the wallet."""
        ...

    @abstractmethod
    async def add_chain(self, params: dict) -> None:
        ...

    @abstractmethod
    async def sign_transaction(self, tx: dict) -> bytes:
        """Return the raw signed transaction."""
        ...

    def on(self, event: str, callback) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown wallet event: {event}")
        self._listeners[event].append(callback)

    def remove_listener(self, event: str, callback) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, payload) -> None:
        for cb in list(self._listeners.get(event, [])):
            cb(payload)


class LocalWallet(Wallet):
    """Wallet holding a raw private key in memory (eth-account).

    `networks` maps chain id -> rpc url for the chains the wallet knows about.
    `confirm`, when given, is called with each transaction before signing; a
    falsy return is treated as the user declining the prompt.
    """

    def __init__(
        self,
        private_key: str | bytes,
        chain_id: int = DEFAULT_CHAIN_ID,
        networks: dict[int, str] | None = None,
        confirm=None,
    ):
        super().__init__()
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self.networks = dict(networks) if networks is not None else {chain_id: DEFAULT_RPC_URL}
        self.confirm = confirm
        self.connected = True

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def rpc_url(self) -> str:
        return self.networks.get(self._chain_id, "")

    async def accounts(self) -> list[str]:
        return [self._account.address] if self.connected else []

    async def chain_id(self) -> int:
        return self._chain_id

    async def switch_chain(self, chain_id: int) -> None:
        if chain_id not in self.networks:
            raise WalletError(f"Unrecognized chain ID {hex(chain_id)}", code=UNRECOGNIZED_CHAIN_CODE)
        if chain_id != self._chain_id:
            self._chain_id = chain_id
            self._emit("chainChanged", chain_id)

    async def add_chain(self, params: dict) -> None:
        chain_id = int(params["chainId"], 16)
        urls = params.get("rpcUrls") or [""]
        self.networks[chain_id] = urls[0]

    async def sign_transaction(self, tx: dict) -> bytes:
        if not self.connected:
            raise WalletNotConnected("Wallet not connected")
        if self.confirm is not None:
            approved = self.confirm(tx)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                raise WalletError("User rejected the request.", code=USER_REJECTED_CODE)
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)

    def disconnect(self) -> None:
        self.connected = False
        self._emit("accountsChanged", [])

    def connect(self) -> None:
        self.connected = True
        self._emit("accountsChanged", [self._account.address])


async def require_account(wallet: Wallet | None) -> str:
    """First connected account, or WalletNotConnected."""
    if wallet is None:
        raise WalletNotConnected("Connect your wallet first")
    accounts = await wallet.accounts()
    if not accounts:
        raise WalletNotConnected("Connect your wallet first")
    return accounts[0]


async def switch_to_network(wallet: Wallet, config) -> None:
    """Switch the wallet to the configured chain, adding it first if unknown."""
    try:
        await wallet.switch_chain(config.chain_id)
    except WalletError as e:
        if e.code != UNRECOGNIZED_CHAIN_CODE:
            raise
        print(f"[wallet] Chain {config.chain_id} unknown to wallet, adding it", file=sys.stderr)
        await wallet.add_chain(config.chain_params())
        await wallet.switch_chain(config.chain_id)


async def ensure_network(wallet: Wallet, config) -> None:
    """Drive a network switch when the wallet is on the wrong chain."""
    current = await wallet.chain_id()
    if current == config.chain_id:
        return
    await switch_to_network(wallet, config)
    current = await wallet.chain_id()
    if current != config.chain_id:
        raise WrongNetwork(expected=config.chain_id, actual=current)
