"""Ledger boundary.

A Ledger is one contract on one connection: `call` for views, `transact`
for state-changing calls (signed through a wallet), `subscribe` for events.
Backends translate reverts into LedgerRejected and transport trouble into
NetworkFailure so callers never see provider-specific exceptions.
"""

import asyncio
import random
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import ContractLogicError, Web3Exception

from abi import ESCROW_ABI, event_names_by_topic, event_topic
from errors import (
    LedgerRejected, NetworkFailure, WalletNotConnected,
    is_network_error, revert_reason, error_message,
)
from protocol import EVENT_POLL_INTERVAL


@dataclass
class LogEntry:
    address: str
    topics: list[str]
    data: str = "0x"
    event: str = ""
    args: dict = field(default_factory=dict)


@dataclass
class Receipt:
    tx_hash: str
    status: int
    logs: list[LogEntry] = field(default_factory=list)


class Ledger(ABC):
    """One contract reachable over one connection."""

    address: str = ""

    @abstractmethod
    async def call(self, method: str, *args):
        ...

    @abstractmethod
    async def transact(self, method: str, *args, value: int = 0) -> Receipt:
        ...

    @abstractmethod
    def subscribe(self, event: str, callback):
        """Call callback(LogEntry) for each new `event` log. Returns an unsubscribe function."""
        ...


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    return str(value)


class Web3Ledger(Ledger):
    """Contract over a JSON-RPC endpoint (web3.py async)."""

    def __init__(
        self,
        address: str,
        rpc_url: str = "",
        abi: list = ESCROW_ABI,
        wallet=None,
        w3: AsyncWeb3 | None = None,
        poll_interval: float = EVENT_POLL_INTERVAL,
    ):
        self.w3 = w3 if w3 is not None else AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.rpc_url = rpc_url
        self.address = Web3.to_checksum_address(address)
        self.abi = abi
        self.contract = self.w3.eth.contract(address=self.address, abi=abi)
        self.wallet = wallet
        self.poll_interval = poll_interval
        self._topics = event_names_by_topic(abi)

    async def call(self, method: str, *args):
        fn = getattr(self.contract.functions, method)(*args)
        try:
            return await fn.call()
        except ContractLogicError as e:
            raise LedgerRejected(revert_reason(e)) from e
        except Exception as e:
            if is_network_error(e) or isinstance(e, Web3Exception):
                raise NetworkFailure(f"{method} read failed: {error_message(e)}") from e
            raise

    async def transact(self, method: str, *args, value: int = 0) -> Receipt:
        if self.wallet is None:
            raise WalletNotConnected("Read-only connection cannot send transactions")
        accounts = await self.wallet.accounts()
        if not accounts:
            raise WalletNotConnected("Wallet not connected")
        sender = accounts[0]
        fn = getattr(self.contract.functions, method)(*args)
        try:
            nonce = await self.w3.eth.get_transaction_count(sender)
            tx = await fn.build_transaction({
                "from": sender,
                "value": value,
                "nonce": nonce,
                "chainId": await self.wallet.chain_id(),
            })
            raw = await self.wallet.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(raw)
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        except ContractLogicError as e:
            raise LedgerRejected(revert_reason(e)) from e
        except Exception as e:
            if is_network_error(e) or isinstance(e, Web3Exception):
                raise NetworkFailure(f"{method} failed: {error_message(e)}") from e
            raise
        tx_hex = Web3.to_hex(tx_hash)
        if receipt["status"] == 0:
            raise LedgerRejected("Transaction reverted", message=f"{method} reverted in {tx_hex}")
        print(f"[ledger] {method} confirmed in {tx_hex}", file=sys.stderr)
        return Receipt(tx_hash=tx_hex, status=1, logs=self._decode_logs(receipt["logs"]))

    def _decode_logs(self, raw_logs) -> list[LogEntry]:
        out = []
        for log in raw_logs:
            topics = [_hex(t).lower() for t in log["topics"]]
            entry = LogEntry(address=str(log["address"]), topics=topics, data=_hex(log.get("data", "0x")))
            name = self._topics.get(topics[0]) if topics else None
            if name and entry.address.lower() == self.address.lower():
                try:
                    decoded = getattr(self.contract.events, name)().process_log(log)
                    entry.event = name
                    entry.args = dict(decoded["args"])
                except Web3Exception as e:
                    print(f"[ledger] Could not decode {name} log ({e})", file=sys.stderr)
            out.append(entry)
        return out

    def subscribe(self, event: str, callback):
        task = asyncio.get_running_loop().create_task(self._poll_events(event, callback))
        return task.cancel

    async def _poll_events(self, event: str, callback):
        topic = event_topic(event, self.abi)
        from_block = None
        while True:
            try:
                latest = await self.w3.eth.block_number
                if from_block is None:
                    from_block = latest + 1
                elif latest >= from_block:
                    logs = await self.w3.eth.get_logs({
                        "address": self.address,
                        "topics": [topic],
                        "fromBlock": from_block,
                        "toBlock": latest,
                    })
                    from_block = latest + 1
                    for entry in self._decode_logs(logs):
                        callback(entry)
            except Exception as e:
                if not (is_network_error(e) or isinstance(e, Web3Exception)):
                    raise
                print(f"[ledger] {event} poll failed ({e}), retrying in {self.poll_interval}s",
                      file=sys.stderr)
            await asyncio.sleep(self.poll_interval)


def order_endpoints(items: list, rng: random.Random | None = None) -> list:
    """Shuffle all but the last entry, which stays last as the fallback of last resort."""
    if len(items) <= 1:
        return list(items)
    rest = list(items[:-1])
    (rng or random).shuffle(rest)
    return rest + [items[-1]]


class FallbackLedger(Ledger):
    """Read pool over several connections to the same contract (quorum 1).

    Calls move to the next connection only on NetworkFailure; a revert is an
    answer and is returned immediately.
    """

    def __init__(self, ledgers: list[Ledger], rng: random.Random | None = None):
        if not ledgers:
            raise ValueError("FallbackLedger needs at least one ledger")
        self.ledgers = order_endpoints(ledgers, rng)
        self.address = self.ledgers[0].address

    @classmethod
    def from_urls(cls, address: str, rpc_urls: list[str], abi: list = ESCROW_ABI,
                  rng: random.Random | None = None) -> "FallbackLedger":
        return cls([Web3Ledger(address, url, abi=abi) for url in rpc_urls], rng=rng)

    async def call(self, method: str, *args):
        last_error = None
        for ledger in self.ledgers:
            try:
                return await ledger.call(method, *args)
            except NetworkFailure as e:
                print(f"[ledger] {method} failed on one endpoint ({e}), trying next", file=sys.stderr)
                last_error = e
        raise last_error

    async def transact(self, method: str, *args, value: int = 0) -> Receipt:
        raise WalletNotConnected("Read-only connection cannot send transactions")

    def subscribe(self, event: str, callback):
        return self.ledgers[0].subscribe(event, callback)
