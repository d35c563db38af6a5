"""Tests for the ledger boundary: read pool failover and the web3 backend's guards."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import random

import pytest

from abi import ESCROW_ABI, RESOLVER_ABI, event_topic, event_signature, event_names_by_topic
from errors import LedgerRejected, NetworkFailure, WalletNotConnected
from ledger import FallbackLedger, Ledger, Receipt, Web3Ledger, order_endpoints


ESCROW = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class ScriptedLedger(Ledger):
    def __init__(self, name, error=None):
        self.address = ESCROW
        self.name = name
        self.error = error
        self.calls = 0

    async def call(self, method, *args):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.name

    async def transact(self, method, *args, value=0):
        return Receipt("0x", 1)

    def subscribe(self, event, callback):
        return lambda: None


class TestOrderEndpoints:
    def test_last_stays_last(self):
        urls = ["a", "b", "c", "d", "z"]
        for seed in range(20):
            ordered = order_endpoints(urls, random.Random(seed))
            assert ordered[-1] == "z"
            assert sorted(ordered) == sorted(urls)

    def test_short_lists(self):
        assert order_endpoints([]) == []
        assert order_endpoints(["only"]) == ["only"]


class TestFallbackLedger:
    def test_needs_a_ledger(self):
        with pytest.raises(ValueError):
            FallbackLedger([])

    @pytest.mark.asyncio
    async def test_fails_over_on_network_errors(self):
        down = ScriptedLedger("down", NetworkFailure("timeout"))
        up = ScriptedLedger("up")
        pool = FallbackLedger([down, up])  # last entry stays last
        assert await pool.call("getContract") == "up"
        assert down.calls == 1

    @pytest.mark.asyncio
    async def test_reverts_are_not_retried(self):
        rejecting = ScriptedLedger("rejecting", LedgerRejected("Contract does not exist"))
        backup = ScriptedLedger("backup")
        pool = FallbackLedger([rejecting, backup])
        with pytest.raises(LedgerRejected):
            await pool.call("getContract")
        assert backup.calls == 0

    @pytest.mark.asyncio
    async def test_all_down(self):
        pool = FallbackLedger([ScriptedLedger("a", NetworkFailure("x")),
                               ScriptedLedger("b", NetworkFailure("y"))])
        with pytest.raises(NetworkFailure):
            await pool.call("getContract")

    @pytest.mark.asyncio
    async def test_read_only(self):
        pool = FallbackLedger([ScriptedLedger("a")])
        with pytest.raises(WalletNotConnected):
            await pool.transact("signContract", "0x00")


class TestWeb3Ledger:
    def test_checksums_address(self):
        ledger = Web3Ledger(ESCROW.lower(), "http://127.0.0.1:1")
        assert ledger.address == ESCROW

    @pytest.mark.asyncio
    async def test_transact_without_wallet(self):
        ledger = Web3Ledger(ESCROW, "http://127.0.0.1:1")
        with pytest.raises(WalletNotConnected):
            await ledger.transact("signContract", b"\x00" * 32)


class TestAbi:
    def test_event_signatures(self):
        assert event_signature("ContractCreated") == "ContractCreated(bytes32,address,address)"
        assert event_signature("InviteAccepted") == "InviteAccepted(bytes32,address,bytes32)"

    def test_topic_lookup(self):
        topic = event_topic("DiscussionMessage")
        assert topic.startswith("0x") and len(topic) == 66
        assert event_names_by_topic(ESCROW_ABI)[topic.lower()] == "DiscussionMessage"

    def test_resolver_abi(self):
        names = {entry["name"] for entry in RESOLVER_ABI}
        assert {"resolveDispute", "arbitrators"} <= names
