"""End-to-end action flows through the orchestrator, against the in-memory chain."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio

import pytest

import session as session_mod
from agreement import available_actions
from client import EscrowClient
from config import AppConfig
from conftest import CLIENT_KEY, DAY, open_agreement, signed_agreement
from encryption import EncryptedInputPipeline, LocalEncryptionSDK
from errors import ErrorKind
from invite import InviteView
from protocol import AgreementState
from session import (
    AgreementSession, InviteSession, create_agreement, create_invite,
    set_username, check_username, DASHBOARD_PATH,
)
from wallet import LocalWallet


ETH = 10**18


@pytest.fixture(autouse=True)
def no_settle_delay(monkeypatch):
    monkeypatch.setattr(session_mod, "RELOAD_SETTLE_DELAY", 0)


def open_session(party, config, cid, chain):
    return AgreementSession(party.client, party.wallet, config, cid,
                            pipeline=party.pipeline, clock=chain.now)


async def loaded(party, config, cid, chain):
    s = open_session(party, config, cid, chain)
    result = await s.load()
    assert result.ok, result.message
    return s


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_two_milestones_to_payout(self, chain, config, alice, bob):
        await bob.client.set_username("bob")
        created = await create_agreement(alice.client, alice.wallet, config, "@bob", "client", "1",
                                         pipeline=alice.pipeline)
        assert created.ok, created.message
        cid = created.value

        a = await loaded(alice, config, cid, chain)
        assert (await a.add_milestone("Design", 60)).ok
        assert (await a.add_milestone("Build", 40)).ok
        assert [m.description for m in a.view.milestones] == ["Design", "Build"]
        assert (await a.set_terms(chain.now() + 7 * DAY)).ok
        assert (await a.sign()).ok
        assert a.view.agreement.client_signed

        b = await loaded(bob, config, cid, chain)
        assert (await b.sign()).ok
        assert b.view.state == AgreementState.SIGNED

        await a.refresh()
        assert a.view.required_fund_amount == ETH
        funded = await a.fund()
        assert funded.ok, funded.message
        assert a.view.state == AgreementState.FUNDED
        assert a.view.agreement.balance == ETH

        await b.refresh()
        assert (await b.submit_milestone(0, "Design done")).ok
        assert b.view.state == AgreementState.IN_PROGRESS
        await a.refresh()
        assert a.view.milestones[0].completion_comment == "Design done"
        assert (await a.approve_milestone(0)).ok
        assert a.view.state == AgreementState.IN_PROGRESS

        await b.refresh()
        assert (await b.submit_milestone(1)).ok
        await a.refresh()
        assert (await a.approve_milestone(1)).ok
        assert a.view.state == AgreementState.COMPLETED

        await b.refresh()
        assert (await b.claim_payout()).ok
        assert b.view.state == AgreementState.PAID_OUT
        await b.refresh()
        assert b.view.state == AgreementState.PAID_OUT
        assert b.view.agreement.balance == 0
        assert chain.balances[bob.address.lower()] == ETH

    @pytest.mark.asyncio
    async def test_reverse_approval_order_completes(self, chain, config, alice, bob):
        cid = await signed_agreement(alice, bob, total=300, milestones=3)
        await alice.client.fund(cid, 300)
        for i in range(3):
            await bob.client.submit_milestone(cid, i)
        a = await loaded(alice, config, cid, chain)
        for index in (2, 1, 0):
            assert a.view.state == AgreementState.IN_PROGRESS
            assert (await a.approve_milestone(index)).ok
            assert a.view.agreement.approved_count <= a.view.agreement.milestone_count
            await a.refresh()
            assert a.view.milestones[index].approved
        assert a.view.state == AgreementState.COMPLETED
        assert a.view.agreement.approved_count == 3

    @pytest.mark.asyncio
    async def test_rejected_funding_changes_nothing(self, chain, config, alice, bob):
        cid = await signed_agreement(alice, bob, total=ETH)
        a = await loaded(alice, config, cid, chain)
        alice.wallet.confirm = lambda tx: False
        result = await a.fund()
        assert not result.ok
        assert result.kind == ErrorKind.USER_REJECTION
        assert result.dismissible
        assert result.message == "Transaction was canceled"
        assert a.sync.hint is None
        assert a.view.state == AgreementState.SIGNED
        await a.refresh()
        assert a.view.state == AgreementState.SIGNED
        assert not a.busy

    @pytest.mark.asyncio
    async def test_cancel_requires_both_parties(self, chain, config, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        a = await loaded(alice, config, cid, chain)
        b = await loaded(bob, config, cid, chain)

        assert (await a.request_cancel()).ok
        assert a.view.cancel.client
        early = await a.cancel()
        assert early.kind == ErrorKind.LEDGER_REJECTED
        assert early.message == "Both parties must request cancel"

        await b.refresh()
        assert (await b.request_cancel()).ok
        assert b.view.cancel.both
        assert (await b.cancel()).ok
        assert b.view.state == AgreementState.CANCELLED
        await a.refresh()
        assert a.view.state == AgreementState.CANCELLED
        assert chain.balances[alice.address.lower()] == 100

    @pytest.mark.asyncio
    async def test_refund_after_deadline(self, chain, config, alice, bob):
        cid = await signed_agreement(alice, bob, total=100, milestones=2, deadline=chain.now() + DAY)
        await alice.client.fund(cid, 100)
        await bob.client.submit_milestone(cid, 0, "done")
        a = await loaded(alice, config, cid, chain)
        assert a.view.state == AgreementState.IN_PROGRESS

        early = await a.claim_refund()
        assert early.message == "Deadline not passed"
        chain.advance(DAY + 1)
        await a.refresh()
        assert "claim_refund" in available_actions(a.view, a.viewer())
        b = await loaded(bob, config, cid, chain)
        assert "claim_refund" not in available_actions(b.view, b.viewer())
        assert (await a.claim_refund()).ok
        assert a.view.state == AgreementState.CANCELLED
        await a.refresh()
        assert a.view.state == AgreementState.CANCELLED
        assert a.view.agreement.balance == 0

    @pytest.mark.asyncio
    async def test_arbitrator_resolves_through_resolver(self, chain, config, alice, bob, arbitrator):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        await bob.client.raise_dispute(cid)
        judge = await loaded(arbitrator, config, cid, chain)
        assert judge.sync.is_arbitrator
        result = await judge.resolve_dispute(client_wins=False)
        assert result.ok, result.message
        assert judge.view.dispute.resolved
        assert judge.view.agreement.balance == 0
        assert judge.view.state == AgreementState.DISPUTED
        assert chain.balances[bob.address.lower()] == 100

    @pytest.mark.asyncio
    async def test_party_cannot_resolve(self, chain, config, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        await bob.client.raise_dispute(cid)
        a = await loaded(alice, config, cid, chain)
        result = await a.resolve_dispute(client_wins=True)
        assert result.kind == ErrorKind.LEDGER_REJECTED
        assert result.message == "Not judge"


class TestSessionGuards:
    @pytest.mark.asyncio
    async def test_one_action_at_a_time(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address)
        a = await loaded(alice, config, cid, chain)
        chain.latency = 0.01
        first, second = await asyncio.gather(a.sign(), a.request_cancel())
        assert first.ok
        assert second.kind == ErrorKind.ACTION_IN_PROGRESS
        assert not a.busy

    @pytest.mark.asyncio
    async def test_missing_agreement_redirects(self, chain, config, alice):
        s = open_session(alice, config, "0x" + "42" * 32, chain)
        result = await s.load()
        assert result.kind == ErrorKind.NOT_FOUND
        assert result.redirect == DASHBOARD_PATH

    @pytest.mark.asyncio
    async def test_malformed_id(self, chain, config, alice):
        s = open_session(alice, config, "0x1234", chain)
        result = await s.load()
        assert result.kind == ErrorKind.INVALID_IDENTIFIER
        assert chain.reads == 0

    @pytest.mark.asyncio
    async def test_switches_network_first(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address)
        wallet = LocalWallet(CLIENT_KEY, chain_id=1, networks={1: "", chain.chain_id: ""})
        client = EscrowClient(chain.ledger(wallet))
        s = AgreementSession(client, wallet, config, cid)
        await s.load()
        result = await s.sign()
        assert result.ok, result.message
        assert await wallet.chain_id() == chain.chain_id

    @pytest.mark.asyncio
    async def test_disconnected_wallet(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address)
        a = await loaded(alice, config, cid, chain)
        alice.wallet.disconnect()
        result = await a.sign()
        assert result.kind == ErrorKind.WALLET_NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_messages(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address)
        a = await loaded(alice, config, cid, chain)
        assert (await a.send_message("  hello  ")).ok
        assert [m.message for m in a.view.messages] == ["hello"]
        assert not (await a.send_message("")).ok
        too_long = await a.send_message("x" * 501)
        assert not too_long.ok
        assert "500" in too_long.message
        await a.sync.refresh()
        assert [m.message for m in a.view.messages] == ["hello"]

    @pytest.mark.asyncio
    async def test_remove_last_milestone_reloads(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address, milestones=2)
        a = await loaded(alice, config, cid, chain)
        assert (await a.remove_last_milestone()).ok
        assert a.view.agreement.milestone_count == 1
        assert len(a.view.milestones) == 1
        assert (await a.update_milestone(0, "", 5)).ok
        assert a.view.milestones[0].description == "Milestone"

    @pytest.mark.asyncio
    async def test_non_creator_edit_is_rejected(self, chain, config, alice, bob):
        cid = await open_agreement(alice, bob.address)
        b = await loaded(bob, config, cid, chain)
        result = await b.add_milestone("mine")
        assert result.kind == ErrorKind.LEDGER_REJECTED
        assert "contract creator" in result.suggestion


class TestCreateFlows:
    @pytest.mark.asyncio
    async def test_create_by_address_as_developer(self, chain, config, alice, bob):
        result = await create_agreement(bob.client, bob.wallet, config, alice.address, "developer",
                                        10**6, pipeline=bob.pipeline)
        assert result.ok, result.message
        a = await bob.client.get_agreement(result.value)
        assert a.client == alice.address and a.developer == bob.address

    @pytest.mark.asyncio
    async def test_refuses_same_party(self, chain, config, alice):
        result = await create_agreement(alice.client, alice.wallet, config, alice.address.lower(),
                                        "client", "1", pipeline=alice.pipeline)
        assert not result.ok
        assert "different" in result.message
        assert chain.agreements == {}

    @pytest.mark.asyncio
    async def test_unknown_username(self, chain, config, alice):
        result = await create_agreement(alice.client, alice.wallet, config, "@ghost", "client", "1",
                                        pipeline=alice.pipeline)
        assert result.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, chain, config, alice, bob):
        for amount in ("0", "-1", "lots", 0):
            result = await create_agreement(alice.client, alice.wallet, config, bob.address,
                                            "client", amount, pipeline=alice.pipeline)
            assert not result.ok
        assert chain.agreements == {}

    @pytest.mark.asyncio
    async def test_missing_configuration(self, chain, alice, bob):
        result = await create_agreement(alice.client, alice.wallet, AppConfig(), bob.address,
                                        "client", "1", pipeline=alice.pipeline)
        assert result.kind == ErrorKind.CONFIGURATION_MISSING
        assert "ESCROW_CONTRACT_ADDRESS" in result.message

    @pytest.mark.asyncio
    async def test_unverifiable_encryption_is_rejected(self, chain, config, alice, bob):
        # A bundle from a different verifier key fails the ledger's input check
        rogue = EncryptedInputPipeline(alice.wallet, config, sdk_factory=LocalEncryptionSDK)
        result = await create_agreement(alice.client, alice.wallet, config, bob.address,
                                        "client", "1", pipeline=rogue)
        assert result.kind == ErrorKind.LEDGER_REJECTED


class TestInviteFlow:
    @pytest.mark.asyncio
    async def test_accept_bail_out_and_reopen(self, chain, config, alice, bob, carol):
        created = await create_invite(alice.client, alice.wallet, config, True, "0.5",
                                      pipeline=alice.pipeline)
        assert created.ok, created.message
        iid = created.value

        mine = InviteSession(alice.client, alice.wallet, config, iid)
        assert (await mine.load()).value == InviteView.OWN_OPEN
        own = await mine.accept()
        assert own.kind == ErrorKind.SELF_ACCEPTANCE

        taker = InviteSession(bob.client, bob.wallet, config, iid)
        assert (await taker.load()).value == InviteView.OPEN
        assert taker.can_accept()
        accepted = await taker.accept()
        assert accepted.ok, accepted.message
        cid = accepted.value
        assert taker.view() == InviteView.MINE_ACCEPTED
        assert taker.can_bail_out()
        spawned = await bob.client.get_agreement(cid)
        assert spawned.developer == bob.address

        late = InviteSession(carol.client, carol.wallet, config, iid)
        assert (await late.load()).value == InviteView.TAKEN
        refused = await late.accept()
        assert refused.kind == ErrorKind.INVITE_CONSUMED

        assert (await taker.bail_out()).ok
        assert (await late.load()).value == InviteView.OPEN
        assert (await late.accept()).ok

    @pytest.mark.asyncio
    async def test_consumed_after_both_sign(self, chain, config, alice, bob, carol):
        created = await create_invite(alice.client, alice.wallet, config, True, 100,
                                      pipeline=alice.pipeline)
        taker = InviteSession(bob.client, bob.wallet, config, created.value)
        await taker.load()
        cid = (await taker.accept()).value
        portion = await alice.pipeline.encrypt_uint32(1)
        await alice.client.add_milestone(cid, portion, "Only")
        await alice.client.sign(cid)
        await bob.client.sign(cid)

        late = InviteSession(carol.client, carol.wallet, config, created.value)
        assert (await late.load()).value == InviteView.NO_LONGER_AVAILABLE
        await taker.load()
        result = await taker.bail_out()
        assert result.kind == ErrorKind.INVITE_CONSUMED

    @pytest.mark.asyncio
    async def test_closed_agreement_consumes_invite(self, chain, config, alice, bob, carol):
        created = await create_invite(alice.client, alice.wallet, config, True, 100,
                                      pipeline=alice.pipeline)
        taker = InviteSession(bob.client, bob.wallet, config, created.value)
        await taker.load()
        cid = (await taker.accept()).value
        await alice.client.request_cancel(cid)
        await bob.client.request_cancel(cid)
        await bob.client.cancel(cid)

        await taker.load()
        assert not taker.can_bail_out()
        result = await taker.bail_out()
        assert result.kind == ErrorKind.INVITE_CONSUMED
        late = InviteSession(carol.client, carol.wallet, config, created.value)
        assert (await late.load()).value == InviteView.NO_LONGER_AVAILABLE
        assert not late.can_accept()

    @pytest.mark.asyncio
    async def test_accept_reported_even_if_reload_fails(self, chain, config, alice, bob, monkeypatch):
        created = await create_invite(alice.client, alice.wallet, config, True, 100,
                                      pipeline=alice.pipeline)
        taker = InviteSession(bob.client, bob.wallet, config, created.value)
        await taker.load()
        real_accept = bob.client.accept_invite

        async def accept_then_lose_connection(invite_id):
            cid = await real_accept(invite_id)
            chain.offline = True
            return cid

        monkeypatch.setattr(bob.client, "accept_invite", accept_then_lose_connection)
        result = await taker.accept()
        assert result.ok, result.message
        chain.offline = False
        spawned = await bob.client.get_agreement(result.value)
        assert spawned.developer == bob.address
        assert (await taker.load()).value == InviteView.MINE_ACCEPTED

    @pytest.mark.asyncio
    async def test_load_reads_spawned_agreement_once(self, chain, config, alice, bob, monkeypatch):
        created = await create_invite(alice.client, alice.wallet, config, True, 100,
                                      pipeline=alice.pipeline)
        cid = await bob.client.accept_invite(created.value)
        calls = []
        real_get = bob.client.get_agreement

        async def counting_get(agreement_id):
            calls.append(agreement_id)
            return await real_get(agreement_id)

        monkeypatch.setattr(bob.client, "get_agreement", counting_get)
        taker = InviteSession(bob.client, bob.wallet, config, created.value)
        assert (await taker.load()).value == InviteView.MINE_ACCEPTED
        assert calls == [cid]
        assert taker.spawned.id == cid

    @pytest.mark.asyncio
    async def test_bad_links(self, chain, config, bob):
        bad = InviteSession(bob.client, bob.wallet, config, "not-an-id")
        assert (await bad.load()).kind == ErrorKind.INVALID_IDENTIFIER
        missing = InviteSession(bob.client, bob.wallet, config, "0x" + "77" * 32)
        result = await missing.load()
        assert result.kind == ErrorKind.NOT_FOUND


class TestUsernames:
    @pytest.mark.asyncio
    async def test_claim_and_conflict(self, chain, config, alice, bob):
        result = await set_username(alice.client, alice.wallet, config, "@Alice")
        assert result.ok and result.value == "Alice"
        assert await check_username(bob.client, "Alice") == (False, "Username already taken")
        assert await check_username(alice.client, "Alice", alice.address) == (True, "")
        taken = await set_username(bob.client, bob.wallet, config, "Alice")
        assert taken.kind == ErrorKind.USERNAME_TAKEN

    @pytest.mark.asyncio
    async def test_invalid_name_never_reaches_ledger(self, chain, config, alice):
        result = await set_username(alice.client, alice.wallet, config, "no spaces")
        assert not result.ok
        assert result.message.startswith("Only letters and numbers")
        assert chain.nonces == {}
        assert await check_username(alice.client, "") == (False, "Enter a username")

    @pytest.mark.asyncio
    async def test_ledger_revalidates(self, chain, config, alice, bob, monkeypatch):
        await alice.client.set_username("taken")

        async def stale_lookup(name):
            return None

        monkeypatch.setattr(bob.client, "get_address_by_username", stale_lookup)
        result = await set_username(bob.client, bob.wallet, config, "taken")
        assert result.kind == ErrorKind.USERNAME_TAKEN
