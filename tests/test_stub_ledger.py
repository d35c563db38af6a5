"""Ledger rules, exercised through signed transactions on the in-memory chain."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from client import EscrowClient
from conftest import DAY, CLIENT_KEY, Party, open_agreement, signed_agreement
from encryption import EncryptedInput
from errors import LedgerRejected, NetworkFailure, NotFound, WalletError, WalletNotConnected, WrongNetwork
from protocol import AgreementState
from wallet import LocalWallet


async def state_of(party, cid):
    return (await party.client.get_agreement(cid)).state


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_records_parties_and_creator(self, chain, alice, bob):
        cid = await open_agreement(alice, bob.address, total=5 * 10**17, milestones=0)
        a = await bob.client.get_agreement(cid)
        assert a.state == AgreementState.DRAFT
        assert a.client == alice.address and a.developer == bob.address
        assert await bob.client.get_contract_creator(cid) == alice.address
        assert await bob.client.get_required_fund_amount(cid) == 5 * 10**17
        assert await alice.client.get_contract_ids_for_user(alice.address) == [cid]
        assert await bob.client.get_contract_ids_for_user(bob.address) == [cid]

    @pytest.mark.asyncio
    async def test_sender_must_be_a_party(self, alice, bob, carol):
        encrypted = await carol.pipeline.encrypt_uint128(1)
        with pytest.raises(LedgerRejected) as exc:
            await carol.client.create_agreement(alice.address, bob.address, encrypted, 1)
        assert exc.value.reason == "Not a party"

    @pytest.mark.asyncio
    async def test_forged_encrypted_input(self, alice, bob):
        forged = EncryptedInput(ct_hash=1, security_zone=0, utype=6, signature="0x" + "00" * 64)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.create_agreement(alice.address, bob.address, forged, 1)
        assert "encrypted input" in exc.value.reason

    @pytest.mark.asyncio
    async def test_input_bound_to_sender(self, alice, bob):
        # Bob's bundle cannot be replayed by Alice
        encrypted = await bob.pipeline.encrypt_uint128(1)
        with pytest.raises(LedgerRejected):
            await alice.client.create_agreement(alice.address, bob.address, encrypted, 1)

    @pytest.mark.asyncio
    async def test_unknown_agreement(self, alice):
        with pytest.raises(NotFound):
            await alice.client.get_agreement("0x" + "99" * 32)


class TestDraft:
    @pytest.mark.asyncio
    async def test_only_creator_edits(self, alice, bob):
        cid = await open_agreement(alice, bob.address)
        portion = await bob.pipeline.encrypt_uint32(1)
        with pytest.raises(LedgerRejected) as exc:
            await bob.client.add_milestone(cid, portion, "extra")
        assert exc.value.reason == "Not creator"

    @pytest.mark.asyncio
    async def test_deadline_must_be_future(self, chain, alice, bob):
        cid = await open_agreement(alice, bob.address)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.set_terms(cid, chain.now() - 1)
        assert exc.value.reason == "Deadline must be in the future"
        deadline = chain.now() + DAY
        await alice.client.set_terms(cid, deadline)
        assert (await alice.client.get_agreement(cid)).deadline == deadline

    @pytest.mark.asyncio
    async def test_sign_needs_a_milestone(self, alice, bob):
        cid = await open_agreement(alice, bob.address, milestones=0)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.sign(cid)
        assert exc.value.reason == "Add at least one milestone"

    @pytest.mark.asyncio
    async def test_both_signatures_move_to_signed(self, alice, bob):
        cid = await open_agreement(alice, bob.address)
        await alice.client.sign(cid)
        a = await alice.client.get_agreement(cid)
        assert a.client_signed and not a.developer_signed
        assert a.state == AgreementState.DRAFT
        with pytest.raises(LedgerRejected):
            await alice.client.sign(cid)
        await bob.client.sign(cid)
        assert await state_of(alice, cid) == AgreementState.SIGNED

    @pytest.mark.asyncio
    async def test_milestone_edit_resets_signatures(self, alice, bob):
        cid = await open_agreement(alice, bob.address, milestones=2)
        await bob.client.sign(cid)
        portion = await alice.pipeline.encrypt_uint32(3)
        await alice.client.update_milestone(cid, 1, portion, "Design")
        a = await alice.client.get_agreement(cid)
        assert not a.developer_signed
        assert await alice.client.get_milestone_description(cid, 1) == "Design"
        await alice.client.remove_last_milestone(cid)
        assert (await alice.client.get_agreement(cid)).milestone_count == 1


class TestFunding:
    @pytest.mark.asyncio
    async def test_exact_amount_required(self, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.fund(cid, 99)
        assert "insufficient" in exc.value.reason
        await alice.client.fund(cid, 100)
        a = await alice.client.get_agreement(cid)
        assert a.state == AgreementState.FUNDED
        assert a.balance == 100

    @pytest.mark.asyncio
    async def test_only_client_funds(self, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        with pytest.raises(LedgerRejected) as exc:
            await bob.client.fund(cid, 100)
        assert exc.value.reason == "Not client"


class TestMilestones:
    @pytest.mark.asyncio
    async def test_submit_approve_payout(self, chain, alice, bob):
        cid = await signed_agreement(alice, bob, total=100, milestones=2)
        await alice.client.fund(cid, 100)
        await bob.client.submit_milestone(cid, 0, "done")
        assert await state_of(alice, cid) == AgreementState.IN_PROGRESS
        with pytest.raises(LedgerRejected):
            await bob.client.submit_milestone(cid, 0, "again")
        await alice.client.approve_milestone(cid, 0)
        assert await state_of(alice, cid) == AgreementState.IN_PROGRESS
        await bob.client.submit_milestone(cid, 1, "")
        await alice.client.approve_milestone(cid, 1)
        assert await state_of(alice, cid) == AgreementState.COMPLETED
        await bob.client.claim_payout(cid)
        a = await alice.client.get_agreement(cid)
        assert a.state == AgreementState.PAID_OUT
        assert a.balance == 0
        assert chain.balances[bob.address.lower()] == 100

    @pytest.mark.asyncio
    async def test_reject_clears_submission(self, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.approve_milestone(cid, 0)
        assert exc.value.reason == "Milestone not submitted"
        await bob.client.submit_milestone(cid, 0, "take a look")
        assert await alice.client.get_milestone_comment(cid, 0) == "take a look"
        await alice.client.reject_milestone(cid, 0)
        assert await alice.client.get_milestone(cid, 0) == (False, False, 0)
        await bob.client.submit_milestone(cid, 0, "fixed")

    @pytest.mark.asyncio
    async def test_completes_in_any_approval_order(self, alice, bob):
        cid = await signed_agreement(alice, bob, total=90, milestones=3)
        await alice.client.fund(cid, 90)
        for i in range(3):
            await bob.client.submit_milestone(cid, i, f"part {i}")
        for step, index in enumerate((2, 0, 1), start=1):
            assert await state_of(alice, cid) == AgreementState.IN_PROGRESS
            await alice.client.approve_milestone(cid, index)
            a = await alice.client.get_agreement(cid)
            assert a.approved_count == step
            assert a.approved_count <= a.milestone_count
        assert a.state == AgreementState.COMPLETED
        with pytest.raises(LedgerRejected):
            await alice.client.approve_milestone(cid, 1)
        assert (await alice.client.get_agreement(cid)).approved_count == 3

    @pytest.mark.asyncio
    async def test_add_remove_keeps_approved_within_count(self, alice, bob):
        cid = await open_agreement(alice, bob.address, milestones=0)
        portion = await alice.pipeline.encrypt_uint32(1)
        for op in ("add", "add", "remove", "add", "remove", "remove"):
            if op == "add":
                await alice.client.add_milestone(cid, portion, "Step")
            else:
                await alice.client.remove_last_milestone(cid)
            a = await alice.client.get_agreement(cid)
            assert 0 <= a.approved_count <= a.milestone_count
        assert a.milestone_count == 0
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.remove_last_milestone(cid)
        assert exc.value.reason == "No milestones"


class TestDisputes:
    @pytest.mark.asyncio
    async def test_judge_resolves(self, chain, alice, bob, arbitrator):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        await bob.client.raise_dispute(cid)
        info = await alice.client.get_dispute_info(cid)
        assert info.judge == chain.resolver_address
        assert not info.resolved
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.resolve_dispute(cid, True)
        assert exc.value.reason == "Not judge"
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.resolve_dispute_via_resolver(cid, True)
        assert exc.value.reason == "Not arbitrator"
        await arbitrator.client.resolve_dispute_via_resolver(cid, True)
        a = await alice.client.get_agreement(cid)
        assert a.state == AgreementState.DISPUTED
        assert a.balance == 0
        assert (await alice.client.get_dispute_info(cid)).resolved
        assert chain.balances[alice.address.lower()] == 100
        with pytest.raises(LedgerRejected):
            await arbitrator.client.resolve_dispute_via_resolver(cid, False)

    @pytest.mark.asyncio
    async def test_dispute_needs_active_work(self, alice, bob):
        cid = await signed_agreement(alice, bob)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.raise_dispute(cid)
        assert exc.value.reason == "Wrong state"


class TestCancel:
    @pytest.mark.asyncio
    async def test_requires_both_parties(self, chain, alice, bob):
        cid = await signed_agreement(alice, bob, total=100)
        await alice.client.fund(cid, 100)
        await alice.client.request_cancel(cid)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.cancel(cid)
        assert exc.value.reason == "Both parties must request cancel"
        await bob.client.request_cancel(cid)
        assert (await alice.client.get_cancel_requested(cid)).both
        await bob.client.cancel(cid)
        a = await alice.client.get_agreement(cid)
        assert a.state == AgreementState.CANCELLED
        assert chain.balances[alice.address.lower()] == 100

    @pytest.mark.asyncio
    async def test_refund_after_deadline(self, chain, alice, bob):
        cid = await open_agreement(alice, bob.address, total=100, deadline=chain.now() + DAY)
        await alice.client.sign(cid)
        await bob.client.sign(cid)
        await alice.client.fund(cid, 100)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.claim_refund(cid)
        assert exc.value.reason == "Deadline not passed"
        chain.advance(DAY + 1)
        with pytest.raises(LedgerRejected):
            await bob.client.claim_refund(cid)
        await alice.client.claim_refund(cid)
        a = await alice.client.get_agreement(cid)
        assert a.state == AgreementState.CANCELLED
        assert a.balance == 0


class TestInvites:
    @pytest.mark.asyncio
    async def test_accept_and_bail_out(self, chain, alice, bob, carol):
        encrypted = await alice.pipeline.encrypt_uint128(100)
        iid = await alice.client.create_invite(True, encrypted, 100)
        with pytest.raises(LedgerRejected) as exc:
            await alice.client.accept_invite(iid)
        assert exc.value.reason == "Cannot accept own invite"

        cid = await bob.client.accept_invite(iid)
        invite = await carol.client.get_invite(iid)
        assert invite.contract_id == cid
        assert invite.accepted_by == bob.address
        a = await bob.client.get_agreement(cid)
        assert a.client == alice.address and a.developer == bob.address
        assert await bob.client.get_contract_creator(cid) == alice.address

        with pytest.raises(LedgerRejected) as exc:
            await carol.client.accept_invite(iid)
        assert exc.value.reason == "Invite already accepted"
        with pytest.raises(LedgerRejected) as exc:
            await carol.client.bail_out_invite(iid)
        assert exc.value.reason == "Not the acceptor"

        await bob.client.bail_out_invite(iid)
        assert await state_of(alice, cid) == AgreementState.CANCELLED
        reopened = await carol.client.get_invite(iid)
        assert not reopened.accepted
        await carol.client.accept_invite(iid)

    @pytest.mark.asyncio
    async def test_no_bail_out_after_both_signed(self, alice, bob):
        encrypted = await alice.pipeline.encrypt_uint128(100)
        iid = await alice.client.create_invite(False, encrypted, 100)
        cid = await bob.client.accept_invite(iid)
        a = await bob.client.get_agreement(cid)
        assert a.client == bob.address and a.developer == alice.address
        portion = await alice.pipeline.encrypt_uint32(1)
        await alice.client.add_milestone(cid, portion, "Build")
        await alice.client.sign(cid)
        await bob.client.sign(cid)
        with pytest.raises(LedgerRejected) as exc:
            await bob.client.bail_out_invite(iid)
        assert exc.value.reason == "Contract already signed by both parties"

    @pytest.mark.asyncio
    async def test_no_bail_out_after_mutual_cancel(self, alice, bob, carol):
        encrypted = await alice.pipeline.encrypt_uint128(100)
        iid = await alice.client.create_invite(True, encrypted, 100)
        cid = await bob.client.accept_invite(iid)
        await alice.client.request_cancel(cid)
        await bob.client.request_cancel(cid)
        await bob.client.cancel(cid)
        with pytest.raises(LedgerRejected) as exc:
            await bob.client.bail_out_invite(iid)
        assert exc.value.reason == "Contract already closed"
        invite = await carol.client.get_invite(iid)
        assert invite.contract_id == cid
        with pytest.raises(LedgerRejected):
            await carol.client.accept_invite(iid)


class TestDiscussionAndNames:
    @pytest.mark.asyncio
    async def test_messages(self, chain, alice, bob, carol):
        cid = await open_agreement(alice, bob.address)
        seen = []
        alice.client.subscribe_discussion(cid, seen.append)
        await bob.client.add_discussion_message(cid, "hello")
        with pytest.raises(LedgerRejected):
            await carol.client.add_discussion_message(cid, "spam")
        with pytest.raises(LedgerRejected):
            await bob.client.add_discussion_message(cid, "x" * 501)
        messages = await alice.client.get_discussion_messages(cid)
        assert [(m.sender, m.message) for m in messages] == [(bob.address, "hello")]
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_usernames_unique(self, alice, bob):
        await alice.client.set_username("alice")
        assert await bob.client.get_address_by_username("@alice") == alice.address
        assert await bob.client.get_username(alice.address) == "alice"
        with pytest.raises(LedgerRejected) as exc:
            await bob.client.set_username("alice")
        assert exc.value.reason == "Username already taken"
        await alice.client.set_username("alice2")
        assert await bob.client.get_address_by_username("alice") is None


class TestSigning:
    @pytest.mark.asyncio
    async def test_declined_prompt(self, chain, config, bob):
        declining = Party(chain, config, CLIENT_KEY, confirm=lambda tx: False)
        encrypted = await declining.pipeline.encrypt_uint128(1)
        with pytest.raises(WalletError) as exc:
            await declining.client.create_agreement(declining.address, bob.address, encrypted, 1)
        assert exc.value.code == 4001
        assert chain.agreements == {}

    @pytest.mark.asyncio
    async def test_wrong_network(self, chain, bob):
        wallet = LocalWallet("0x" + "11" * 32, chain_id=1)
        client = EscrowClient(chain.ledger(wallet))
        with pytest.raises(WrongNetwork):
            await client.sign("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_disconnected_wallet(self, chain, alice):
        alice.wallet.disconnect()
        with pytest.raises(WalletNotConnected):
            await alice.client.sign("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_offline(self, chain, alice):
        chain.offline = True
        with pytest.raises(NetworkFailure):
            await alice.client.get_contract_ids_for_user(alice.address)
