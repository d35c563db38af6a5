"""Ledger read/write gateway for the private escrow contract.

Thin typed client over two connections:
- `ledger`: signer-bound, used for every state-changing call
- `reader`: read pool (falls back across RPC endpoints), used for views

Ids typed by a user are canonicalized strictly before a write; ids coming back
from the ledger are canonicalized leniently. Identifiers created by a write
are pulled from the receipt's event logs.
"""

import asyncio

from abi import RESOLVER_ABI, event_topic
from agreement import Agreement, CancelRequests, DisputeInfo, DiscussionMessage
from encryption import EncryptedInput
from errors import ConfigurationMissing, LedgerRejected, NotFound
from identifiers import (
    canonicalize_strict, canonicalize_lenient, is_zero_address, is_zero_id,
    same_address, normalize_address, checksum,
)
from invite import Invite
from ledger import FallbackLedger, Ledger, LogEntry, Receipt, Web3Ledger
from protocol import LedgerEvent, MAX_USERNAME_LENGTH
from usernames import strip_at


class EscrowClient:
    """High-level client for the escrow and dispute-resolver contracts."""

    def __init__(
        self,
        ledger: Ledger,
        reader: Ledger | None = None,
        resolver: Ledger | None = None,
        resolver_reader: Ledger | None = None,
    ):
        self.ledger = ledger
        self.reader = reader or ledger
        self.resolver = resolver
        self.resolver_reader = resolver_reader or resolver

    @classmethod
    def from_config(cls, config, wallet=None) -> "EscrowClient":
        """Web3 connections for the configured chain."""
        address = config.require_escrow_address()
        rpc_url = getattr(wallet, "rpc_url", "") or config.rpc_url
        ledger = Web3Ledger(address, rpc_url, wallet=wallet)
        reader = FallbackLedger.from_urls(address, config.rpc_urls)
        resolver = resolver_reader = None
        if config.dispute_resolver_address:
            resolver = Web3Ledger(config.dispute_resolver_address, rpc_url, abi=RESOLVER_ABI, wallet=wallet)
            resolver_reader = FallbackLedger.from_urls(
                config.dispute_resolver_address, config.rpc_urls, abi=RESOLVER_ABI)
        return cls(ledger, reader, resolver, resolver_reader)

    @property
    def resolver_address(self) -> str:
        return self.resolver.address if self.resolver is not None else ""

    # --- Receipt scanning ---

    def _emitted_id(self, receipt: Receipt, event: LedgerEvent, arg: str,
                    topic_fallback: bool = True) -> str:
        topic = event_topic(event.value).lower()
        for log in receipt.logs:
            if not same_address(log.address, self.ledger.address):
                continue
            if not log.topics or log.topics[0].lower() != topic:
                continue
            value = log.args.get(arg) if log.args else None
            if value is None and topic_fallback and len(log.topics) > 1:
                value = log.topics[1]
            if value is not None and not is_zero_id(value):
                return canonicalize_lenient(value)
        raise LedgerRejected(f"{event.value} event not found")

    # --- Agreements ---

    async def create_agreement(self, client: str, developer: str,
                               encrypted_total: EncryptedInput, total_wei: int) -> tuple[str, Receipt]:
        """Create an agreement. Returns (agreement_id, receipt)."""
        receipt = await self.ledger.transact(
            "createContract", checksum(client), checksum(developer), encrypted_total.as_tuple(), total_wei,
        )
        return self._emitted_id(receipt, LedgerEvent.CONTRACT_CREATED, "contractId"), receipt

    async def get_agreement(self, agreement_id) -> Agreement:
        cid = canonicalize_lenient(agreement_id)
        try:
            raw = await self.reader.call("getContract", cid)
        except LedgerRejected as e:
            if "does not exist" in e.reason.lower():
                raise NotFound("Contract does not exist") from e
            raise
        agreement = Agreement.from_ledger(cid, raw)
        if not agreement.exists:
            raise NotFound("Contract does not exist")
        return agreement

    async def get_milestone(self, agreement_id, index: int) -> tuple[bool, bool, int]:
        submitted, approved, submitted_at = (await self.reader.call(
            "milestones", canonicalize_lenient(agreement_id), index))[:3]
        return bool(submitted), bool(approved), int(submitted_at)

    async def get_milestone_description(self, agreement_id, index: int) -> str:
        s = await self.reader.call("milestoneDescriptions", canonicalize_lenient(agreement_id), index)
        return s if isinstance(s, str) else ""

    async def get_milestone_comment(self, agreement_id, index: int) -> str:
        s = await self.reader.call("milestoneCompletionComments", canonicalize_lenient(agreement_id), index)
        return s if isinstance(s, str) else ""

    async def get_required_fund_amount(self, agreement_id) -> int:
        return int(await self.reader.call("requiredFundAmount", canonicalize_lenient(agreement_id)))

    async def get_dispute_info(self, agreement_id) -> DisputeInfo:
        raw = await self.reader.call("contracts", canonicalize_lenient(agreement_id))
        return DisputeInfo(judge=str(raw[10] or ""), resolved=bool(raw[11]), client_wins=bool(raw[12]))

    async def get_contract_creator(self, agreement_id) -> str | None:
        creator = await self.reader.call("contractCreator", canonicalize_lenient(agreement_id))
        if is_zero_address(creator):
            return None
        return str(creator)

    async def get_cancel_requested(self, agreement_id) -> CancelRequests:
        cid = canonicalize_lenient(agreement_id)
        client, developer = await asyncio.gather(
            self.reader.call("clientCancelRequested", cid),
            self.reader.call("developerCancelRequested", cid),
        )
        return CancelRequests(client=bool(client), developer=bool(developer))

    async def get_contract_ids_for_user(self, address: str) -> list[str]:
        count = int(await self.reader.call("userContractCount", checksum(address)))
        raw_ids = await asyncio.gather(*[
            self.reader.call("userContractIds", checksum(address), i) for i in range(count)
        ])
        return [canonicalize_lenient(r) for r in raw_ids]

    async def set_terms(self, agreement_id: str, deadline: int) -> Receipt:
        return await self.ledger.transact("setTerms", canonicalize_strict(agreement_id), int(deadline))

    async def sign(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("signContract", canonicalize_strict(agreement_id))

    async def fund(self, agreement_id: str, value_wei: int) -> Receipt:
        return await self.ledger.transact("fundEscrow", canonicalize_strict(agreement_id), value=value_wei)

    async def claim_payout(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("claimPayout", canonicalize_strict(agreement_id))

    async def raise_dispute(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("raiseDispute", canonicalize_strict(agreement_id))

    async def resolve_dispute(self, agreement_id: str, client_wins: bool) -> Receipt:
        return await self.ledger.transact("resolveDispute", canonicalize_strict(agreement_id), bool(client_wins))

    async def request_cancel(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("requestCancel", canonicalize_strict(agreement_id))

    async def cancel(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("cancelContract", canonicalize_strict(agreement_id))

    async def claim_refund(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("claimRefund", canonicalize_strict(agreement_id))

    # --- Milestones ---

    async def add_milestone(self, agreement_id: str, encrypted_portion: EncryptedInput,
                            description: str) -> Receipt:
        return await self.ledger.transact(
            "addMilestone", canonicalize_strict(agreement_id), encrypted_portion.as_tuple(), description or "",
        )

    async def update_milestone(self, agreement_id: str, index: int,
                               encrypted_portion: EncryptedInput, description: str) -> Receipt:
        return await self.ledger.transact(
            "updateMilestone", canonicalize_strict(agreement_id), index,
            encrypted_portion.as_tuple(), description or "",
        )

    async def remove_last_milestone(self, agreement_id: str) -> Receipt:
        return await self.ledger.transact("removeLastMilestone", canonicalize_strict(agreement_id))

    async def submit_milestone(self, agreement_id: str, index: int, comment: str = "") -> Receipt:
        return await self.ledger.transact("submitMilestone", canonicalize_strict(agreement_id), index, comment)

    async def approve_milestone(self, agreement_id: str, index: int) -> Receipt:
        return await self.ledger.transact("approveMilestone", canonicalize_strict(agreement_id), index)

    async def reject_milestone(self, agreement_id: str, index: int) -> Receipt:
        return await self.ledger.transact("rejectMilestone", canonicalize_strict(agreement_id), index)

    # --- Discussion ---

    async def add_discussion_message(self, agreement_id: str, message: str) -> Receipt:
        return await self.ledger.transact("addDiscussionMessage", canonicalize_strict(agreement_id), message)

    async def get_discussion_count(self, agreement_id) -> int:
        return int(await self.reader.call("discussionMessageCount", canonicalize_lenient(agreement_id)))

    async def get_discussion_messages(self, agreement_id) -> list[DiscussionMessage]:
        cid = canonicalize_lenient(agreement_id)
        count = await self.get_discussion_count(cid)

        async def one(i):
            sender, message = await asyncio.gather(
                self.reader.call("discussionSenders", cid, i),
                self.reader.call("discussionMessages", cid, i),
            )
            return DiscussionMessage(str(sender), str(message))

        return list(await asyncio.gather(*[one(i) for i in range(count)]))

    def subscribe_discussion(self, agreement_id, callback):
        """callback(LogEntry) for each new message on this agreement. Returns unsubscribe."""
        cid = canonicalize_lenient(agreement_id)

        def handler(entry: LogEntry):
            raw = entry.args.get("contractId") if entry.args else None
            if raw is None and len(entry.topics) > 1:
                raw = entry.topics[1]
            if raw is not None and canonicalize_lenient(raw) == cid:
                callback(entry)

        return self.reader.subscribe(LedgerEvent.DISCUSSION_MESSAGE.value, handler)

    # --- Invites ---

    async def create_invite(self, is_client_side: bool, encrypted_total: EncryptedInput,
                            total_wei: int) -> str:
        receipt = await self.ledger.transact(
            "createInvite", bool(is_client_side), encrypted_total.as_tuple(), total_wei,
        )
        return self._emitted_id(receipt, LedgerEvent.INVITE_CREATED, "inviteId")

    async def accept_invite(self, invite_id: str) -> str:
        """Accept an invite. Returns the spawned agreement id."""
        receipt = await self.ledger.transact("acceptInvite", canonicalize_strict(invite_id))
        return self._emitted_id(receipt, LedgerEvent.INVITE_ACCEPTED, "contractId", topic_fallback=False)

    async def bail_out_invite(self, invite_id: str) -> Receipt:
        return await self.ledger.transact("bailOutInvite", canonicalize_strict(invite_id))

    async def get_invite(self, invite_id) -> Invite | None:
        invite, _ = await self.get_invite_with_agreement(invite_id)
        return invite

    async def get_invite_with_agreement(self, invite_id) -> tuple[Invite | None, Agreement | None]:
        """The invite and, once accepted, the agreement it spawned."""
        iid = canonicalize_lenient(invite_id)
        creator = await self.reader.call("inviteCreator", iid)
        if is_zero_address(creator):
            return None, None
        is_client_side, accepted_raw, contract_raw = await asyncio.gather(
            self.reader.call("inviteIsClientSide", iid),
            self.reader.call("inviteAcceptedBy", iid),
            self.reader.call("inviteContractId", iid),
        )
        invite = Invite(
            id=iid,
            creator=str(creator),
            is_client_side=bool(is_client_side),
            accepted_by="" if is_zero_address(accepted_raw) else str(accepted_raw),
            contract_id="" if is_zero_id(contract_raw) else canonicalize_lenient(contract_raw),
        )
        spawned = None
        if invite.contract_id:
            spawned = await self.get_agreement(invite.contract_id)
            acceptor = invite.acceptor_from(spawned)
            if acceptor:
                invite = Invite(invite.id, invite.creator, invite.is_client_side, acceptor, invite.contract_id)
        return invite, spawned

    # --- Usernames ---

    async def get_username(self, address: str) -> str:
        name = await self.reader.call("usernames", checksum(address))
        return name if isinstance(name, str) else ""

    async def get_usernames(self, addresses) -> dict[str, str]:
        """Lower-cased address -> stored name, for every non-empty address."""
        unique = sorted({normalize_address(a) for a in addresses if not is_zero_address(a)})
        names = await asyncio.gather(*[self.reader.call("usernames", checksum(a)) for a in unique])
        return {a: n for a, n in zip(unique, names) if isinstance(n, str) and n}

    async def get_address_by_username(self, username: str) -> str | None:
        addr = await self.reader.call("getAddressByUsername", strip_at(username))
        if is_zero_address(addr):
            return None
        return str(addr)

    async def set_username(self, username: str) -> Receipt:
        return await self.ledger.transact("setUsername", username[:MAX_USERNAME_LENGTH])

    # --- Dispute resolver ---

    async def is_arbitrator(self, address: str) -> bool:
        if self.resolver_reader is None or not address:
            return False
        return bool(await self.resolver_reader.call("arbitrators", checksum(address)))

    async def resolve_dispute_via_resolver(self, agreement_id: str, client_wins: bool) -> Receipt:
        if self.resolver is None:
            raise ConfigurationMissing("DISPUTE_RESOLVER_ADDRESS not set")
        return await self.resolver.transact("resolveDispute", canonicalize_strict(agreement_id), bool(client_wins))
