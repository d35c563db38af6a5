"""In-memory escrow and dispute-resolver contracts.

StubChain keeps the contract state and enforces the same rules the deployed
contract does; StubLedger is the Ledger view of one contract on it, used for
local development and tests. Writes are signed by the wallet like real
transactions, so a declined prompt or a wrong network fails the same way,
and the sender is recovered from the signature rather than trusted.

Encrypted inputs are checked against the local verifier key when one is
configured; the amounts themselves stay opaque to the chain.
"""

import asyncio
import sys
import time
from dataclasses import dataclass, field

from eth_account import Account
from web3 import Web3

from abi import event_topic
from encryption import verify_encrypted_input
from errors import LedgerRejected, NetworkFailure, WalletNotConnected, WrongNetwork
from identifiers import canonicalize_lenient, normalize_address, is_zero_address
from ledger import Ledger, LogEntry, Receipt
from protocol import (
    AgreementState, FheType, DEFAULT_CHAIN_ID, ZERO_ADDRESS, ZERO_ID,
    MAX_MESSAGE_LENGTH, MAX_USERNAME_LENGTH, CANCELLABLE_STATES, ACTIVE_WORK_STATES,
    INVITE_CLOSED_STATES,
)


def _derive_address(label: str) -> str:
    return Web3.to_checksum_address(Web3.to_hex(Web3.keccak(text=label)[-20:]))


def _address_topic(addr: str) -> str:
    return "0x" + "0" * 24 + normalize_address(addr)[2:]


def _id_bytes(canonical: str) -> bytes:
    return bytes.fromhex(canonical[2:])


@dataclass
class _Milestone:
    description: str
    portion_handle: int
    submitted: bool = False
    approved: bool = False
    submitted_at: int = 0
    comment: str = ""


@dataclass
class _Agreement:
    client: str
    developer: str
    creator: str
    created_at: int
    required: int
    judge: str
    total_handle: int = 0
    state: AgreementState = AgreementState.DRAFT
    deadline: int = 0
    balance: int = 0
    client_signed: bool = False
    developer_signed: bool = False
    milestones: list[_Milestone] = field(default_factory=list)
    approved_count: int = 0
    client_cancel: bool = False
    developer_cancel: bool = False
    dispute_resolved: bool = False
    client_wins: bool = False
    messages: list[tuple[str, str]] = field(default_factory=list)

    def is_party(self, addr: str) -> bool:
        a = normalize_address(addr)
        return a in (normalize_address(self.client), normalize_address(self.developer))

    def is_client(self, addr: str) -> bool:
        return normalize_address(addr) == normalize_address(self.client)

    def is_developer(self, addr: str) -> bool:
        return normalize_address(addr) == normalize_address(self.developer)


@dataclass
class _Invite:
    creator: str
    is_client_side: bool
    total: int
    total_handle: int
    accepted_by: str = ZERO_ADDRESS
    contract_id: str = ZERO_ID


class StubChain:
    """Shared state for one simulated network."""

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        verifier_pubkey: bytes | None = None,
        judge: str | None = None,
        clock=time.time,
        latency: float = 0.0,
    ):
        self.chain_id = chain_id
        self.verifier_pubkey = verifier_pubkey
        self.escrow_address = _derive_address("private-escrow")
        self.resolver_address = _derive_address("dispute-resolver")
        self.default_judge = judge or self.resolver_address
        self.clock = clock
        self.latency = latency
        self.time_offset = 0
        self.offline = False

        self.agreements: dict[str, _Agreement] = {}
        self.invites: dict[str, _Invite] = {}
        self.user_contracts: dict[str, list[str]] = {}
        self.usernames: dict[str, str] = {}      # address -> name
        self.name_owners: dict[str, str] = {}    # name -> address
        self.arbitrators: set[str] = set()
        self.balances: dict[str, int] = {}       # payouts/refunds received
        self.nonces: dict[str, int] = {}
        self.reads = 0
        self._counter = 0
        self._listeners: dict[str, list] = {}

        self._escrow_writes = {
            "createContract": self._create_contract,
            "createInvite": self._create_invite,
            "acceptInvite": self._accept_invite,
            "bailOutInvite": self._bail_out_invite,
            "setTerms": self._set_terms,
            "addMilestone": self._add_milestone,
            "updateMilestone": self._update_milestone,
            "removeLastMilestone": self._remove_last_milestone,
            "signContract": self._sign,
            "fundEscrow": self._fund,
            "submitMilestone": self._submit,
            "approveMilestone": self._approve,
            "rejectMilestone": self._reject,
            "claimPayout": self._claim_payout,
            "raiseDispute": self._raise_dispute,
            "resolveDispute": self._resolve_dispute,
            "requestCancel": self._request_cancel,
            "cancelContract": self._cancel,
            "claimRefund": self._claim_refund,
            "addDiscussionMessage": self._add_message,
            "setUsername": self._set_username,
        }
        self._escrow_reads = {
            "getContract": self._get_contract,
            "contracts": self._contracts,
            "milestones": self._milestones,
            "milestoneDescriptions": lambda cid, i: self._milestone(cid, i).description,
            "milestoneCompletionComments": lambda cid, i: self._milestone(cid, i).comment,
            "discussionMessageCount": lambda cid: len(self._existing(cid).messages),
            "discussionSenders": lambda cid, i: self._message(cid, i)[0],
            "discussionMessages": lambda cid, i: self._message(cid, i)[1],
            "usernames": lambda addr: self.usernames.get(normalize_address(addr), ""),
            "getAddressByUsername": lambda name: self.name_owners.get(name, ZERO_ADDRESS),
            "requiredFundAmount": lambda cid: self._existing(cid).required,
            "userContractCount": lambda addr: len(self.user_contracts.get(normalize_address(addr), [])),
            "userContractIds": self._user_contract_id,
            "contractCreator": self._contract_creator,
            "clientCancelRequested": lambda cid: self._existing(cid).client_cancel,
            "developerCancelRequested": lambda cid: self._existing(cid).developer_cancel,
            "inviteCreator": lambda iid: self._invite_or_empty(iid).creator,
            "inviteIsClientSide": lambda iid: self._invite_or_empty(iid).is_client_side,
            "inviteAcceptedBy": lambda iid: self._invite_or_empty(iid).accepted_by,
            "inviteContractId": lambda iid: _id_bytes(self._invite_or_empty(iid).contract_id),
        }
        self._resolver_writes = {"resolveDispute": self._resolver_resolve}
        self._resolver_reads = {
            "arbitrators": lambda addr: normalize_address(addr) in self.arbitrators,
        }

    # --- Harness controls ---

    def now(self) -> int:
        return int(self.clock()) + self.time_offset

    def advance(self, seconds: int) -> None:
        self.time_offset += seconds

    def add_arbitrator(self, address: str) -> None:
        self.arbitrators.add(normalize_address(address))

    def ledger(self, wallet=None) -> "StubLedger":
        return StubLedger(self, wallet, contract="escrow")

    def resolver(self, wallet=None) -> "StubLedger":
        return StubLedger(self, wallet, contract="resolver")

    def add_listener(self, event: str, callback):
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe():
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)
        return unsubscribe

    def next_nonce(self, sender: str) -> int:
        return self.nonces.get(normalize_address(sender), 0)

    # --- Dispatch ---

    def execute(self, contract: str, sender: str, method: str, args: tuple, value: int) -> list[LogEntry]:
        table = self._escrow_writes if contract == "escrow" else self._resolver_writes
        handler = table.get(method)
        if handler is None:
            raise LedgerRejected(f"Unknown method {method}")
        self.nonces[normalize_address(sender)] = self.next_nonce(sender) + 1
        logs = handler(sender, value, *args)
        for entry in logs:
            for cb in list(self._listeners.get(entry.event, [])):
                cb(entry)
        return logs

    def read(self, contract: str, method: str, args: tuple):
        table = self._escrow_reads if contract == "escrow" else self._resolver_reads
        handler = table.get(method)
        if handler is None:
            raise LedgerRejected(f"Unknown method {method}")
        self.reads += 1
        return handler(*args)

    # --- Helpers ---

    def _new_id(self, kind: str, sender: str) -> str:
        self._counter += 1
        return canonicalize_lenient(Web3.keccak(text=f"{kind}:{normalize_address(sender)}:{self._counter}"))

    def _existing(self, raw_id) -> _Agreement:
        agreement = self.agreements.get(canonicalize_lenient(raw_id))
        if agreement is None:
            raise LedgerRejected("Contract does not exist")
        return agreement

    def _milestone(self, raw_id, index) -> _Milestone:
        agreement = self._existing(raw_id)
        if not 0 <= int(index) < len(agreement.milestones):
            raise LedgerRejected("Invalid milestone")
        return agreement.milestones[int(index)]

    def _message(self, raw_id, index) -> tuple[str, str]:
        agreement = self._existing(raw_id)
        if not 0 <= int(index) < len(agreement.messages):
            raise LedgerRejected("Invalid message index")
        return agreement.messages[int(index)]

    def _invite_or_empty(self, raw_id) -> _Invite:
        return self.invites.get(canonicalize_lenient(raw_id)) or _Invite(ZERO_ADDRESS, False, 0, 0)

    def _check_input(self, bundle, sender: str, utype: FheType) -> int:
        if self.verifier_pubkey is not None and not verify_encrypted_input(
            self.verifier_pubkey, bundle, sender, self.chain_id, expected_type=utype
        ):
            raise LedgerRejected("Invalid encrypted input")
        return int(bundle[0])

    def _pay(self, to: str, amount: int) -> None:
        if amount:
            key = normalize_address(to)
            self.balances[key] = self.balances.get(key, 0) + amount

    def _log(self, name: str, indexed: list[str], args: dict) -> LogEntry:
        return LogEntry(
            address=self.escrow_address,
            topics=[event_topic(name)] + indexed,
            data="0x",
            event=name,
            args=args,
        )

    def _open_agreement(self, client: str, developer: str, creator: str,
                        required: int, total_handle: int) -> tuple[str, LogEntry]:
        cid = self._new_id("contract", creator)
        self.agreements[cid] = _Agreement(
            client=Web3.to_checksum_address(client),
            developer=Web3.to_checksum_address(developer),
            creator=Web3.to_checksum_address(creator),
            created_at=self.now(),
            required=required,
            judge=self.default_judge,
            total_handle=total_handle,
        )
        for party in (client, developer):
            self.user_contracts.setdefault(normalize_address(party), []).append(cid)
        log = self._log(
            "ContractCreated",
            [cid, _address_topic(client), _address_topic(developer)],
            {"contractId": _id_bytes(cid), "client": client, "developer": developer},
        )
        return cid, log

    def _require_state(self, agreement: _Agreement, allowed) -> None:
        if agreement.state not in allowed:
            raise LedgerRejected("Wrong state")

    def _require_creator_draft(self, sender: str, agreement: _Agreement) -> None:
        if normalize_address(sender) != normalize_address(agreement.creator):
            raise LedgerRejected("Not creator")
        self._require_state(agreement, {AgreementState.DRAFT})

    # --- Escrow writes ---

    def _create_contract(self, sender, value, client, developer, encrypted_total, total_amount):
        if is_zero_address(client) or is_zero_address(developer):
            raise LedgerRejected("Invalid address")
        if normalize_address(client) == normalize_address(developer):
            raise LedgerRejected("Client and developer must differ")
        if normalize_address(sender) not in (normalize_address(client), normalize_address(developer)):
            raise LedgerRejected("Not a party")
        if int(total_amount) <= 0:
            raise LedgerRejected("Amount must be positive")
        handle = self._check_input(encrypted_total, sender, FheType.UINT128)
        _, log = self._open_agreement(client, developer, sender, int(total_amount), handle)
        return [log]

    def _create_invite(self, sender, value, is_client_side, encrypted_total, total_amount):
        if int(total_amount) <= 0:
            raise LedgerRejected("Amount must be positive")
        handle = self._check_input(encrypted_total, sender, FheType.UINT128)
        iid = self._new_id("invite", sender)
        self.invites[iid] = _Invite(
            creator=Web3.to_checksum_address(sender),
            is_client_side=bool(is_client_side),
            total=int(total_amount),
            total_handle=handle,
        )
        return [self._log(
            "InviteCreated",
            [iid, _address_topic(sender)],
            {"inviteId": _id_bytes(iid), "creator": sender, "isClientSide": bool(is_client_side)},
        )]

    def _accept_invite(self, sender, value, invite_id):
        iid = canonicalize_lenient(invite_id)
        invite = self.invites.get(iid)
        if invite is None:
            raise LedgerRejected("Invite does not exist")
        if normalize_address(sender) == normalize_address(invite.creator):
            raise LedgerRejected("Cannot accept own invite")
        if not is_zero_address(invite.accepted_by):
            raise LedgerRejected("Invite already accepted")
        if invite.is_client_side:
            client, developer = invite.creator, sender
        else:
            client, developer = sender, invite.creator
        cid, created = self._open_agreement(client, developer, invite.creator,
                                            invite.total, invite.total_handle)
        invite.accepted_by = Web3.to_checksum_address(sender)
        invite.contract_id = cid
        accepted = self._log(
            "InviteAccepted",
            [iid, _address_topic(sender)],
            {"inviteId": _id_bytes(iid), "acceptor": sender, "contractId": _id_bytes(cid)},
        )
        return [created, accepted]

    def _bail_out_invite(self, sender, value, invite_id):
        invite = self.invites.get(canonicalize_lenient(invite_id))
        if invite is None:
            raise LedgerRejected("Invite does not exist")
        if is_zero_address(invite.accepted_by) or normalize_address(sender) != normalize_address(invite.accepted_by):
            raise LedgerRejected("Not the acceptor")
        spawned = self.agreements.get(invite.contract_id)
        if spawned is not None:
            if spawned.client_signed and spawned.developer_signed:
                raise LedgerRejected("Contract already signed by both parties")
            if spawned.state in INVITE_CLOSED_STATES:
                raise LedgerRejected("Contract already closed")
            spawned.state = AgreementState.CANCELLED
        invite.accepted_by = ZERO_ADDRESS
        invite.contract_id = ZERO_ID
        return []

    def _set_terms(self, sender, value, contract_id, deadline):
        agreement = self._existing(contract_id)
        self._require_creator_draft(sender, agreement)
        if int(deadline) <= self.now():
            raise LedgerRejected("Deadline must be in the future")
        agreement.deadline = int(deadline)
        return []

    def _reset_signatures(self, agreement: _Agreement) -> None:
        agreement.client_signed = False
        agreement.developer_signed = False

    def _add_milestone(self, sender, value, contract_id, encrypted_portion, description):
        agreement = self._existing(contract_id)
        self._require_creator_draft(sender, agreement)
        handle = self._check_input(encrypted_portion, sender, FheType.UINT32)
        agreement.milestones.append(_Milestone(description=description, portion_handle=handle))
        self._reset_signatures(agreement)
        return []

    def _update_milestone(self, sender, value, contract_id, index, encrypted_portion, description):
        agreement = self._existing(contract_id)
        self._require_creator_draft(sender, agreement)
        milestone = self._milestone(contract_id, index)
        milestone.portion_handle = self._check_input(encrypted_portion, sender, FheType.UINT32)
        milestone.description = description
        self._reset_signatures(agreement)
        return []

    def _remove_last_milestone(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        self._require_creator_draft(sender, agreement)
        if not agreement.milestones:
            raise LedgerRejected("No milestones")
        agreement.milestones.pop()
        self._reset_signatures(agreement)
        return []

    def _sign(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_party(sender):
            raise LedgerRejected("Not a party")
        self._require_state(agreement, {AgreementState.DRAFT})
        if not agreement.milestones:
            raise LedgerRejected("Add at least one milestone")
        if agreement.is_client(sender):
            if agreement.client_signed:
                raise LedgerRejected("Already signed")
            agreement.client_signed = True
        else:
            if agreement.developer_signed:
                raise LedgerRejected("Already signed")
            agreement.developer_signed = True
        if agreement.client_signed and agreement.developer_signed:
            agreement.state = AgreementState.SIGNED
        return []

    def _fund(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_client(sender):
            raise LedgerRejected("Not client")
        self._require_state(agreement, {AgreementState.SIGNED})
        if value <= 0:
            raise LedgerRejected("Insufficient amount")
        if agreement.required and value != agreement.required:
            raise LedgerRejected("Incorrect fund amount: insufficient or excess balance")
        agreement.balance = value
        agreement.state = AgreementState.FUNDED
        return []

    def _submit(self, sender, value, contract_id, index, comment):
        agreement = self._existing(contract_id)
        if not agreement.is_developer(sender):
            raise LedgerRejected("Not developer")
        self._require_state(agreement, ACTIVE_WORK_STATES)
        milestone = self._milestone(contract_id, index)
        if milestone.submitted or milestone.approved:
            raise LedgerRejected("Already submitted")
        milestone.submitted = True
        milestone.submitted_at = self.now()
        milestone.comment = comment
        agreement.state = AgreementState.IN_PROGRESS
        return []

    def _submitted_milestone(self, sender, agreement, contract_id, index) -> _Milestone:
        if not agreement.is_client(sender):
            raise LedgerRejected("Not client")
        self._require_state(agreement, ACTIVE_WORK_STATES)
        milestone = self._milestone(contract_id, index)
        if milestone.approved:
            raise LedgerRejected("Already approved")
        if not milestone.submitted:
            raise LedgerRejected("Milestone not submitted")
        return milestone

    def _approve(self, sender, value, contract_id, index):
        agreement = self._existing(contract_id)
        milestone = self._submitted_milestone(sender, agreement, contract_id, index)
        milestone.approved = True
        agreement.approved_count += 1
        if agreement.approved_count == len(agreement.milestones):
            agreement.state = AgreementState.COMPLETED
        return []

    def _reject(self, sender, value, contract_id, index):
        agreement = self._existing(contract_id)
        milestone = self._submitted_milestone(sender, agreement, contract_id, index)
        milestone.submitted = False
        milestone.submitted_at = 0
        milestone.comment = ""
        return []

    def _claim_payout(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_developer(sender):
            raise LedgerRejected("Not developer")
        self._require_state(agreement, {AgreementState.COMPLETED})
        self._pay(agreement.developer, agreement.balance)
        agreement.balance = 0
        agreement.state = AgreementState.PAID_OUT
        return []

    def _raise_dispute(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_party(sender):
            raise LedgerRejected("Not a party")
        self._require_state(agreement, ACTIVE_WORK_STATES)
        agreement.state = AgreementState.DISPUTED
        return []

    def _resolve_dispute(self, sender, value, contract_id, client_wins):
        agreement = self._existing(contract_id)
        self._require_state(agreement, {AgreementState.DISPUTED})
        if not is_zero_address(agreement.judge) and normalize_address(sender) != normalize_address(agreement.judge):
            raise LedgerRejected("Not judge")
        if agreement.dispute_resolved:
            raise LedgerRejected("Dispute already resolved")
        winner = agreement.client if client_wins else agreement.developer
        self._pay(winner, agreement.balance)
        agreement.balance = 0
        agreement.dispute_resolved = True
        agreement.client_wins = bool(client_wins)
        return []

    def _request_cancel(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_party(sender):
            raise LedgerRejected("Not a party")
        self._require_state(agreement, CANCELLABLE_STATES)
        if agreement.is_client(sender):
            if agreement.client_cancel:
                raise LedgerRejected("Cancel already requested")
            agreement.client_cancel = True
        else:
            if agreement.developer_cancel:
                raise LedgerRejected("Cancel already requested")
            agreement.developer_cancel = True
        return []

    def _cancel(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_party(sender):
            raise LedgerRejected("Not a party")
        self._require_state(agreement, CANCELLABLE_STATES)
        if not (agreement.client_cancel and agreement.developer_cancel):
            raise LedgerRejected("Both parties must request cancel")
        self._pay(agreement.client, agreement.balance)
        agreement.balance = 0
        agreement.state = AgreementState.CANCELLED
        return []

    def _claim_refund(self, sender, value, contract_id):
        agreement = self._existing(contract_id)
        if not agreement.is_client(sender):
            raise LedgerRejected("Not client")
        if agreement.state in (AgreementState.CANCELLED, AgreementState.PAID_OUT, AgreementState.COMPLETED):
            raise LedgerRejected("Wrong state")
        if agreement.deadline == 0 or self.now() < agreement.deadline:
            raise LedgerRejected("Deadline not passed")
        if agreement.approved_count >= len(agreement.milestones):
            raise LedgerRejected("All milestones approved")
        self._pay(agreement.client, agreement.balance)
        agreement.balance = 0
        agreement.state = AgreementState.CANCELLED
        return []

    def _add_message(self, sender, value, contract_id, message):
        cid = canonicalize_lenient(contract_id)
        agreement = self._existing(cid)
        if not agreement.is_party(sender):
            raise LedgerRejected("Not a party")
        if not 0 < len(message) <= MAX_MESSAGE_LENGTH:
            raise LedgerRejected(f"Message must be 1-{MAX_MESSAGE_LENGTH} characters")
        agreement.messages.append((Web3.to_checksum_address(sender), message))
        return [self._log(
            "DiscussionMessage",
            [cid, _address_topic(sender)],
            {"contractId": _id_bytes(cid), "sender": sender, "index": len(agreement.messages) - 1},
        )]

    def _set_username(self, sender, value, username):
        if not 0 < len(username) <= MAX_USERNAME_LENGTH:
            raise LedgerRejected("Invalid username length")
        owner = self.name_owners.get(username)
        me = normalize_address(sender)
        if owner is not None and normalize_address(owner) != me:
            raise LedgerRejected("Username already taken")
        previous = self.usernames.get(me)
        if previous:
            self.name_owners.pop(previous, None)
        self.usernames[me] = username
        self.name_owners[username] = Web3.to_checksum_address(sender)
        return []

    # --- Resolver writes ---

    def _resolver_resolve(self, sender, value, contract_id, client_wins):
        if normalize_address(sender) not in self.arbitrators:
            raise LedgerRejected("Not arbitrator")
        return self._resolve_dispute(self.resolver_address, 0, contract_id, client_wins)

    # --- Escrow reads ---

    def _get_contract(self, contract_id):
        a = self._existing(contract_id)
        return (
            a.client, a.developer, int(a.state), a.deadline, a.balance, a.created_at,
            a.client_signed, a.developer_signed, len(a.milestones), a.approved_count,
        )

    def _contracts(self, contract_id):
        a = self.agreements.get(canonicalize_lenient(contract_id))
        if a is None:
            return (ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0, 0, False, False, 0, 0, ZERO_ADDRESS, False, False)
        return self._get_contract(contract_id) + (a.judge, a.dispute_resolved, a.client_wins)

    def _milestones(self, contract_id, index):
        m = self._milestone(contract_id, index)
        return (m.submitted, m.approved, m.submitted_at)

    def _user_contract_id(self, address, index):
        ids = self.user_contracts.get(normalize_address(address), [])
        if not 0 <= int(index) < len(ids):
            raise LedgerRejected("Index out of range")
        return _id_bytes(ids[int(index)])

    def _contract_creator(self, contract_id):
        a = self.agreements.get(canonicalize_lenient(contract_id))
        return a.creator if a is not None else ZERO_ADDRESS


class StubLedger(Ledger):
    """Ledger view of one contract on a StubChain."""

    def __init__(self, chain: StubChain, wallet=None, contract: str = "escrow"):
        self.chain = chain
        self.wallet = wallet
        self.contract = contract
        self.address = chain.escrow_address if contract == "escrow" else chain.resolver_address

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.chain.latency)
        if self.chain.offline:
            raise NetworkFailure("Connection refused")

    async def call(self, method: str, *args):
        await self._round_trip()
        return self.chain.read(self.contract, method, args)

    async def transact(self, method: str, *args, value: int = 0) -> Receipt:
        if self.wallet is None:
            raise WalletNotConnected("Read-only connection cannot send transactions")
        accounts = await self.wallet.accounts()
        if not accounts:
            raise WalletNotConnected("Wallet not connected")
        chain_id = await self.wallet.chain_id()
        if chain_id != self.chain.chain_id:
            raise WrongNetwork(expected=self.chain.chain_id, actual=chain_id)
        tx = {
            "to": self.address,
            "value": value,
            "gas": 500000,
            "gasPrice": 0,
            "nonce": self.chain.next_nonce(accounts[0]),
            "chainId": chain_id,
            "data": Web3.to_hex(text=method),
        }
        raw = await self.wallet.sign_transaction(tx)
        sender = Account.recover_transaction(raw)
        await self._round_trip()
        logs = self.chain.execute(self.contract, sender, method, args, value)
        tx_hash = Web3.to_hex(Web3.keccak(raw))
        print(f"[ledger] {method} mined in {tx_hash[:10]}", file=sys.stderr)
        return Receipt(tx_hash=tx_hash, status=1, logs=logs)

    def subscribe(self, event: str, callback):
        return self.chain.add_listener(event, callback)
