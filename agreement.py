"""Client-side projection of one escrow agreement.

The ledger owns the agreement; this module only describes what was last read
(AgreementSnapshot), what the client expects to see after its own successful
writes (Hint), and which actions the viewer may attempt. A hint is merged into
a snapshot only for display by render(); the snapshot itself is never patched,
so the next authoritative read replaces it wholesale.

Permission predicates mirror the ledger's preconditions so the client never
offers an action the ledger would refuse. They are advisory; the ledger
re-validates every call.
"""

import time
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation

from web3 import Web3

from identifiers import canonicalize_lenient, same_address, is_zero_address
from protocol import (
    AgreementState, ZERO_ADDRESS, ACTIVE_WORK_STATES, CANCELLABLE_STATES,
    TERMINAL_STATES,
)


# --- Snapshot types ---

@dataclass(frozen=True)
class Agreement:
    id: str
    client: str
    developer: str
    state: AgreementState = AgreementState.DRAFT
    deadline: int = 0
    balance: int = 0
    created_at: int = 0
    client_signed: bool = False
    developer_signed: bool = False
    milestone_count: int = 0
    approved_count: int = 0

    @classmethod
    def from_ledger(cls, agreement_id, raw) -> "Agreement":
        """Build from the getContract() tuple."""
        client, developer, state, deadline, balance, created_at, cs, ds, mc, ac = tuple(raw)[:10]
        try:
            state = AgreementState(int(state))
        except ValueError:
            state = AgreementState.DRAFT
        return cls(
            id=canonicalize_lenient(agreement_id),
            client=str(client),
            developer=str(developer),
            state=state,
            deadline=int(deadline),
            balance=int(balance),
            created_at=int(created_at),
            client_signed=bool(cs),
            developer_signed=bool(ds),
            milestone_count=int(mc),
            approved_count=int(ac),
        )

    @classmethod
    def placeholder(cls, agreement_id) -> "Agreement":
        """Row for an agreement that could not be read."""
        return cls(id=canonicalize_lenient(agreement_id), client=ZERO_ADDRESS, developer=ZERO_ADDRESS)

    @property
    def both_signed(self) -> bool:
        return self.client_signed and self.developer_signed

    @property
    def exists(self) -> bool:
        return not is_zero_address(self.client)

    def counterparty(self, address: str) -> str:
        if same_address(address, self.client):
            return self.developer
        if same_address(address, self.developer):
            return self.client
        return ""


@dataclass(frozen=True)
class Milestone:
    index: int
    submitted: bool = False
    approved: bool = False
    submitted_at: int = 0
    description: str = ""
    completion_comment: str = ""


@dataclass(frozen=True)
class CancelRequests:
    client: bool = False
    developer: bool = False

    @property
    def both(self) -> bool:
        return self.client and self.developer


@dataclass(frozen=True)
class DisputeInfo:
    judge: str = ZERO_ADDRESS
    resolved: bool = False
    client_wins: bool = False


@dataclass(frozen=True)
class DiscussionMessage:
    sender: str
    message: str


@dataclass(frozen=True)
class AgreementSnapshot:
    agreement: Agreement
    milestones: tuple[Milestone, ...] = ()
    cancel: CancelRequests = CancelRequests()
    dispute: DisputeInfo | None = None
    required_fund_amount: int = 0
    creator: str = ""
    messages: tuple[DiscussionMessage, ...] = ()
    names: dict = field(default_factory=dict, compare=False)

    @property
    def id(self) -> str:
        return self.agreement.id

    @property
    def state(self) -> AgreementState:
        return self.agreement.state

    def milestone(self, index: int) -> Milestone | None:
        if 0 <= index < len(self.milestones):
            return self.milestones[index]
        return None


# --- Optimistic hints ---

@dataclass
class Hint:
    """Expected effect of a successful write, shown until the next read."""
    agreement: dict = field(default_factory=dict)
    milestones: dict[int, dict] = field(default_factory=dict)
    cancel: dict = field(default_factory=dict)
    messages: list[DiscussionMessage] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.agreement or self.milestones or self.cancel or self.messages)

    def merged(self, other: "Hint | None") -> "Hint":
        if other is None:
            return self
        milestones = {i: dict(f) for i, f in self.milestones.items()}
        for i, fields in other.milestones.items():
            milestones.setdefault(i, {}).update(fields)
        return Hint(
            agreement={**self.agreement, **other.agreement},
            milestones=milestones,
            cancel={**self.cancel, **other.cancel},
            messages=self.messages + other.messages,
        )

    def without_messages(self) -> "Hint":
        return Hint(agreement=dict(self.agreement), milestones=dict(self.milestones), cancel=dict(self.cancel))

    def messages_only(self) -> "Hint":
        return Hint(messages=list(self.messages))


def render(snapshot: AgreementSnapshot | None, hint: Hint | None = None) -> AgreementSnapshot | None:
    """Snapshot as displayed: the hint overlaid on the last read."""
    if snapshot is None or hint is None or hint.is_empty():
        return snapshot
    agreement = replace(snapshot.agreement, **hint.agreement) if hint.agreement else snapshot.agreement
    milestones = tuple(
        replace(m, **hint.milestones[m.index]) if m.index in hint.milestones else m
        for m in snapshot.milestones
    )
    cancel = replace(snapshot.cancel, **hint.cancel) if hint.cancel else snapshot.cancel
    return replace(
        snapshot,
        agreement=agreement,
        milestones=milestones,
        cancel=cancel,
        messages=snapshot.messages + tuple(hint.messages),
    )


# --- Viewer and roles ---

@dataclass(frozen=True)
class Viewer:
    address: str
    now: int | None = None
    resolver_address: str = ""
    is_arbitrator: bool = False

    def time(self) -> int:
        return int(time.time()) if self.now is None else self.now


def is_client(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return same_address(viewer.address, view.agreement.client)


def is_developer(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return same_address(viewer.address, view.agreement.developer)


def is_party(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_client(view, viewer) or is_developer(view, viewer)


def is_creator(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return same_address(viewer.address, view.creator)


def is_judge(view: AgreementSnapshot, viewer: Viewer) -> bool:
    """Assigned judge, anyone when no judge is set, or an arbitrator when the judge is the resolver."""
    if view.dispute is None or not viewer.address:
        return False
    judge = view.dispute.judge
    if same_address(judge, viewer.address) or is_zero_address(judge):
        return True
    return bool(viewer.resolver_address) and same_address(judge, viewer.resolver_address) and viewer.is_arbitrator


def is_terminal(state) -> bool:
    return AgreementState(int(state)) in TERMINAL_STATES


def deadline_passed(deadline: int, now: int | None = None) -> bool:
    now = int(time.time()) if now is None else now
    return deadline > 0 and deadline <= now


def format_countdown(deadline: int, now: int | None = None) -> str:
    if not deadline:
        return "No deadline"
    now = int(time.time()) if now is None else now
    left = deadline - now
    if left <= 0:
        return "Expired"
    days, rem = divmod(left, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{max(minutes, 1)}m"


def parse_amount(text: str) -> int:
    """Decimal ether amount -> wei. Raises ValueError unless strictly positive."""
    try:
        amount = Decimal((text or "").strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {text!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Enter an amount greater than zero")
    wei = int(Web3.to_wei(amount, "ether"))
    if wei <= 0:
        raise ValueError("Enter an amount greater than zero")
    return wei


# --- Permission predicates ---

def can_view(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_party(view, viewer) or is_judge(view, viewer)


def can_set_terms(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_creator(view, viewer) and view.state == AgreementState.DRAFT


def can_edit_milestones(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_creator(view, viewer) and view.state == AgreementState.DRAFT


def can_sign(view: AgreementSnapshot, viewer: Viewer) -> bool:
    a = view.agreement
    if a.state != AgreementState.DRAFT or a.milestone_count < 1:
        return False
    if is_client(view, viewer):
        return not a.client_signed
    if is_developer(view, viewer):
        return not a.developer_signed
    return False


def can_fund(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_client(view, viewer) and view.state == AgreementState.SIGNED


def can_submit(view: AgreementSnapshot, viewer: Viewer, index: int) -> bool:
    m = view.milestone(index)
    return (
        m is not None
        and is_developer(view, viewer)
        and view.state in ACTIVE_WORK_STATES
        and not m.submitted
        and not m.approved
    )


def can_approve(view: AgreementSnapshot, viewer: Viewer, index: int) -> bool:
    m = view.milestone(index)
    return (
        m is not None
        and is_client(view, viewer)
        and view.state in ACTIVE_WORK_STATES
        and m.submitted
        and not m.approved
    )


def can_reject(view: AgreementSnapshot, viewer: Viewer, index: int) -> bool:
    return can_approve(view, viewer, index)


def can_claim_payout(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_developer(view, viewer) and view.state == AgreementState.COMPLETED


def can_raise_dispute(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_party(view, viewer) and view.state in ACTIVE_WORK_STATES


def can_resolve_dispute(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return (
        view.state == AgreementState.DISPUTED
        and view.dispute is not None
        and not view.dispute.resolved
        and is_judge(view, viewer)
    )


def can_request_cancel(view: AgreementSnapshot, viewer: Viewer) -> bool:
    if view.state not in CANCELLABLE_STATES:
        return False
    if is_client(view, viewer):
        return not view.cancel.client
    if is_developer(view, viewer):
        return not view.cancel.developer
    return False


def can_cancel(view: AgreementSnapshot, viewer: Viewer) -> bool:
    return is_party(view, viewer) and view.state in CANCELLABLE_STATES and view.cancel.both


def can_claim_refund(view: AgreementSnapshot, viewer: Viewer) -> bool:
    a = view.agreement
    return (
        is_client(view, viewer)
        and deadline_passed(a.deadline, viewer.time())
        and a.state not in TERMINAL_STATES
        and a.approved_count < a.milestone_count
    )


def available_actions(view: AgreementSnapshot, viewer: Viewer) -> list[str]:
    """Names of the actions the viewer may attempt right now."""
    actions = []
    checks = [
        ("set_terms", can_set_terms),
        ("edit_milestones", can_edit_milestones),
        ("sign", can_sign),
        ("fund", can_fund),
        ("claim_payout", can_claim_payout),
        ("raise_dispute", can_raise_dispute),
        ("resolve_dispute", can_resolve_dispute),
        ("request_cancel", can_request_cancel),
        ("cancel", can_cancel),
        ("claim_refund", can_claim_refund),
    ]
    for name, check in checks:
        if check(view, viewer):
            actions.append(name)
    for m in view.milestones:
        if can_submit(view, viewer, m.index):
            actions.append(f"submit:{m.index}")
        if can_approve(view, viewer, m.index):
            actions.append(f"approve:{m.index}")
            actions.append(f"reject:{m.index}")
    return actions


# --- Predicted effects of successful writes ---

def predict_sign(view: AgreementSnapshot, viewer: Viewer) -> Hint:
    a = view.agreement
    if is_client(view, viewer):
        fields = {"client_signed": True}
        both = a.developer_signed
    else:
        fields = {"developer_signed": True}
        both = a.client_signed
    if both:
        fields["state"] = AgreementState.SIGNED
    return Hint(agreement=fields)


def predict_fund(amount: int) -> Hint:
    return Hint(agreement={"state": AgreementState.FUNDED, "balance": amount})


def predict_submit(index: int, comment: str, now: int | None = None) -> Hint:
    now = int(time.time()) if now is None else now
    return Hint(
        agreement={"state": AgreementState.IN_PROGRESS},
        milestones={index: {"submitted": True, "submitted_at": now, "completion_comment": comment}},
    )


def predict_approve(view: AgreementSnapshot, index: int) -> Hint:
    a = view.agreement
    approved = a.approved_count + 1
    state = AgreementState.COMPLETED if approved >= a.milestone_count else AgreementState.IN_PROGRESS
    return Hint(
        agreement={"approved_count": approved, "state": state},
        milestones={index: {"approved": True}},
    )


def predict_reject(index: int) -> Hint:
    return Hint(milestones={index: {"submitted": False, "submitted_at": 0, "completion_comment": ""}})


def predict_payout() -> Hint:
    return Hint(agreement={"state": AgreementState.PAID_OUT, "balance": 0})


def predict_dispute() -> Hint:
    return Hint(agreement={"state": AgreementState.DISPUTED})


def predict_request_cancel(view: AgreementSnapshot, viewer: Viewer) -> Hint:
    if is_client(view, viewer):
        return Hint(cancel={"client": True})
    return Hint(cancel={"developer": True})


def predict_cancel() -> Hint:
    return Hint(agreement={"state": AgreementState.CANCELLED, "balance": 0})


predict_refund = predict_cancel


def predict_set_terms(deadline: int) -> Hint:
    return Hint(agreement={"deadline": deadline})


def predict_message(sender: str, message: str) -> Hint:
    return Hint(messages=[DiscussionMessage(sender, message)])
