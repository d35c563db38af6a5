"""Invite protocol.

An invite is a single-slot offer to join an agreement as the missing party.
OPEN -> ACCEPTED (acceptor and spawned agreement set) -> either back to OPEN
when the acceptor bails out, or CONSUMED once both parties of the spawned
agreement have signed or the agreement has closed.
"""

from dataclasses import dataclass
from enum import Enum

from agreement import Agreement
from errors import EscrowError, InviteConsumed, SelfAcceptance
from identifiers import same_address, is_zero_id, is_zero_address
from protocol import INVITE_CLOSED_STATES


@dataclass(frozen=True)
class Invite:
    id: str
    creator: str
    is_client_side: bool
    accepted_by: str = ""      # derived from the spawned agreement
    contract_id: str = ""      # empty until accepted

    @property
    def accepted(self) -> bool:
        return bool(self.contract_id) and not is_zero_id(self.contract_id)

    @property
    def creator_role(self) -> str:
        return "client" if self.is_client_side else "developer"

    @property
    def acceptor_role(self) -> str:
        return "developer" if self.is_client_side else "client"

    def acceptor_from(self, spawned: Agreement) -> str:
        """The spawned agreement's party opposite the creator."""
        addr = spawned.developer if self.is_client_side else spawned.client
        return "" if is_zero_address(addr) else addr


class InviteStatus(Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    CONSUMED = "consumed"


class InviteView(Enum):
    OPEN = "open"                              # anyone may accept
    OWN_OPEN = "own-open"                      # creator, waiting for a taker
    OWN_ACCEPTED = "own-accepted"              # creator, someone accepted
    MINE_ACCEPTED = "mine-accepted"            # viewer is the acceptor
    TAKEN = "taken-retry-later"                # third party, slot may reopen
    NO_LONGER_AVAILABLE = "no-longer-available"


def is_consumed(spawned: Agreement | None) -> bool:
    if spawned is None:
        return False
    return spawned.both_signed or spawned.state in INVITE_CLOSED_STATES


def invite_status(invite: Invite, spawned: Agreement | None = None) -> InviteStatus:
    if not invite.accepted:
        return InviteStatus.OPEN
    if is_consumed(spawned):
        return InviteStatus.CONSUMED
    return InviteStatus.ACCEPTED


def viewer_view(invite: Invite, spawned: Agreement | None, viewer: str) -> InviteView:
    status = invite_status(invite, spawned)
    if same_address(viewer, invite.creator):
        return InviteView.OWN_OPEN if status == InviteStatus.OPEN else InviteView.OWN_ACCEPTED
    if status == InviteStatus.OPEN:
        return InviteView.OPEN
    if same_address(viewer, invite.accepted_by):
        return InviteView.MINE_ACCEPTED
    if status == InviteStatus.CONSUMED:
        return InviteView.NO_LONGER_AVAILABLE
    return InviteView.TAKEN


def can_accept(invite: Invite, spawned: Agreement | None, viewer: str) -> bool:
    return (
        invite_status(invite, spawned) == InviteStatus.OPEN
        and bool(viewer)
        and not same_address(viewer, invite.creator)
    )


def can_bail_out(invite: Invite, spawned: Agreement | None, viewer: str) -> bool:
    return (
        invite.accepted
        and same_address(viewer, invite.accepted_by)
        and not is_consumed(spawned)
    )


def check_accept(invite: Invite, spawned: Agreement | None, viewer: str) -> None:
    """Advisory pre-check before sending acceptInvite; the ledger re-validates."""
    if same_address(viewer, invite.creator):
        raise SelfAcceptance("You created this invite and cannot accept it yourself.")
    status = invite_status(invite, spawned)
    if status == InviteStatus.CONSUMED:
        raise InviteConsumed("This invite is no longer available.")
    if status == InviteStatus.ACCEPTED:
        raise InviteConsumed("This invite has already been accepted. Try again later.")


def check_bail_out(invite: Invite, spawned: Agreement | None, viewer: str) -> None:
    if not invite.accepted or not same_address(viewer, invite.accepted_by):
        raise EscrowError("Only the party who accepted this invite can bail out.")
    if spawned is not None and spawned.both_signed:
        raise InviteConsumed("Both parties have signed; the invite can no longer be vacated.")
    if is_consumed(spawned):
        raise InviteConsumed("The agreement from this invite is closed; the invite can no longer be vacated.")
