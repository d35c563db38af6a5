"""Action orchestration.

Each user action runs the same sequence: make sure a signer is connected and
on the configured network, encrypt any amount, call the gateway, and only
after the call succeeds overlay the predicted effect on the projection.
Failures never advance local state; they come back as an ActionResult built
by the single error classifier.

Only one action per session may be in flight; a second one is refused with
ActionInProgress until the first settles.
"""

import asyncio
import sys
import time
from dataclasses import dataclass

from agreement import (
    Viewer, is_judge, predict_sign, predict_fund, predict_submit, predict_approve,
    predict_reject, predict_payout, predict_dispute, predict_request_cancel,
    predict_cancel, predict_refund, predict_set_terms, predict_message, parse_amount,
)
from encryption import EncryptedInputPipeline, LocalEncryptionSDK
from errors import (
    ActionInProgress, ErrorKind, LedgerRejected, NotFound, UsernameTaken,
    describe_failure,
)
from identifiers import (
    canonicalize_strict, same_address, looks_like_address, is_zero_address,
)
from invite import (
    Invite, InviteView, can_accept, can_bail_out, check_accept, check_bail_out,
    viewer_view, invite_status,
)
from protocol import (
    Trigger, MAX_MESSAGE_LENGTH, DEFAULT_MILESTONE_DESCRIPTION,
    DEFAULT_MILESTONE_PORTION, RELOAD_SETTLE_DELAY,
)
from sync import AgreementSync, READ_ERRORS
from usernames import normalize_username
from wallet import require_account, ensure_network

DASHBOARD_PATH = "/dashboard"


@dataclass
class ActionResult:
    ok: bool
    value: object = None
    kind: ErrorKind | None = None
    message: str = ""
    suggestion: str = ""
    redirect: str = ""

    @property
    def dismissible(self) -> bool:
        """Declined wallet prompts are a notice, not an error."""
        return self.kind == ErrorKind.USER_REJECTION


def failure_result(action: str, exc: Exception) -> ActionResult:
    kind, message, suggestion = describe_failure(exc)
    if kind == ErrorKind.USER_REJECTION:
        print(f"[session] {action}: canceled in wallet", file=sys.stderr)
    else:
        print(f"[session] {action} failed ({kind.value}): {message}", file=sys.stderr)
    redirect = DASHBOARD_PATH if kind == ErrorKind.NOT_FOUND else ""
    return ActionResult(ok=False, kind=kind, message=message, suggestion=suggestion, redirect=redirect)


def default_pipeline(wallet, config) -> EncryptedInputPipeline:
    return EncryptedInputPipeline(wallet, config, sdk_factory=LocalEncryptionSDK)


async def _signer_ready(wallet, config) -> str:
    account = await require_account(wallet)
    await ensure_network(wallet, config)
    return account


def _amount_wei(amount) -> int:
    if isinstance(amount, int):
        if amount <= 0:
            raise ValueError("Enter an amount greater than zero")
        return amount
    return parse_amount(str(amount))


class AgreementSession:
    """One viewer working on one agreement."""

    def __init__(self, client, wallet, config, agreement_id: str,
                 pipeline: EncryptedInputPipeline | None = None,
                 sync: AgreementSync | None = None, clock=time.time):
        self.client = client
        self.wallet = wallet
        self.config = config
        self.agreement_id = agreement_id
        self.pipeline = pipeline or default_pipeline(wallet, config)
        self.sync = sync or AgreementSync(
            client, agreement_id, resolver_address=config.dispute_resolver_address,
        )
        self.clock = clock
        self.busy = False
        self.account = ""

    @property
    def view(self):
        return self.sync.view

    def viewer(self) -> Viewer:
        return Viewer(
            address=self.account,
            now=int(self.clock()),
            resolver_address=self.sync.resolver_address,
            is_arbitrator=self.sync.is_arbitrator,
        )

    async def load(self) -> ActionResult:
        """Initial load. An unknown agreement redirects to the dashboard."""
        try:
            canonicalize_strict(self.agreement_id)
            accounts = await self.wallet.accounts() if self.wallet is not None else []
            self.account = accounts[0] if accounts else ""
            self.sync.viewer_address = self.account
            await self.sync.refresh(Trigger.EXPLICIT)
        except Exception as e:
            return failure_result("load", e)
        return ActionResult(ok=True, value=self.sync.view)

    async def refresh(self) -> ActionResult:
        try:
            await self.sync.refresh(Trigger.EXPLICIT)
        except Exception as e:
            return failure_result("refresh", e)
        return ActionResult(ok=True, value=self.sync.view)

    async def focus(self) -> None:
        await self.sync.ambient()

    async def _run(self, name: str, action, hint=None, reload: bool = False) -> ActionResult:
        if self.busy:
            return failure_result(name, ActionInProgress("Another action is still in progress"))
        self.busy = True
        try:
            self.account = await _signer_ready(self.wallet, self.config)
            self.sync.viewer_address = self.account
            value = await action()
            if hint is not None:
                self.sync.apply_hint(hint())
            if reload:
                await self._reload(name)
        except Exception as e:
            return failure_result(name, e)
        finally:
            self.busy = False
        return ActionResult(ok=True, value=value)

    async def _reload(self, name: str) -> None:
        await asyncio.sleep(RELOAD_SETTLE_DELAY)
        try:
            await self.sync.refresh(Trigger.EXPLICIT)
        except READ_ERRORS as e:
            # The write went through; the next interval refetch converges
            print(f"[session] reload after {name} failed: {e}", file=sys.stderr)

    # --- Terms and milestones (creator, before signing) ---

    async def set_terms(self, deadline: int) -> ActionResult:
        return await self._run(
            "set_terms",
            lambda: self.client.set_terms(self.agreement_id, deadline),
            hint=lambda: predict_set_terms(deadline),
        )

    async def add_milestone(self, description: str = "",
                            portion: int = DEFAULT_MILESTONE_PORTION) -> ActionResult:
        async def action():
            encrypted = await self.pipeline.encrypt_uint32(portion)
            return await self.client.add_milestone(
                self.agreement_id, encrypted, description.strip() or DEFAULT_MILESTONE_DESCRIPTION)
        return await self._run("add_milestone", action, reload=True)

    async def update_milestone(self, index: int, description: str,
                               portion: int = DEFAULT_MILESTONE_PORTION) -> ActionResult:
        async def action():
            encrypted = await self.pipeline.encrypt_uint32(portion)
            return await self.client.update_milestone(
                self.agreement_id, index, encrypted, description.strip() or DEFAULT_MILESTONE_DESCRIPTION)
        return await self._run("update_milestone", action, reload=True)

    async def remove_last_milestone(self) -> ActionResult:
        return await self._run(
            "remove_last_milestone",
            lambda: self.client.remove_last_milestone(self.agreement_id),
            reload=True,
        )

    # --- Lifecycle ---

    async def sign(self) -> ActionResult:
        return await self._run(
            "sign",
            lambda: self.client.sign(self.agreement_id),
            hint=lambda: predict_sign(self.view, self.viewer()),
        )

    async def fund(self, amount=None) -> ActionResult:
        """Fund the escrow. Without an amount, the required amount is sent."""
        required = self.view.required_fund_amount if self.view is not None else 0
        holder = {}

        async def action():
            wei = _amount_wei(amount) if amount is not None else required
            if wei <= 0:
                raise ValueError("Enter an amount greater than zero")
            holder["wei"] = wei
            return await self.client.fund(self.agreement_id, wei)

        return await self._run("fund", action, hint=lambda: predict_fund(holder["wei"]))

    async def submit_milestone(self, index: int, comment: str = "") -> ActionResult:
        return await self._run(
            "submit_milestone",
            lambda: self.client.submit_milestone(self.agreement_id, index, comment),
            hint=lambda: predict_submit(index, comment, int(self.clock())),
        )

    async def approve_milestone(self, index: int) -> ActionResult:
        return await self._run(
            "approve_milestone",
            lambda: self.client.approve_milestone(self.agreement_id, index),
            hint=lambda: predict_approve(self.view, index),
        )

    async def reject_milestone(self, index: int) -> ActionResult:
        return await self._run(
            "reject_milestone",
            lambda: self.client.reject_milestone(self.agreement_id, index),
            hint=lambda: predict_reject(index),
        )

    async def claim_payout(self) -> ActionResult:
        return await self._run(
            "claim_payout",
            lambda: self.client.claim_payout(self.agreement_id),
            hint=predict_payout,
        )

    async def raise_dispute(self) -> ActionResult:
        return await self._run(
            "raise_dispute",
            lambda: self.client.raise_dispute(self.agreement_id),
            hint=predict_dispute,
        )

    async def resolve_dispute(self, client_wins: bool) -> ActionResult:
        """Judge rules directly; an arbitrator rules through the resolver."""
        async def action():
            view = self.view
            judge = view.dispute.judge if view is not None and view.dispute is not None else ""
            if (judge and same_address(judge, self.sync.resolver_address)
                    and not same_address(judge, self.account)
                    and is_judge(view, self.viewer())):
                return await self.client.resolve_dispute_via_resolver(self.agreement_id, client_wins)
            return await self.client.resolve_dispute(self.agreement_id, client_wins)
        return await self._run("resolve_dispute", action, reload=True)

    async def request_cancel(self) -> ActionResult:
        return await self._run(
            "request_cancel",
            lambda: self.client.request_cancel(self.agreement_id),
            hint=lambda: predict_request_cancel(self.view, self.viewer()),
        )

    async def cancel(self) -> ActionResult:
        return await self._run(
            "cancel",
            lambda: self.client.cancel(self.agreement_id),
            hint=predict_cancel,
        )

    async def claim_refund(self) -> ActionResult:
        return await self._run(
            "claim_refund",
            lambda: self.client.claim_refund(self.agreement_id),
            hint=predict_refund,
        )

    async def send_message(self, text: str) -> ActionResult:
        message = (text or "").strip()

        async def action():
            if not message:
                raise ValueError("Message cannot be empty")
            if len(message) > MAX_MESSAGE_LENGTH:
                raise ValueError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
            return await self.client.add_discussion_message(self.agreement_id, message)

        return await self._run(
            "send_message", action,
            hint=lambda: predict_message(self.account, message),
        )


# --- Free-standing flows ---

async def resolve_counterparty(client, counterparty: str) -> str:
    """Address as typed, or the owner of a username."""
    value = (counterparty or "").strip()
    if looks_like_address(value):
        return value
    address = await client.get_address_by_username(value)
    if address is None:
        raise NotFound(f"No user named {value}")
    return address


async def create_agreement(client, wallet, config, counterparty: str, role: str, amount,
                           pipeline: EncryptedInputPipeline | None = None) -> ActionResult:
    """Create an agreement with the viewer as `role` ("client" or "developer")."""
    try:
        config.require_escrow_address()
        account = await _signer_ready(wallet, config)
        other = await resolve_counterparty(client, counterparty)
        if same_address(other, account):
            raise ValueError("Client and developer must be different addresses")
        total = _amount_wei(amount)
        client_addr, developer_addr = (account, other) if role == "client" else (other, account)
        pipeline = pipeline or default_pipeline(wallet, config)
        encrypted = await pipeline.encrypt_uint128(total)
        agreement_id, _ = await client.create_agreement(client_addr, developer_addr, encrypted, total)
    except Exception as e:
        return failure_result("create_agreement", e)
    print(f"[session] Created agreement {agreement_id[:10]}", file=sys.stderr)
    return ActionResult(ok=True, value=agreement_id)


async def create_invite(client, wallet, config, is_client_side: bool, amount,
                        pipeline: EncryptedInputPipeline | None = None) -> ActionResult:
    try:
        config.require_escrow_address()
        await _signer_ready(wallet, config)
        total = _amount_wei(amount)
        pipeline = pipeline or default_pipeline(wallet, config)
        encrypted = await pipeline.encrypt_uint128(total)
        invite_id = await client.create_invite(is_client_side, encrypted, total)
    except Exception as e:
        return failure_result("create_invite", e)
    print(f"[session] Created invite {invite_id[:10]}", file=sys.stderr)
    return ActionResult(ok=True, value=invite_id)


class InviteSession:
    """Viewer looking at one invite link."""

    def __init__(self, client, wallet, config, invite_id: str):
        self.client = client
        self.wallet = wallet
        self.config = config
        self.invite_id = invite_id
        self.invite: Invite | None = None
        self.spawned = None
        self.account = ""
        self.busy = False

    async def _read(self) -> None:
        iid = canonicalize_strict(self.invite_id)
        invite, spawned = await self.client.get_invite_with_agreement(iid)
        if invite is None:
            raise NotFound("Invite not found")
        self.invite, self.spawned = invite, spawned

    async def load(self) -> ActionResult:
        try:
            accounts = await self.wallet.accounts() if self.wallet is not None else []
            self.account = accounts[0] if accounts else ""
            await self._read()
        except Exception as e:
            return failure_result("load_invite", e)
        return ActionResult(ok=True, value=self.view())

    def view(self) -> InviteView | None:
        if self.invite is None:
            return None
        return viewer_view(self.invite, self.spawned, self.account)

    def status(self):
        return invite_status(self.invite, self.spawned) if self.invite is not None else None

    def can_accept(self) -> bool:
        return self.invite is not None and can_accept(self.invite, self.spawned, self.account)

    def can_bail_out(self) -> bool:
        return self.invite is not None and can_bail_out(self.invite, self.spawned, self.account)

    async def _run(self, name: str, action) -> ActionResult:
        if self.busy:
            return failure_result(name, ActionInProgress("Another action is still in progress"))
        self.busy = True
        try:
            self.account = await _signer_ready(self.wallet, self.config)
            if self.invite is None:
                await self._read()
            value = await action()
            await self._reload(name)
        except Exception as e:
            return failure_result(name, e)
        finally:
            self.busy = False
        return ActionResult(ok=True, value=value)

    async def _reload(self, name: str) -> None:
        try:
            await self._read()
        except READ_ERRORS as e:
            # The write went through; a later load shows the new state
            print(f"[session] reload after {name} failed: {e}", file=sys.stderr)

    async def accept(self) -> ActionResult:
        """Accept the invite. Returns the spawned agreement id as the value."""
        async def action():
            check_accept(self.invite, self.spawned, self.account)
            return await self.client.accept_invite(self.invite.id)
        return await self._run("accept_invite", action)

    async def bail_out(self) -> ActionResult:
        async def action():
            check_bail_out(self.invite, self.spawned, self.account)
            return await self.client.bail_out_invite(self.invite.id)
        return await self._run("bail_out_invite", action)


# --- Usernames ---

async def check_username(client, raw: str, account: str = "") -> tuple[bool, str]:
    """Optimistic availability check. Returns (available, message)."""
    clean, error = normalize_username(raw)
    if error:
        return False, error
    owner = await client.get_address_by_username(clean)
    if owner is None or is_zero_address(owner) or same_address(owner, account):
        return True, ""
    return False, "Username already taken"


async def set_username(client, wallet, config, raw: str) -> ActionResult:
    try:
        clean, error = normalize_username(raw)
        if error:
            raise ValueError(error)
        account = await _signer_ready(wallet, config)
        available, message = await check_username(client, clean, account)
        if not available:
            raise UsernameTaken(message)
        try:
            await client.set_username(clean)
        except LedgerRejected as e:
            # Someone may have claimed it after the availability check
            if "already taken" in e.reason.lower():
                raise UsernameTaken("Username already taken") from e
            raise
    except Exception as e:
        return failure_result("set_username", e)
    return ActionResult(ok=True, value=clean)
