"""Reconciliation scheduler.

One AgreementSync per open agreement. Every refetch reads all of the fields
it covers (awaiting the whole fan-out) and then replaces them in one step;
nothing is merged field by field. Triggers:

  FAST      every 5s    agreement, milestones, cancel flags, dispute, funding
  SLOW      every 20s   discussion log and names
  AMBIENT   focus/visibility, skipped within 5s of the previous refetch
  EVENT     a DiscussionMessage log for this agreement
  EXPLICIT  user pressed refresh or an action settled; reads everything
            and failures propagate

Everything but EXPLICIT swallows read failures after logging them.

DashboardSync keeps a per-address cache of the viewer's agreements.
"""

import asyncio
import itertools
import sys
import time
from dataclasses import dataclass, field, replace

import httpx

from agreement import (
    Agreement, AgreementSnapshot, Hint, Milestone, render,
)
from errors import EscrowError
from identifiers import canonicalize_lenient, normalize_address, same_address, is_zero_address
from protocol import (
    AgreementState, Trigger, SILENT_TRIGGERS, HISTORY_STATES,
    FAST_REFETCH_INTERVAL, SLOW_REFETCH_INTERVAL, AMBIENT_MIN_INTERVAL,
    DASHBOARD_FOCUS_MIN_INTERVAL,
)

READ_ERRORS = (EscrowError, httpx.HTTPError, OSError, asyncio.TimeoutError)

_PRE_FUNDING = {AgreementState.DRAFT, AgreementState.SIGNED}


async def _load_milestone(client, cid: str, index: int) -> Milestone:
    (submitted, approved, submitted_at), description, comment = await asyncio.gather(
        client.get_milestone(cid, index),
        client.get_milestone_description(cid, index),
        client.get_milestone_comment(cid, index),
    )
    return Milestone(
        index=index,
        submitted=submitted,
        approved=approved,
        submitted_at=submitted_at,
        description=description,
        completion_comment=comment,
    )


async def load_snapshot(client, agreement_id, previous: AgreementSnapshot | None = None) -> AgreementSnapshot:
    """Read everything about one agreement, then build the snapshot.

    Discussion and names are carried over from `previous`; they belong to the
    slow cadence (see load_discussion). Raises NotFound for an unknown id.
    """
    cid = canonicalize_lenient(agreement_id)
    agreement = await client.get_agreement(cid)

    async def nothing(default):
        return default

    reads = [
        asyncio.gather(*[_load_milestone(client, cid, i) for i in range(agreement.milestone_count)]),
        client.get_cancel_requested(cid),
        client.get_contract_creator(cid),
        client.get_dispute_info(cid) if agreement.state == AgreementState.DISPUTED else nothing(None),
        client.get_required_fund_amount(cid) if agreement.state in _PRE_FUNDING else nothing(0),
    ]
    milestones, cancel, creator, dispute, required = await asyncio.gather(*reads)
    return AgreementSnapshot(
        agreement=agreement,
        milestones=tuple(milestones),
        cancel=cancel,
        dispute=dispute,
        required_fund_amount=required,
        creator=creator or "",
        messages=previous.messages if previous is not None else (),
        names=previous.names if previous is not None else {},
    )


async def load_discussion(client, snapshot: AgreementSnapshot) -> AgreementSnapshot:
    """Replace the discussion log and the name map of a snapshot."""
    messages = await client.get_discussion_messages(snapshot.id)
    a = snapshot.agreement
    names = await client.get_usernames([a.client, a.developer] + [m.sender for m in messages])
    return replace(snapshot, messages=tuple(messages), names=names)


class AgreementSync:
    """Keeps one agreement's projection current."""

    def __init__(self, client, agreement_id, viewer_address: str = "", resolver_address: str = "",
                 clock=time.monotonic):
        self.client = client
        self.agreement_id = canonicalize_lenient(agreement_id)
        self.viewer_address = viewer_address
        self.resolver_address = resolver_address or getattr(client, "resolver_address", "")
        self.clock = clock
        self.snapshot: AgreementSnapshot | None = None
        self.hint: Hint | None = None
        self.is_arbitrator = False
        self.last_error: Exception | None = None
        self._seq = itertools.count(1)
        self._hint_seq = 0
        self._last_fetch: float | None = None
        self._listeners = []
        self._tasks: list[asyncio.Task] = []
        self._unsubscribe = None

    @property
    def view(self) -> AgreementSnapshot | None:
        return render(self.snapshot, self.hint)

    def on_update(self, callback) -> None:
        self._listeners.append(callback)

    def apply_hint(self, hint: Hint) -> None:
        """Overlay the expected effect of a write that just succeeded."""
        self.hint = hint if self.hint is None else self.hint.merged(hint)
        self._hint_seq = next(self._seq)
        self._notify()

    def _notify(self) -> None:
        view = self.view
        for cb in list(self._listeners):
            cb(view)

    def _commit(self, snapshot: AgreementSnapshot, started: int,
                covers_agreement: bool, covers_discussion: bool) -> None:
        self.snapshot = snapshot
        # A hint applied while this read was in flight may not be reflected yet
        if self.hint is not None and self._hint_seq < started:
            hint = self.hint
            if covers_agreement:
                hint = hint.messages_only()
            if covers_discussion:
                hint = hint.without_messages()
            self.hint = None if hint.is_empty() else hint
        self._notify()

    async def refresh(self, trigger: Trigger = Trigger.EXPLICIT) -> AgreementSnapshot | None:
        now = self.clock()
        if (trigger == Trigger.AMBIENT and self._last_fetch is not None
                and now - self._last_fetch < AMBIENT_MIN_INTERVAL):
            return None
        self._last_fetch = now
        started = next(self._seq)
        first = self.snapshot is None
        covers_agreement = first or trigger not in (Trigger.SLOW, Trigger.EVENT)
        covers_discussion = first or trigger in (Trigger.SLOW, Trigger.EVENT, Trigger.EXPLICIT)
        try:
            if covers_agreement:
                snapshot = await load_snapshot(self.client, self.agreement_id, self.snapshot)
                await self._refresh_arbitrator(snapshot)
            else:
                snapshot = self.snapshot
            if covers_discussion:
                snapshot = await load_discussion(self.client, snapshot)
        except READ_ERRORS as e:
            self.last_error = e
            if trigger in SILENT_TRIGGERS:
                print(f"[sync] {trigger.value} refetch of {self.agreement_id[:10]} failed: {e}",
                      file=sys.stderr)
                return None
            raise
        # Each cadence replaces only its own fields; the rest come from the current snapshot
        if not first and not covers_agreement:
            snapshot = replace(self.snapshot, messages=snapshot.messages, names=snapshot.names)
        elif not first and not covers_discussion:
            snapshot = replace(snapshot, messages=self.snapshot.messages, names=self.snapshot.names)
        self.last_error = None
        self._commit(snapshot, started, covers_agreement, covers_discussion)
        return snapshot

    async def _refresh_arbitrator(self, snapshot: AgreementSnapshot) -> None:
        dispute = snapshot.dispute
        if (dispute is not None and self.viewer_address and self.resolver_address
                and same_address(dispute.judge, self.resolver_address)):
            self.is_arbitrator = await self.client.is_arbitrator(self.viewer_address)
        else:
            self.is_arbitrator = False

    async def ambient(self) -> AgreementSnapshot | None:
        """Window focus / page visible."""
        return await self.refresh(Trigger.AMBIENT)

    async def _interval(self, trigger: Trigger, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            try:
                await self.refresh(trigger)
            except Exception as e:
                # Keep polling; the next tick may read a well-formed state
                self.last_error = e
                print(f"[sync] {trigger.value} refetch of {self.agreement_id[:10]} crashed: {e!r}",
                      file=sys.stderr)

    def _on_discussion_event(self, _entry) -> None:
        self._tasks.append(asyncio.ensure_future(self.refresh(Trigger.EVENT)))
        self._tasks = [t for t in self._tasks if not t.done()]

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.ensure_future(self._interval(Trigger.FAST, FAST_REFETCH_INTERVAL)),
            asyncio.ensure_future(self._interval(Trigger.SLOW, SLOW_REFETCH_INTERVAL)),
        ]
        self._unsubscribe = self.client.subscribe_discussion(self.agreement_id, self._on_discussion_event)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# --- Dashboard ---

@dataclass
class DashboardView:
    address: str
    rows: list[Agreement] = field(default_factory=list)   # newest first
    placeholders: set[str] = field(default_factory=set)
    names: dict[str, str] = field(default_factory=dict)
    fetched_at: float = 0.0

    @property
    def active(self) -> list[Agreement]:
        return [a for a in self.rows if a.state not in HISTORY_STATES]

    @property
    def history(self) -> list[Agreement]:
        return [a for a in self.rows if a.state in HISTORY_STATES]

    @property
    def total_in_escrow(self) -> int:
        return sum(a.balance for a in self.active)


class DashboardSync:
    """Per-address cache of dashboard rows, refreshed on demand and on focus."""

    def __init__(self, client, clock=time.monotonic):
        self.client = client
        self.clock = clock
        self._cache: dict[str, DashboardView] = {}

    def cached(self, address: str) -> DashboardView | None:
        return self._cache.get(normalize_address(address))

    def forget(self, address: str) -> None:
        self._cache.pop(normalize_address(address), None)

    async def _read_row(self, agreement_id: str) -> tuple[Agreement, bool]:
        try:
            return await self.client.get_agreement(agreement_id), False
        except READ_ERRORS as e:
            print(f"[sync] dashboard row {agreement_id[:10]} unreadable: {e}", file=sys.stderr)
            return Agreement.placeholder(agreement_id), True

    async def refresh(self, address: str, trigger: Trigger = Trigger.EXPLICIT) -> DashboardView | None:
        key = normalize_address(address)
        cached = self._cache.get(key)
        now = self.clock()
        if (trigger == Trigger.AMBIENT and cached is not None
                and now - cached.fetched_at < DASHBOARD_FOCUS_MIN_INTERVAL):
            return cached
        try:
            ids = await self.client.get_contract_ids_for_user(address)
            results = await asyncio.gather(*[self._read_row(i) for i in ids])
            rows = [a for a, _ in reversed(results)]
            placeholders = {a.id for a, failed in results if failed}
            parties = [p for a in rows for p in (a.client, a.developer) if not is_zero_address(p)]
            names = await self.client.get_usernames(parties)
        except READ_ERRORS as e:
            if trigger in SILENT_TRIGGERS:
                print(f"[sync] dashboard refetch for {address} failed: {e}", file=sys.stderr)
                return cached
            raise
        view = DashboardView(address=address, rows=rows, placeholders=placeholders,
                             names=names, fetched_at=self.clock())
        self._cache[key] = view
        return view
