"""Timeline reconciliation: authoritative snapshots folded with optimistic sends.

Everything here is a pure function of ``(state, input, now)``; the session
owns the I/O and the timers. Each operation returns a new ``TimelineState``
plus whether the rendered timeline changed.

Rendering rules:

* The rendered timeline is the adopted snapshot plus the optimistic entries
  that no snapshot message has claimed yet, sorted by timestamp. The sort is
  stable, so ties keep arrival order (snapshot order, then send order).
* An optimistic entry is claimed by the snapshot message with its server id
  or, failing that, by the earliest unclaimed message with the same sender,
  content and attachment set whose timestamp lies within the tolerance
  window of the send. Entries are matched in send order.
* Messages this client sent get a simulated ``sent -> delivered -> read``
  progression from the moment the server confirmed them. An authoritative
  status is never lowered by the simulation, and once the server reports
  delivered or read the simulation for that message stops.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
import logging
from typing import Any

from .models import Message, MessageStatus

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingSend:
    """An optimistic message not yet claimed by an authoritative snapshot."""

    local_id: str
    message: Message
    sent_at: datetime
    # Snapshot ids visible when the message was composed; none can confirm it.
    baseline_ids: frozenset[str] = frozenset()
    server_id: str | None = None
    ticks: int = 0
    stalled: bool = False


@dataclass(frozen=True)
class TimelineState:
    messages: tuple[Message, ...] = ()
    snapshot: tuple[Message, ...] = ()
    pending: tuple[PendingSend, ...] = ()
    # server id -> instant the send was confirmed; drives simulated progression.
    acknowledged: Mapping[str, datetime] = field(default_factory=dict)
    # server id -> highest status the backend has reported for it.
    status_floor: Mapping[str, MessageStatus] = field(default_factory=dict)
    claimed: frozenset[str] = frozenset()
    loaded: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    state: TimelineState
    changed: bool
    # Messages that entered the timeline, not counting confirmations of
    # entries that were already shown optimistically.
    added: tuple[Message, ...] = ()


def _snapshot_diverges(previous: tuple[Message, ...], current: tuple[Message, ...]) -> bool:
    if len(previous) != len(current):
        return True
    for old, new in zip(previous, current):
        if (
            old.id != new.id
            or old.status != new.status
            or old.content != new.content
            or old.timestamp != new.timestamp
        ):
            return True
    return False


class TimelineReconciler:
    """Reducer over ``{snapshot, pending}`` producing the rendered timeline."""

    def __init__(
        self,
        *,
        tolerance_seconds: float = 10.0,
        max_unmatched_ticks: int = 5,
        delivered_delay_seconds: float = 0.5,
        read_delay_seconds: float = 1.5,
    ) -> None:
        self.tolerance = timedelta(seconds=tolerance_seconds)
        self.max_unmatched_ticks = max_unmatched_ticks
        self.delivered_delay = timedelta(seconds=delivered_delay_seconds)
        self.read_delay = timedelta(seconds=read_delay_seconds)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> TimelineReconciler:
        reconcile_cfg = config.get("reconcile", {})
        return cls(
            tolerance_seconds=float(reconcile_cfg.get("tolerance_seconds", 10.0)),
            max_unmatched_ticks=int(reconcile_cfg.get("max_unmatched_ticks", 5)),
            delivered_delay_seconds=float(
                reconcile_cfg.get("delivered_delay_seconds", 0.5)
            ),
            read_delay_seconds=float(reconcile_cfg.get("read_delay_seconds", 1.5)),
        )

    # -- operations ---------------------------------------------------------

    def append_optimistic(
        self, state: TimelineState, message: Message, now: datetime
    ) -> ReconcileResult:
        """Show a just-composed message immediately under its temporary id."""
        entry = PendingSend(
            local_id=message.id,
            message=message,
            sent_at=now,
            baseline_ids=frozenset(m.id for m in state.snapshot),
        )
        return self._rerender(state, replace(state, pending=state.pending + (entry,)), now)

    def acknowledge(
        self,
        state: TimelineState,
        local_id: str,
        confirmed: Message,
        now: datetime,
    ) -> ReconcileResult:
        """Adopt the server id and status returned by a successful send."""
        acknowledged = dict(state.acknowledged)
        if confirmed.status.rank < MessageStatus.DELIVERED.rank:
            acknowledged.setdefault(confirmed.id, now)
        claimed = state.claimed | {confirmed.id}

        pending: list[PendingSend] = []
        snapshot_ids = {m.id for m in state.snapshot}
        for entry in state.pending:
            if entry.local_id != local_id:
                pending.append(entry)
                continue
            if confirmed.id in snapshot_ids:
                # A poll already delivered it; the optimistic copy is redundant.
                continue
            message = confirmed
            if not confirmed.attachments and entry.message.attachments:
                message = confirmed.model_copy(
                    update={"attachments": entry.message.attachments}
                )
            if message.status.rank < MessageStatus.SENT.rank:
                message = message.with_status(MessageStatus.SENT)
            pending.append(replace(entry, message=message, server_id=confirmed.id))

        new_state = replace(
            state,
            pending=tuple(pending),
            acknowledged=acknowledged,
            claimed=claimed,
        )
        return self._rerender(state, new_state, now)

    def discard(
        self, state: TimelineState, local_id: str, now: datetime
    ) -> ReconcileResult:
        """Drop the optimistic entry of a failed send."""
        pending = tuple(e for e in state.pending if e.local_id != local_id)
        if len(pending) == len(state.pending):
            return ReconcileResult(state, changed=False)
        return self._rerender(state, replace(state, pending=pending), now)

    def reconcile(
        self,
        state: TimelineState,
        snapshot: Iterable[Message],
        now: datetime,
    ) -> ReconcileResult:
        """Merge one polled snapshot into the timeline."""
        current = tuple(snapshot)
        if state.loaded and not _snapshot_diverges(state.snapshot, current):
            # No-op poll: keep the rendered timeline as is.
            pending = tuple(self._tick(entry) for entry in state.pending)
            return ReconcileResult(replace(state, pending=pending), changed=False)

        status_floor = dict(state.status_floor)
        acknowledged = dict(state.acknowledged)
        for message in current:
            floor = status_floor.get(message.id)
            if floor is None or message.status.rank > floor.rank:
                status_floor[message.id] = message.status
            if message.status.rank >= MessageStatus.DELIVERED.rank:
                acknowledged.pop(message.id, None)

        pending, claimed, folded = self._fold(state, current, acknowledged, now)
        new_state = replace(
            state,
            snapshot=current,
            pending=pending,
            acknowledged=acknowledged,
            status_floor=status_floor,
            claimed=claimed,
            loaded=True,
        )
        messages = self._render(new_state, now)
        new_state = replace(new_state, messages=messages)
        previous_ids = {m.id for m in state.messages}
        added = tuple(
            m for m in messages if m.id not in previous_ids and m.id not in folded
        )
        return ReconcileResult(new_state, changed=True, added=added)

    def refresh(self, state: TimelineState, now: datetime) -> ReconcileResult:
        """Re-render so simulated status progression becomes visible."""
        return self._rerender(state, state, now)

    # -- status simulation --------------------------------------------------

    def simulated_status(self, acknowledged_at: datetime, now: datetime) -> MessageStatus:
        elapsed = now - acknowledged_at
        if elapsed >= self.read_delay:
            return MessageStatus.READ
        if elapsed >= self.delivered_delay:
            return MessageStatus.DELIVERED
        return MessageStatus.SENT

    def next_refresh_at(self, state: TimelineState, now: datetime) -> datetime | None:
        """Earliest future instant at which a simulated status advances."""
        upcoming = [
            moment
            for acked_at in state.acknowledged.values()
            for moment in (acked_at + self.delivered_delay, acked_at + self.read_delay)
            if moment > now
        ]
        return min(upcoming) if upcoming else None

    # -- internals ----------------------------------------------------------

    def _fold(
        self,
        state: TimelineState,
        snapshot: tuple[Message, ...],
        acknowledged: dict[str, datetime],
        now: datetime,
    ) -> tuple[tuple[PendingSend, ...], frozenset[str], set[str]]:
        by_id = {m.id: m for m in snapshot}
        candidates = sorted(snapshot, key=lambda m: m.timestamp)
        claimed = set(state.claimed)
        folded: set[str] = set()
        remaining: list[PendingSend] = []

        for entry in state.pending:
            match: Message | None = None
            if entry.server_id is not None and entry.server_id in by_id:
                match = by_id[entry.server_id]
            else:
                for candidate in candidates:
                    if candidate.id in claimed or candidate.id in entry.baseline_ids:
                        continue
                    if self._same_logical_message(entry, candidate):
                        match = candidate
                        break

            if match is None:
                remaining.append(self._tick(entry))
                continue

            claimed.add(match.id)
            folded.add(match.id)
            if match.status.rank < MessageStatus.DELIVERED.rank:
                acknowledged.setdefault(match.id, now)
            LOGGER.debug(
                "reconciler.pending.folded",
                extra={
                    "event": "reconciler.pending.folded",
                    "local_id": entry.local_id,
                    "server_id": match.id,
                },
            )

        return tuple(remaining), frozenset(claimed), folded

    def _same_logical_message(self, entry: PendingSend, candidate: Message) -> bool:
        local = entry.message
        return (
            candidate.sender_id == local.sender_id
            and candidate.content == local.content
            and candidate.attachment_key() == local.attachment_key()
            and abs(candidate.timestamp - entry.sent_at) <= self.tolerance
        )

    def _tick(self, entry: PendingSend) -> PendingSend:
        ticks = entry.ticks + 1
        stalled = entry.stalled or ticks >= self.max_unmatched_ticks
        if stalled and not entry.stalled:
            LOGGER.warning(
                "reconciler.pending.stalled",
                extra={
                    "event": "reconciler.pending.stalled",
                    "local_id": entry.local_id,
                    "server_id": entry.server_id,
                    "ticks": ticks,
                },
            )
        return replace(entry, ticks=ticks, stalled=stalled)

    def _effective(self, message: Message, state: TimelineState, now: datetime) -> Message:
        status = message.status
        floor = state.status_floor.get(message.id)
        if floor is not None and floor.rank > status.rank:
            status = floor
        acked_at = state.acknowledged.get(message.id)
        if acked_at is not None:
            simulated = self.simulated_status(acked_at, now)
            if simulated.rank > status.rank:
                status = simulated
        return message.with_status(status)

    def _render(self, state: TimelineState, now: datetime) -> tuple[Message, ...]:
        rendered = [self._effective(m, state, now) for m in state.snapshot]
        seen = {m.id for m in rendered}
        for entry in state.pending:
            message = entry.message
            if message.id in seen:
                continue
            seen.add(message.id)
            if entry.server_id is not None:
                message = self._effective(message, state, now)
            rendered.append(message)
        rendered.sort(key=lambda m: m.timestamp)
        return tuple(rendered)

    def _rerender(
        self, previous: TimelineState, state: TimelineState, now: datetime
    ) -> ReconcileResult:
        messages = self._render(state, now)
        return ReconcileResult(
            replace(state, messages=messages), changed=messages != previous.messages
        )
