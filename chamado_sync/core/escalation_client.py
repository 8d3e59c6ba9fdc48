from __future__ import annotations

"""
chamado_sync/core/escalation_client.py: composition root of the sync client.

One EscalationClient owns its bus, store, transport session, watch registry,
countdown projector and pending-transition table. Nothing is global, so two
clients (e.g. in tests) never share state.

Flow:
    watch() -> get_state per id -> server pushes -> store -> INCIDENT_UPDATE
    start()/escalate()/... -> policy -> commands sent back-to-back -> server
    pushes the result -> store -> pending marker cleared

User actions are complete once every command has been handed to the
transport; confirmation arrives later as an ordinary push.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from chamado_sync.core import escalation_policy as policy
from chamado_sync.core.command_codec import Command, GetState, describe_commands
from chamado_sync.core.config import ClientConfig
from chamado_sync.core.countdown import CountdownProjector, format_time, level_progress, urgency
from chamado_sync.core.event_bus import (
    EVT_INCIDENT_UPDATE,
    EVT_REGRESSION,
    EVT_TRANSITION_PARTIAL,
    EVT_TRANSITION_REJECTED,
    EVT_TRANSITION_SENT,
    EventBus,
    make_event,
    new_cid,
)
from chamado_sync.core.incident_store import IncidentStore
from chamado_sync.core.pending_transitions import PendingTransition, PendingTransitions
from chamado_sync.core.types_runtime import IncidentState
from chamado_sync.core.watch_registry import WatchRegistry

log = logging.getLogger(__name__)

SEND_FAILED = "SEND_FAILED"


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a user action as seen by the caller.

    ok is True once every command of the action was handed to the transport;
    it does not mean the server has applied it.
    """
    ok: bool
    kind: str
    incident_id: int
    reasons: List[str] = field(default_factory=list)
    message: str = ""
    sent: int = 0
    planned: int = 0
    partial: bool = False
    cid: str = ""


@dataclass(frozen=True)
class ResyncReport:
    requested: Dict[int, bool]
    partial: List[PendingTransition]


@dataclass(frozen=True)
class IncidentView:
    """Row summary for the presentation layer."""
    incident_id: int
    finalized: bool
    running_level: Optional[int]
    remaining: int
    display: str
    urgency: str
    operator: Optional[str]
    can_start: bool
    progress: Dict[int, str]
    pending: Optional[str]


class EscalationClient:
    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Optional[Any] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self.store = IncidentStore(on_regression=self._on_regression)
        self.pending = PendingTransitions()

        if transport is None:
            from chamado_sync.feeds.incident_ws import IncidentFeedThread

            transport = IncidentFeedThread(
                config.url,
                reconnect_delay_s=config.reconnect_delay_s,
                ping_interval_s=config.ping_interval_s,
                ping_timeout_s=config.ping_timeout_s,
                trace=config.trace,
                insecure_ssl=config.insecure_ssl,
                bus=self.bus,
            )
        self.transport = transport
        self.registry = WatchRegistry(self._send)
        self.countdown = CountdownProjector(self.store)

        self._timers_lock = threading.Lock()
        self._timers: List[threading.Timer] = []

        self.transport.subscribe(self.store.submit)
        self.store.add_listener(self._on_applied)

    # ---------- lifecycle ----------

    def connect(self) -> None:
        self.transport.connect()

    def close(self) -> None:
        with self._timers_lock:
            timers, self._timers = self._timers, []
        for t in timers:
            t.cancel()
        self.transport.close()

    @property
    def is_connected(self) -> bool:
        return bool(self.transport.is_connected)

    def on_connectivity(self, cb: Callable[[bool], None]) -> None:
        self.transport.on_connectivity(cb)

    # ---------- reads ----------

    def incidents(self) -> Dict[int, IncidentState]:
        return self.store.snapshot()

    def incident(self, incident_id: int) -> Optional[IncidentState]:
        return self.store.get(incident_id)

    def remaining(self, incident_id: int, level: Optional[int] = None) -> int:
        return self.countdown.remaining(incident_id, level)

    @staticmethod
    def format_time(seconds: float) -> str:
        return format_time(seconds)

    def describe(self, incident_id: int) -> IncidentView:
        state = self.store.get(incident_id) or IncidentState.idle(incident_id)
        remaining = self.countdown.remaining(incident_id)
        marker = self.pending.get(incident_id)
        return IncidentView(
            incident_id=state.incident_id,
            finalized=state.is_finalized,
            running_level=state.running_level(),
            remaining=remaining,
            display=format_time(remaining),
            urgency=urgency(remaining),
            operator=state.operator,
            can_start=self.is_connected and policy.plan_start(state).allow,
            progress=level_progress(state),
            pending=marker.kind if marker is not None else None,
        )

    def health(self) -> Dict[str, Any]:
        stats = getattr(self.transport, "stats", None)
        hb = getattr(self.transport, "heartbeats", None)
        return {
            "connected": self.is_connected,
            "transport": stats() if callable(stats) else {},
            "heartbeats": hb.snapshot() if hb is not None else {},
            "store": asdict(self.store.metrics),
            "bus": self.bus.stats(),
            "tracked": len(self.store),
            "watched": len(self.registry),
            "pending": [p.to_dict() for p in self.pending.all()],
        }

    # ---------- watch set ----------

    def watch(self, incident_ids: Iterable[int]) -> Dict[int, bool]:
        ids = [int(n) for n in incident_ids]
        for n in ids:
            if n > 0:
                self.store.ensure(n)
        return self.registry.replace(ids)

    def resync(self) -> ResyncReport:
        """Re-request every watched id plus every incident with a pending marker."""
        requested = self.registry.request_all()
        for marker in self.pending.all():
            if marker.incident_id not in requested:
                requested[marker.incident_id] = self._send(GetState(marker.incident_id))
        partial = self.pending.partial()
        for marker in partial:
            log.warning(
                "chamado=%s: %s only partially sent (%d/%d), waiting for server state",
                marker.incident_id, marker.kind, marker.sent, marker.planned,
            )
        return ResyncReport(requested=requested, partial=partial)

    # ---------- user actions ----------

    def start(self, incident_id: int) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_start(state, duration=self.config.level_duration_s), incident_id)

    def escalate(self, incident_id: int, annotation: str) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_escalate(
            state, annotation,
            duration=self.config.level_duration_s,
            min_chars=self.config.min_annotation_chars,
        ), incident_id)

    def step_back(self, incident_id: int, annotation: str) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_step_back(
            state, annotation,
            duration=self.config.level_duration_s,
            min_chars=self.config.min_annotation_chars,
        ), incident_id)

    def resolve_now(self, incident_id: int, annotation: str) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_resolve_now(
            state, annotation, min_chars=self.config.min_annotation_chars,
        ), incident_id)

    def update_annotation(self, incident_id: int, level: int, text: str) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_annotation_update(state, level, text), incident_id)

    def update_operator(self, incident_id: int, name: str) -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_operator_update(state, name), incident_id)

    def save_notes(self, incident_id: int, annotation: str = "", operator: str = "") -> TransitionResult:
        state = self.store.ensure(incident_id)
        return self._dispatch(policy.plan_notes_update(state, annotation, operator), incident_id)

    # ---------- internals ----------

    def _send(self, cmd: Command) -> bool:
        return bool(self.transport.send(cmd))

    def _message(self, reasons: List[str]) -> str:
        parts = []
        for code in reasons:
            if code == SEND_FAILED:
                parts.append("not connected; the action was not (fully) sent")
            else:
                parts.append(policy.human_reason(code, min_chars=self.config.min_annotation_chars))
        return "; ".join(parts)

    def _dispatch(self, decision: policy.TransitionDecision, incident_id: int) -> TransitionResult:
        incident_id = int(incident_id)
        cid = new_cid()

        if not decision.allow:
            log.info("chamado=%s %s rejected: %s", incident_id, decision.kind, ",".join(decision.reasons))
            self.bus.publish(make_event(
                EVT_TRANSITION_REJECTED,
                {"chamado": incident_id, "kind": decision.kind, "reasons": list(decision.reasons)},
                actor="ui",
                cid=cid,
            ))
            return TransitionResult(
                ok=False,
                kind=decision.kind,
                incident_id=incident_id,
                reasons=list(decision.reasons),
                message=self._message(decision.reasons),
                cid=cid,
            )

        planned = len(decision.commands)
        marker = PendingTransition(
            incident_id=incident_id,
            kind=decision.kind,
            cid=cid,
            planned=planned,
            target_level=decision.target_level,
            finalizes=decision.finalizes,
        )

        superseded = self.pending.begin(marker)
        sent = 0
        for i, cmd in enumerate(decision.commands):
            last = i == planned - 1
            if decision.kind == policy.STEP_BACK and last:
                # the lower level may be pushed before send() returns
                self.store.note_correction(incident_id)
            if not self._send(cmd):
                if decision.kind == policy.STEP_BACK and last:
                    self.store.clear_correction(incident_id)
                break
            sent += 1
            self.pending.record_sent(incident_id, cid)

        labels = describe_commands(decision.commands)
        if sent == planned:
            log.info("chamado=%s %s dispatched: %s", incident_id, decision.kind, labels)
            self.bus.publish(make_event(
                EVT_TRANSITION_SENT,
                {"chamado": incident_id, "kind": decision.kind, "commands": labels},
                actor="ui",
                cid=cid,
            ))
            self._schedule_confirm(incident_id)
            return TransitionResult(
                ok=True, kind=decision.kind, incident_id=incident_id,
                sent=sent, planned=planned, cid=cid,
            )

        if sent == 0:
            # nothing reached the wire: an older (possibly partial) marker stays visible
            self.pending.restore(incident_id, cid, superseded)
        else:
            log.warning(
                "chamado=%s %s partially sent (%d/%d): %s",
                incident_id, decision.kind, sent, planned, labels,
            )
            self.bus.publish(make_event(
                EVT_TRANSITION_PARTIAL,
                {"chamado": incident_id, "kind": decision.kind, "sent": sent, "planned": planned, "commands": labels},
                actor="ui",
                cid=cid,
            ))
        return TransitionResult(
            ok=False,
            kind=decision.kind,
            incident_id=incident_id,
            reasons=[SEND_FAILED],
            message=self._message([SEND_FAILED]),
            sent=sent,
            planned=planned,
            partial=sent > 0,
            cid=cid,
        )

    def _schedule_confirm(self, incident_id: int) -> None:
        delay = float(self.config.confirm_delay_s)
        if delay <= 0:
            return
        t = threading.Timer(delay, self._confirm, args=(incident_id,))
        t.daemon = True
        with self._timers_lock:
            self._timers = [x for x in self._timers if x.is_alive()]
            self._timers.append(t)
        t.start()

    def _confirm(self, incident_id: int) -> None:
        self._send(GetState(incident_id))

    def _on_applied(self, previous: Optional[IncidentState], current: IncidentState) -> None:
        self.pending.resolve(current)
        self.bus.publish(make_event(
            EVT_INCIDENT_UPDATE,
            {"chamado": current.incident_id, "state": current.to_dict()},
            actor="server",
        ))

    def _on_regression(self, incident_id: int, reason: str) -> None:
        self.bus.publish(make_event(
            EVT_REGRESSION,
            {"chamado": incident_id, "reason": reason},
            actor="server",
        ))
