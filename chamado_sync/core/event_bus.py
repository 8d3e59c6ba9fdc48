from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, List
from collections import defaultdict
import logging
import threading
import time
import uuid

log = logging.getLogger(__name__)

# event types published by the client
EVT_INCIDENT_UPDATE = "INCIDENT_UPDATE"
EVT_CONNECTIVITY = "CONNECTIVITY"
EVT_TRANSITION_SENT = "TRANSITION_SENT"
EVT_TRANSITION_REJECTED = "TRANSITION_REJECTED"
EVT_TRANSITION_PARTIAL = "TRANSITION_PARTIAL"
EVT_REGRESSION = "REGRESSION"


@dataclass(frozen=True)
class Event:
    """
    Core-owned event envelope.
    - type: short uppercase string (e.g. INCIDENT_UPDATE, CONNECTIVITY)
    - ts: unix seconds
    - cid: correlation id for tracing a user action end-to-end
    - actor: who caused it (ui/server/transport/system)
    - payload: JSON-serializable dict
    """
    type: str
    ts: float
    cid: str
    actor: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": str(self.type),
            "ts": float(self.ts),
            "cid": str(self.cid),
            "actor": str(self.actor),
            "payload": dict(self.payload or {}),
        }


Callback = Callable[[Event], None]


class EventBus:
    """
    Minimal in-process synchronous pub/sub bus.

    Guarantees:
    - publish() never raises
    - subscriber errors are isolated (logged)
    - thread-safe subscribe/unsubscribe/publish

    One bus per client; there is no process-wide instance.
    """
    def __init__(self) -> None:
        self._subs: DefaultDict[str, List[Callback]] = defaultdict(list)
        self._lock = threading.RLock()

    def subscribe(self, event_type: str, cb: Callback) -> None:
        with self._lock:
            lst = self._subs[str(event_type)]
            if cb in lst:
                return
            lst.append(cb)

    def unsubscribe(self, event_type: str, cb: Callback) -> None:
        with self._lock:
            lst = self._subs.get(str(event_type))
            if not lst:
                return
            try:
                lst.remove(cb)
            except ValueError:
                return

    def publish(self, event: Event) -> None:
        with self._lock:
            callbacks = list(self._subs.get(str(event.type), ())) + list(self._subs.get("*", ()))
        for cb in callbacks:
            try:
                cb(event)
            except Exception:
                log.exception("event subscriber failed for %s", event.type)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {k: len(v) for k, v in self._subs.items()}


def new_cid() -> str:
    return uuid.uuid4().hex


def make_event(event_type: str, payload: Dict[str, Any] | None = None, *, actor: str = "system", cid: str | None = None) -> Event:
    return Event(
        type=str(event_type).upper(),
        ts=float(time.time()),
        cid=str(cid or new_cid()),
        actor=str(actor),
        payload=dict(payload or {}),
    )
