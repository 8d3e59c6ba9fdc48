from __future__ import annotations

"""
chamado_sync/core/incident_store.py: in-memory projection of every tracked incident.

The only mutation path is a full-state replacement coming from the server
(submit()). Events may be delivered from the transport thread or from tests;
they all go through one FIFO queue that is drained under the store lock, so
there is exactly one writer at a time and events apply in arrival order.

Ordering: the protocol carries no sequence numbers, so the store keeps the
last-write-wins behaviour of the service. An out-of-order push can move the
projection backwards; such regressions are logged and counted, not rejected.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from chamado_sync.core.types_runtime import IncidentState

log = logging.getLogger(__name__)

Listener = Callable[[Optional[IncidentState], IncidentState], None]


@dataclass
class StoreMetrics:
    applied: int = 0
    created: int = 0
    regressions: int = 0
    listener_errors: int = 0


class IncidentStore:
    def __init__(self, on_regression: Optional[Callable[[int, str], None]] = None) -> None:
        self._on_regression = on_regression
        self._lock = threading.RLock()
        self._states: Dict[int, IncidentState] = {}
        self._inbox: "queue.Queue[IncidentState]" = queue.Queue()
        self._listeners: List[Listener] = []
        self._corrections: Set[int] = set()
        self.metrics = StoreMetrics()

    # ---------- listeners ----------

    def add_listener(self, cb: Listener) -> None:
        with self._lock:
            if cb not in self._listeners:
                self._listeners.append(cb)

    def remove_listener(self, cb: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(cb)
            except ValueError:
                return

    # ---------- writes ----------

    def submit(self, state: IncidentState) -> None:
        """Enqueue a decoded server push and apply everything queued so far."""
        self._inbox.put(state)
        applied = []
        with self._lock:
            while True:
                try:
                    item = self._inbox.get_nowait()
                except queue.Empty:
                    break
                previous = self._states.get(item.incident_id)
                self._check_regression(previous, item)
                self._states[item.incident_id] = item
                self.metrics.applied += 1
                applied.append((previous, item))
            listeners = list(self._listeners)

        # listeners run outside the lock: they may read the store freely
        for previous, item in applied:
            for cb in listeners:
                try:
                    cb(previous, item)
                except Exception:
                    self.metrics.listener_errors += 1
                    log.exception("store listener failed for chamado=%s", item.incident_id)

    def ensure(self, incident_id: int) -> IncidentState:
        """Return the known state, creating an all-idle entry on first reference."""
        with self._lock:
            st = self._states.get(int(incident_id))
            if st is None:
                st = IncidentState.idle(int(incident_id))
                self._states[st.incident_id] = st
                self.metrics.created += 1
            return st

    def note_correction(self, incident_id: int) -> None:
        """Mark that a manual step-back was requested, so the next lower level is expected."""
        with self._lock:
            self._corrections.add(int(incident_id))

    def clear_correction(self, incident_id: int) -> None:
        with self._lock:
            self._corrections.discard(int(incident_id))

    def _check_regression(self, previous: Optional[IncidentState], current: IncidentState) -> None:
        if previous is None:
            return
        reason = None
        if previous.is_finalized and not current.is_finalized:
            reason = "finalized incident reported as open"
        else:
            before = previous.running_level()
            after = current.running_level()
            if before is not None and after is not None and after < before:
                if current.incident_id in self._corrections:
                    self._corrections.discard(current.incident_id)
                else:
                    reason = f"running level moved {before} -> {after}"
        if reason:
            self.metrics.regressions += 1
            log.warning("chamado=%s state regression accepted (last write wins): %s", current.incident_id, reason)
            if self._on_regression is not None:
                try:
                    self._on_regression(current.incident_id, reason)
                except Exception:
                    log.exception("regression callback failed")

    # ---------- reads ----------

    def get(self, incident_id: int) -> Optional[IncidentState]:
        with self._lock:
            return self._states.get(int(incident_id))

    def snapshot(self) -> Dict[int, IncidentState]:
        with self._lock:
            return dict(self._states)

    def running_level(self, incident_id: int) -> Optional[int]:
        st = self.get(incident_id)
        return st.running_level() if st is not None else None

    def is_finalized(self, incident_id: int) -> bool:
        st = self.get(incident_id)
        return bool(st is not None and st.is_finalized)

    def __contains__(self, incident_id: object) -> bool:
        with self._lock:
            return incident_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
