from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from chamado_sync.core.types_runtime import IncidentState

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingTransition:
    """
    Local marker for a transition dispatched but not yet reflected by the server.

    Compound transitions are several independent sends; when one of them
    fails the marker stays with partial=True until a fresh server push
    shows the expected outcome.
    """
    incident_id: int
    kind: str
    cid: str
    planned: int
    sent: int = 0
    target_level: Optional[int] = None
    finalizes: bool = False
    ts: float = field(default_factory=time.time)

    @property
    def partial(self) -> bool:
        return 0 < self.sent < self.planned

    def satisfied_by(self, state: IncidentState) -> bool:
        if self.finalizes:
            return state.is_finalized
        if self.target_level is not None:
            return state.running_level() == self.target_level
        # single edits (annotation/operator) are confirmed by any fresh push
        return True

    def to_dict(self) -> Dict[str, object]:
        return {
            "chamado": self.incident_id,
            "kind": self.kind,
            "cid": self.cid,
            "planned": self.planned,
            "sent": self.sent,
            "partial": self.partial,
            "target_level": self.target_level,
            "finalizes": self.finalizes,
            "ts": self.ts,
        }


class PendingTransitions:
    """One marker per incident; the latest dispatch replaces an older one."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: Dict[int, PendingTransition] = {}

    def begin(self, marker: PendingTransition) -> Optional[PendingTransition]:
        """Install marker; returns the one it replaced, if any."""
        with self._lock:
            old = self._items.get(marker.incident_id)
            if old is not None:
                log.info("chamado=%s: %s superseded by %s before server confirmation", marker.incident_id, old.kind, marker.kind)
            self._items[marker.incident_id] = marker
        return old

    def record_sent(self, incident_id: int, cid: str) -> Optional[PendingTransition]:
        with self._lock:
            cur = self._items.get(int(incident_id))
            if cur is None or cur.cid != cid:
                return cur
            cur = replace(cur, sent=cur.sent + 1)
            self._items[cur.incident_id] = cur
            return cur

    def restore(self, incident_id: int, cid: str, previous: Optional[PendingTransition]) -> None:
        """Undo begin() for marker cid, putting back the marker it replaced."""
        with self._lock:
            cur = self._items.get(int(incident_id))
            if cur is None or cur.cid != cid:
                return
            if previous is None:
                del self._items[cur.incident_id]
            else:
                self._items[cur.incident_id] = previous

    def resolve(self, state: IncidentState) -> Optional[PendingTransition]:
        """Drop the marker if the pushed state shows its expected outcome."""
        with self._lock:
            cur = self._items.get(state.incident_id)
            if cur is None or not cur.satisfied_by(state):
                return None
            del self._items[state.incident_id]
        log.debug("chamado=%s: %s confirmed by server", state.incident_id, cur.kind)
        return cur

    def get(self, incident_id: int) -> Optional[PendingTransition]:
        with self._lock:
            return self._items.get(int(incident_id))

    def all(self) -> List[PendingTransition]:
        with self._lock:
            return list(self._items.values())

    def partial(self) -> List[PendingTransition]:
        return [p for p in self.all() if p.partial]
