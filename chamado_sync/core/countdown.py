from __future__ import annotations

from typing import Dict, Optional

from chamado_sync.core.incident_store import IncidentStore
from chamado_sync.core.types_runtime import LEVELS, IncidentState, LevelStatus


WARNING_THRESHOLD_S = 300

URGENCY_NORMAL = "normal"
URGENCY_WARNING = "warning"
URGENCY_EXPIRED = "expired"

PROGRESS_COMPLETED = "completed"
PROGRESS_ACTIVE = "active"
PROGRESS_PENDING = "pending"


def format_time(seconds: float) -> str:
    """Seconds -> 'MM:SS'; anything non-positive is '00:00'. Minutes may exceed 99."""
    try:
        total = int(seconds)
    except (TypeError, ValueError, OverflowError):
        return "00:00"
    if total <= 0:
        return "00:00"
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


def urgency(seconds: float, warning_s: int = WARNING_THRESHOLD_S) -> str:
    if seconds <= 0:
        return URGENCY_EXPIRED
    if seconds <= warning_s:
        return URGENCY_WARNING
    return URGENCY_NORMAL


def level_progress(state: Optional[IncidentState]) -> Dict[int, str]:
    """Per-level progress relative to the running level (for the escalation ladder view)."""
    out = {n: PROGRESS_PENDING for n in LEVELS}
    if state is None:
        return out
    current = state.running_level()
    for n in LEVELS:
        status = state.level(n).status
        if current is not None and n == current:
            out[n] = PROGRESS_ACTIVE
        elif current is not None and n < current:
            out[n] = PROGRESS_COMPLETED
        elif status == LevelStatus.FINISHED:
            out[n] = PROGRESS_COMPLETED
    return out


class CountdownProjector:
    """
    Remaining time of the running level, read from the last server snapshot.

    The projector does not tick on its own: callers re-render on their own
    interval and read the same snapshot until the server pushes a new one.
    """

    def __init__(self, store: IncidentStore) -> None:
        self._store = store

    def remaining(self, incident_id: int, level: Optional[int] = None) -> int:
        st = self._store.get(incident_id)
        if st is None:
            return 0
        current = st.running_level()
        if current is None:
            return 0
        if level is not None and level != current:
            return 0
        return int(st.level(current).remaining)

    def display(self, incident_id: int, level: Optional[int] = None) -> str:
        return format_time(self.remaining(incident_id, level))

    def urgency(self, incident_id: int) -> str:
        return urgency(self.remaining(incident_id))
