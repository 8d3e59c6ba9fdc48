from __future__ import annotations

import threading
import time
from typing import Dict, Any, Optional


class Heartbeats:
    """Last-seen timestamps per component (ws_open, ws_message, ws_pong, ...)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ts: Dict[str, float] = {}

    def beat(self, component: str, ts: Optional[float] = None) -> None:
        name = str(component or "").strip().lower()
        if not name:
            return
        now = float(ts if ts is not None else time.time())
        with self._lock:
            self._last_ts[name] = now

    def age(self, component: str, now: Optional[float] = None) -> Optional[float]:
        t = float(now if now is not None else time.time())
        with self._lock:
            last = self._last_ts.get(str(component).strip().lower())
        return None if last is None else t - last

    def snapshot(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Return heartbeat timestamps + ages (seconds) for known components."""
        t = float(now if now is not None else time.time())
        with self._lock:
            ts_map = dict(self._last_ts)
        ages = {k: (t - float(v)) for k, v in ts_map.items()}
        return {"ts": ts_map, "age_s": ages, "now": t}
