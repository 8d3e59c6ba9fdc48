from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List

from chamado_sync.core.command_codec import Command, GetState

log = logging.getLogger(__name__)

Sender = Callable[[Command], bool]


class WatchRegistry:
    """
    Set of incident ids the client keeps in sync.

    Replacing the set asks the server for a full push of every id in it.
    There is no polling: after the first sync, freshness depends on what the
    server pushes on its own.
    """

    def __init__(self, send: Sender) -> None:
        self._send = send
        self._lock = threading.RLock()
        self._ids: List[int] = []

    def replace(self, incident_ids: Iterable[int]) -> Dict[int, bool]:
        """Replace the watch set and request state for each id; returns send outcome per id."""
        ids: List[int] = []
        for raw in incident_ids:
            n = int(raw)
            if n > 0 and n not in ids:
                ids.append(n)
        with self._lock:
            self._ids = ids
        return self.request_all()

    def request_all(self) -> Dict[int, bool]:
        """Issue get_state for the current set (used on replace and on explicit resync)."""
        out: Dict[int, bool] = {}
        for n in self.ids():
            out[n] = bool(self._send(GetState(n)))
        missed = [n for n, ok in out.items() if not ok]
        if missed:
            log.info("get_state not sent for %d watched chamado(s) (offline?): %s", len(missed), missed[:10])
        return out

    def ids(self) -> List[int]:
        with self._lock:
            return list(self._ids)

    def __contains__(self, incident_id: object) -> bool:
        with self._lock:
            return incident_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)
