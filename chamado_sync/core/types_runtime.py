from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


LEVEL_COUNT = 5
LEVELS = tuple(range(1, LEVEL_COUNT + 1))


class LevelStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class FinalStatus(str, Enum):
    FINALIZED = "finalized"


def check_level(level: int) -> int:
    """Validate a level number (1..5) and return it as int."""
    if isinstance(level, bool) or not isinstance(level, int):
        raise ValueError(f"level must be int, got {level!r}")
    if level not in LEVELS:
        raise ValueError(f"level must be in 1..{LEVEL_COUNT}, got {level}")
    return level


@dataclass(frozen=True)
class LevelState:
    """
    Per-level slot of an incident.

    remaining is meaningful only while status == running; once the level
    is finished the server keeps the frozen value.
    """
    status: LevelStatus = LevelStatus.IDLE
    remaining: int = 0
    annotation: str = ""


@dataclass(frozen=True)
class IncidentState:
    """
    Last known escalation state of one incident (chamado).

    Instances are immutable: the store swaps whole objects on every
    applied event, so readers never observe a half-written state.
    """
    incident_id: int
    levels: Tuple[LevelState, ...] = field(default_factory=lambda: tuple(LevelState() for _ in LEVELS))
    operator: Optional[str] = None
    final_status: Optional[FinalStatus] = None
    received_ts: float = 0.0

    @classmethod
    def idle(cls, incident_id: int) -> "IncidentState":
        return cls(incident_id=int(incident_id), received_ts=float(time.time()))

    def level(self, level: int) -> LevelState:
        return self.levels[check_level(level) - 1]

    def running_level(self) -> Optional[int]:
        # first running level wins; the codec already refuses payloads with two
        for n, slot in zip(LEVELS, self.levels):
            if slot.status == LevelStatus.RUNNING:
                return n
        return None

    @property
    def is_finalized(self) -> bool:
        return self.final_status == FinalStatus.FINALIZED

    def running_count(self) -> int:
        return sum(1 for slot in self.levels if slot.status == LevelStatus.RUNNING)

    def to_dict(self) -> Dict[str, Any]:
        """Wire-shaped view (same keys the server pushes)."""
        out: Dict[str, Any] = {"type": "timer_update", "chamado": int(self.incident_id)}
        for n, slot in zip(LEVELS, self.levels):
            out[f"level{n}_status"] = slot.status.value
            out[f"level{n}_remaining"] = int(slot.remaining)
            out[f"level{n}_observacao"] = slot.annotation
        if self.operator is not None:
            out["operador"] = self.operator
        if self.final_status is not None:
            out["statusFinal"] = self.final_status.value
        return out
