from __future__ import annotations

"""
chamado_sync/core/command_codec.py: wire format of the escalation service.

Outbound: one JSON object per send, tagged by "action":

    {"action": "start_timer", "chamado": 123456, "level": 2, "duration": 1200}

Inbound: full-state pushes tagged "type": "timer_update". Anything else is
dropped here (logged at DEBUG) and never reaches the store.
"""

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Dict, List, Optional, Union

from chamado_sync.core.types_runtime import (
    LEVELS,
    FinalStatus,
    IncidentState,
    LevelState,
    LevelStatus,
    check_level,
)

log = logging.getLogger(__name__)

EVENT_TIMER_UPDATE = "timer_update"

# aliases seen from older server builds / clients
_FINAL_ALIASES = {
    "finalized": FinalStatus.FINALIZED,
    "finished": FinalStatus.FINALIZED,
    "finalizado": FinalStatus.FINALIZED,
}

_STATUS_VALUES = {s.value: s for s in LevelStatus}


def _check_incident(incident_id: int) -> int:
    if isinstance(incident_id, bool) or not isinstance(incident_id, int) or incident_id <= 0:
        raise ValueError(f"chamado must be a positive int, got {incident_id!r}")
    return incident_id


# --------------------------------------------------------------------------- #
# outbound
# --------------------------------------------------------------------------- #

@dataclass(frozen=True)
class Command:
    action: ClassVar[str] = ""
    chamado: int

    def __post_init__(self) -> None:
        _check_incident(self.chamado)

    def fields(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"action": self.action, "chamado": int(self.chamado)}
        out.update(self.fields())
        return out


@dataclass(frozen=True)
class StartTimer(Command):
    action: ClassVar[str] = "start_timer"
    level: int = 1
    duration: int = 1200

    def __post_init__(self) -> None:
        super().__post_init__()
        check_level(self.level)
        if isinstance(self.duration, bool) or not isinstance(self.duration, int) or self.duration <= 0:
            raise ValueError(f"duration must be a positive int, got {self.duration!r}")

    def fields(self) -> Dict[str, Any]:
        return {"level": int(self.level), "duration": int(self.duration)}


@dataclass(frozen=True)
class UpdateObservacao(Command):
    action: ClassVar[str] = "update_observacao"
    level: int = 1
    observacao: str = ""

    def __post_init__(self) -> None:
        super().__post_init__()
        check_level(self.level)

    def fields(self) -> Dict[str, Any]:
        return {"level": int(self.level), "observacao": str(self.observacao)}


@dataclass(frozen=True)
class UpdateOperador(Command):
    action: ClassVar[str] = "update_operador"
    operador: str = ""

    def fields(self) -> Dict[str, Any]:
        return {"operador": str(self.operador)}


@dataclass(frozen=True)
class Finalize(Command):
    action: ClassVar[str] = "finalize"
    status: str = FinalStatus.FINALIZED.value

    def fields(self) -> Dict[str, Any]:
        return {"status": str(self.status)}


@dataclass(frozen=True)
class GetState(Command):
    action: ClassVar[str] = "get_state"


def encode_command(cmd: Command) -> str:
    return json.dumps(cmd.to_dict(), ensure_ascii=False, separators=(",", ":"))


def describe_commands(cmds: List[Command]) -> List[str]:
    """Short human labels for logs, e.g. ['update_observacao@1', 'start_timer@2']."""
    out: List[str] = []
    for c in cmds:
        level = getattr(c, "level", None)
        out.append(f"{c.action}@{level}" if level is not None else c.action)
    return out


# --------------------------------------------------------------------------- #
# inbound
# --------------------------------------------------------------------------- #

def _parse_incident_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        n = int(value.strip())
        return n if n > 0 else None
    return None


def _parse_remaining(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        n = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return n if n > 0 else 0


def decode_event(raw: Union[str, bytes, bytearray]) -> Optional[IncidentState]:
    """
    Decode one inbound message into an IncidentState.

    Returns None for anything that is not a well-formed timer_update.
    Never raises.
    """
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError, TypeError):
        log.debug("dropping non-JSON message")
        return None
    if not isinstance(data, dict):
        log.debug("dropping non-object message")
        return None
    return decode_payload(data)


def decode_payload(data: Dict[str, Any]) -> Optional[IncidentState]:
    if data.get("type") != EVENT_TIMER_UPDATE:
        log.debug("dropping message with type=%r", data.get("type"))
        return None

    incident_id = _parse_incident_id(data.get("chamado"))
    if incident_id is None:
        log.debug("dropping timer_update without numeric chamado: %r", data.get("chamado"))
        return None

    levels: List[LevelState] = []
    for n in LEVELS:
        raw_status = data.get(f"level{n}_status")
        if raw_status in (None, ""):
            status = LevelStatus.IDLE
        else:
            status = _STATUS_VALUES.get(str(raw_status).strip().lower())
            if status is None:
                log.debug("dropping chamado=%s: unknown level%d_status %r", incident_id, n, raw_status)
                return None
        annotation = data.get(f"level{n}_observacao")
        levels.append(
            LevelState(
                status=status,
                remaining=_parse_remaining(data.get(f"level{n}_remaining")),
                annotation=str(annotation) if annotation is not None else "",
            )
        )

    final_raw = data.get("statusFinal")
    final_status: Optional[FinalStatus] = None
    if final_raw not in (None, ""):
        final_status = _FINAL_ALIASES.get(str(final_raw).strip().lower())
        if final_status is None:
            log.debug("dropping chamado=%s: unknown statusFinal %r", incident_id, final_raw)
            return None

    running = sum(1 for s in levels if s.status == LevelStatus.RUNNING)
    if running > 1:
        log.debug("dropping chamado=%s: %d levels running", incident_id, running)
        return None
    if running and final_status is not None:
        # finalization is authoritative: the level left running is closed here
        log.warning("chamado=%s: finalized push still shows a running level; marking it finished", incident_id)
        levels = [
            replace(s, status=LevelStatus.FINISHED) if s.status == LevelStatus.RUNNING else s
            for s in levels
        ]

    operator = data.get("operador")
    return IncidentState(
        incident_id=incident_id,
        levels=tuple(levels),
        operator=str(operator) if operator not in (None, "") else None,
        final_status=final_status,
        received_ts=float(time.time()),
    )
