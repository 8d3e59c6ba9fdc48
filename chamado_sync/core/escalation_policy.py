from __future__ import annotations

"""
chamado_sync/core/escalation_policy.py: escalation ladder rules.

Pure decision logic: given the last known IncidentState and a requested
transition, decide whether it is allowed and which commands it implies.
Nothing here touches the network or the store; the same inputs always give
the same decision.

Ladder (per incident):

    idle --start--> running(1)
    running(L) --escalate--> running(L+1)          L < 5
    running(5) --escalate--> finalized
    running(L) --step_back--> running(L-1)         L > 1
    running(L) --resolve_now--> finalized
    finalized --*--> rejected

Every transition out of a running level carries an annotation of at least
MIN_ANNOTATION_CHARS characters after trimming; it is persisted against the
level being left.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from chamado_sync.core.command_codec import (
    Command,
    Finalize,
    StartTimer,
    UpdateObservacao,
    UpdateOperador,
)
from chamado_sync.core.types_runtime import LEVEL_COUNT, LEVELS, IncidentState, LevelStatus


LEVEL_DURATION_S = 1200
MIN_ANNOTATION_CHARS = 10

# transition kinds
START = "start"
ESCALATE = "escalate"
STEP_BACK = "step_back"
RESOLVE_NOW = "resolve_now"
ANNOTATE = "annotate"
SET_OPERATOR = "set_operator"
SAVE_NOTES = "save_notes"

# canonical reason codes
INCIDENT_FINALIZED = "INCIDENT_FINALIZED"
ANNOTATION_TOO_SHORT = "ANNOTATION_TOO_SHORT"
ANNOTATION_EMPTY = "ANNOTATION_EMPTY"
LEVEL_ALREADY_RUNNING = "LEVEL_ALREADY_RUNNING"
NO_LEVEL_RUNNING = "NO_LEVEL_RUNNING"
NO_PREVIOUS_LEVEL = "NO_PREVIOUS_LEVEL"
LEVEL_CLOSED = "LEVEL_CLOSED"
OPERATOR_EMPTY = "OPERATOR_EMPTY"
LEVEL_OUT_OF_RANGE = "LEVEL_OUT_OF_RANGE"

_REASON_TEXT = {
    INCIDENT_FINALIZED: "incident is finalized; no further changes are allowed",
    ANNOTATION_TOO_SHORT: "annotation must have at least {min} characters",
    ANNOTATION_EMPTY: "annotation is required",
    LEVEL_ALREADY_RUNNING: "a level is already running for this incident",
    NO_LEVEL_RUNNING: "no level is running for this incident",
    NO_PREVIOUS_LEVEL: "level 1 has no previous level",
    LEVEL_CLOSED: "level is already finished; its annotation can no longer change",
    OPERATOR_EMPTY: "operator name is required",
    LEVEL_OUT_OF_RANGE: "level must be between 1 and 5",
}


def human_reason(code: str, *, min_chars: int = MIN_ANNOTATION_CHARS) -> str:
    text = _REASON_TEXT.get(str(code))
    if text is None:
        return str(code)
    return text.format(min=int(min_chars))


@dataclass(frozen=True)
class TransitionDecision:
    """
    Verdict of the policy engine.

    allow: whether the transition may be dispatched
    reasons: stable codes (empty when allowed)
    commands: ordered commands to send back-to-back (empty when rejected)
    target_level: running level expected after the server applies it
    finalizes: True when the expected outcome is a finalized incident
    """
    kind: str
    allow: bool
    reasons: List[str] = field(default_factory=list)
    commands: List[Command] = field(default_factory=list)
    target_level: Optional[int] = None
    finalizes: bool = False


def _reject(kind: str, reasons: List[str]) -> TransitionDecision:
    return TransitionDecision(kind=kind, allow=False, reasons=list(reasons))


def annotation_ok(text: Optional[str], min_chars: int = MIN_ANNOTATION_CHARS) -> bool:
    return len((text or "").strip()) >= int(min_chars)


def _annotation_reasons(text: Optional[str], min_chars: int) -> List[str]:
    trimmed = (text or "").strip()
    if not trimmed:
        return [ANNOTATION_EMPTY, ANNOTATION_TOO_SHORT]
    if len(trimmed) < int(min_chars):
        return [ANNOTATION_TOO_SHORT]
    return []


def _leave_running_level(
    state: IncidentState,
    annotation: Optional[str],
    min_chars: int,
) -> tuple[Optional[int], List[str]]:
    """Common preconditions for every transition out of a running level."""
    reasons: List[str] = []

    def _add(code: str) -> None:
        if code not in reasons:
            reasons.append(code)

    if state.is_finalized:
        _add(INCIDENT_FINALIZED)
    for code in _annotation_reasons(annotation, min_chars):
        _add(code)

    current = state.running_level()
    if current is None and not state.is_finalized:
        _add(NO_LEVEL_RUNNING)
    return current, reasons


# --------------------------------------------------------------------------- #
# transitions
# --------------------------------------------------------------------------- #

def plan_start(state: IncidentState, *, duration: int = LEVEL_DURATION_S) -> TransitionDecision:
    """idle -> running(1)."""
    reasons: List[str] = []
    if state.is_finalized:
        reasons.append(INCIDENT_FINALIZED)
    if state.running_level() is not None:
        reasons.append(LEVEL_ALREADY_RUNNING)
    if reasons:
        return _reject(START, reasons)
    return TransitionDecision(
        kind=START,
        allow=True,
        commands=[StartTimer(state.incident_id, level=1, duration=int(duration))],
        target_level=1,
    )


def plan_escalate(
    state: IncidentState,
    annotation: Optional[str],
    *,
    duration: int = LEVEL_DURATION_S,
    min_chars: int = MIN_ANNOTATION_CHARS,
) -> TransitionDecision:
    """running(L) -> running(L+1); at the top level the escalation finalizes."""
    current, reasons = _leave_running_level(state, annotation, min_chars)
    if reasons or current is None:
        return _reject(ESCALATE, reasons or [NO_LEVEL_RUNNING])

    note = (annotation or "").strip()
    if current >= LEVEL_COUNT:
        return TransitionDecision(
            kind=ESCALATE,
            allow=True,
            commands=[
                UpdateObservacao(state.incident_id, level=current, observacao=note),
                Finalize(state.incident_id),
            ],
            finalizes=True,
        )

    # the server closes level L when L+1 starts
    return TransitionDecision(
        kind=ESCALATE,
        allow=True,
        commands=[
            UpdateObservacao(state.incident_id, level=current, observacao=note),
            StartTimer(state.incident_id, level=current + 1, duration=int(duration)),
        ],
        target_level=current + 1,
    )


def plan_step_back(
    state: IncidentState,
    annotation: Optional[str],
    *,
    duration: int = LEVEL_DURATION_S,
    min_chars: int = MIN_ANNOTATION_CHARS,
) -> TransitionDecision:
    """running(L) -> running(L-1), manual correction."""
    current, reasons = _leave_running_level(state, annotation, min_chars)
    if current is not None and current <= 1:
        reasons.append(NO_PREVIOUS_LEVEL)
    if reasons or current is None:
        return _reject(STEP_BACK, reasons or [NO_LEVEL_RUNNING])

    note = (annotation or "").strip()
    return TransitionDecision(
        kind=STEP_BACK,
        allow=True,
        commands=[
            UpdateObservacao(state.incident_id, level=current, observacao=note),
            StartTimer(state.incident_id, level=current - 1, duration=int(duration)),
        ],
        target_level=current - 1,
    )


def plan_resolve_now(
    state: IncidentState,
    annotation: Optional[str],
    *,
    min_chars: int = MIN_ANNOTATION_CHARS,
) -> TransitionDecision:
    """running(L) -> finalized, at any level."""
    current, reasons = _leave_running_level(state, annotation, min_chars)
    if reasons or current is None:
        return _reject(RESOLVE_NOW, reasons or [NO_LEVEL_RUNNING])

    note = (annotation or "").strip()
    return TransitionDecision(
        kind=RESOLVE_NOW,
        allow=True,
        commands=[
            UpdateObservacao(state.incident_id, level=current, observacao=note),
            Finalize(state.incident_id),
        ],
        finalizes=True,
    )


# --------------------------------------------------------------------------- #
# edits outside the ladder
# --------------------------------------------------------------------------- #

def plan_annotation_update(state: IncidentState, level: int, text: Optional[str]) -> TransitionDecision:
    """Attach or replace the annotation of a level that has not been left yet."""
    reasons: List[str] = []
    if state.is_finalized:
        reasons.append(INCIDENT_FINALIZED)
    if isinstance(level, bool) or not isinstance(level, int) or level not in LEVELS:
        reasons.append(LEVEL_OUT_OF_RANGE)
    elif state.level(level).status == LevelStatus.FINISHED:
        reasons.append(LEVEL_CLOSED)
    note = (text or "").strip()
    if not note:
        reasons.append(ANNOTATION_EMPTY)
    if reasons:
        return _reject(ANNOTATE, reasons)
    return TransitionDecision(
        kind=ANNOTATE,
        allow=True,
        commands=[UpdateObservacao(state.incident_id, level=level, observacao=note)],
    )


def plan_operator_update(state: IncidentState, name: Optional[str]) -> TransitionDecision:
    reasons: List[str] = []
    if state.is_finalized:
        reasons.append(INCIDENT_FINALIZED)
    operator = (name or "").strip()
    if not operator:
        reasons.append(OPERATOR_EMPTY)
    if reasons:
        return _reject(SET_OPERATOR, reasons)
    return TransitionDecision(
        kind=SET_OPERATOR,
        allow=True,
        commands=[UpdateOperador(state.incident_id, operador=operator)],
    )


def plan_notes_update(state: IncidentState, annotation: Optional[str], operator: Optional[str]) -> TransitionDecision:
    """
    The notes dialog: level-1 annotation and/or operator in one action.

    Blank fields are skipped; at least one of them must be present.
    """
    if state.is_finalized:
        return _reject(SAVE_NOTES, [INCIDENT_FINALIZED])

    commands: List[Command] = []
    reasons: List[str] = []
    if (annotation or "").strip():
        d = plan_annotation_update(state, 1, annotation)
        commands.extend(d.commands)
        reasons.extend(d.reasons)
    if (operator or "").strip():
        d = plan_operator_update(state, operator)
        commands.extend(d.commands)
        reasons.extend(d.reasons)
    if not commands and not reasons:
        reasons = [ANNOTATION_EMPTY, OPERATOR_EMPTY]
    if reasons:
        return _reject(SAVE_NOTES, reasons)
    return TransitionDecision(kind=SAVE_NOTES, allow=True, commands=commands)
