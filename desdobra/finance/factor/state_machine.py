"""Lifecycle of a factoring ("desconto de duplicatas") operation.

The transition table is data, not branching: ``FACTOR_OPERATION_TRANSITIONS``
maps each state to the set of states it may move to. Staying in the same
state is always allowed. ``completed`` is terminal.

Three entry points with increasing strictness:

* ``can_transition`` answers yes/no (UI enables/disables actions);
* ``validate_transition`` returns a ``TransitionResult`` with a reason
  (API handlers build 4xx payloads from it);
* ``assert_transition`` raises ``InvalidTransitionError`` and must run right
  before any status write.

None of them keep state or raise on unknown input except ``assert_transition``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List

from desdobra.errors import ValidationError


class FactorOperationState(str, Enum):
    DRAFT = "draft"
    SENT_TO_FACTOR = "sent_to_factor"
    IN_ADJUSTMENT = "in_adjustment"
    COMPLETED = "completed"


FACTOR_OPERATION_TRANSITIONS: Dict[FactorOperationState, FrozenSet[FactorOperationState]] = {
    FactorOperationState.DRAFT: frozenset({FactorOperationState.SENT_TO_FACTOR}),
    FactorOperationState.SENT_TO_FACTOR: frozenset(
        {FactorOperationState.IN_ADJUSTMENT, FactorOperationState.COMPLETED}
    ),
    FactorOperationState.IN_ADJUSTMENT: frozenset(
        {FactorOperationState.SENT_TO_FACTOR, FactorOperationState.COMPLETED}
    ),
    FactorOperationState.COMPLETED: frozenset(),
}

EDITABLE_STATES: FrozenSet[FactorOperationState] = frozenset(
    {FactorOperationState.DRAFT, FactorOperationState.IN_ADJUSTMENT}
)
RESPONSE_STATES: FrozenSet[FactorOperationState] = frozenset(
    {FactorOperationState.SENT_TO_FACTOR, FactorOperationState.IN_ADJUSTMENT}
)


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    reason: str | None = None

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"ok": self.ok}
        if not self.ok:
            payload["reason"] = self.reason
        return payload


class InvalidTransitionError(ValidationError):
    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409
    default_critical = False

    def __init__(self, from_state: object, to_state: object, reason: str) -> None:
        self.from_state = _state_value(from_state)
        self.to_state = _state_value(to_state)
        self.reason = reason
        super().__init__(
            details=reason,
            payload={
                "from_status": self.from_state,
                "to_status": self.to_state,
                "reason": reason,
            },
        )


def _state_value(value: object) -> str:
    if isinstance(value, FactorOperationState):
        return value.value
    return str(value if value is not None else "")


def parse_state(value: object) -> FactorOperationState | None:
    """Return the enum member for ``value`` or ``None`` when it is not a known state."""
    if isinstance(value, FactorOperationState):
        return value
    try:
        return FactorOperationState(_state_value(value))
    except ValueError:
        return None


def can_transition(from_state: object, to_state: object) -> bool:
    source = parse_state(from_state)
    target = parse_state(to_state)
    if source is None or target is None:
        return False
    if source is target:
        return True
    return target in FACTOR_OPERATION_TRANSITIONS[source]


def validate_transition(from_state: object, to_state: object) -> TransitionResult:
    if can_transition(from_state, to_state):
        return TransitionResult(ok=True)

    source = _state_value(from_state)
    target = _state_value(to_state)
    reason = f"Invalid transition from {source} to {target}."
    unknown = [value for value in (source, target) if parse_state(value) is None]
    if unknown:
        reason = f"Invalid transition from {source} to {target} (unknown state '{unknown[0]}')."
    return TransitionResult(ok=False, reason=reason)


def assert_transition(from_state: object, to_state: object) -> None:
    result = validate_transition(from_state, to_state)
    if not result.ok:
        raise InvalidTransitionError(from_state, to_state, result.reason or "Invalid transition.")


def allowed_next_states(from_state: object) -> List[str]:
    source = parse_state(from_state)
    if source is None:
        return []
    return sorted(state.value for state in FACTOR_OPERATION_TRANSITIONS[source])


def is_terminal(state: object) -> bool:
    source = parse_state(state)
    return source is not None and not FACTOR_OPERATION_TRANSITIONS[source]


def can_edit_operation(state: object) -> bool:
    return parse_state(state) in EDITABLE_STATES


def can_receive_responses(state: object) -> bool:
    return parse_state(state) in RESPONSE_STATES
