from desdobra.finance.factor.state_machine import (
    FACTOR_OPERATION_TRANSITIONS,
    FactorOperationState,
    InvalidTransitionError,
    TransitionResult,
    allowed_next_states,
    assert_transition,
    can_edit_operation,
    can_receive_responses,
    can_transition,
    validate_transition,
)

__all__ = [
    "FACTOR_OPERATION_TRANSITIONS",
    "FactorOperationState",
    "InvalidTransitionError",
    "TransitionResult",
    "allowed_next_states",
    "assert_transition",
    "can_edit_operation",
    "can_receive_responses",
    "can_transition",
    "validate_transition",
]
