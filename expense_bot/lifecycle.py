# expense_bot/lifecycle.py
"""
Request lifecycle: PENDING -> RECEIVED -> {APPROVED | REJECTED}, and COMPLETED from any
earlier state via the completion command.

By default a receipt or a reaction sets its status whatever the current one is (last write
wins). With `forward_only` a trigger that is not allowed from the current state leaves the
status untouched (resolve_transition returns None); callers decide whether the rest of the
event (e.g. archiving a late receipt) still applies.
"""

import enum
from typing import Dict, FrozenSet, Optional

from expense_bot.schemas import RequestStatus

S = RequestStatus


class Trigger(str, enum.Enum):
    RECEIPT = "receipt"
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"


TARGET_STATUS: Dict[Trigger, RequestStatus] = {
    Trigger.RECEIPT: S.RECEIVED,
    Trigger.APPROVE: S.APPROVED,
    Trigger.REJECT: S.REJECTED,
    Trigger.COMPLETE: S.COMPLETED,
}

ALL_STATES: FrozenSet[RequestStatus] = frozenset(S)
OPEN_STATES: FrozenSet[RequestStatus] = frozenset({S.PENDING, S.RECEIVED, S.APPROVED, S.REJECTED})

ALLOWED_FROM: Dict[Trigger, FrozenSet[RequestStatus]] = {
    Trigger.RECEIPT: ALL_STATES,
    Trigger.APPROVE: ALL_STATES,
    Trigger.REJECT: ALL_STATES,
    Trigger.COMPLETE: OPEN_STATES,
}

# Decisions may still be revised (approve after reject and vice versa),
# but nothing leaves COMPLETED and a receipt never undoes a decision.
FORWARD_ONLY_FROM: Dict[Trigger, FrozenSet[RequestStatus]] = {
    Trigger.RECEIPT: frozenset({S.PENDING, S.RECEIVED}),
    Trigger.APPROVE: OPEN_STATES,
    Trigger.REJECT: OPEN_STATES,
    Trigger.COMPLETE: OPEN_STATES,
}


def resolve_transition(current: RequestStatus, trigger: Trigger,
                       completion_requires_approval: bool = False,
                       forward_only: bool = False) -> Optional[RequestStatus]:
    """Status to write for `trigger` applied to `current`, or None if it must not change."""
    allowed = (FORWARD_ONLY_FROM if forward_only else ALLOWED_FROM)[trigger]
    if trigger is Trigger.COMPLETE and completion_requires_approval:
        allowed = frozenset({S.APPROVED})
    if current not in allowed:
        return None
    return TARGET_STATUS[trigger]


def can_apply(current: RequestStatus, trigger: Trigger,
              completion_requires_approval: bool = False,
              forward_only: bool = False) -> bool:
    return resolve_transition(current, trigger, completion_requires_approval, forward_only) is not None
