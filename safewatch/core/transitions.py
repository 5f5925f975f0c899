"""
State transition rules for SafeWatch.

Pure tables and guards for obligation, emergency and notification-attempt
lifecycles. Services consult these before writing; the store enforces
ordering with version compare-and-swap.
"""

from typing import Dict, FrozenSet

from safewatch.core.errors import InvalidTransitionError

OBLIGATION_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"satisfied", "violated", "cancelled"}),
    "satisfied": frozenset(),
    "violated": frozenset(),
    "cancelled": frozenset(),
}

EMERGENCY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"acknowledged", "resolved", "false_alarm"}),
    "acknowledged": frozenset({"resolved"}),
    "resolved": frozenset(),
    "false_alarm": frozenset(),
}

# 발송 시도 상태 순위 (긍정 상태는 역행하지 않음)
ATTEMPT_RANK: Dict[str, int] = {
    "queued": 0,
    "failed": 1,
    "sent": 2,
    "delivered": 3,
    "confirmed": 4,
}


def can_transition_obligation(from_state: str, to_state: str) -> bool:
    return to_state in OBLIGATION_TRANSITIONS.get(from_state, frozenset())


def can_transition_emergency(from_state: str, to_state: str) -> bool:
    return to_state in EMERGENCY_TRANSITIONS.get(from_state, frozenset())


def check_emergency_transition(emergency_id: str, from_state: str, to_state: str) -> None:
    """
    비상 상황 전이가 허용되는지 확인합니다.

    Raises:
        InvalidTransitionError: 허용되지 않는 전이
    """
    if not can_transition_emergency(from_state, to_state):
        raise InvalidTransitionError("emergency", emergency_id, from_state, to_state)


def check_obligation_transition(obligation_id: str, from_state: str, to_state: str) -> None:
    """
    의무 전이가 허용되는지 확인합니다.

    Raises:
        InvalidTransitionError: 허용되지 않는 전이
    """
    if not can_transition_obligation(from_state, to_state):
        raise InvalidTransitionError("obligation", obligation_id, from_state, to_state)


def attempt_status_accepts(current: str, reported: str) -> bool:
    """
    제공자 보고 상태를 반영할지 판단합니다.

    - confirmed는 최종 상태
    - failed는 queued/sent 상태에서만 반영 (재시도/폴백 트리거)
    - 그 외 긍정 상태는 순위가 올라갈 때만 반영
    """
    if current == "confirmed":
        return False
    if reported == "failed":
        return current in ("queued", "sent")
    return ATTEMPT_RANK[reported] > ATTEMPT_RANK[current]
