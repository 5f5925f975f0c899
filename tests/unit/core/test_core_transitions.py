"""
상태 전이 규칙 테스트
"""

import pytest
from hypothesis import given, strategies as st

from safewatch.core.errors import InvalidTransitionError
from safewatch.core.transitions import (
    ATTEMPT_RANK, attempt_status_accepts, can_transition_emergency, can_transition_obligation,
    check_emergency_transition, check_obligation_transition
)

STATUSES = list(ATTEMPT_RANK)


class TestObligationTransitions:
    """의무 전이 테스트"""

    @pytest.mark.parametrize("target", ["satisfied", "violated", "cancelled"])
    def test_pending_can_leave(self, target):
        assert can_transition_obligation("pending", target) is True

    @pytest.mark.parametrize("terminal", ["satisfied", "violated", "cancelled"])
    def test_terminal_states_are_final(self, terminal):
        for target in ("pending", "satisfied", "violated", "cancelled"):
            assert can_transition_obligation(terminal, target) is False
        with pytest.raises(InvalidTransitionError):
            check_obligation_transition("ob_1", terminal, "cancelled")


class TestEmergencyTransitions:
    """비상 상황 전이 테스트"""

    def test_active_transitions(self):
        assert can_transition_emergency("active", "acknowledged") is True
        assert can_transition_emergency("active", "resolved") is True
        assert can_transition_emergency("active", "false_alarm") is True

    def test_acknowledged_only_resolves(self):
        assert can_transition_emergency("acknowledged", "resolved") is True
        assert can_transition_emergency("acknowledged", "false_alarm") is False
        assert can_transition_emergency("acknowledged", "active") is False

    def test_invalid_transition_carries_context(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_emergency_transition("em_1", "resolved", "acknowledged")

        error = exc_info.value
        assert error.entity_id == "em_1"
        assert error.transition == "resolved->acknowledged"
        assert error.context()["error"] == "InvalidTransitionError"


class TestAttemptStatus:
    """발송 시도 상태 반영 규칙 테스트"""

    def test_positive_progression(self):
        assert attempt_status_accepts("queued", "sent") is True
        assert attempt_status_accepts("sent", "delivered") is True
        assert attempt_status_accepts("delivered", "confirmed") is True

    def test_failed_only_from_queued_or_sent(self):
        assert attempt_status_accepts("queued", "failed") is True
        assert attempt_status_accepts("sent", "failed") is True
        assert attempt_status_accepts("delivered", "failed") is False
        assert attempt_status_accepts("failed", "failed") is False

    def test_confirmed_is_final(self):
        for reported in STATUSES:
            assert attempt_status_accepts("confirmed", reported) is False

    @given(current=st.sampled_from(STATUSES), reported=st.sampled_from(STATUSES))
    def test_positive_states_never_regress(self, current, reported):
        """delivered 이상에서 더 낮은 상태로 돌아가지 않음"""
        if attempt_status_accepts(current, reported) and current in ("delivered", "confirmed"):
            assert ATTEMPT_RANK[reported] > ATTEMPT_RANK[current]
