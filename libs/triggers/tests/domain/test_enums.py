"""Tests for trigger event status rules."""

import pytest
from autopilot_triggers.domain.enums import (
    DEFAULT_INPUT_TRIGGER_TYPES,
    UNIFIED_TRIGGER_KINDS,
    TriggerEventStatus,
    TriggerType,
)

S = TriggerEventStatus


class TestTriggerEventStatus:
    @pytest.mark.parametrize("status", [S.SKIPPED, S.FIRED, S.FAILED])
    def test_terminal_statuses_have_no_exits(self, status):
        assert status.is_terminal
        assert not any(status.can_transition_to(target) for target in S)

    def test_received_moves_forward_only(self):
        assert S.RECEIVED.can_transition_to(S.PROCESSING)
        assert S.RECEIVED.can_transition_to(S.FIRED)
        assert not S.RECEIVED.can_transition_to(S.RECEIVED)

    def test_processing_cannot_return_to_received(self):
        assert not S.PROCESSING.can_transition_to(S.RECEIVED)
        assert not S.PROCESSING.can_transition_to(S.PROCESSING)
        assert S.PROCESSING.can_transition_to(S.FAILED)

    def test_predecessors(self):
        assert set(S.predecessors_of(S.FIRED)) == {S.RECEIVED, S.PROCESSING}
        assert S.predecessors_of(S.RECEIVED) == []


def test_unattended_kinds_exclude_event_and_webhook():
    assert TriggerType.EVENT not in DEFAULT_INPUT_TRIGGER_TYPES
    assert TriggerType.WEBHOOK not in DEFAULT_INPUT_TRIGGER_TYPES
    assert "scheduled" in UNIFIED_TRIGGER_KINDS
