"""Tests for the job status state machine."""

import pytest

from storyloop.workflow.fsm import JobFSM, MachineError, STATES, TERMINAL_STATES, TRANSITIONS


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        assert set(STATES) == {"running", "completed", "failed", "cancelled"}

    def test_terminal_states_have_no_outgoing_transitions(self):
        sources = {t["source"] for t in TRANSITIONS}
        assert sources == {"running"}
        assert TERMINAL_STATES == set(STATES) - {"running"}


class TestFSMTransitions:
    def test_starts_running(self):
        fsm = JobFSM("loop-1")
        assert fsm.state == "running"
        assert not fsm.is_terminal

    @pytest.mark.parametrize("trigger,dest", [
        ("complete", "completed"),
        ("fail", "failed"),
        ("cancel", "cancelled"),
    ])
    def test_running_to_terminal(self, trigger, dest):
        fsm = JobFSM("loop-1")
        getattr(fsm, trigger)()
        assert fsm.state == dest
        assert fsm.is_terminal

    def test_terminal_is_final(self):
        fsm = JobFSM("loop-1")
        fsm.cancel()
        assert not fsm.can("complete")
        with pytest.raises(MachineError):
            fsm.complete()
        assert fsm.state == "cancelled"

    def test_no_auto_transitions(self):
        fsm = JobFSM("loop-1")
        assert not hasattr(fsm, "to_completed")

    def test_on_transition_callback(self):
        seen = []
        fsm = JobFSM("loop-1", on_transition=lambda *args: seen.append(args))
        fsm.fail()
        assert seen == [("running", "failed", "fail")]
