"""Job status state machine using the transitions library.

A job starts `running` and ends in exactly one of `completed`, `failed`
or `cancelled`. Terminal states have no outgoing transitions, so a
status can never move backwards.

Usage:
    fsm = JobFSM("loop-18c2f...")
    fsm.complete()
    fsm.state  # "completed"
"""

import logging
from typing import Callable, Optional

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)

__all__ = ["JobFSM", "MachineError", "STATES", "TERMINAL_STATES", "TRANSITIONS"]

STATES = ["running", "completed", "failed", "cancelled"]
TERMINAL_STATES = frozenset({"completed", "failed", "cancelled"})

# Each trigger becomes a method on the FSM
TRANSITIONS = [
    {"trigger": "complete", "source": "running", "dest": "completed"},
    {"trigger": "fail", "source": "running", "dest": "failed"},
    {"trigger": "cancel", "source": "running", "dest": "cancelled"},
]


class JobFSM:
    """Status of one loop job.

    Calling a trigger from a terminal state raises MachineError.
    """

    def __init__(
        self,
        job_id: str,
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ):
        self.job_id = job_id
        self.on_transition = on_transition
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="running",
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.job_id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)
