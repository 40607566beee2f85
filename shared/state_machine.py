from enum import Enum
from typing import Optional, Callable, List
from dataclasses import dataclass


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses that hold one slot of the tournament's capacity
SLOT_HOLDING_STATES = frozenset({RegistrationStatus.PENDING, RegistrationStatus.APPROVED})

TERMINAL_STATES = frozenset({RegistrationStatus.APPROVED, RegistrationStatus.REJECTED})


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: RegistrationStatus
    to_state: RegistrationStatus
    action: str
    guard: Optional[Callable] = None


def slot_available_guard(context: dict) -> bool:
    """Re-admitting a rejected registration needs a free slot."""
    return context.get("filled", 0) < context.get("capacity", 0)


class RegistrationStateMachine:
    """
    Admin review lifecycle of a registration.

    Terminal records may be reviewed again; the only guarded move is
    rejected -> approved, which claims a slot again.
    """

    TRANSITIONS = [
        Transition(RegistrationStatus.PENDING, RegistrationStatus.APPROVED, "approve"),
        Transition(RegistrationStatus.PENDING, RegistrationStatus.REJECTED, "reject"),
        Transition(RegistrationStatus.APPROVED, RegistrationStatus.APPROVED, "approve"),
        Transition(RegistrationStatus.APPROVED, RegistrationStatus.REJECTED, "reject"),
        Transition(RegistrationStatus.REJECTED, RegistrationStatus.REJECTED, "reject"),
        Transition(RegistrationStatus.REJECTED, RegistrationStatus.APPROVED, "approve", slot_available_guard),
    ]

    ACTION_FOR_STATUS = {
        RegistrationStatus.APPROVED: "approve",
        RegistrationStatus.REJECTED: "reject",
    }

    def __init__(self, initial_state: RegistrationStatus = RegistrationStatus.PENDING):
        self._state = initial_state

    @property
    def state(self) -> RegistrationStatus:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return sorted({t.action for t in self.TRANSITIONS if t.from_state == self._state})

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def claims_slot(self, action: str) -> bool:
        """True when the action moves a registration back into a slot-holding state."""
        t = self._find(action)
        if t is None:
            return False
        return t.from_state not in SLOT_HOLDING_STATES and t.to_state in SLOT_HOLDING_STATES

    def transition(self, action: str, guard_context: dict = None) -> RegistrationStatus:
        t = self._find(action)
        if t is None:
            raise TransitionError(
                self._state.value,
                "unknown",
                f"No valid transition for action '{action}' from state '{self._state.value}'"
            )

        if t.guard and not t.guard(guard_context or {}):
            raise TransitionError(
                self._state.value,
                t.to_state.value,
                f"Guard condition failed for action '{action}'"
            )

        self._state = t.to_state
        return self._state

    def _find(self, action: str) -> Optional[Transition]:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return t
        return None

    @classmethod
    def action_for(cls, status) -> Optional[str]:
        try:
            return cls.ACTION_FOR_STATUS.get(RegistrationStatus(status))
        except ValueError:
            return None

    @classmethod
    def from_state_string(cls, state_str: str) -> "RegistrationStateMachine":
        try:
            state = RegistrationStatus(state_str)
        except ValueError:
            state = RegistrationStatus.PENDING
        return cls(initial_state=state)
