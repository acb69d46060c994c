"""
State machine definitions for workflow runs and scheduler leadership.

Implements explicit state transitions with guards and validation.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

from automation_engine.core.errors import EngineError
from automation_engine.core.models import utcnow


class RunStatus(str, Enum):
    """
    Possible states for a workflow run.

    State transitions:
    - RUNNING -> SUCCESS
    - RUNNING -> ERROR
    """

    RUNNING = "running"  # Row written at start
    SUCCESS = "success"  # All waves completed
    ERROR = "error"      # Configuration or execution failure


class LeaderState(str, Enum):
    """
    Scheduler leadership states.

    State transitions:
    - NOT_LEADER -> LEADER (lock acquired, or no lock backend)
    - LEADER -> NOT_LEADER (renewal failed, or stopped)
    """

    NOT_LEADER = "not_leader"
    LEADER = "leader"


class StateTransition(BaseModel):
    """Represents a state transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    triggered_by: Optional[str] = None  # executor, scheduler, ...
    metadata: dict = Field(default_factory=dict)


class InvalidStateTransitionError(EngineError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


# Type alias for transition guards
TransitionGuard = Callable[[], bool]


class _StateMachine:
    """Shared transition bookkeeping; subclasses declare the transition table."""

    VALID_TRANSITIONS: dict = {}
    TERMINAL_STATES: set = set()

    def __init__(self, initial_state):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self):
        """Get current state."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get state transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in self.TERMINAL_STATES

    def can_transition_to(self, to_state) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set:
        """Get all valid transitions from current state."""
        return self.VALID_TRANSITIONS.get(self._state, set()).copy()

    def transition(
        self,
        to_state,
        reason: Optional[str] = None,
        triggered_by: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition to a new state.

        Args:
            to_state: Target state
            reason: Reason for transition
            triggered_by: Who/what triggered the transition
            guard: Optional guard function that must return True
            metadata: Additional metadata for the transition

        Returns:
            StateTransition record

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}"
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                "Guard condition failed"
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
            triggered_by=triggered_by,
            metadata=metadata or {},
        )

        self._history.append(transition)
        self._state = to_state

        return transition


class RunStateMachine(_StateMachine):
    """
    One-way lifecycle of a workflow run.

    A run is terminal once it leaves RUNNING.
    """

    VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
        RunStatus.RUNNING: {RunStatus.SUCCESS, RunStatus.ERROR},
        RunStatus.SUCCESS: set(),  # Terminal state
        RunStatus.ERROR: set(),    # Terminal state
    }

    TERMINAL_STATES: set[RunStatus] = {RunStatus.SUCCESS, RunStatus.ERROR}

    def __init__(self, initial_state: RunStatus = RunStatus.RUNNING):
        super().__init__(initial_state)

    @property
    def is_success(self) -> bool:
        """Check if the run completed successfully."""
        return self._state == RunStatus.SUCCESS


class LeaderStateMachine(_StateMachine):
    """Leadership of the cron scheduler in this process."""

    VALID_TRANSITIONS: dict[LeaderState, set[LeaderState]] = {
        LeaderState.NOT_LEADER: {LeaderState.LEADER},
        LeaderState.LEADER: {LeaderState.NOT_LEADER},
    }

    def __init__(self, initial_state: LeaderState = LeaderState.NOT_LEADER):
        super().__init__(initial_state)

    @property
    def is_leader(self) -> bool:
        return self._state == LeaderState.LEADER
