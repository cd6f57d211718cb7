from enum import Enum
from typing import Optional, Callable, List
from dataclasses import dataclass


class GameStatus(str, Enum):
    UPCOMING = "upcoming"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


def deadline_passed_guard(context: dict) -> bool:
    now = context.get("now")
    deadline = context.get("deadline")
    return now is not None and deadline is not None and deadline < now


@dataclass
class Transition:
    from_state: GameStatus
    to_state: GameStatus
    action: str
    guard: Optional[Callable] = None


class GameStateMachine:
    """
    upcoming -> in_progress once the registration deadline has passed,
    upcoming/in_progress -> finished when results are recorded.
    """

    TRANSITIONS = [
        Transition(GameStatus.UPCOMING, GameStatus.IN_PROGRESS, "close_registration", deadline_passed_guard),
        Transition(GameStatus.UPCOMING, GameStatus.FINISHED, "record_results"),
        Transition(GameStatus.IN_PROGRESS, GameStatus.FINISHED, "record_results"),
        # corrected results may be re-submitted for a finished game
        Transition(GameStatus.FINISHED, GameStatus.FINISHED, "record_results"),
    ]

    ALLOWED_ACTIONS = {
        # registration-level actions; status changes go through transition()
        GameStatus.UPCOMING: ["register", "cancel", "mark_paid", "edit"],
        GameStatus.IN_PROGRESS: ["cancel", "mark_paid", "edit"],
        GameStatus.FINISHED: [],
    }

    def __init__(self, initial_state: GameStatus = GameStatus.UPCOMING):
        self._state = initial_state

    @property
    def state(self) -> GameStatus:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def transition(self, action: str, guard_context: dict = None) -> GameStatus:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and not t.guard(guard_context or {}):
                    raise TransitionError(
                        self._state.value,
                        t.to_state.value,
                        f"Guard condition failed for action '{action}'"
                    )

                self._state = t.to_state
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    @classmethod
    def from_state_string(cls, state_str: str) -> "GameStateMachine":
        try:
            state = GameStatus(state_str)
        except ValueError:
            state = GameStatus.UPCOMING
        return cls(initial_state=state)
