"""
Stuck-loop detection.

Each evaluation records a fingerprint of the loop state: the phase, the
current task id and every task's status. The loop is stuck when the same
fingerprint has been seen ``repeat_threshold`` times within the last
``window`` evaluations, or when it has run ``low_progress_iterations``
iterations and the last ``low_progress_reflections`` reflections are all
failures.
"""
from collections import deque
from typing import Deque

from core.logging_utils import log_json
from core.policies.base import PolicyBase
from core.types import AgentState, TerminationReason

STUCK_REPEAT_THRESHOLD = 3
STUCK_WINDOW = 20
LOW_PROGRESS_ITERATIONS = 10
LOW_PROGRESS_REFLECTIONS = 5


def state_fingerprint(state: AgentState) -> str:
    statuses = ",".join(f"{t.id}:{t.status.value}" for t in state.plan.tasks)
    current = state.current_task.id if state.current_task else "none"
    return f"{state.phase.value}|{current}|{statuses}"


class StuckLoopPolicy(PolicyBase):
    reason = TerminationReason.STUCK_LOOP

    def __init__(self, repeat_threshold: int = STUCK_REPEAT_THRESHOLD, window: int = STUCK_WINDOW,
                 low_progress_iterations: int = LOW_PROGRESS_ITERATIONS,
                 low_progress_reflections: int = LOW_PROGRESS_REFLECTIONS):
        self.repeat_threshold = repeat_threshold
        self.low_progress_iterations = low_progress_iterations
        self.low_progress_reflections = low_progress_reflections
        self._history: Deque[str] = deque(maxlen=window)

    def evaluate(self, state):
        fingerprint = state_fingerprint(state)
        self._history.append(fingerprint)
        repeats = self._history.count(fingerprint)
        if repeats >= self.repeat_threshold:
            log_json("WARN", "stuck_loop_detected", goal=state.goal,
                     details={"fingerprint": fingerprint, "repeats": repeats})
            return f"Loop state repeated {repeats} times in the last {len(self._history)} iterations"

        recent = state.reflections[-self.low_progress_reflections:]
        if (state.iteration_count >= self.low_progress_iterations
                and len(recent) >= self.low_progress_reflections
                and not any(r.was_successful for r in recent)):
            log_json("WARN", "low_progress_detected", goal=state.goal,
                     details={"iterations": state.iteration_count})
            return f"No successful step in the last {len(recent)} reflections"
        return ""

    def reset(self):
        self._history.clear()
