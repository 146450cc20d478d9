from core.policies.base import PolicyBase
from core.types import TerminationReason


class IterationBoundPolicy(PolicyBase):
    reason = TerminationReason.MAX_ITERATIONS

    def __init__(self, max_iterations: int = 100):
        self.max_iterations = max_iterations

    def evaluate(self, state):
        if state.iteration_count >= self.max_iterations:
            return f"Reached maximum iterations ({self.max_iterations})"
        return ""
