import time

from core.policies.base import PolicyBase
from core.types import TerminationReason


class TimeBoundPolicy(PolicyBase):
    reason = TerminationReason.MAX_TIME

    def __init__(self, max_time_ms: int = 1_800_000, clock=time.time):
        self.max_time_ms = max_time_ms
        self.clock = clock

    def evaluate(self, state):
        elapsed = state.elapsed_ms(self.clock())
        if elapsed >= self.max_time_ms:
            return f"Exceeded time limit ({elapsed} ms of {self.max_time_ms} ms)"
        return ""
