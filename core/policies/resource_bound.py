"""Resource-bound policy: stops the loop when estimated token usage exceeds a budget."""
from core.logging_utils import log_json
from core.policies.base import PolicyBase
from core.types import TerminationReason


class ResourceBoundPolicy(PolicyBase):
    """
    Stops the loop when estimated token usage reaches ``max_tokens``.
    Estimation: ~4 chars per token across all observation text so far.
    """
    reason = TerminationReason.RESOURCE_LIMIT
    CHARS_PER_TOKEN = 4

    def __init__(self, max_tokens: int = 50000):
        self.max_tokens = max_tokens

    def estimate_tokens(self, state) -> int:
        return sum(len(o.content) for o in state.observations) // self.CHARS_PER_TOKEN

    def evaluate(self, state):
        estimated_tokens = self.estimate_tokens(state)
        if estimated_tokens >= self.max_tokens:
            log_json("WARN", "resource_bound_policy_limit_reached",
                     details={"estimated_tokens": estimated_tokens, "max_tokens": self.max_tokens})
            return f"Estimated token usage {estimated_tokens} reached budget {self.max_tokens}"
        return ""
