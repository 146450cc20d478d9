from core.types import AgentState, TerminationReason


class PolicyBase:
    """A single stop condition.

    ``evaluate`` returns an empty string to let the loop continue, or a
    human-readable message explaining why it should stop.
    """
    reason: TerminationReason

    def evaluate(self, state: AgentState) -> str:
        raise NotImplementedError

    def reset(self) -> None:
        pass
