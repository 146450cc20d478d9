from core.policies.base import PolicyBase
from core.types import TaskStatus, TerminationReason


class UnrecoverablePolicy(PolicyBase):
    """Fires once a task has failed for good and nothing left can run without it."""
    reason = TerminationReason.UNRECOVERABLE_ERROR

    def __init__(self, planner):
        self.planner = planner

    def evaluate(self, state):
        plan = state.plan
        exhausted = [t for t in plan.tasks if t.status == TaskStatus.FAILED and t.retries_exhausted]
        if not exhausted:
            return ""
        pending = [t for t in plan.tasks if t.status == TaskStatus.PENDING]
        downstream = self.planner.dependents_of(plan, [t.id for t in exhausted])
        if all(t.id in downstream for t in pending):
            names = ", ".join(t.name for t in exhausted)
            return f"Task(s) failed after exhausting retries: {names}"
        return ""
