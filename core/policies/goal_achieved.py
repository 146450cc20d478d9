from core.policies.base import PolicyBase
from core.types import SUCCESS_STATUSES, PlanStatus, TerminationReason


class GoalAchievedPolicy(PolicyBase):
    reason = TerminationReason.GOAL_ACHIEVED

    def evaluate(self, state):
        plan = state.plan
        if plan.status == PlanStatus.COMPLETED:
            return "Plan completed"
        if plan.tasks and all(t.status in SUCCESS_STATUSES for t in plan.tasks):
            return "All tasks completed or skipped"
        return ""
