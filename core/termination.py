"""
Termination engine.

Runs the stop policies in priority order once per loop iteration and builds
the :class:`FinalReport` when the loop exits. Only the first policy that
fires is reported.
"""
from typing import Iterable, List, Optional, Sequence, Tuple

from core.logging_utils import log_json
from core.policies.base import PolicyBase
from core.policies.goal_achieved import GoalAchievedPolicy
from core.policies.iteration_bound import IterationBoundPolicy
from core.policies.resource_bound import ResourceBoundPolicy
from core.policies.stuck_loop import StuckLoopPolicy
from core.policies.time_bound import TimeBoundPolicy
from core.policies.unrecoverable import UnrecoverablePolicy
from core.types import (
    AgentState,
    FinalReport,
    ReportStatus,
    TaskStatus,
    TerminationDecision,
    TerminationReason,
    ToolCall,
    ToolKind,
    ToolResult,
)

REASON_MESSAGES = {
    TerminationReason.GOAL_ACHIEVED: "Goal successfully achieved.",
    TerminationReason.MAX_ITERATIONS: "Stopped after reaching maximum iterations ({max_iterations}).",
    TerminationReason.MAX_TIME: "Stopped due to time limit.",
    TerminationReason.STUCK_LOOP: "Stopped because the agent was stuck in a loop.",
    TerminationReason.UNRECOVERABLE_ERROR: "Stopped due to unrecoverable errors.",
    TerminationReason.RESOURCE_LIMIT: "Stopped due to resource limits.",
    TerminationReason.USER_INTERRUPT: "Stopped by user request.",
}

_COMMAND_KINDS = (ToolKind.SHELL, ToolKind.DEPENDENCY_INSTALL, ToolKind.BUILD, ToolKind.TEST,
                  ToolKind.LINT, ToolKind.DEV_SERVER)


class TerminationEngine:
    def __init__(self, planner, max_iterations: int = 100, max_time_ms: int = 1_800_000,
                 max_tokens: Optional[int] = None, stuck_repeat_threshold: int = 3,
                 stuck_window: int = 20, low_progress_iterations: int = 10,
                 low_progress_reflections: int = 5,
                 policies: Optional[Sequence[PolicyBase]] = None):
        self.max_iterations = max_iterations
        if policies is not None:
            self.policies: List[PolicyBase] = list(policies)
        else:
            self.policies = [
                GoalAchievedPolicy(),
                IterationBoundPolicy(max_iterations),
                TimeBoundPolicy(max_time_ms),
                StuckLoopPolicy(stuck_repeat_threshold, stuck_window,
                                low_progress_iterations, low_progress_reflections),
                UnrecoverablePolicy(planner),
            ]
            if max_tokens:
                self.policies.append(ResourceBoundPolicy(max_tokens))

    @classmethod
    def from_config(cls, config, planner) -> "TerminationEngine":
        return cls(
            planner,
            max_iterations=config.max_iterations,
            max_time_ms=config.max_time_ms,
            max_tokens=config.max_tokens,
            stuck_repeat_threshold=config.stuck_repeat_threshold,
            stuck_window=config.stuck_window,
            low_progress_iterations=config.low_progress_iterations,
            low_progress_reflections=config.low_progress_reflections,
        )

    def check(self, state: AgentState) -> TerminationDecision:
        for policy in self.policies:
            message = policy.evaluate(state)
            if message:
                log_json("INFO", "termination_condition_met", goal=state.goal,
                         details={"reason": policy.reason.value, "message": message,
                                  "iteration": state.iteration_count})
                return TerminationDecision(True, policy.reason, message)
        return TerminationDecision(False)

    def reset(self) -> None:
        for policy in self.policies:
            policy.reset()

    # ==================== REPORTING ====================

    def generate_report(self, state: AgentState, reason: TerminationReason,
                        execution_log: Iterable[Tuple[ToolCall, ToolResult]] = (),
                        errors: Iterable[str] = ()) -> FinalReport:
        tasks = state.plan.tasks if state.plan else []
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETED]
        failed = [t for t in tasks if t.status == TaskStatus.FAILED]
        skipped = [t for t in tasks if t.status == TaskStatus.SKIPPED]

        created: List[str] = []
        modified: List[str] = []
        commands: List[str] = []
        for call, result in execution_log:
            path = str(call.params.get("path") or "")
            if call.kind == ToolKind.FILE_WRITE and path and result.success:
                target = created if result.metadata.get("created", True) else modified
                if path not in created and path not in modified:
                    target.append(path)
            elif call.kind == ToolKind.FILE_DELETE and path and result.success:
                if path not in modified:
                    modified.append(path)
            if call.kind in _COMMAND_KINDS:
                command = call.params.get("command") or result.metadata.get("command")
                if command:
                    commands.append(str(command))

        if reason == TerminationReason.GOAL_ACHIEVED:
            status = ReportStatus.SUCCESS
        elif completed:
            status = ReportStatus.PARTIAL
        else:
            status = ReportStatus.FAILED

        report_errors = [f"{t.name}: {t.error}" for t in failed if t.error]
        report_errors.extend(e for e in errors if e not in report_errors)

        report = FinalReport(
            status=status,
            reason=reason,
            summary=self._summary(state, reason, completed, failed, len(tasks)),
            goal=state.goal,
            completed_tasks=tuple(t.name for t in completed),
            failed_tasks=tuple(t.name for t in failed),
            skipped_tasks=tuple(t.name for t in skipped),
            artifacts=tuple(created + [p for p in modified if p not in created]),
            files_created=tuple(created),
            files_modified=tuple(modified),
            commands_executed=tuple(commands),
            recommendations=tuple(self._recommendations(state, reason, failed)),
            errors=tuple(report_errors),
            iterations=state.iteration_count,
            duration_ms=state.elapsed_ms(),
        )
        log_json("INFO", "report_generated", goal=state.goal,
                 details={"status": status.value, "reason": reason.value,
                          "completed": len(completed), "failed": len(failed)})
        return report

    def _summary(self, state, reason, completed, failed, total) -> str:
        lines = [
            REASON_MESSAGES[reason].format(max_iterations=self.max_iterations),
            "",
            f"Completed {len(completed)} of {total} tasks ({len(failed)} failed).",
        ]
        if completed:
            lines += ["", "Completed:"] + [f"  - {t.name}" for t in completed]
        if failed:
            lines += ["", "Failed:"] + [f"  - {t.name}: {t.error or 'Unknown error'}" for t in failed]
        return "\n".join(lines)

    @staticmethod
    def _recommendations(state, reason, failed) -> List[str]:
        recommendations: List[str] = []
        if reason == TerminationReason.MAX_ITERATIONS:
            recommendations.append("Consider breaking down the goal into smaller sub-goals.")
            recommendations.append("Increase the iteration limit if more time is needed.")
        elif reason == TerminationReason.STUCK_LOOP:
            recommendations.append("The agent was repeating the same actions. Review the task definitions.")
            recommendations.append("Consider providing more specific instructions.")
        elif reason == TerminationReason.UNRECOVERABLE_ERROR and failed:
            recommendations.append(f'Review the failed task: "{failed[0].name}"')
            recommendations.append("Check if dependencies are correctly installed.")
        elif reason == TerminationReason.MAX_TIME:
            recommendations.append("Consider increasing the time limit for complex tasks.")
        elif reason == TerminationReason.RESOURCE_LIMIT:
            recommendations.append("Raise max_tokens or narrow the goal.")

        lessons = [lesson for r in state.reflections[-3:] for lesson in r.lessons_learned]
        if lessons:
            recommendations.append("Lessons learned: " + "; ".join(lessons[:2]))
        return recommendations
