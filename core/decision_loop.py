"""The think -> decide -> act -> observe -> reflect loop.

:class:`DecisionLoop` owns one :class:`~core.types.AgentState` per
:meth:`DecisionLoop.run`. Each iteration starts with a termination check and
a stop-flag check, then walks the five phases in order. The planner, memory,
healer, termination engine and tool gateway are injected collaborators; the
completion service is optional and every step that consults it has a
heuristic fallback.

Typical usage::

    loop = DecisionLoop(planner, memory, healer, termination, gateway,
                        TaskRouter(), Reflector())
    result = loop.run("Add a login page")
    print(result.report.reason)
"""
import re
import threading
import time
from typing import Any, Dict, List, Optional

from core.events import AgentEventType, EventBus
from core.exceptions import LoopError
from core.logging_utils import log_json
from core.schema import ParseFailure, parse_decision, parse_thought
from core.types import (
    Action,
    ActionKind,
    AgentResult,
    AgentState,
    ErrorContext,
    ErrorType,
    FinalReport,
    Importance,
    Observation,
    ObservationKind,
    Phase,
    Plan,
    ReportStatus,
    TaskStatus,
    TerminationDecision,
    TerminationReason,
    ThoughtResult,
    ToolResult,
)

HEAL_SOURCE = "heal"
OBSERVATION_CHARS = 500
_DISCOVERY_MARKERS = re.compile(r"\bTODO\b|\bFIXME\b|Warning")
# Decisions the model may choose between; termination stays with the engine.
_MODEL_ACTIONS = (ActionKind.EXECUTE, ActionKind.RETRY, ActionKind.SKIP, ActionKind.PIVOT, ActionKind.HEAL)

THINK_PROMPT = """You are an autonomous software agent working towards a goal.

## Goal
{goal}

## Situation
{situation}

## Memory
{memory}

Analyze the situation. Respond with a JSON object:
{{"analysis": "...", "concerns": ["..."], "nextSteps": ["..."]}}
"""

DECIDE_PROMPT = """You are an autonomous software agent choosing the next action.

## Current Task
{task}

## Analysis
{analysis}

## Concerns
{concerns}

Choose one action: execute, retry, skip, pivot, heal.
Respond with a JSON object: {{"type": "execute", "reasoning": "..."}}
"""


class DecisionLoop:
    """Drives one goal to a :class:`FinalReport`.

    Args:
        planner: :class:`~agents.planner.PlanningEngine`.
        memory: :class:`~memory.manager.MemoryManager`.
        healer: :class:`~agents.healer.SelfHealer`.
        termination: :class:`~core.termination.TerminationEngine`.
        tools: :class:`~core.tool_executor.ToolGateway`; its execution log
            feeds the report.
        router: Maps tasks to tool calls.
        reflector: Turns observations into reflections.
        model: Optional completion service, already wrapped with a timeout.
        events: Event bus for lifecycle notifications.
        auto_heal: Route fresh errors to the healer before retrying.
        verbose: Log every phase at ``INFO`` rather than ``DEBUG``.
    """

    def __init__(self, planner, memory, healer, termination, tools, router, reflector,
                 model=None, events: Optional[EventBus] = None, auto_heal: bool = True,
                 verbose: bool = True):
        self.planner = planner
        self.memory = memory
        self.healer = healer
        self.termination = termination
        self.tools = tools
        self.router = router
        self.reflector = reflector
        self.model = model
        self.events = events or EventBus(verbose=verbose)
        self.auto_heal = auto_heal
        self.verbose = verbose
        self.state: Optional[AgentState] = None
        self.decision_log: List[Dict[str, Any]] = []
        self._stop = threading.Event()
        self._running = threading.Lock()

    def stop(self) -> None:
        """Ask the loop to stop before its next iteration."""
        self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def _log(self, event: str, details: Optional[dict] = None) -> None:
        log_json("INFO" if self.verbose else "DEBUG", event,
                 goal=self.state.goal if self.state else None, details=details)

    def _emit(self, event_type: AgentEventType, data: Optional[dict] = None) -> None:
        self.events.emit(event_type, data)

    # ==================== RUN ====================

    def run(self, goal: str, context: str = "") -> AgentResult:
        """Run *goal* to completion.

        Errors raised inside the run end up in the report with reason
        ``unrecoverable_error``.

        Raises:
            LoopError: If this loop is already running.
        """
        if not self._running.acquire(blocking=False):
            raise LoopError("DecisionLoop.run is not reentrant")
        try:
            return self._run(goal, context)
        finally:
            self._running.release()

    def _run(self, goal: str, context: str) -> AgentResult:
        self._stop.clear()
        self.termination.reset()
        self.tools.clear_log()
        self.decision_log = []
        self.state = None
        try:
            plan = self.planner.generate_plan(goal, context)
            self.state = AgentState(goal=goal, plan=plan)
            self._sync_current()
            self._emit(AgentEventType.PLAN_CREATED, {"plan_id": plan.id, "tasks": [t.name for t in plan.tasks]})

            while True:
                if self._stop.is_set():
                    decision = TerminationDecision(True, TerminationReason.USER_INTERRUPT, "Stop requested")
                    break
                self.state.phase = Phase.THINK
                decision = self.termination.check(self.state)
                if decision.should_terminate:
                    break
                self.state.iteration_count += 1
                action = self._iterate()
                self._emit(AgentEventType.ITERATION_COMPLETED, {
                    "iteration": self.state.iteration_count, "action": action.kind.value,
                    "progress": self.planner.get_progress(self.state.plan),
                })
                if action.kind == ActionKind.TERMINATE:
                    decision = self._terminate_decision()
                    break

            report = self.termination.generate_report(self.state, decision.reason,
                                                      self.tools.execution_log(), self.state.errors)
        except Exception as e:
            log_json("ERROR", "decision_loop_crashed", goal=goal,
                     details={"error": str(e), "type": type(e).__name__})
            if self.state is None:
                self.state = AgentState(goal=goal, plan=Plan(id="plan-unavailable", goal=goal))
            self.state.errors.append(f"{type(e).__name__}: {e}")
            report = self._crash_report(self.state)

        success = report.reason == TerminationReason.GOAL_ACHIEVED
        if success:
            self.memory.record_completed_goal(goal)
            self._emit(AgentEventType.AGENT_COMPLETED, {"reason": report.reason.value,
                                                        "iterations": report.iterations})
        else:
            self._emit(AgentEventType.AGENT_FAILED, {"reason": report.reason.value,
                                                     "iterations": report.iterations})
        return AgentResult(success=success, report=report, plan=self.state.plan, state=self.state,
                           errors=list(report.errors))

    def _crash_report(self, state: AgentState) -> FinalReport:
        try:
            return self.termination.generate_report(state, TerminationReason.UNRECOVERABLE_ERROR,
                                                    self.tools.execution_log(), state.errors)
        except Exception as e:
            log_json("ERROR", "report_generation_failed", goal=state.goal, details={"error": str(e)})
            return FinalReport(status=ReportStatus.FAILED, reason=TerminationReason.UNRECOVERABLE_ERROR,
                               summary="Stopped due to unrecoverable errors.", goal=state.goal,
                               errors=tuple(state.errors), iterations=state.iteration_count,
                               duration_ms=state.elapsed_ms())

    def _terminate_decision(self) -> TerminationDecision:
        decision = self.termination.check(self.state)
        if decision.should_terminate:
            return decision
        return TerminationDecision(True, TerminationReason.UNRECOVERABLE_ERROR, "No executable tasks remain")

    def _iterate(self) -> Action:
        state = self.state
        thought = self._think()

        state.phase = Phase.DECIDE
        action = self._decide(thought)

        state.phase = Phase.ACT
        self._act(action)
        state.last_action_time = time.time()
        state.actions.append(action)
        self.memory.add_action(action)

        state.phase = Phase.OBSERVE
        observation = self._observe(action)
        state.observations.append(observation)
        self.memory.add_observation(observation)

        state.phase = Phase.REFLECT
        reflection = self._reflect(action, observation)
        state.reflections.append(reflection)

        self.decision_log.append({
            "iteration": state.iteration_count,
            "task": self._task_name(action.task_id),
            "action": action.kind.value,
            "success": reflection.was_successful,
            "lessons": list(reflection.lessons_learned),
        })
        return action

    def _sync_current(self) -> None:
        self.state.current_task = self.state.plan.get_task(self.state.plan.current_task_id)

    def _task_name(self, task_id: Optional[str]) -> Optional[str]:
        task = self.state.plan.get_task(task_id)
        return task.name if task else None

    # ==================== THINK ====================

    def _situation(self) -> str:
        state = self.state
        task = state.current_task
        lines = [
            f"Current task: {task.name if task else 'None'}",
            f"Task status: {task.status.value if task else 'N/A'}",
            f"Iteration: {state.iteration_count}",
            f"Progress: {self.planner.get_progress(state.plan)}%",
        ]
        recent = state.observations[-3:]
        if recent:
            lines.append("Recent observations:")
            lines.extend(f"- [{o.kind.value}] {o.content[:200]}" for o in recent)
        avoid = self.memory.failed_approaches[-3:]
        if avoid:
            lines.append("Failed approaches to avoid:")
            lines.extend(f"- {f.approach}: {f.reason[:100]}" for f in avoid)
        return "\n".join(lines)

    def _think(self) -> ThoughtResult:
        situation = self._situation()
        task = self.state.current_task
        fallback = ThoughtResult(analysis=situation,
                                 next_steps=[f"Execute: {task.name}"] if task else ["Find next task"])
        if self.model is None or task is None:
            return fallback
        try:
            raw = self.model.complete(THINK_PROMPT.format(goal=self.state.goal, situation=situation,
                                                          memory=self.memory.summarize_for_llm(2000)))
        except Exception as e:
            self._log("loop_think_fallback", {"error": str(e)})
            return fallback
        thought = parse_thought(raw)
        if isinstance(thought, ParseFailure):
            self._log("loop_think_fallback", {"reason": thought.reason})
            return fallback
        return thought

    # ==================== DECIDE ====================

    def _decide(self, thought: ThoughtResult) -> Action:
        state = self.state
        task = state.current_task

        if task is None:
            if self.planner.is_blocked(state.plan):
                return Action(ActionKind.PIVOT, reasoning="Plan is blocked, need to revise")
            next_task = self.planner.get_next_executable_task(state.plan)
            if next_task is not None:
                state.plan = self.planner.set_current_task(state.plan, next_task.id)
                self._sync_current()
                return Action(ActionKind.EXECUTE, next_task.id, reasoning=f"Moving to next task: {next_task.name}")
            retryable = self._retryable_task()
            if retryable is not None:
                state.plan = self.planner.set_current_task(state.plan, retryable.id)
                self._sync_current()
                return Action(ActionKind.RETRY, retryable.id, reasoning=f"Retrying failed task: {retryable.name}")
            return Action(ActionKind.TERMINATE, reasoning="No more tasks to execute")

        if task.retries_exhausted:
            return Action(ActionKind.SKIP, task.id,
                          reasoning=f"Task {task.name} failed after {task.retry_count} retries")

        if self.auto_heal and self._fresh_error_for(task.id) is not None:
            return Action(ActionKind.HEAL, task.id, reasoning="Recent error detected, attempting self-healing")

        if task.status == TaskStatus.FAILED:
            return Action(ActionKind.RETRY, task.id, reasoning=f"Retrying task: {task.name}")

        if thought.concerns and self.model is not None:
            chosen = self._model_decision(thought)
            if chosen is not None:
                return chosen

        return Action(ActionKind.EXECUTE, task.id, reasoning=f"Executing task: {task.name}")

    def _retryable_task(self):
        status_by_id = {t.id: t.status for t in self.state.plan.tasks}
        for t in self.state.plan.tasks:
            if (t.status == TaskStatus.FAILED and not t.retries_exhausted
                    and all(status_by_id.get(d) == TaskStatus.COMPLETED for d in t.dependencies)):
                return t
        return None

    def _fresh_error_for(self, task_id: str) -> Optional[Observation]:
        """The last observation, when it is an unhealed error raised by *task_id*."""
        state = self.state
        if not state.observations or not state.actions:
            return None
        last = state.observations[-1]
        if last.kind != ObservationKind.ERROR or last.source == HEAL_SOURCE:
            return None
        if state.actions[-1].task_id != task_id:
            return None
        return last

    def _model_decision(self, thought: ThoughtResult) -> Optional[Action]:
        task = self.state.current_task
        prompt = DECIDE_PROMPT.format(task=f"{task.name}: {task.description}", analysis=thought.analysis,
                                      concerns="\n".join(f"- {c}" for c in thought.concerns))
        try:
            raw = self.model.complete(prompt)
        except Exception as e:
            self._log("loop_decide_fallback", {"error": str(e)})
            return None
        parsed = parse_decision(raw)
        if isinstance(parsed, ParseFailure):
            self._log("loop_decide_fallback", {"reason": parsed.reason})
            return None
        kind = parsed["kind"]
        if kind not in _MODEL_ACTIONS:
            self._log("loop_decide_fallback", {"reason": f"action {kind.value} not allowed here"})
            return None
        if kind == ActionKind.HEAL and self._fresh_error_for(task.id) is None:
            return None
        if kind == ActionKind.RETRY and task.status != TaskStatus.FAILED:
            kind = ActionKind.EXECUTE
        return Action(kind, task.id, reasoning=parsed["reasoning"] or "Model decision")

    # ==================== ACT ====================

    def _act(self, action: Action) -> None:
        self._log("loop_acting", {"action": action.kind.value, "task": self._task_name(action.task_id),
                                  "reason": action.reasoning})
        handler = {
            ActionKind.EXECUTE: self._act_execute,
            ActionKind.RETRY: self._act_execute,
            ActionKind.SKIP: self._act_skip,
            ActionKind.PIVOT: self._act_pivot,
            ActionKind.HEAL: self._act_heal,
            ActionKind.TERMINATE: self._act_terminate,
        }[action.kind]
        action.result = handler(action)

    def _act_execute(self, action: Action) -> ToolResult:
        state = self.state
        task = state.plan.get_task(action.task_id)
        if task is None:
            return ToolResult(False, error="No task to execute")
        state.plan = self.planner.update_task_status(state.plan, task.id, TaskStatus.IN_PROGRESS)
        self._sync_current()
        self._emit(AgentEventType.TASK_STARTED, {"task_id": task.id, "name": task.name,
                                                 "attempt": task.retry_count + 1})
        action.tool_call = self.router.route(task)
        return self.tools.execute(action.tool_call)

    def _act_skip(self, action: Action) -> ToolResult:
        task = self.state.plan.get_task(action.task_id)
        if task is None:
            return ToolResult(False, error="No task to skip")
        self.state.plan = self.planner.update_task_status(self.state.plan, task.id, TaskStatus.SKIPPED)
        self._sync_current()
        return ToolResult(True, output=f"Task skipped: {task.name}")

    def _act_pivot(self, action: Action) -> ToolResult:
        state = self.state
        suggestion = next((r.revision_suggestion for r in reversed(state.reflections) if r.revision_suggestion), None)
        new_info = "\n".join(filter(None, [suggestion] + [o.content for o in state.observations[-3:]]))
        revised = self.planner.refine_plan(state.plan, new_info or "The plan is blocked: no task can start.")
        if revised is state.plan:
            return ToolResult(False, error="Plan could not be revised")
        state.plan = revised
        self._sync_current()
        self._emit(AgentEventType.PLAN_REVISED, {"plan_id": revised.id, "revision": revised.revision,
                                                 "tasks": [t.name for t in revised.tasks]})
        return ToolResult(True, output=f"Plan revised (revision {revised.revision})")

    def _act_heal(self, action: Action) -> ToolResult:
        error = self._fresh_error_for(action.task_id)
        if error is None:
            return ToolResult(False, error="No error to heal")
        # The healer matches this message against raw tool output.
        failed = self.state.actions[-1].result
        message = (failed.error or failed.output) if failed is not None else None
        context = ErrorContext(type=ErrorType.UNKNOWN, message=(message or error.content).strip(),
                               stack=failed.output if failed is not None and failed.error else None)
        self._emit(AgentEventType.HEALING_STARTED, {"task_id": action.task_id, "error": error.content[:200]})
        result = self.healer.heal(context)
        self._emit(AgentEventType.HEALING_COMPLETED, {"task_id": action.task_id, "fixed": result.fixed,
                                                      "state": result.state.value,
                                                      "attempts": len(result.attempts)})
        return ToolResult(result.fixed, output=result.message,
                          error=None if result.fixed else f"Healing failed: {result.message}",
                          metadata={"healing_state": result.state.value})

    def _act_terminate(self, action: Action) -> ToolResult:
        return ToolResult(True, output="Termination requested")

    # ==================== OBSERVE ====================

    def _observe(self, action: Action) -> Observation:
        result = action.result or ToolResult(False, error="No result")
        if action.kind == ActionKind.HEAL:
            source = HEAL_SOURCE
        elif action.tool_call is not None:
            source = action.tool_call.kind.value
        else:
            source = action.kind.value

        if not result.success:
            observation = Observation(ObservationKind.ERROR, source,
                                      f"Error: {result.error or result.output or 'Unknown error'}",
                                      Importance.HIGH)
            self._emit(AgentEventType.ERROR_DETECTED, {"source": source, "error": observation.content[:200]})
            return observation

        content = (result.output or "")[:OBSERVATION_CHARS]
        if action.kind in (ActionKind.SKIP, ActionKind.PIVOT, ActionKind.TERMINATE):
            return Observation(ObservationKind.STATE_CHANGE, source, content)
        if _DISCOVERY_MARKERS.search(result.output or ""):
            return Observation(ObservationKind.DISCOVERY, source, content, Importance.MEDIUM)
        return Observation(ObservationKind.TOOL_RESULT, source, content)

    # ==================== REFLECT ====================

    def _reflect(self, action: Action, observation: Observation):
        state = self.state
        success = observation.kind != ObservationKind.ERROR
        task = state.plan.get_task(action.task_id)

        if task is not None and action.kind in (ActionKind.EXECUTE, ActionKind.RETRY):
            if success:
                state.plan = self.planner.update_task_status(state.plan, task.id, TaskStatus.COMPLETED,
                                                             result=observation.content)
                self._emit(AgentEventType.TASK_COMPLETED, {"task_id": task.id, "name": task.name})
            else:
                self._record_task_failure(task, observation)
        elif task is not None and action.kind == ActionKind.HEAL:
            if success:
                if not task.retries_exhausted:
                    state.plan = self.planner.update_task_status(state.plan, task.id, TaskStatus.PENDING)
                    state.plan = self.planner.set_current_task(state.plan, task.id)
            else:
                self._record_task_failure(task, observation)
        self._sync_current()

        return self.reflector.reflect(observation, state.reflections, task)

    def _record_task_failure(self, task, observation: Observation) -> None:
        state = self.state
        state.plan = self.planner.update_task_status(state.plan, task.id, TaskStatus.FAILED,
                                                     error=observation.content)
        updated = state.plan.get_task(task.id)
        self.memory.record_failure(task.name, observation.content[:200], context=task.description)
        self._emit(AgentEventType.TASK_FAILED, {"task_id": task.id, "name": task.name,
                                                "retry_count": updated.retry_count,
                                                "error": observation.content[:200]})
        if not updated.retries_exhausted:
            state.plan = self.planner.set_current_task(state.plan, task.id)
