import time

import pytest

from agents.planner import PlanningEngine
from core.policies.iteration_bound import IterationBoundPolicy
from core.policies.resource_bound import ResourceBoundPolicy
from core.policies.stuck_loop import StuckLoopPolicy, state_fingerprint
from core.policies.time_bound import TimeBoundPolicy
from core.termination import TerminationEngine
from core.types import (
    AgentState,
    Importance,
    Observation,
    ObservationKind,
    Plan,
    PlanStatus,
    Reflection,
    ReportStatus,
    Task,
    TaskStatus,
    TerminationReason,
    ToolCall,
    ToolKind,
    ToolResult,
)
from memory.manager import MemoryManager


def _planner():
    return PlanningEngine(MemoryManager(persist=False))


def _state(*tasks, **kwargs):
    plan = Plan(id="plan-1", goal="goal", tasks=list(tasks))
    return AgentState(goal="goal", plan=plan, **kwargs)


def _engine(**kwargs):
    return TerminationEngine(_planner(), **kwargs)


def test_nothing_fires_on_fresh_state():
    decision = _engine().check(_state(Task("a", "a", "a")))
    assert decision.should_terminate is False
    assert decision.reason is None


def test_goal_achieved_when_every_task_succeeded():
    state = _state(Task("a", "a", "a", status=TaskStatus.COMPLETED), Task("b", "b", "b", status=TaskStatus.SKIPPED))
    decision = _engine().check(state)
    assert decision.reason == TerminationReason.GOAL_ACHIEVED


def test_goal_achieved_outranks_iteration_bound():
    state = _state(Task("a", "a", "a", status=TaskStatus.COMPLETED), iteration_count=500)
    assert _engine(max_iterations=10).check(state).reason == TerminationReason.GOAL_ACHIEVED


def test_empty_active_plan_is_not_achieved():
    assert not _engine().check(_state()).should_terminate


def test_iteration_bound_fires_at_limit():
    state = _state(Task("a", "a", "a"), iteration_count=10)
    decision = _engine(max_iterations=10).check(state)
    assert decision.reason == TerminationReason.MAX_ITERATIONS


def test_time_bound_uses_elapsed_time():
    state = _state(Task("a", "a", "a"), start_time=100.0)
    policy = TimeBoundPolicy(max_time_ms=5000, clock=lambda: 106.0)
    assert policy.evaluate(state).startswith("Exceeded time limit")
    assert TimeBoundPolicy(max_time_ms=5000, clock=lambda: 101.0).evaluate(state) == ""


def test_iteration_outranks_time():
    state = _state(Task("a", "a", "a"), iteration_count=3, start_time=time.time() - 10)
    decision = _engine(max_iterations=3, max_time_ms=1).check(state)
    assert decision.reason == TerminationReason.MAX_ITERATIONS


def test_stuck_loop_on_repeated_fingerprint():
    engine = _engine()
    state = _state(Task("a", "a", "a"))
    assert not engine.check(state).should_terminate
    assert not engine.check(state).should_terminate
    decision = engine.check(state)
    assert decision.reason == TerminationReason.STUCK_LOOP


def test_changing_state_is_not_stuck():
    policy = StuckLoopPolicy()
    task = Task("a", "a", "a")
    state = _state(task)
    for status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.PENDING):
        task.status = status
        assert policy.evaluate(state) == ""


def test_fingerprint_format():
    task = Task("a", "a", "a", status=TaskStatus.FAILED)
    state = _state(task, Task("b", "b", "b"), current_task=task)
    assert state_fingerprint(state) == "think|a|a:failed,b:pending"


def test_low_progress_after_failed_reflections():
    policy = StuckLoopPolicy(repeat_threshold=100)
    state = _state(Task("a", "a", "a"), iteration_count=10, reflections=[Reflection(False)] * 5)
    assert policy.evaluate(state).startswith("No successful step")

    state.reflections[-1] = Reflection(True)
    assert policy.evaluate(state) == ""


def test_reset_clears_stuck_history():
    engine = _engine()
    state = _state(Task("a", "a", "a"))
    engine.check(state)
    engine.check(state)
    engine.reset()
    assert not engine.check(state).should_terminate


def test_unrecoverable_when_exhausted_task_blocks_the_rest():
    a = Task("a", "A", "a", status=TaskStatus.FAILED, retry_count=3)
    b = Task("b", "B", "b", dependencies=["a"])
    decision = _engine().check(_state(a, b))
    assert decision.reason == TerminationReason.UNRECOVERABLE_ERROR
    assert "A" in decision.message


def test_not_unrecoverable_while_independent_work_remains():
    a = Task("a", "A", "a", status=TaskStatus.FAILED, retry_count=3)
    c = Task("c", "C", "c")
    assert not _engine().check(_state(a, c)).should_terminate


def test_not_unrecoverable_while_retries_remain():
    a = Task("a", "A", "a", status=TaskStatus.FAILED, retry_count=1)
    b = Task("b", "B", "b", dependencies=["a"])
    assert not _engine().check(_state(a, b)).should_terminate


def test_resource_limit_only_when_configured():
    observations = [Observation(ObservationKind.TOOL_RESULT, "t", "x" * 400)]
    state = _state(Task("a", "a", "a"), observations=observations)
    assert not _engine().check(state).should_terminate
    assert _engine(max_tokens=100).check(state).reason == TerminationReason.RESOURCE_LIMIT
    assert ResourceBoundPolicy(1000).estimate_tokens(state) == 100


def test_custom_policy_list():
    engine = _engine(policies=[IterationBoundPolicy(1)])
    assert engine.check(_state(iteration_count=1)).reason == TerminationReason.MAX_ITERATIONS


def test_from_config_copies_limits():
    from core.config_manager import AgentConfig
    engine = TerminationEngine.from_config(AgentConfig(max_iterations=7, max_tokens=10), _planner())
    assert engine.max_iterations == 7
    assert isinstance(engine.policies[-1], ResourceBoundPolicy)


# -- reports -----------------------------------------------------------------

def test_report_success_lists_files_and_commands():
    state = _state(Task("a", "Write page", "a", status=TaskStatus.COMPLETED), iteration_count=4)
    state.plan.status = PlanStatus.COMPLETED
    log = [
        (ToolCall(ToolKind.FILE_WRITE, {"path": "index.html"}), ToolResult(True, metadata={"created": True})),
        (ToolCall(ToolKind.FILE_WRITE, {"path": "app.js"}), ToolResult(True, metadata={"created": False})),
        (ToolCall(ToolKind.FILE_WRITE, {"path": "index.html"}), ToolResult(True, metadata={"created": False})),
        (ToolCall(ToolKind.FILE_WRITE, {"path": "broken.txt"}), ToolResult(False, error="disk")),
        (ToolCall(ToolKind.FILE_DELETE, {"path": "old.css"}), ToolResult(True)),
        (ToolCall(ToolKind.SHELL, {"command": "npm install"}), ToolResult(True)),
        (ToolCall(ToolKind.BUILD), ToolResult(True, metadata={"command": "npm run build"})),
        (ToolCall(ToolKind.FILE_READ, {"path": "index.html"}), ToolResult(True)),
    ]

    report = _engine().generate_report(state, TerminationReason.GOAL_ACHIEVED, log)

    assert report.status == ReportStatus.SUCCESS
    assert report.goal == "goal"
    assert report.files_created == ("index.html",)
    assert report.files_modified == ("app.js", "old.css")
    assert report.artifacts == ("index.html", "app.js", "old.css")
    assert report.commands_executed == ("npm install", "npm run build")
    assert report.completed_tasks == ("Write page",)
    assert report.iterations == 4
    assert report.summary.startswith("Goal successfully achieved.")


def test_report_partial_and_failed_status():
    done = Task("a", "A", "a", status=TaskStatus.COMPLETED)
    failed = Task("b", "B", "b", status=TaskStatus.FAILED, error="boom")
    partial = _engine().generate_report(_state(done, failed), TerminationReason.MAX_ITERATIONS)
    assert partial.status == ReportStatus.PARTIAL
    assert partial.errors == ("B: boom",)
    assert "Increase the iteration limit if more time is needed." in partial.recommendations

    nothing = _engine().generate_report(_state(failed), TerminationReason.UNRECOVERABLE_ERROR, errors=["crash"])
    assert nothing.status == ReportStatus.FAILED
    assert nothing.errors == ("B: boom", "crash")
    assert nothing.recommendations[0] == 'Review the failed task: "B"'


def test_report_includes_recent_lessons():
    state = _state(Task("a", "A", "a"),
                   reflections=[Reflection(False, ["Task failed: x", "context_gap: y"])])
    report = _engine().generate_report(state, TerminationReason.STUCK_LOOP)
    assert report.recommendations[-1] == "Lessons learned: Task failed: x; context_gap: y"


@pytest.mark.parametrize("reason", list(TerminationReason))
def test_every_reason_has_a_summary(reason):
    report = _engine(max_iterations=9).generate_report(_state(Task("a", "A", "a")), reason)
    assert report.reason == reason
    assert report.summary
    assert report.to_dict()["reason"] == reason.value
