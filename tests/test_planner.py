import json

import pytest

from agents.planner import FALLBACK_TASK_NAME, PlanningEngine
from core.exceptions import PlanningError
from core.types import Plan, PlanStatus, Task, TaskStatus
from memory.manager import MemoryManager
from tests.fakes.fake_services import ScriptedCompletion

LOGIN_PLAN = json.dumps([
    {"name": "Create login form", "description": "HTML form with email and password", "dependencies": []},
    {"name": "Add validation", "description": "Validate inputs", "dependencies": [0]},
    {"name": "Wire submit handler", "description": "POST credentials", "dependencies": [0, 1]},
])


def _planner(*replies, memory=None):
    model = ScriptedCompletion(list(replies)) if replies else None
    return PlanningEngine(memory or MemoryManager(persist=False), model=model)


def _plan(*tasks):
    plan = Plan(id="plan-1", goal="goal", tasks=list(tasks))
    return plan


def test_generate_plan_builds_dependency_ids():
    planner = _planner(LOGIN_PLAN)
    plan = planner.generate_plan("Create a login page")

    names = [t.name for t in plan.tasks]
    assert names == ["Create login form", "Add validation", "Wire submit handler"]
    form, validation, submit = plan.tasks
    assert validation.dependencies == [form.id]
    assert submit.dependencies == [form.id, validation.id]
    assert plan.current_task_id == form.id
    assert plan.status == PlanStatus.ACTIVE
    assert all(t.status == TaskStatus.PENDING for t in plan.tasks)


def test_generate_plan_without_model_falls_back():
    plan = _planner().generate_plan("Do the thing")
    assert len(plan.tasks) == 1
    assert plan.tasks[0].name == FALLBACK_TASK_NAME
    assert plan.tasks[0].description == "Do the thing"


def test_generate_plan_unparseable_reply_falls_back():
    plan = _planner("I cannot help with that").generate_plan("goal")
    assert [t.name for t in plan.tasks] == [FALLBACK_TASK_NAME]


def test_generate_plan_model_error_falls_back():
    plan = _planner(RuntimeError("provider down")).generate_plan("goal")
    assert [t.name for t in plan.tasks] == [FALLBACK_TASK_NAME]


def test_invalid_and_self_dependencies_are_dropped():
    reply = json.dumps([{"name": "a"}, {"name": "b", "dependencies": [1, 7, -1, 0]}])
    plan = _planner(reply).generate_plan("goal")
    assert plan.tasks[1].dependencies == [plan.tasks[0].id]


def test_prompt_lists_failed_approaches():
    memory = MemoryManager(persist=False)
    memory.record_failure("login with jquery", "deprecated")
    model = ScriptedCompletion([LOGIN_PLAN])
    PlanningEngine(memory, model=model).generate_plan("build login page")
    assert "Avoid these failed approaches" in model.prompts[0]
    assert "login with jquery" in model.prompts[0]


def test_prompt_lists_available_tools():
    model = ScriptedCompletion([LOGIN_PLAN])
    PlanningEngine(MemoryManager(persist=False), model=model).generate_plan("build login page")
    assert "## Available Tools" in model.prompts[0]
    assert "- code_search: search file contents for text" in model.prompts[0]


def test_update_task_status_returns_new_plan():
    planner = _planner(LOGIN_PLAN)
    plan = planner.generate_plan("login")
    form = plan.tasks[0]

    started = planner.update_task_status(plan, form.id, TaskStatus.IN_PROGRESS)
    done = planner.update_task_status(started, form.id, TaskStatus.COMPLETED, result="ok")

    assert plan.tasks[0].status == TaskStatus.PENDING
    assert done.tasks[0].status == TaskStatus.COMPLETED
    assert done.tasks[0].completed_at is not None
    assert done.current_task_id == done.tasks[1].id


def test_failure_increments_retry_count_and_keeps_error():
    planner = _planner()
    plan = planner.generate_plan("goal")
    task_id = plan.tasks[0].id
    failed = planner.update_task_status(plan, task_id, TaskStatus.FAILED, error="boom")
    assert failed.tasks[0].retry_count == 1
    assert failed.tasks[0].error == "boom"
    assert failed.status == PlanStatus.FAILED


def test_update_unknown_task_raises():
    planner = _planner()
    plan = planner.generate_plan("goal")
    with pytest.raises(PlanningError):
        planner.update_task_status(plan, "task-missing", TaskStatus.COMPLETED)


def test_cannot_start_task_with_unmet_dependencies():
    planner = _planner(LOGIN_PLAN)
    plan = planner.generate_plan("login")
    with pytest.raises(PlanningError):
        planner.update_task_status(plan, plan.tasks[2].id, TaskStatus.IN_PROGRESS)


def test_completing_every_task_completes_plan():
    planner = _planner(LOGIN_PLAN)
    plan = planner.generate_plan("login")
    for task in list(plan.tasks):
        plan = planner.update_task_status(plan, task.id, TaskStatus.COMPLETED)
    assert plan.status == PlanStatus.COMPLETED
    assert plan.current_task_id is None
    assert planner.get_progress(plan) == 100


def test_parallel_tasks_lists_ready_work():
    a = Task("a", "a", "a")
    b = Task("b", "b", "b")
    c = Task("c", "c", "c", dependencies=["a"])
    assert [t.id for t in _planner().get_parallel_tasks(_plan(a, b, c))] == ["a", "b"]


def test_is_blocked_on_cycle_but_not_downstream_of_failure():
    planner = _planner()
    cyclic = _plan(Task("a", "a", "a", dependencies=["b"]), Task("b", "b", "b", dependencies=["a"]))
    assert planner.is_blocked(cyclic)
    assert planner.find_cycles(cyclic)

    after_failure = _plan(Task("a", "a", "a", status=TaskStatus.FAILED), Task("b", "b", "b", dependencies=["a"]))
    assert not planner.is_blocked(after_failure)
    assert planner.dependents_of(after_failure, ["a"]) == {"b"}


def test_missing_dependency_blocks():
    plan = _plan(Task("a", "a", "a", dependencies=["ghost"]))
    assert _planner().is_blocked(plan)


def test_topological_sort_respects_dependencies_and_plan_order():
    plan = _plan(Task("c", "c", "c", dependencies=["a"]), Task("a", "a", "a"), Task("b", "b", "b"))
    assert [t.id for t in _planner().topological_sort(plan)] == ["a", "c", "b"]


def test_topological_sort_rejects_cycles():
    plan = _plan(Task("a", "a", "a", dependencies=["b"]), Task("b", "b", "b", dependencies=["a"]))
    with pytest.raises(PlanningError):
        _planner().topological_sort(plan)


def test_refine_keeps_matching_tasks_and_adds_new_ones():
    revised_reply = json.dumps([
        {"name": "Create login form", "description": "form"},
        {"name": "Add validation", "description": "Validate", "dependencies": [0], "status": "skipped"},
        {"name": "Add CSRF token", "description": "csrf", "dependencies": [0]},
    ])
    planner = _planner(LOGIN_PLAN, revised_reply)
    plan = planner.generate_plan("login")
    form_id = plan.tasks[0].id
    plan = planner.update_task_status(plan, form_id, TaskStatus.COMPLETED)

    revised = planner.refine_plan(plan, "use a CSRF token")

    assert revised.revision == 1
    assert revised.tasks[0].id == form_id
    assert revised.tasks[0].status == TaskStatus.COMPLETED
    assert revised.tasks[1].status == TaskStatus.SKIPPED
    assert revised.tasks[2].name == "Add CSRF token"
    assert revised.tasks[2].dependencies == [form_id]
    assert revised.current_task_id == revised.tasks[2].id


def test_refine_parse_failure_keeps_finished_work():
    planner = _planner(LOGIN_PLAN, "no idea")
    plan = planner.generate_plan("login")
    plan = planner.update_task_status(plan, plan.tasks[0].id, TaskStatus.COMPLETED)

    revised = planner.refine_plan(plan, "new info")

    assert [t.name for t in revised.tasks] == ["Create login form", FALLBACK_TASK_NAME]


def test_refine_stops_at_revision_limit():
    planner = PlanningEngine(MemoryManager(persist=False), model=ScriptedCompletion([LOGIN_PLAN]), max_revisions=0)
    plan = planner.generate_plan("login")
    assert planner.refine_plan(plan, "anything") is plan


def test_summarize_plan_marks_statuses():
    planner = _planner(LOGIN_PLAN)
    plan = planner.generate_plan("login")
    plan = planner.update_task_status(plan, plan.tasks[0].id, TaskStatus.COMPLETED)
    summary = planner.summarize_plan(plan)
    assert "Progress: 33%" in summary
    assert "1. [x] Create login form" in summary
    assert "3. [ ] Wire submit handler (depends on: 1, 2)" in summary
    assert "Current: Add validation" in summary
