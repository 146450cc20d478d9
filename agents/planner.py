import time
import uuid
import dataclasses
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx

from core.exceptions import PlanningError
from core.logging_utils import log_json
from core.schema import ParseFailure, parse_task_list
from core.tool_executor import describe_tools
from core.types import SUCCESS_STATUSES, TERMINAL_STATUSES, Plan, PlanStatus, Task, TaskStatus

MAX_SUBTASKS = 20
MAX_PLAN_REVISIONS = 5
FALLBACK_TASK_NAME = "Execute Goal"

PLANNING_PROMPT = """
You are an autonomous software engineering agent. Break down the following goal into a list of executable tasks.

## Goal
{goal}

## Context
{context}
{avoid}
## Available Tools
{tools}

## Instructions
1. Decompose the goal into 3-10 concrete, actionable tasks
2. Each task should be independently verifiable and carried out by one of the tools above
3. Specify dependencies between tasks (which tasks must complete first)
4. Order tasks logically (dependencies first)

## Output Format
Return a JSON array of tasks. "dependencies" holds 0-based indices of earlier tasks:
[
  {{"name": "Short task name", "description": "What to do", "dependencies": []}},
  {{"name": "Another task", "description": "What to do", "dependencies": [0]}}
]

Return ONLY the JSON array, no other text.
"""

REFINEMENT_PROMPT = """
You are an autonomous software engineering agent. Revise the plan based on new information.

## Original Goal
{goal}

## Current Plan (revision {revision})
{tasks}

## New Information
{new_info}

## Instructions
1. Adjust the remaining pending tasks based on the new information
2. Add new tasks if needed
3. Mark tasks that are no longer necessary with "status": "skipped"
4. Keep completed tasks as-is and keep their names unchanged

## Output Format
Return the updated JSON array of all tasks (including completed ones). "dependencies" holds 0-based indices into this array:
[
  {{"name": "...", "description": "...", "dependencies": []}},
  {{"name": "New task", "description": "...", "dependencies": [0]}}
]

Return ONLY the JSON array.
"""

_STATUS_MARKERS = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[~]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[#]",
    TaskStatus.SKIPPED: "[-]",
}


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class PlanningEngine:
    """
    Turns a goal into a dependency-ordered task plan and keeps it current.

    Every method that changes a plan returns a new :class:`Plan`; the input is
    never mutated. The completion service is optional: without one, or when a
    reply cannot be parsed, the engine falls back to a single catch-all task.
    """
    def __init__(self, memory, model=None, max_retries: int = 3,
                 max_revisions: int = MAX_PLAN_REVISIONS, max_subtasks: int = MAX_SUBTASKS):
        self.memory = memory
        self.model = model
        self.max_retries = max_retries
        self.max_revisions = max_revisions
        self.max_subtasks = max_subtasks

    # ==================== PLAN CONSTRUCTION ====================

    def generate_plan(self, goal: str, context: str = "") -> Plan:
        """
        Decompose *goal* into tasks. Failed approaches recorded in memory for
        this goal are listed in the prompt so the model can steer around them.
        """
        plan_id = _new_id("plan")
        relevant = self.memory.get_relevant_memories(goal)
        avoid = ""
        if relevant.failed_approaches:
            avoid = "\nIMPORTANT - Avoid these failed approaches:\n" + "\n".join(
                f"- {f.approach}: {f.reason}" for f in relevant.failed_approaches) + "\n"
        prompt = PLANNING_PROMPT.format(goal=goal, context=context or "No additional context provided.",
                                        avoid=avoid, tools=describe_tools())

        tasks: Optional[List[Task]] = None
        response = self._ask(prompt, "plan_generation")
        if response is not None:
            specs = parse_task_list(response, self.max_subtasks)
            if isinstance(specs, ParseFailure):
                log_json("WARN", "plan_parse_failed", goal=goal, details={"reason": specs.reason})
            else:
                tasks = self._build_tasks(specs, existing=[])
        if not tasks:
            tasks = [self._fallback_task(goal)]

        plan = Plan(id=plan_id, goal=goal, tasks=tasks)
        plan.current_task_id = self._next_id(plan)
        cycles = self.find_cycles(plan)
        if cycles:
            log_json("WARN", "plan_has_dependency_cycles", goal=goal, details={"cycles": cycles})
        log_json("INFO", "plan_generated", goal=goal, details={"plan_id": plan_id, "tasks": len(tasks)})
        return plan

    def refine_plan(self, plan: Plan, new_info: str) -> Plan:
        """
        Ask the model to revise *plan* given *new_info*.

        Tasks in the reply are matched to existing ones by name; a match keeps
        its id, status, retry count and creation time. Completed tasks the reply
        leaves out are kept. An unparseable reply collapses the unfinished part
        of the plan into a single catch-all task.
        """
        if plan.revision >= self.max_revisions:
            log_json("WARN", "plan_revision_limit_reached", goal=plan.goal,
                     details={"revision": plan.revision, "limit": self.max_revisions})
            return plan

        listing = "\n".join(f"{i}. [{t.status.value}] {t.name}: {t.description}" for i, t in enumerate(plan.tasks))
        prompt = REFINEMENT_PROMPT.format(goal=plan.goal, revision=plan.revision, tasks=listing,
                                          new_info=new_info)
        response = self._ask(prompt, "plan_refinement")
        if response is None:
            return plan

        finished = [t for t in plan.tasks if t.status in SUCCESS_STATUSES]
        specs = parse_task_list(response, self.max_subtasks)
        if isinstance(specs, ParseFailure):
            log_json("WARN", "plan_refine_parse_failed", goal=plan.goal, details={"reason": specs.reason})
            tasks = finished + [self._fallback_task(plan.goal)]
        else:
            tasks = self._build_tasks(specs, existing=plan.tasks)
            kept = {t.id for t in tasks}
            tasks = [t for t in finished if t.id not in kept] + tasks

        revised = dataclasses.replace(plan, tasks=tasks, revision=plan.revision + 1, updated_at=time.time())
        revised = self._settle(revised, recompute_current=True)
        log_json("INFO", "plan_refined", goal=plan.goal,
                 details={"plan_id": plan.id, "revision": revised.revision, "tasks": len(tasks)})
        return revised

    def _ask(self, prompt: str, purpose: str) -> Optional[str]:
        if self.model is None:
            return None
        try:
            return self.model.complete(prompt)
        except Exception as e:
            log_json("WARN", "planner_completion_failed", details={"purpose": purpose, "error": str(e)})
            return None

    def _fallback_task(self, goal: str) -> Task:
        return Task(id=_new_id("task"), name=FALLBACK_TASK_NAME, description=goal, max_retries=self.max_retries)

    def _build_tasks(self, specs: List[dict], existing: Iterable[Task]) -> List[Task]:
        by_name: Dict[str, Task] = {}
        for task in existing:
            by_name.setdefault(task.name, task)

        tasks: List[Task] = []
        for spec in specs:
            match = by_name.pop(spec["name"], None)
            if match is not None:
                task = dataclasses.replace(match, description=spec["description"], dependencies=[])
                if spec["status"] == TaskStatus.SKIPPED.value and task.status == TaskStatus.PENDING:
                    task.status = TaskStatus.SKIPPED
            else:
                task = Task(id=_new_id("task"), name=spec["name"], description=spec["description"],
                            max_retries=self.max_retries)
            tasks.append(task)

        for index, (task, spec) in enumerate(zip(tasks, specs)):
            deps = []
            for d in spec["dependencies"]:
                if 0 <= d < len(tasks) and d != index:
                    dep_id = tasks[d].id
                    if dep_id not in deps:
                        deps.append(dep_id)
                else:
                    log_json("DEBUG", "plan_dependency_dropped", details={"task": task.name, "index": d})
            task.dependencies = deps
        return tasks

    # ==================== TASK SELECTION ====================

    def get_next_executable_task(self, plan: Plan) -> Optional[Task]:
        """Earliest-created pending task whose dependencies are all completed."""
        status_by_id = {t.id: t.status for t in plan.tasks}
        candidates = [
            t for t in plan.tasks
            if t.status == TaskStatus.PENDING
            and all(status_by_id.get(dep) == TaskStatus.COMPLETED for dep in t.dependencies)
        ]
        if not candidates:
            return None
        # min() keeps the first of equal created_at values, i.e. plan order.
        return min(candidates, key=lambda t: t.created_at)

    def get_parallel_tasks(self, plan: Plan) -> List[Task]:
        """Every task that could start right now, in plan order."""
        status_by_id = {t.id: t.status for t in plan.tasks}
        return [
            t for t in plan.tasks
            if t.status == TaskStatus.PENDING
            and all(status_by_id.get(dep) == TaskStatus.COMPLETED for dep in t.dependencies)
        ]

    def _next_id(self, plan: Plan) -> Optional[str]:
        task = self.get_next_executable_task(plan)
        return task.id if task else None

    # ==================== STATUS UPDATES ====================

    def update_task_status(self, plan: Plan, task_id: str, status: TaskStatus,
                           result: Optional[str] = None, error: Optional[str] = None) -> Plan:
        """Return a copy of *plan* with *task_id* moved to *status*.

        A failure increments the task's retry count. Settling into a terminal
        state recomputes the current task pointer and the plan status.

        Raises:
            PlanningError: If the task is unknown, or starts or finishes while
                one of its dependencies is not completed.
        """
        target = plan.get_task(task_id)
        if target is None:
            raise PlanningError(f"Unknown task id '{task_id}' in plan {plan.id}")
        if status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED):
            status_by_id = {t.id: t.status for t in plan.tasks}
            unmet = [d for d in target.dependencies if status_by_id.get(d) != TaskStatus.COMPLETED]
            if unmet:
                raise PlanningError(f"Task '{target.name}' cannot become {status.value}: "
                                    f"dependencies not completed: {unmet}")

        now = time.time()
        updated = dataclasses.replace(
            target,
            status=status,
            result=result[:2000] if result is not None else target.result,
            error=error if status == TaskStatus.FAILED else (None if status == TaskStatus.COMPLETED else target.error),
            retry_count=target.retry_count + 1 if status == TaskStatus.FAILED else target.retry_count,
            completed_at=now if status in (TaskStatus.COMPLETED, TaskStatus.FAILED) else None,
        )
        tasks = [updated if t.id == task_id else t for t in plan.tasks]
        new_plan = dataclasses.replace(plan, tasks=tasks, updated_at=now)
        return self._settle(new_plan, recompute_current=status in TERMINAL_STATUSES)

    def set_current_task(self, plan: Plan, task_id: Optional[str]) -> Plan:
        if task_id is not None and plan.get_task(task_id) is None:
            raise PlanningError(f"Unknown task id '{task_id}' in plan {plan.id}")
        return dataclasses.replace(plan, current_task_id=task_id)

    def _settle(self, plan: Plan, recompute_current: bool) -> Plan:
        current = self._next_id(plan) if recompute_current else plan.current_task_id
        all_done = all(t.status in SUCCESS_STATUSES for t in plan.tasks)
        any_failed = any(t.status == TaskStatus.FAILED for t in plan.tasks)
        if all_done:
            status = PlanStatus.COMPLETED
        elif any_failed and current is None and self.get_next_executable_task(plan) is None:
            status = PlanStatus.FAILED
        elif plan.status in (PlanStatus.COMPLETED, PlanStatus.FAILED):
            status = PlanStatus.ACTIVE
        else:
            status = plan.status
        return dataclasses.replace(plan, current_task_id=current, status=status)

    # ==================== GRAPH QUERIES ====================

    def dependency_graph(self, plan: Plan) -> nx.DiGraph:
        """Directed graph with an edge from each dependency to its dependent task."""
        graph = nx.DiGraph()
        for task in plan.tasks:
            graph.add_node(task.id)
        for task in plan.tasks:
            for dep in task.dependencies:
                if dep in graph:
                    graph.add_edge(dep, task.id)
        return graph

    def find_cycles(self, plan: Plan) -> List[List[str]]:
        return [list(c) for c in nx.simple_cycles(self.dependency_graph(plan))]

    def topological_sort(self, plan: Plan) -> List[Task]:
        """Tasks in an order that respects dependencies; ties follow plan order.

        Raises:
            PlanningError: If the dependency graph has a cycle.
        """
        order = {t.id: i for i, t in enumerate(plan.tasks)}
        try:
            ids = list(nx.lexicographical_topological_sort(self.dependency_graph(plan), key=order.get))
        except nx.NetworkXUnfeasible as e:
            raise PlanningError(f"Plan {plan.id} has a dependency cycle") from e
        return [plan.get_task(i) for i in ids]

    def dependents_of(self, plan: Plan, task_ids: Iterable[str]) -> Set[str]:
        """Ids of every task that transitively depends on any of *task_ids*."""
        graph = self.dependency_graph(plan)
        found: Set[str] = set()
        for task_id in task_ids:
            if task_id in graph:
                found |= nx.descendants(graph, task_id)
        return found

    def is_blocked(self, plan: Plan) -> bool:
        """
        True for a genuine deadlock: pending work exists, nothing can start, and
        at least one pending task is stuck for a reason other than an upstream
        failure (a cycle or a dependency that does not exist).
        """
        if plan.status != PlanStatus.ACTIVE:
            return False
        pending = [t for t in plan.tasks if t.status == TaskStatus.PENDING]
        if not pending or self.get_next_executable_task(plan) is not None:
            return False
        failed = [t.id for t in plan.tasks if t.status == TaskStatus.FAILED]
        downstream_of_failure = self.dependents_of(plan, failed)
        blocked = any(t.id not in downstream_of_failure for t in pending)
        if blocked:
            log_json("WARN", "plan_blocked", goal=plan.goal,
                     details={"pending": [t.name for t in pending], "cycles": self.find_cycles(plan)})
        return blocked

    # ==================== REPORTING ====================

    def get_progress(self, plan: Plan) -> int:
        if not plan.tasks:
            return 0
        done = sum(1 for t in plan.tasks if t.status in SUCCESS_STATUSES)
        return round(done / len(plan.tasks) * 100)

    def summarize_plan(self, plan: Plan) -> str:
        counts: Dict[TaskStatus, int] = {}
        for t in plan.tasks:
            counts[t.status] = counts.get(t.status, 0) + 1
        current = plan.get_task(plan.current_task_id)
        index_of = {t.id: i + 1 for i, t in enumerate(plan.tasks)}

        lines = [
            f"## Plan: {plan.goal}",
            f"Status: {plan.status.value} | Progress: {self.get_progress(plan)}% | Revision: {plan.revision}",
            "Tasks: " + " ".join(f"{counts.get(s, 0)} {s.value}" for s in TaskStatus),
            "",
            f"Current: {current.name}" if current else "No active task",
            "",
            "### All Tasks:",
        ]
        for i, t in enumerate(plan.tasks, 1):
            deps = ", ".join(str(index_of.get(d, d)) for d in t.dependencies)
            lines.append(f"{i}. {_STATUS_MARKERS[t.status]} {t.name}" + (f" (depends on: {deps})" if deps else ""))
        return "\n".join(lines)
