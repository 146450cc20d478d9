"""Data model shared by the planner, memory, healer and decision loop."""
from __future__ import annotations

import dataclasses
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class Phase(str, Enum):
    THINK = "think"
    DECIDE = "decide"
    ACT = "act"
    OBSERVE = "observe"
    REFLECT = "reflect"


class ActionKind(str, Enum):
    EXECUTE = "execute"
    RETRY = "retry"
    SKIP = "skip"
    PIVOT = "pivot"
    HEAL = "heal"
    TERMINATE = "terminate"


class ToolKind(str, Enum):
    """Closed set of tool kinds understood by a tool executor."""
    SHELL = "shell"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_DELETE = "file_delete"
    DEPENDENCY_INSTALL = "dependency_install"
    BUILD = "build"
    TEST = "test"
    LINT = "lint"
    DEV_SERVER = "dev_server"
    FILE_SEARCH = "file_search"
    CODE_SEARCH = "code_search"
    WEB_SEARCH = "web_search"
    LLM_CALL = "llm_call"


class ObservationKind(str, Enum):
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    DISCOVERY = "discovery"
    STATE_CHANGE = "state_change"


class Importance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorType(str, Enum):
    BUILD_ERROR = "build_error"
    TEST_FAILURE = "test_failure"
    RUNTIME_ERROR = "runtime_error"
    LINT_ERROR = "lint_error"
    TYPE_ERROR = "type_error"
    UNKNOWN = "unknown"


class HealingState(str, Enum):
    IDLE = "idle"
    DIAGNOSING = "diagnosing"
    FIXING = "fixing"
    VERIFYING = "verifying"
    RESOLVED = "resolved"
    UNRESOLVABLE = "unresolvable"
    NEEDS_HUMAN = "needs_human"


class TerminationReason(str, Enum):
    GOAL_ACHIEVED = "goal_achieved"
    MAX_ITERATIONS = "max_iterations"
    MAX_TIME = "max_time"
    STUCK_LOOP = "stuck_loop"
    UNRECOVERABLE_ERROR = "unrecoverable_error"
    RESOURCE_LIMIT = "resource_limit"
    USER_INTERRUPT = "user_interrupt"


class ReportStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


SUCCESS_STATUSES = (TaskStatus.COMPLETED, TaskStatus.SKIPPED)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


@dataclass
class Task:
    id: str
    name: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    result: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class Plan:
    id: str
    goal: str
    tasks: List[Task] = field(default_factory=list)
    current_task_id: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE
    revision: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def get_task(self, task_id: Optional[str]) -> Optional[Task]:
        if task_id is None:
            return None
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "tasks": [t.to_dict() for t in self.tasks],
            "current_task_id": self.current_task_id,
            "status": self.status.value,
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ToolCall:
    kind: ToolKind
    params: Dict[str, Any] = field(default_factory=dict)
    timeout_s: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "params": dict(self.params), "timeout_s": self.timeout_s}


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Action:
    kind: ActionKind
    task_id: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    reasoning: str = ""
    result: Optional[ToolResult] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class Observation:
    kind: ObservationKind
    source: str
    content: str
    importance: Importance = Importance.LOW
    timestamp: float = field(default_factory=time.time)


@dataclass
class Reflection:
    was_successful: bool
    lessons_learned: List[str] = field(default_factory=list)
    should_revise_plan: bool = False
    revision_suggestion: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ThoughtResult:
    analysis: str
    concerns: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)


@dataclass
class Discovery:
    content: str
    source: str
    importance: Importance = Importance.MEDIUM
    timestamp: float = field(default_factory=time.time)


@dataclass
class FailedApproach:
    approach: str
    reason: str
    context: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class CodeKnowledge:
    file: str
    summary: str
    patterns: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


@dataclass
class RelevantMemories:
    discoveries: List[Discovery] = field(default_factory=list)
    failed_approaches: List[FailedApproach] = field(default_factory=list)
    code_knowledge: List[CodeKnowledge] = field(default_factory=list)


@dataclass
class ErrorContext:
    type: ErrorType
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    stack: Optional[str] = None
    previous_attempts: List["FixAttempt"] = field(default_factory=list)


@dataclass
class Diagnosis:
    root_cause: str
    affected_files: List[str] = field(default_factory=list)
    suggested_fixes: List[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class FixAttempt:
    diagnosis: str
    fix: str
    result: str  # "success" | "failed" | "partial"
    timestamp: float = field(default_factory=time.time)
    output: str = ""


@dataclass
class HealingResult:
    state: HealingState
    attempts: List[FixAttempt] = field(default_factory=list)
    fixed: bool = False
    message: str = ""
    diagnosis: Optional[Diagnosis] = None


@dataclass
class TerminationDecision:
    should_terminate: bool
    reason: Optional[TerminationReason] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_terminate": self.should_terminate,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
        }


@dataclass
class AgentState:
    """Mutable loop state. Owned by one decision loop run."""
    goal: str
    plan: Plan
    phase: Phase = Phase.THINK
    current_task: Optional[Task] = None
    iteration_count: int = 0
    start_time: float = field(default_factory=time.time)
    last_action_time: float = field(default_factory=time.time)
    reflections: List[Reflection] = field(default_factory=list)
    observations: List[Observation] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def elapsed_ms(self, now: Optional[float] = None) -> int:
        return int(((now if now is not None else time.time()) - self.start_time) * 1000)


@dataclass(frozen=True)
class FinalReport:
    status: ReportStatus
    reason: TerminationReason
    summary: str
    goal: str = ""
    completed_tasks: Tuple[str, ...] = ()
    failed_tasks: Tuple[str, ...] = ()
    skipped_tasks: Tuple[str, ...] = ()
    artifacts: Tuple[str, ...] = ()
    files_created: Tuple[str, ...] = ()
    files_modified: Tuple[str, ...] = ()
    commands_executed: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    iterations: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["status"] = self.status.value
        d["reason"] = self.reason.value
        for key, value in d.items():
            if isinstance(value, tuple):
                d[key] = list(value)
        return d

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


@dataclass
class AgentResult:
    success: bool
    report: FinalReport
    plan: Optional[Plan] = None
    state: Optional[AgentState] = None
    errors: List[str] = field(default_factory=list)

    @property
    def artifacts(self) -> List[str]:
        return list(self.report.artifacts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "report": self.report.to_dict(),
            "artifacts": self.artifacts,
            "plan": self.plan.to_dict() if self.plan else None,
            "errors": list(self.errors),
        }
