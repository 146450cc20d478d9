"""
Agent facade.

:class:`AutonomousAgent` wires the planner, memory, healer, termination
engine, router, reflector and tool gateway from an :class:`AgentConfig` and
exposes ``run``/``stop``/``get_status`` plus event subscription. The
module-level :func:`run` is the one-call entry point.
"""
import copy
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from agents.healer import SelfHealer
from agents.planner import PlanningEngine
from agents.reflector import Reflector
from agents.router import TaskRouter
from core.config_manager import AgentConfig, ConfigManager
from core.decision_loop import DecisionLoop
from core.events import AgentEventType, EventBus
from core.logging_utils import log_json
from core.model_adapter import ModelAdapter
from core.termination import TerminationEngine
from core.timeouts import TimedCompletion
from core.tool_executor import LocalToolExecutor, ToolGateway
from core.types import AgentResult, AgentState
from memory.manager import MemoryManager
from memory.store import InMemoryStore, JsonFileStore


class AgentStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class AutonomousAgent:
    """
    One configured agent. Runs are sequential; call :meth:`stop` from another
    thread (or an event handler) to end the current run after its in-flight
    iteration.
    """

    def __init__(self, config: Union[AgentConfig, Dict[str, Any], None] = None, model=None, tools=None,
                 store=None, events: Optional[EventBus] = None):
        if isinstance(config, AgentConfig):
            self.config = config
        else:
            self.config = AgentConfig.from_dict(config)
        cfg = self.config

        self.events = events or EventBus(verbose=cfg.verbose)
        self.model = TimedCompletion(model, cfg.llm_timeout_s) if model is not None else None

        if store is None:
            store = JsonFileStore(Path(cfg.working_directory) / cfg.memory_store_path) \
                if cfg.persist_memory else InMemoryStore()
        self.memory = MemoryManager(store=store, persist=cfg.persist_memory)

        self._owns_executor = tools is None
        executor = tools if tools is not None else LocalToolExecutor(
            working_directory=cfg.working_directory,
            allow_dangerous=cfg.dangerous_commands_allowed,
            completion=self.model,
            command_timeout_s=cfg.tool_timeout_s,
        )
        self.executor = executor
        self.tools = ToolGateway(executor, timeout_s=cfg.tool_timeout_s, events=self.events)

        self.planner = PlanningEngine(self.memory, model=self.model, max_retries=cfg.max_retries,
                                      max_revisions=cfg.max_plan_revisions)
        self.healer = SelfHealer(self.tools, self.memory, model=self.model,
                                 allow_dangerous=cfg.dangerous_commands_allowed,
                                 max_attempts=cfg.max_healing_attempts,
                                 typecheck_command=cfg.typecheck_command)
        self.termination = TerminationEngine.from_config(cfg, self.planner)
        self.loop = DecisionLoop(self.planner, self.memory, self.healer, self.termination, self.tools,
                                 TaskRouter(), Reflector(), model=self.model, events=self.events,
                                 auto_heal=cfg.auto_heal, verbose=cfg.verbose)

        self.status = AgentStatus.IDLE
        self.last_result: Optional[AgentResult] = None
        self.events.on(AgentEventType.PLAN_CREATED, self._on_plan_created)

    @classmethod
    def from_config_manager(cls, config_manager: ConfigManager, **kwargs) -> "AutonomousAgent":
        """Build an agent from tiered configuration, with a model when one is configured."""
        model = kwargs.pop("model", None)
        if model is None:
            adapter = ModelAdapter.from_config(config_manager)
            model = adapter if adapter.is_available() else None
        if model is None:
            log_json("INFO", "agent_model_unavailable", details={"mode": "heuristic"})
        return cls(config_manager.agent_config(), model=model, **kwargs)

    def _on_plan_created(self, event) -> None:
        if self.status == AgentStatus.PLANNING:
            self.status = AgentStatus.EXECUTING

    # ==================== PUBLIC API ====================

    def run(self, goal: str, context: str = "") -> AgentResult:
        self.status = AgentStatus.PLANNING
        log_json("INFO", "agent_run_started", goal=goal,
                 details={"max_iterations": self.config.max_iterations, "auto_heal": self.config.auto_heal})
        try:
            result = self.loop.run(goal, context)
        finally:
            if self._owns_executor:
                self.executor.close()

        if result.success:
            self.status = AgentStatus.COMPLETED
        elif result.report.reason.value == "user_interrupt":
            self.status = AgentStatus.PAUSED
        else:
            self.status = AgentStatus.FAILED
        self.last_result = result
        log_json("INFO", "agent_run_finished", goal=goal,
                 details={"status": result.report.status.value, "reason": result.report.reason.value,
                          "iterations": result.report.iterations})
        return result

    def stop(self) -> None:
        self.loop.stop()

    def get_status(self) -> Optional[AgentState]:
        """A copy of the current (or last) loop state, or None before the first run."""
        return copy.deepcopy(self.loop.state) if self.loop.state is not None else None

    def on(self, event: Union[AgentEventType, str], handler: Callable) -> Callable[[], None]:
        return self.events.on(event, handler)

    def off(self, event: Union[AgentEventType, str], handler: Callable) -> None:
        self.events.off(event, handler)


def run(goal: str, config: Union[AgentConfig, Dict[str, Any], None] = None, model=None,
        tools=None, store=None) -> AgentResult:
    """Run *goal* with a fresh agent and return its result."""
    return AutonomousAgent(config, model=model, tools=tools, store=store).run(goal)
