"""Short-term and long-term memory for the agent.

Short-term memory holds recent actions, observations, a context summary and a
working-variable set. Long-term memory holds completed goals, failed
approaches, discoveries and per-file code knowledge. Every collection is a
bounded ring buffer; when persistence is enabled each mutation of long-term
memory is written through the injected :class:`PersistenceStore`. Short-term
state is only written when ``persist_short_term`` is set.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from core.logging_utils import log_json
from core.types import (
    Action,
    ActionKind,
    CodeKnowledge,
    Discovery,
    FailedApproach,
    Importance,
    Observation,
    ObservationKind,
    RelevantMemories,
    ToolCall,
    ToolKind,
    ToolResult,
)
from memory.store import PersistenceStore

MAX_RECENT_ACTIONS = 20
MAX_RECENT_OBSERVATIONS = 50
MAX_DISCOVERIES = 100
MAX_FAILED_APPROACHES = 50
MAX_CODE_KNOWLEDGE = 100
CONTEXT_SUMMARY_THRESHOLD = 5000  # characters

KEY_LONG_TERM = "long_term"
KEY_SHORT_TERM = "short_term"
KEY_WORKING_SET = "working_set"

_IMPORTANT = (Importance.HIGH, Importance.CRITICAL)


# -- serialization helpers ---------------------------------------------------

def _result_to_dict(result: Optional[ToolResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {"success": result.success, "output": result.output[:500], "error": result.error,
            "duration_ms": result.duration_ms}


def _action_to_dict(action: Action) -> Dict[str, Any]:
    return {
        "kind": action.kind.value,
        "task_id": action.task_id,
        "tool_call": action.tool_call.to_dict() if action.tool_call else None,
        "reasoning": action.reasoning,
        "result": _result_to_dict(action.result),
        "timestamp": action.timestamp,
    }


def _action_from_dict(d: Dict[str, Any]) -> Action:
    call = d.get("tool_call")
    result = d.get("result")
    return Action(
        kind=ActionKind(d["kind"]),
        task_id=d.get("task_id"),
        tool_call=ToolCall(ToolKind(call["kind"]), dict(call.get("params") or {})) if call else None,
        reasoning=d.get("reasoning", ""),
        result=ToolResult(**result) if result else None,
        timestamp=float(d.get("timestamp", 0.0)),
    )


def _observation_to_dict(o: Observation) -> Dict[str, Any]:
    return {"kind": o.kind.value, "source": o.source, "content": o.content,
            "importance": o.importance.value, "timestamp": o.timestamp}


def _observation_from_dict(d: Dict[str, Any]) -> Observation:
    return Observation(kind=ObservationKind(d["kind"]), source=d.get("source", ""),
                       content=d.get("content", ""), importance=Importance(d.get("importance", "low")),
                       timestamp=float(d.get("timestamp", 0.0)))


class MemoryManager:
    def __init__(self, store: Optional[PersistenceStore] = None, persist: bool = True,
                 persist_short_term: bool = False):
        self.store = store
        self.persist_enabled = persist and store is not None
        self.persist_short_term = persist_short_term
        self._reset()
        if self.persist_enabled:
            self.restore()

    def _reset(self) -> None:
        self.recent_actions: List[Action] = []
        self.recent_observations: List[Observation] = []
        self.current_context = ""
        self.working_set: Dict[str, Any] = {}

        self.completed_goals: List[str] = []
        self.failed_approaches: List[FailedApproach] = []
        self.discoveries: List[Discovery] = []
        self.code_knowledge: List[CodeKnowledge] = []

    # ==================== SHORT-TERM MEMORY ====================

    def add_action(self, action: Action) -> None:
        self.recent_actions.append(action)
        del self.recent_actions[:-MAX_RECENT_ACTIONS]
        self._update_context()

    def add_observation(self, observation: Observation) -> None:
        self.recent_observations.append(observation)
        del self.recent_observations[:-MAX_RECENT_OBSERVATIONS]
        if observation.importance in _IMPORTANT:
            self.record_discovery(Discovery(content=observation.content, source=observation.source,
                                            importance=observation.importance,
                                            timestamp=observation.timestamp))
        self._update_context()

    def set_working_variable(self, key: str, value: Any) -> None:
        self.working_set[key] = value

    def get_working_variable(self, key: str, default: Any = None) -> Any:
        return self.working_set.get(key, default)

    def get_recent_actions(self, count: Optional[int] = None) -> List[Action]:
        return list(self.recent_actions[-count:] if count else self.recent_actions)

    def get_recent_observations(self, count: Optional[int] = None) -> List[Observation]:
        return list(self.recent_observations[-count:] if count else self.recent_observations)

    def get_important_observations(self) -> List[Observation]:
        return [o for o in self.recent_observations if o.importance in _IMPORTANT]

    def get_current_context(self) -> str:
        return self.current_context

    def _update_context(self) -> None:
        actions = self.recent_actions[-5:]
        observations = self.get_important_observations()[-5:]

        action_lines = [
            f"- {a.kind.value}: {'SUCCESS' if a.result and a.result.success else 'FAILED' if a.result else 'PENDING'}"
            for a in actions
        ]
        observation_lines = [f"- [{o.importance.value}] {o.content[:100]}" for o in observations]
        variable_lines = [f"- {k}: {str(v)[:50]}" for k, v in self.working_set.items()]

        text = "\n".join([
            "## Recent Actions (last 5)",
            "\n".join(action_lines) or "No recent actions",
            "",
            "## Important Observations",
            "\n".join(observation_lines) or "No important observations",
            "",
            "## Working Variables",
            "\n".join(variable_lines) or "None",
        ])
        if len(text) > CONTEXT_SUMMARY_THRESHOLD:
            text = text[:CONTEXT_SUMMARY_THRESHOLD] + "\n..."
        self.current_context = text

    def clear_short_term(self) -> None:
        self.recent_actions = []
        self.recent_observations = []
        self.current_context = ""
        self.working_set = {}

    # ==================== LONG-TERM MEMORY ====================

    def record_failure(self, approach: str, reason: str, context: str = "") -> None:
        self.failed_approaches.append(FailedApproach(approach=approach, reason=reason, context=context))
        del self.failed_approaches[:-MAX_FAILED_APPROACHES]
        self.persist()

    def record_discovery(self, discovery: Discovery) -> None:
        if any(d.content == discovery.content for d in self.discoveries):
            return
        self.discoveries.append(discovery)
        del self.discoveries[:-MAX_DISCOVERIES]
        self.persist()

    def record_completed_goal(self, goal: str) -> None:
        if goal not in self.completed_goals:
            self.completed_goals.append(goal)
            self.persist()

    def update_code_knowledge(self, knowledge: CodeKnowledge) -> None:
        for i, existing in enumerate(self.code_knowledge):
            if existing.file == knowledge.file:
                self.code_knowledge[i] = knowledge
                break
        else:
            self.code_knowledge.append(knowledge)
            del self.code_knowledge[:-MAX_CODE_KNOWLEDGE]
        self.persist()

    def get_code_knowledge(self, file: str) -> Optional[CodeKnowledge]:
        for knowledge in self.code_knowledge:
            if knowledge.file == file:
                return knowledge
        return None

    def should_avoid(self, approach: str) -> bool:
        """True when *approach* contains a previously failed approach (case-insensitive)."""
        normalized = approach.lower()
        return any(f.approach.lower() in normalized for f in self.failed_approaches if f.approach)

    def get_relevant_memories(self, query: str) -> RelevantMemories:
        """Rank long-term entries by how many query terms they contain.

        Entries with no matching term are dropped. Ties keep insertion order.
        """
        terms = [t for t in query.lower().split() if t]

        def score(text: str) -> int:
            text = text.lower()
            return sum(1 for term in terms if term in text)

        def top(items, text_of, limit):
            scored = [(score(text_of(item)), item) for item in items]
            scored = [pair for pair in scored if pair[0] > 0]
            scored.sort(key=lambda pair: pair[0], reverse=True)
            return [item for _, item in scored[:limit]]

        return RelevantMemories(
            discoveries=top(self.discoveries, lambda d: f"{d.content} {d.source}", 10),
            failed_approaches=top(self.failed_approaches, lambda f: f"{f.approach} {f.reason} {f.context}", 5),
            code_knowledge=top(self.code_knowledge, lambda c: f"{c.file} {c.summary}", 10),
        )

    # ==================== SUMMARIZATION ====================

    def summarize_for_llm(self, budget: int = CONTEXT_SUMMARY_THRESHOLD) -> str:
        """Render memory for a prompt, dropping the oldest entries until it fits *budget*."""
        sections = {
            "actions": [
                f"- {a.kind.value}: {'ok' if a.result and a.result.success else 'failed'} "
                f"{(a.result.output if a.result else a.reasoning)[:100]}"
                for a in self.get_recent_actions(10)
            ],
            "discoveries": [f"- {d.content[:200]}" for d in self.discoveries[-5:]],
            "failures": [f"- AVOID {f.approach}: {f.reason[:200]}" for f in self.failed_approaches[-3:]],
            "goals": [f"- {g}" for g in self.completed_goals[-5:]],
        }

        def render() -> str:
            return "\n".join([
                "## Agent Memory Summary",
                f"### Recent Actions ({len(sections['actions'])})",
                "\n".join(sections["actions"]) or "None",
                f"### Key Discoveries ({len(sections['discoveries'])})",
                "\n".join(sections["discoveries"]) or "None",
                f"### Failed Approaches to Avoid ({len(sections['failures'])})",
                "\n".join(sections["failures"]) or "None",
                "### Completed Goals",
                "\n".join(sections["goals"]) or "None",
            ])

        text = render()
        for name in ("actions", "discoveries", "failures", "goals"):
            while len(text) > budget and sections[name]:
                sections[name].pop(0)
                text = render()
        return text[:budget]

    # ==================== PERSISTENCE ====================

    def _long_term_dict(self) -> Dict[str, Any]:
        return {
            "completed_goals": list(self.completed_goals),
            "failed_approaches": [vars(f) for f in self.failed_approaches],
            "discoveries": [
                {"content": d.content, "source": d.source, "importance": d.importance.value,
                 "timestamp": d.timestamp}
                for d in self.discoveries
            ],
            "code_knowledge": [vars(c) for c in self.code_knowledge],
        }

    def _short_term_dict(self) -> Dict[str, Any]:
        return {
            "recent_actions": [_action_to_dict(a) for a in self.recent_actions],
            "recent_observations": [_observation_to_dict(o) for o in self.recent_observations],
            "current_context": self.current_context,
        }

    def persist(self) -> None:
        if not self.persist_enabled:
            return
        try:
            self.store.save(KEY_LONG_TERM, self._long_term_dict())
            if self.persist_short_term:
                self.store.save(KEY_SHORT_TERM, self._short_term_dict())
                self.store.save(KEY_WORKING_SET, dict(self.working_set))
        except Exception as e:
            log_json("WARN", "memory_persist_failed", details={"error": str(e)})

    def restore(self) -> None:
        if self.store is None:
            return
        try:
            long_term = self.store.load(KEY_LONG_TERM) or {}
            short_term = (self.store.load(KEY_SHORT_TERM) if self.persist_short_term else None) or {}
            working = (self.store.load(KEY_WORKING_SET) if self.persist_short_term else None) or {}

            self.completed_goals = [str(g) for g in long_term.get("completed_goals", [])]
            self.failed_approaches = [FailedApproach(**f) for f in long_term.get("failed_approaches", [])]
            self.discoveries = [
                Discovery(content=d["content"], source=d.get("source", ""),
                          importance=Importance(d.get("importance", "medium")),
                          timestamp=float(d.get("timestamp", 0.0)))
                for d in long_term.get("discoveries", [])
            ]
            self.code_knowledge = [CodeKnowledge(**c) for c in long_term.get("code_knowledge", [])]

            self.recent_actions = [_action_from_dict(a) for a in short_term.get("recent_actions", [])]
            self.recent_observations = [_observation_from_dict(o)
                                        for o in short_term.get("recent_observations", [])]
            self.current_context = short_term.get("current_context", "")
            self.working_set = dict(working) if isinstance(working, dict) else {}
        except Exception as e:
            log_json("WARN", "memory_restore_failed", details={"error": str(e)})
            self._reset()

    def clear_all(self) -> None:
        self._reset()
        self.persist()

    def export(self) -> Dict[str, Any]:
        return {
            "short_term": dict(self._short_term_dict(), working_set=dict(self.working_set)),
            "long_term": self._long_term_dict(),
        }
