"""Lifecycle event bus for one agent.

Listeners are called synchronously. A listener that raises is logged and
skipped; it never breaks the loop. Each emitted event carries a monotonic
sequence number and a timestamp.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.logging_utils import log_json


class AgentEventType(str, Enum):
    PLAN_CREATED = "plan_created"
    PLAN_REVISED = "plan_revised"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TOOL_EXECUTED = "tool_executed"
    ERROR_DETECTED = "error_detected"
    HEALING_STARTED = "healing_started"
    HEALING_COMPLETED = "healing_completed"
    ITERATION_COMPLETED = "iteration_completed"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"


@dataclass
class AgentEvent:
    type: AgentEventType
    data: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[AgentEvent], None]

ALL_EVENTS = "*"


class EventBus:
    """Pub/sub for :class:`AgentEvent`. Subscribe to one type or to ``"*"``."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self._listeners: Dict[str, List[EventListener]] = {}
        self._lock = threading.Lock()
        self._seq = 0

    def on(self, event_type, listener: EventListener) -> Callable[[], None]:
        """Register *listener*; returns an unsubscribe function."""
        key = getattr(event_type, "value", event_type)
        with self._lock:
            self._listeners.setdefault(key, []).append(listener)
        return lambda: self.off(event_type, listener)

    def off(self, event_type, listener: EventListener) -> None:
        key = getattr(event_type, "value", event_type)
        with self._lock:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)

    def emit(self, event_type: AgentEventType, data: Optional[Dict[str, Any]] = None) -> AgentEvent:
        with self._lock:
            self._seq += 1
            event = AgentEvent(type=event_type, data=dict(data or {}), seq=self._seq)
            listeners = list(self._listeners.get(event_type.value, [])) + list(self._listeners.get(ALL_EVENTS, []))

        log_json("INFO" if self.verbose else "DEBUG", "agent_event",
                 details={"type": event_type.value, "seq": event.seq, **event.data})
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                log_json("WARN", "event_listener_failed",
                         details={"type": event_type.value, "error": str(e)})
        return event
