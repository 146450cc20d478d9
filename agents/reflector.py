from typing import List, Optional

from core.types import Observation, ObservationKind, Reflection, Task

REVISE_AFTER_CONSECUTIVE_FAILURES = 2
REVISION_SUGGESTION = "Consider breaking down the failing task"


class Reflector:
    """Turns the outcome of one iteration into a :class:`Reflection`."""

    def reflect(self, observation: Observation, history: List[Reflection],
                task: Optional[Task] = None) -> Reflection:
        success = observation.kind != ObservationKind.ERROR
        lessons: List[str] = []
        if not success:
            lessons.append(f"Task failed: {observation.content[:200]}")
            lessons.extend(self._analyze_context_quality([observation.content]))

        streak = 0 if success else 1 + self._trailing_failures(history)
        should_revise = streak >= REVISE_AFTER_CONSECUTIVE_FAILURES
        return Reflection(
            was_successful=success,
            lessons_learned=lessons,
            should_revise_plan=should_revise,
            revision_suggestion=REVISION_SUGGESTION if should_revise else None,
        )

    @staticmethod
    def _trailing_failures(history: List[Reflection]) -> int:
        count = 0
        for reflection in reversed(history):
            if reflection.was_successful:
                break
            count += 1
        return count

    def _analyze_context_quality(self, failures: List[str]) -> List[str]:
        """Detect potential context gaps from failure patterns."""
        gaps = []
        context_signals = [
            ("NameError", "Agent referenced a variable or function that does not exist."),
            ("ImportError", "Agent missed a required dependency."),
            ("ModuleNotFoundError", "Agent referenced a module that is not installed."),
            ("Cannot find module", "Agent referenced a module that is not installed."),
            ("AttributeError", "Agent assumed an object attribute that does not exist."),
            ("not defined", "Agent assumed existence of a symbol."),
            ("No such file", "Agent assumed a file that does not exist."),
        ]

        for f in failures:
            for sig, reason in context_signals:
                if sig in f:
                    gaps.append(f"context_gap: {reason} (Trigger: {sig})")
                    break  # One gap per failure is enough

        return gaps
