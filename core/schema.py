"""Schemas and tolerant parsers for structured model replies.

Every ``parse_*`` function returns either a typed value or a
:class:`ParseFailure`; none of them raise on malformed input.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Union

from core.file_tools import extract_json
from core.types import ActionKind, Diagnosis, ThoughtResult

RESPONSE_SCHEMA = {
    "thought": {"required": ["analysis"]},
    "decision": {"required": ["type"]},
    "diagnosis": {"required": ["rootCause", "suggestedFixes"]},
    "task": {"required": ["name"]},
}


@dataclass(frozen=True)
class ParseFailure:
    """Tagged result for a reply that could not be understood."""
    reason: str
    raw: str = ""


def validate_response(name: str, payload: dict) -> list[str]:
    schema = RESPONSE_SCHEMA.get(name)
    if not schema:
        return [f"Unknown response kind '{name}'"]
    missing = [key for key in schema.get("required", []) if key not in payload]
    return [f"Missing key: {key}" for key in missing]


def _object(raw: str, name: str) -> Union[Dict[str, Any], ParseFailure]:
    try:
        payload = extract_json(raw, "object", ctx=name)
    except ValueError as e:
        return ParseFailure(str(e), raw or "")
    problems = validate_response(name, payload)
    if problems:
        return ParseFailure("; ".join(problems), raw)
    return payload


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def parse_thought(raw: str) -> Union[ThoughtResult, ParseFailure]:
    payload = _object(raw, "thought")
    if isinstance(payload, ParseFailure):
        return payload
    return ThoughtResult(
        analysis=str(payload.get("analysis", "")),
        concerns=_str_list(payload.get("concerns")),
        next_steps=_str_list(payload.get("nextSteps", payload.get("next_steps"))),
    )


def parse_decision(raw: str) -> Union[Dict[str, Any], ParseFailure]:
    """Return ``{"kind": ActionKind, "reasoning": str}`` for a decision reply."""
    payload = _object(raw, "decision")
    if isinstance(payload, ParseFailure):
        return payload
    try:
        kind = ActionKind(str(payload["type"]).strip().lower())
    except ValueError:
        return ParseFailure(f"unknown action type {payload['type']!r}", raw)
    return {"kind": kind, "reasoning": str(payload.get("reasoning", ""))}


def parse_diagnosis(raw: str) -> Union[Diagnosis, ParseFailure]:
    payload = _object(raw, "diagnosis")
    if isinstance(payload, ParseFailure):
        return payload
    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return Diagnosis(
        root_cause=str(payload.get("rootCause", "")),
        affected_files=_str_list(payload.get("affectedFiles")),
        suggested_fixes=_str_list(payload.get("suggestedFixes")),
        confidence=max(0.0, min(1.0, confidence)),
    )


def parse_task_list(raw: str, max_tasks: int) -> Union[List[Dict[str, Any]], ParseFailure]:
    """Parse a JSON array of task specs.

    Items without a name are dropped. Dependencies are kept as raw integer
    indices; the planner validates the range. At most *max_tasks* items are kept.
    """
    try:
        items = extract_json(raw, "array", ctx="task_list")
    except ValueError as e:
        return ParseFailure(str(e), raw or "")
    specs: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict) or validate_response("task", item):
            continue
        name = str(item["name"]).strip()
        if not name:
            continue
        deps = item.get("dependencies") or []
        specs.append({
            "name": name,
            "description": str(item.get("description") or name),
            "dependencies": [d for d in deps if isinstance(d, int) and not isinstance(d, bool)]
            if isinstance(deps, list) else [],
            "status": str(item.get("status") or "").lower(),
        })
        if len(specs) >= max_tasks:
            break
    if not specs:
        return ParseFailure("no usable tasks in reply", raw)
    return specs
