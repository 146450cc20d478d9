from typing import List, Sequence

from core.types import FinalReport


def _section(title: str, items: Sequence[str], bullet: str = "-") -> List[str]:
    if not items:
        return []
    return [f"{title} ({len(items)}):"] + [f"  {bullet} {item}" for item in items] + [""]


def format_report(report: FinalReport) -> str:
    """Plain-text rendering of a final report, for logs and non-rich terminals."""
    lines = [
        f"Goal: {report.goal or 'unknown'}",
        f"Status: {report.status.value}",
        f"Reason: {report.reason.value}",
        f"Iterations: {report.iterations}",
        f"Duration: {report.duration_ms / 1000:.1f}s",
        "",
        report.summary,
        "",
    ]
    lines += _section("Completed tasks", report.completed_tasks)
    lines += _section("Failed tasks", report.failed_tasks)
    lines += _section("Skipped tasks", report.skipped_tasks)
    lines += _section("Files created", report.files_created)
    lines += _section("Files modified", report.files_modified)
    lines += _section("Commands executed", report.commands_executed, bullet="$")
    lines += _section("Recommendations", report.recommendations)
    lines += _section("Errors", report.errors)
    return "\n".join(lines).strip()


def format_decision_log(history: List[dict]) -> str:
    """One block per iteration: the decided action, its outcome and the reflection."""
    lines = []
    for entry in history:
        lines.append(f"Iteration: {entry.get('iteration', 'unknown')}")
        lines.append(f"  Task: {entry.get('task') or 'none'}")
        lines.append(f"  Action: {entry.get('action', 'unknown')}")
        lines.append(f"  Outcome: {'ok' if entry.get('success') else 'failed'}")
        if entry.get("lessons"):
            lines.append(f"  Lessons: {'; '.join(entry['lessons'])}")
        lines.append("")
    return "\n".join(lines).strip()
