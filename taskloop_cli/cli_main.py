"""Command-line entry: ``taskloop run "<goal>" [options]``."""
from __future__ import annotations

import argparse
import json
import sys
from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from core.agent import AutonomousAgent
from core.config_manager import ConfigManager
from core.exceptions import ConfigurationError
from core.explain import format_decision_log, format_report
from core.types import AgentResult, ReportStatus

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_STATUS_STYLES = {
    ReportStatus.SUCCESS: "green",
    ReportStatus.PARTIAL: "yellow",
    ReportStatus.FAILED: "red",
}


class CLIParseError(Exception):
    def __init__(self, message: str, *, code: int = EXIT_USAGE, usage: str | None = None):
        super().__init__(message)
        self.code = code
        self.usage = usage


class TaskloopArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CLIParseError(message, usage=self.format_usage())


def build_parser() -> argparse.ArgumentParser:
    parser = TaskloopArgumentParser(prog="taskloop", description="Run an autonomous task loop towards a goal.")
    sub = parser.add_subparsers(dest="command", parser_class=TaskloopArgumentParser)

    run = sub.add_parser("run", help="Plan and execute one goal.")
    run.add_argument("goal", help="Natural-language goal.")
    run.add_argument("--max-iterations", dest="max_iterations", type=int, help="Iteration ceiling.")
    run.add_argument("--max-time-ms", dest="max_time_ms", type=int, help="Wall-clock budget in milliseconds.")
    run.add_argument("--no-heal", dest="auto_heal", action="store_false", default=None,
                     help="Disable automatic self-healing.")
    run.add_argument("--no-persist", dest="persist_memory", action="store_false", default=None,
                     help="Keep memory in-process only.")
    run.add_argument("--allow-dangerous", dest="dangerous_commands_allowed", action="store_true", default=None,
                     help="Allow commands on the destructive deny-list.")
    run.add_argument("--quiet", dest="verbose", action="store_false", default=None,
                     help="Only log warnings and errors from the loop phases.")
    run.add_argument("--workdir", dest="working_directory", help="Directory the tools operate in.")
    run.add_argument("--config", dest="config_file", default="taskloop.config.json",
                     help="Path to a JSON config file.")
    run.add_argument("--json", action="store_true", help="Print the final report as JSON.")
    run.add_argument("--plain", action="store_true", help="Print the final report as plain text.")
    run.add_argument("--explain", action="store_true", help="Print the per-iteration decision log.")
    return parser


def _overrides(ns: argparse.Namespace) -> dict:
    keys = ("max_iterations", "max_time_ms", "auto_heal", "persist_memory",
            "dangerous_commands_allowed", "verbose", "working_directory")
    return {k: getattr(ns, k) for k in keys if getattr(ns, k, None) is not None}


def render_result(result: AgentResult, console: Console) -> None:
    report = result.report
    style = _STATUS_STYLES.get(report.status, "white")
    header = (f"[bold]{escape(report.goal or '')}[/bold]\n"
              f"status: [{style}]{report.status.value}[/{style}]  reason: {report.reason.value}  "
              f"iterations: {report.iterations}  duration: {report.duration_ms / 1000:.1f}s")
    console.print(Panel(header, title="taskloop", border_style=style))

    if result.plan is not None and result.plan.tasks:
        table = Table(box=box.SIMPLE, expand=True)
        table.add_column("#", justify="right")
        table.add_column("Task", overflow="fold")
        table.add_column("Status")
        table.add_column("Retries", justify="right")
        for i, task in enumerate(result.plan.tasks, 1):
            table.add_row(str(i), escape(task.name), task.status.value, f"{task.retry_count}/{task.max_retries}")
        console.print(table)

    console.print(report.summary, markup=False)
    for title, items in (("Files created", report.files_created), ("Files modified", report.files_modified),
                         ("Commands", report.commands_executed), ("Recommendations", report.recommendations),
                         ("Errors", report.errors)):
        if items:
            console.print(f"\n[bold]{title}[/bold]")
            for item in items:
                console.print(f"  - {item}", markup=False)


def main(argv: Optional[Sequence[str]] = None, console: Optional[Console] = None) -> int:
    console = console or Console()
    parser = build_parser()
    try:
        ns = parser.parse_args(list(argv) if argv is not None else sys.argv[1:])
    except CLIParseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.usage:
            print(exc.usage, file=sys.stderr)
        return exc.code
    if ns.command != "run":
        parser.print_help()
        return EXIT_USAGE

    try:
        config = ConfigManager(config_file=ns.config_file, overrides=_overrides(ns))
        agent = AutonomousAgent.from_config_manager(config)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    try:
        result = agent.run(ns.goal)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILED

    if ns.json:
        payload = result.report.to_dict()
        if ns.explain:
            payload["decision_log"] = agent.loop.decision_log
        print(json.dumps(payload, indent=2))
    else:
        if ns.plain:
            console.print(format_report(result.report), markup=False)
        else:
            render_result(result, console)
        if ns.explain:
            console.print(format_decision_log(agent.loop.decision_log), markup=False)
    return EXIT_OK if result.success else EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
