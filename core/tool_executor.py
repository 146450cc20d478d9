"""Tool execution boundary.

``ToolExecutor`` is the contract the agent depends on. ``LocalToolExecutor``
is a subprocess/filesystem backend jailed to a working directory.
``ToolGateway`` wraps any executor with a deadline, exception capture, an
execution log and ``tool_executed`` events; the loop and the healer only
ever talk to a gateway.
"""
from __future__ import annotations

import fnmatch
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from core.events import AgentEventType, EventBus
from core.exceptions import SecurityError, ToolExecutionError
from core.file_tools import FileToolsError, atomic_write_text
from core.logging_utils import log_json
from core.redaction import mask_text
from core.sanitizer import check_command, sanitize_path
from core.timeouts import call_with_timeout
from core.types import ToolCall, ToolKind, ToolResult

MAX_OUTPUT_CHARS = 20_000
MAX_SEARCH_HITS = 200
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".taskloop"}

DEFAULT_COMMANDS: Dict[ToolKind, str] = {
    ToolKind.DEPENDENCY_INSTALL: "pip install",
    ToolKind.BUILD: "python -m compileall -q .",
    ToolKind.TEST: "python -m pytest -q",
    ToolKind.LINT: "python -m pyflakes .",
    ToolKind.DEV_SERVER: "python -m http.server 8000",
}

TOOL_DESCRIPTIONS: Dict[ToolKind, str] = {
    ToolKind.SHELL: "run a shell command; params: command",
    ToolKind.FILE_READ: "read a file; params: path",
    ToolKind.FILE_WRITE: "create or overwrite a file; params: path, content",
    ToolKind.FILE_DELETE: "delete a file; params: path",
    ToolKind.DEPENDENCY_INSTALL: "install dependencies; params: packages (optional list), command (optional)",
    ToolKind.BUILD: "build or compile the project; params: command (optional)",
    ToolKind.TEST: "run the test suite; params: command (optional)",
    ToolKind.LINT: "run the linter; params: command (optional)",
    ToolKind.DEV_SERVER: "start a development server; params: command (optional)",
    ToolKind.FILE_SEARCH: "find files by glob pattern; params: pattern",
    ToolKind.CODE_SEARCH: "search file contents for text; params: query, glob (optional)",
    ToolKind.WEB_SEARCH: "search the web; params: query",
    ToolKind.LLM_CALL: "ask the language model; params: prompt",
}


def describe_tools() -> str:
    return "\n".join(f"- {kind.value}: {text}" for kind, text in TOOL_DESCRIPTIONS.items())


@runtime_checkable
class ToolExecutor(Protocol):
    def execute(self, call: ToolCall) -> ToolResult:
        ...


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class LocalToolExecutor:
    """Runs tool calls against the local machine inside *working_directory*."""

    def __init__(self, working_directory: str = ".", allow_dangerous: bool = False,
                 completion=None, command_timeout_s: Optional[float] = 300.0,
                 commands: Optional[Dict[ToolKind, str]] = None,
                 server_grace_s: float = 2.0):
        self.root = Path(working_directory).resolve()
        self.allow_dangerous = allow_dangerous
        self.completion = completion
        self.command_timeout_s = command_timeout_s
        self.commands = {**DEFAULT_COMMANDS, **(commands or {})}
        self.server_grace_s = server_grace_s
        self._servers: List[subprocess.Popen] = []
        self._handlers: Dict[ToolKind, Callable[[dict], ToolResult]] = {
            ToolKind.SHELL: self._shell,
            ToolKind.FILE_READ: self._file_read,
            ToolKind.FILE_WRITE: self._file_write,
            ToolKind.FILE_DELETE: self._file_delete,
            ToolKind.DEPENDENCY_INSTALL: self._dependency_install,
            ToolKind.BUILD: self._project_command(ToolKind.BUILD),
            ToolKind.TEST: self._project_command(ToolKind.TEST),
            ToolKind.LINT: self._project_command(ToolKind.LINT),
            ToolKind.DEV_SERVER: self._dev_server,
            ToolKind.FILE_SEARCH: self._file_search,
            ToolKind.CODE_SEARCH: self._code_search,
            ToolKind.WEB_SEARCH: self._web_search,
            ToolKind.LLM_CALL: self._llm_call,
        }

    def execute(self, call: ToolCall) -> ToolResult:
        handler = self._handlers.get(call.kind)
        if handler is None:
            return ToolResult(False, error=f"unsupported tool kind: {call.kind}")
        params = dict(call.params or {})
        if call.timeout_s is not None:
            params.setdefault("timeout_s", call.timeout_s)
        try:
            return handler(params)
        except SecurityError as e:
            log_json("WARN", "tool_call_refused", details={"kind": call.kind.value, "error": str(e)})
            return ToolResult(False, error=str(e), metadata={"refused": True})
        except (OSError, FileToolsError, UnicodeDecodeError) as e:
            return ToolResult(False, error=f"{type(e).__name__}: {e}")

    def close(self) -> None:
        """Terminate any development servers this executor started."""
        for proc in self._servers:
            if proc.poll() is None:
                proc.terminate()
        self._servers.clear()

    # -- command kinds ------------------------------------------------------

    def _run(self, command: str, timeout_s: Optional[float] = None) -> ToolResult:
        check_command(command, self.allow_dangerous)
        timeout_s = timeout_s if timeout_s is not None else self.command_timeout_s
        try:
            proc = subprocess.run(command, shell=True, cwd=str(self.root), capture_output=True,
                                  text=True, timeout=timeout_s)
        except subprocess.TimeoutExpired:
            return ToolResult(False, error=f"command timed out after {timeout_s}s",
                              metadata={"command": command, "timed_out": True})
        output = _truncate((proc.stdout or "") + (proc.stderr or ""))
        meta = {"command": command, "returncode": proc.returncode}
        if proc.returncode == 0:
            return ToolResult(True, output=output, exit_code=0, metadata=meta)
        return ToolResult(False, output=output, error=(proc.stderr or proc.stdout or "").strip()[-2000:]
                          or f"exit code {proc.returncode}", exit_code=proc.returncode, metadata=meta)

    def _shell(self, params: dict) -> ToolResult:
        command = params.get("command")
        if not command:
            return ToolResult(False, error="shell call requires a 'command' parameter")
        return self._run(str(command), params.get("timeout_s"))

    def _dependency_install(self, params: dict) -> ToolResult:
        timeout_s = params.get("timeout_s")
        if params.get("command"):
            return self._run(str(params["command"]), timeout_s)
        packages = params.get("packages") or []
        base = self.commands[ToolKind.DEPENDENCY_INSTALL]
        if packages:
            return self._run(f"{base} " + " ".join(str(p) for p in packages), timeout_s)
        if (self.root / "requirements.txt").exists():
            return self._run(f"{base} -r requirements.txt", timeout_s)
        return self._run(f"{base} -e .", timeout_s)

    def _project_command(self, kind: ToolKind) -> Callable[[dict], ToolResult]:
        def handler(params: dict) -> ToolResult:
            return self._run(str(params.get("command") or self.commands[kind]), params.get("timeout_s"))
        return handler

    def _dev_server(self, params: dict) -> ToolResult:
        command = str(params.get("command") or self.commands[ToolKind.DEV_SERVER])
        check_command(command, self.allow_dangerous)
        proc = subprocess.Popen(command, shell=True, cwd=str(self.root),
                                stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        try:
            out, _ = proc.communicate(timeout=self.server_grace_s)
        except subprocess.TimeoutExpired:
            self._servers.append(proc)
            return ToolResult(True, output=f"server started (pid {proc.pid})",
                              metadata={"command": command, "pid": proc.pid})
        return ToolResult(False, output=out or "", error=f"server exited early with code {proc.returncode}",
                          exit_code=proc.returncode, metadata={"command": command, "returncode": proc.returncode})

    # -- file kinds ---------------------------------------------------------

    def _path(self, params: dict) -> Path:
        path = params.get("path")
        if not path:
            raise FileToolsError("file call requires a 'path' parameter")
        return sanitize_path(path, self.root)

    def _file_read(self, params: dict) -> ToolResult:
        path = self._path(params)
        if not path.is_file():
            return ToolResult(False, error=f"file not found: {params.get('path')}")
        return ToolResult(True, output=path.read_text(encoding="utf-8"), metadata={"path": str(params["path"])})

    def _file_write(self, params: dict) -> ToolResult:
        path = self._path(params)
        created = not path.exists()
        atomic_write_text(path, str(params.get("content", "")))
        return ToolResult(True, output=f"wrote {params['path']}",
                          metadata={"path": str(params["path"]), "created": created})

    def _file_delete(self, params: dict) -> ToolResult:
        path = self._path(params)
        if not path.exists():
            return ToolResult(False, error=f"file not found: {params.get('path')}")
        path.unlink()
        return ToolResult(True, output=f"deleted {params['path']}", metadata={"path": str(params["path"])})

    def _walk(self):
        for path in sorted(self.root.rglob("*")):
            rel = path.relative_to(self.root)
            if any(part in _SKIP_DIRS for part in rel.parts) or not path.is_file():
                continue
            yield path, rel.as_posix()

    def _file_search(self, params: dict) -> ToolResult:
        pattern = params.get("pattern")
        if not pattern:
            return ToolResult(False, error="file_search requires a 'pattern' parameter")
        hits = [rel for _, rel in self._walk()
                if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(rel.rsplit("/", 1)[-1], pattern)]
        return ToolResult(True, output="\n".join(hits[:MAX_SEARCH_HITS]),
                          metadata={"matches": len(hits)})

    def _code_search(self, params: dict) -> ToolResult:
        query = params.get("query")
        if not query:
            return ToolResult(False, error="code_search requires a 'query' parameter")
        glob = params.get("glob") or "*"
        hits: List[str] = []
        for path, rel in self._walk():
            if not fnmatch.fnmatch(rel.rsplit("/", 1)[-1], glob):
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            hits.extend(f"{rel}:{n}: {line.strip()}" for n, line in enumerate(lines, 1) if query in line)
            if len(hits) >= MAX_SEARCH_HITS:
                break
        return ToolResult(True, output="\n".join(hits[:MAX_SEARCH_HITS]), metadata={"matches": len(hits)})

    # -- non-local kinds ----------------------------------------------------

    def _web_search(self, params: dict) -> ToolResult:
        return ToolResult(False, error="web_search is not supported by the local executor")

    def _llm_call(self, params: dict) -> ToolResult:
        if self.completion is None:
            return ToolResult(False, error="no completion service configured for llm_call")
        prompt = params.get("prompt") or params.get("description") or ""
        try:
            return ToolResult(True, output=self.completion.complete(str(prompt)))
        except Exception as e:
            return ToolResult(False, error=f"llm_call failed: {e}")


class ToolGateway:
    """Guards an executor: deadline, exception capture, logging and an execution log."""

    def __init__(self, executor: ToolExecutor, timeout_s: Optional[float] = None,
                 events: Optional[EventBus] = None):
        self.executor = executor
        self.timeout_s = timeout_s
        self.events = events
        self._log: List[Tuple[ToolCall, ToolResult]] = []

    def execute(self, call: ToolCall) -> ToolResult:
        started = time.time()
        try:
            timeout_s = call.timeout_s if call.timeout_s is not None else self.timeout_s
            result = call_with_timeout(self.executor.execute, timeout_s, call,
                                       label=f"tool:{call.kind.value}", error_cls=ToolExecutionError)
            if not isinstance(result, ToolResult):
                result = ToolResult(False, error=f"executor returned {type(result).__name__}, not ToolResult")
        except ToolExecutionError as e:
            result = ToolResult(False, error=str(e), metadata={"timed_out": True})
        except Exception as e:
            log_json("ERROR", "tool_executor_raised", details={"kind": call.kind.value, "error": str(e)})
            result = ToolResult(False, error=f"{type(e).__name__}: {e}")
        if not result.duration_ms:
            result.duration_ms = int((time.time() - started) * 1000)
        result.output = mask_text(result.output or "")
        if result.error:
            result.error = mask_text(result.error)

        self._log.append((call, result))
        log_json("DEBUG", "tool_executed", details={"kind": call.kind.value, "success": result.success,
                                                    "duration_ms": result.duration_ms})
        if self.events is not None:
            self.events.emit(AgentEventType.TOOL_EXECUTED, {
                "tool": call.kind.value, "success": result.success, "duration_ms": result.duration_ms,
            })
        return result

    def execution_log(self) -> List[Tuple[ToolCall, ToolResult]]:
        return list(self._log)

    def clear_log(self) -> None:
        self._log.clear()
