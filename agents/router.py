import re
from typing import Callable, List, Optional, Tuple

from core.types import Task, ToolCall, ToolKind

_PATH_TOKEN = re.compile(r"[\w./\\-]+\.[A-Za-z0-9]{1,8}\b|[\w.-]+/[\w./-]+")
_BACKTICK_COMMAND = re.compile(r"`([^`]+)`")
_QUOTED = re.compile(r"['\"]([^'\"]+)['\"]")
_GLOB_TOKEN = re.compile(r"[\w./-]*\*[\w.*/-]*")
_PIP_PACKAGES = re.compile(r"pip install\s+([\w\-\[\],.=<> ]+)", re.I)


def _find_path(text: str, verbs: str) -> Optional[str]:
    match = re.search(rf"(?:{verbs})\s+(?:(?:a|an|the|new)\s+)?(?:file\s+)?(?:at\s+|named\s+|called\s+)?(\S+)",
                      text, re.I)
    if match and _PATH_TOKEN.fullmatch(match.group(1).strip("'\"`,.:;")):
        return match.group(1).strip("'\"`,:;")
    token = _PATH_TOKEN.search(text)
    return token.group(0) if token else None


def _install(task: Task, text: str) -> ToolCall:
    params = {}
    pip = _PIP_PACKAGES.search(task.description)
    if pip:
        params["packages"] = [p for p in pip.group(1).split() if p]
    elif "npm install" in text:
        params["command"] = "npm install"
    return ToolCall(ToolKind.DEPENDENCY_INSTALL, params)


def _write(task: Task, text: str) -> ToolCall:
    path = _find_path(task.description, "create|write") or "output.txt"
    return ToolCall(ToolKind.FILE_WRITE, {"path": path, "content": task.description})


def _read(task: Task, text: str) -> ToolCall:
    return ToolCall(ToolKind.FILE_READ, {"path": _find_path(task.description, "read|open|inspect") or ""})


def _delete(task: Task, text: str) -> ToolCall:
    return ToolCall(ToolKind.FILE_DELETE, {"path": _find_path(task.description, "delete|remove") or ""})


def _search(task: Task, text: str) -> ToolCall:
    quoted = _QUOTED.search(task.description)
    glob = _GLOB_TOKEN.search(_QUOTED.sub(" ", task.description))
    if quoted:
        params = {"query": quoted.group(1)}
        if glob:
            params["glob"] = glob.group(0)
        return ToolCall(ToolKind.CODE_SEARCH, params)
    if glob:
        return ToolCall(ToolKind.FILE_SEARCH, {"pattern": glob.group(0)})
    name = _find_path(task.description, "find|locate|search for")
    if name and "file" in text:
        return ToolCall(ToolKind.FILE_SEARCH, {"pattern": name.rsplit("/", 1)[-1]})
    return _llm(task, text)


def _llm(task: Task, text: str) -> ToolCall:
    return ToolCall(ToolKind.LLM_CALL, {"prompt": f"Execute this task: {task.name}\n\nDescription: {task.description}"})


# (keywords, builder); the first rule with a keyword in the lower-cased text wins.
ROUTES: List[Tuple[Tuple[str, ...], Callable[[Task, str], ToolCall]]] = [
    (("npm install", "pip install", "install dependencies", "install the dependencies", "install packages"), _install),
    (("npm run build", "npm build", "build the project", "compile the project"),
     lambda t, s: ToolCall(ToolKind.BUILD)),
    (("npm test", "run tests", "run the tests", "run the test suite", "pytest"),
     lambda t, s: ToolCall(ToolKind.TEST)),
    (("run the linter", "run lint", "lint the"), lambda t, s: ToolCall(ToolKind.LINT)),
    (("npm dev", "npm run dev", "start server", "start the server", "start the dev server", "dev server"),
     lambda t, s: ToolCall(ToolKind.DEV_SERVER)),
    (("create file", "write file", "create a file", "write a file", "create the file", "write the file"), _write),
    (("read file", "read the file", "open file"), _read),
    (("delete file", "remove file", "delete the file"), _delete),
    (("search the web", "web search", "look up online"),
     lambda t, s: ToolCall(ToolKind.WEB_SEARCH, {"query": t.description})),
    (("search", "find"), _search),
]


class TaskRouter:
    """Maps a task to the tool call that carries it out, by description keywords."""

    def route(self, task: Task) -> ToolCall:
        text = f"{task.name} {task.description}".lower()
        command = _BACKTICK_COMMAND.search(task.description)
        if command and re.search(r"\b(run|execute)\b", text):
            return ToolCall(ToolKind.SHELL, {"command": command.group(1)})
        for keywords, build in ROUTES:
            if any(k in text for k in keywords):
                return build(task, text)
        return _llm(task, text)
