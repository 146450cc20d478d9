import re
from pathlib import Path
from typing import Optional, Union

from core.exceptions import SecurityError

# Commands that are refused unless dangerous commands are explicitly allowed.
DANGEROUS_COMMAND_PATTERNS = [
    re.compile(r"\brm\s+(-[a-zA-Z]*[rR][a-zA-Z]*f|-[a-zA-Z]*f[a-zA-Z]*[rR])\b"),  # rm -rf / rm -fr
    re.compile(r"\brm\s+-r\s+-f\b|\brm\s+-f\s+-r\b"),
    re.compile(r"(^|[;&|]\s*|\s)sudo\s"),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r"\bdd\s+if="),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),  # fork bomb
    re.compile(r">\s*/dev/sd[a-z]"),
    re.compile(r"\bchmod\s+-R\s+777\s+/(\s|$)"),
]


def find_dangerous_pattern(command: str) -> Optional[str]:
    """Return the deny-list pattern *command* trips, or ``None``."""
    for pattern in DANGEROUS_COMMAND_PATTERNS:
        if pattern.search(command or ""):
            return pattern.pattern
    return None


def is_dangerous_command(command: str) -> bool:
    return find_dangerous_pattern(command) is not None


def check_command(command: str, allow_dangerous: bool = False) -> None:
    """Raise :class:`SecurityError` when *command* matches the deny-list.

    The check is skipped when *allow_dangerous* is set.
    """
    if allow_dangerous:
        return
    pattern = find_dangerous_pattern(command)
    if pattern is not None:
        raise SecurityError(f"Access denied: command matches destructive pattern {pattern!r}")


def sanitize_path(file_path: Union[str, Path], root_dir: Union[str, Path]) -> Path:
    """
    Ensures path is safe and within the working directory jail.
    Prevents path traversal attacks.
    """
    root = Path(root_dir).resolve()
    raw_target = Path(file_path)
    # Resolve relative paths against the declared jail root, not the process cwd.
    target = (root / raw_target).resolve() if not raw_target.is_absolute() else raw_target.resolve()

    try:
        target.relative_to(root)
    except ValueError as exc:
        raise SecurityError(f"Access denied: Path '{file_path}' escapes project root '{root_dir}'.") from exc

    return target
