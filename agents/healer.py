import re
from typing import Dict, List, Optional, Tuple

from core.exceptions import SecurityError
from core.file_tools import FileToolsError, apply_patch_blocks, clean_json, is_patch, parse_patch_blocks
from core.logging_utils import log_json
from core.sanitizer import check_command
from core.schema import ParseFailure, parse_diagnosis
from core.types import (
    Diagnosis,
    ErrorContext,
    ErrorType,
    FixAttempt,
    HealingResult,
    HealingState,
    ToolCall,
    ToolKind,
    ToolResult,
)

MAX_HEALING_ATTEMPTS = 3
MIN_CONFIDENCE = 0.3
VERIFY_SNIPPET_CHARS = 50

# Checked in order; the first type with a matching pattern wins.
ERROR_PATTERNS: List[Tuple[ErrorType, List[re.Pattern]]] = [
    (ErrorType.BUILD_ERROR, [
        re.compile(r"error TS\d+", re.I),
        re.compile(r"SyntaxError", re.I),
        re.compile(r"IndentationError"),
        re.compile(r"Unexpected token", re.I),
        re.compile(r"Cannot find module", re.I),
        re.compile(r"Module not found", re.I),
        re.compile(r"ModuleNotFoundError|No module named", re.I),
        re.compile(r"ImportError"),
        re.compile(r"Failed to compile", re.I),
        re.compile(r"Build failed", re.I),
    ]),
    (ErrorType.TEST_FAILURE, [
        re.compile(r"Test failed", re.I),
        re.compile(r"FAIL(ED)?\s+"),
        re.compile(r"AssertionError", re.I),
        re.compile(r"Expected.*but got", re.I),
        re.compile(r"\d+ failed", re.I),
    ]),
    (ErrorType.RUNTIME_ERROR, [
        re.compile(r"Traceback \(most recent call last\)"),
        re.compile(r"ReferenceError|RangeError|NameError|AttributeError|KeyError|ZeroDivisionError"),
        re.compile(r"TypeError"),
        re.compile(r"Uncaught.*Error", re.I),
        re.compile(r"undefined is not", re.I),
    ]),
    (ErrorType.LINT_ERROR, [
        re.compile(r"eslint|pyflakes|flake8|ruff|pylint", re.I),
        re.compile(r"\b[EFW]\d{3}\b"),
        re.compile(r"prettier", re.I),
    ]),
    (ErrorType.TYPE_ERROR, [
        re.compile(r"Type '.*' is not assignable", re.I),
        re.compile(r"is not assignable to", re.I),
        re.compile(r"Property '.*' does not exist", re.I),
        re.compile(r"Argument of type", re.I),
        re.compile(r"Incompatible types", re.I),
        re.compile(r"TS\d+:", re.I),
    ]),
]

LOCATION_PATTERNS = [
    re.compile(r'File "([^"]+)", line (\d+)'),  # Python traceback
    re.compile(r"([^\s:'\"()]+\.(?:py|[jt]sx?|go|rs|java|rb)):(\d+):(\d+)"),
    re.compile(r"([^\s:'\"()]+\.(?:py|[jt]sx?|go|rs|java|rb)):(\d+)"),
    re.compile(r"at\s+([^\s:]+\.[jt]sx?)\s+line\s+(\d+)", re.I),
]

COMMAND_PREFIXES = ("npm ", "npx ", "yarn ", "pnpm ", "pip ", "pip3 ", "python ", "python3 ",
                    "uv ", "poetry ", "git ", "cargo ", "go ")

DIAGNOSIS_PROMPT = """You are a senior software engineer debugging an error. Analyze the error and identify the root cause.

## Error Type
{type}

## Error Message
{message}

## Stack Trace
{stack}

## File Location
{location}
{previous}
## Instructions
1. Identify the most likely root cause
2. List the files that need to be modified
3. Suggest specific fixes (in order of likelihood)
4. Rate your confidence (0-1)

Respond with a JSON object:
{{"rootCause": "...", "affectedFiles": ["path/to/file"], "suggestedFixes": ["most likely fix", "alternative"], "confidence": 0.8}}
"""

FIX_PROMPT = """You are a senior software engineer fixing a bug. Generate the exact fix.

## Error
{message}

## Root Cause
{root_cause}

## File to Fix
{file}

## Instructions
If the fix is a command (for example installing a dependency), reply with the command only.
If it is a code change, reply with one or more blocks in this format:
<<<
exact old code to replace
>>>
new fixed code

Return ONLY the fix, no explanations.
"""


class SelfHealer:
    """
    Diagnoses a failure, applies a candidate fix and verifies it, up to
    ``max_attempts`` times. A fix only counts once verification passes.
    """
    def __init__(self, tools, memory, model=None, allow_dangerous: bool = False,
                 max_attempts: int = MAX_HEALING_ATTEMPTS,
                 typecheck_command: str = "python -m mypy --ignore-missing-imports ."):
        self.tools = tools
        self.memory = memory
        self.model = model
        self.allow_dangerous = allow_dangerous
        self.max_attempts = max_attempts
        self.typecheck_command = typecheck_command
        self.healing_log: List[HealingResult] = []

    # ==================== HEALING LOOP ====================

    def heal(self, error: ErrorContext) -> HealingResult:
        if error.type == ErrorType.UNKNOWN:
            error.type = self.classify_error(error.message)
        if error.file is None:
            location = self.extract_location(error.message + "\n" + (error.stack or ""))
            error.file = location.get("file")
            error.line = location.get("line")
            error.column = location.get("column")

        attempts: List[FixAttempt] = list(error.previous_attempts)
        diagnosis: Optional[Diagnosis] = None
        fixed = False
        log_json("INFO", "healing_started", details={"type": error.type.value, "message": error.message[:200],
                                                      "previous_attempts": len(attempts)})

        while len(attempts) < self.max_attempts:
            diagnosis = self.diagnose(error, attempts)

            if diagnosis.confidence < MIN_CONFIDENCE:
                return self._finish(HealingResult(
                    state=HealingState.NEEDS_HUMAN, attempts=attempts, diagnosis=diagnosis,
                    message=f"Low confidence diagnosis ({diagnosis.confidence:.2f}). Human review recommended."))
            if not diagnosis.suggested_fixes:
                return self._finish(HealingResult(
                    state=HealingState.NEEDS_HUMAN, attempts=attempts, diagnosis=diagnosis,
                    message="No suggested fixes available. Human review recommended."))

            fix = self.generate_fix(error, diagnosis)
            apply_result = self.apply_fix(fix, error, diagnosis)
            attempt = FixAttempt(diagnosis=diagnosis.root_cause, fix=fix,
                                 result="success" if apply_result.success else "failed",
                                 output=(apply_result.error or apply_result.output or "")[:500])
            attempts.append(attempt)

            if not apply_result.success:
                self.memory.record_failure(f"Fix attempt: {fix[:100]}",
                                           f"Application failed: {apply_result.error or 'unknown error'}",
                                           context=error.message[:200])
                continue

            if self.verify(error):
                attempt.result = "success"
                fixed = True
                break
            attempt.result = "partial"
            self.memory.record_failure(f"Fix: {diagnosis.root_cause}", "Verification failed after applying fix",
                                       context=error.message[:200])

        if fixed:
            state = HealingState.RESOLVED
        elif len(attempts) >= self.max_attempts:
            state = HealingState.UNRESOLVABLE
        else:
            state = HealingState.NEEDS_HUMAN
        return self._finish(HealingResult(state=state, attempts=attempts, fixed=fixed, diagnosis=diagnosis,
                                          message=self.generate_healing_summary(attempts, fixed)))

    def _finish(self, result: HealingResult) -> HealingResult:
        self.healing_log.append(result)
        log_json("INFO", "healing_finished", details={"state": result.state.value, "fixed": result.fixed,
                                                       "attempts": len(result.attempts)})
        return result

    @staticmethod
    def generate_healing_summary(attempts: List[FixAttempt], fixed: bool) -> str:
        if fixed:
            return f"Error fixed after {len(attempts)} attempt(s)."
        if not attempts:
            return "No fix attempts were made."
        return f"Failed to fix after {len(attempts)} attempt(s). Last tried: {attempts[-1].fix[:100]}"

    def get_healing_log(self) -> List[HealingResult]:
        return list(self.healing_log)

    def clear_healing_log(self) -> None:
        self.healing_log = []

    # ==================== DIAGNOSIS ====================

    def diagnose(self, error: ErrorContext, previous_attempts: Optional[List[FixAttempt]] = None) -> Diagnosis:
        """
        Ask the model for a structured diagnosis. A failed call, an unparseable
        reply or a confidence under the threshold falls back to the
        pattern-based diagnosis.
        """
        if error.type == ErrorType.UNKNOWN:
            error.type = self.classify_error(error.message)
        if self.model is not None:
            prompt = DIAGNOSIS_PROMPT.format(
                type=error.type.value,
                message=error.message,
                stack=error.stack or "No stack trace available",
                location=(f"File: {error.file}" + (f" (line {error.line})" if error.line else ""))
                if error.file else "Unknown location",
                previous=self._previous_text(previous_attempts or []),
            )
            try:
                parsed = parse_diagnosis(self.model.complete(prompt))
            except Exception as e:
                log_json("WARN", "healer_diagnosis_call_failed", details={"error": str(e)})
                parsed = ParseFailure(str(e))
            if isinstance(parsed, Diagnosis):
                if not parsed.affected_files and error.file:
                    parsed.affected_files = [error.file]
                if parsed.confidence >= MIN_CONFIDENCE:
                    return parsed
                log_json("INFO", "healer_diagnosis_low_confidence", details={"confidence": parsed.confidence})
            else:
                log_json("WARN", "healer_diagnosis_unparseable", details={"reason": parsed.reason})
        return self.pattern_diagnosis(error)

    @staticmethod
    def _previous_text(attempts: List[FixAttempt]) -> str:
        if not attempts:
            return ""
        lines = [f"{i}. Diagnosis: {a.diagnosis}\n   Fix: {a.fix[:100]}\n   Result: {a.result}"
                 for i, a in enumerate(attempts, 1)]
        return "\n## Previous Fix Attempts (all failed)\n" + "\n".join(lines) + "\n"

    def pattern_diagnosis(self, error: ErrorContext) -> Diagnosis:
        message = error.message
        diagnosis = Diagnosis(root_cause="Unknown error", affected_files=[error.file] if error.file else [],
                              suggested_fixes=[], confidence=0.3)

        node_missing = re.search(r"Cannot find module '([^']+)'", message)
        py_missing = re.search(r"No module named '([^'.]+)", message)
        if node_missing or "Cannot find module" in message:
            module = node_missing.group(1) if node_missing else ""
            diagnosis.root_cause = f"Missing module: {module or 'unknown'}"
            diagnosis.suggested_fixes = [f"npm install {module}".strip(), "npm install"]
            diagnosis.confidence = 0.7
        elif py_missing:
            module = py_missing.group(1)
            diagnosis.root_cause = f"Missing module: {module}"
            diagnosis.suggested_fixes = [f"pip install {module}"]
            diagnosis.confidence = 0.7
        elif "is not assignable to" in message or "Incompatible types" in message:
            diagnosis.root_cause = "Type mismatch"
            diagnosis.suggested_fixes = ["Check and fix the type annotation", "Add an explicit conversion"]
            diagnosis.confidence = 0.5
        elif "Unexpected token" in message or "invalid syntax" in message or "SyntaxError" in message:
            diagnosis.root_cause = "Syntax error"
            diagnosis.suggested_fixes = ["Check for missing brackets, quotes or commas near the reported line"]
            diagnosis.confidence = 0.4
        return diagnosis

    # ==================== FIXES ====================

    def generate_fix(self, error: ErrorContext, diagnosis: Diagnosis) -> str:
        """Ask the model for an applicable fix; fall back to the top suggestion."""
        if self.model is not None:
            prompt = FIX_PROMPT.format(message=error.message, root_cause=diagnosis.root_cause,
                                       file=error.file or (diagnosis.affected_files[0]
                                                           if diagnosis.affected_files else "Unknown"))
            try:
                fix = clean_json(self.model.complete(prompt) or "")
                if fix:
                    return fix
            except Exception as e:
                log_json("WARN", "healer_fix_generation_failed", details={"error": str(e)})
        return diagnosis.suggested_fixes[0] if diagnosis.suggested_fixes else ""

    @staticmethod
    def is_command(fix: str) -> bool:
        return fix.strip().startswith(COMMAND_PREFIXES)

    def apply_fix(self, fix: str, error: ErrorContext, diagnosis: Optional[Diagnosis] = None) -> ToolResult:
        """
        Apply *fix* through the tool gateway.

        Patch blocks edit the error's file (or the first affected file) and only
        on an exact match. Commands run through the shell after the deny-list
        check. Anything else is refused.
        """
        fix = (fix or "").strip()
        if not fix:
            return ToolResult(False, error="empty fix")
        if is_patch(fix):
            target = error.file or (diagnosis.affected_files[0] if diagnosis and diagnosis.affected_files else None)
            if not target:
                return ToolResult(False, error="patch fix has no target file")
            return self._apply_patch(fix, target)
        if self.is_command(fix):
            try:
                check_command(fix, self.allow_dangerous)
            except SecurityError as e:
                log_json("WARN", "healer_command_blocked", details={"command": fix[:200]})
                return ToolResult(False, error=f"Dangerous command blocked by policy: {e}")
            return self.tools.execute(ToolCall(ToolKind.SHELL, {"command": fix}))
        return ToolResult(False, error="fix is neither a patch nor a command")

    def _apply_patch(self, patch: str, file_path: str) -> ToolResult:
        read = self.tools.execute(ToolCall(ToolKind.FILE_READ, {"path": file_path}))
        if not read.success:
            return read
        try:
            content = apply_patch_blocks(read.output, parse_patch_blocks(patch), file_path)
        except FileToolsError as e:
            return ToolResult(False, error=f"Patch application failed: {e}")
        return self.tools.execute(ToolCall(ToolKind.FILE_WRITE, {"path": file_path, "content": content}))

    # ==================== VERIFICATION ====================

    def verify(self, error: ErrorContext) -> bool:
        """Re-run the check matching the error type.

        Passes on a clean exit, or when the first characters of the original
        error no longer appear in the output.
        """
        checks: Dict[ErrorType, ToolCall] = {
            ErrorType.BUILD_ERROR: ToolCall(ToolKind.BUILD),
            ErrorType.TYPE_ERROR: ToolCall(ToolKind.BUILD),
            ErrorType.TEST_FAILURE: ToolCall(ToolKind.TEST),
            ErrorType.LINT_ERROR: ToolCall(ToolKind.LINT),
        }
        call = checks.get(error.type, ToolCall(ToolKind.SHELL, {"command": self.typecheck_command}))
        result = self.tools.execute(call)
        if result.success:
            return True
        output = (result.output or "") + (result.error or "")
        snippet = error.message.strip()[:VERIFY_SNIPPET_CHARS]
        return bool(snippet) and snippet not in output

    # ==================== CLASSIFICATION ====================

    @staticmethod
    def classify_error(message: str) -> ErrorType:
        for error_type, patterns in ERROR_PATTERNS:
            if any(p.search(message or "") for p in patterns):
                return error_type
        return ErrorType.UNKNOWN

    @staticmethod
    def extract_location(message: str) -> dict:
        """Find the last ``file[:line[:col]]`` reference (innermost frame for tracebacks)."""
        for pattern in LOCATION_PATTERNS:
            matches = list(pattern.finditer(message or ""))
            if matches:
                m = matches[-1]
                groups = m.groups()
                return {
                    "file": groups[0],
                    "line": int(groups[1]) if len(groups) > 1 and groups[1] else None,
                    "column": int(groups[2]) if len(groups) > 2 and groups[2] else None,
                }
        return {}
