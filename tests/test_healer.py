import json
import unittest

from agents.healer import SelfHealer
from core.types import ErrorContext, ErrorType, HealingState, ToolKind, ToolResult
from memory.manager import MemoryManager
from tests.fakes.fake_services import FakeToolExecutor, RoutedCompletion

LEFT_PAD = "Error: Cannot find module 'left-pad'"


def _healer(tools=None, model=None, **kwargs):
    memory = MemoryManager(persist=False)
    return SelfHealer(tools or FakeToolExecutor(), memory, model=model, **kwargs), memory


class TestClassification(unittest.TestCase):

    def test_classify_error_types(self):
        cases = {
            LEFT_PAD: ErrorType.BUILD_ERROR,
            "src/a.ts(3,1): error TS2304: Cannot find name": ErrorType.BUILD_ERROR,
            "AssertionError: expected 1": ErrorType.TEST_FAILURE,
            "3 failed, 10 passed": ErrorType.TEST_FAILURE,
            "Traceback (most recent call last):\n  ...": ErrorType.RUNTIME_ERROR,
            "app.py:3:1: F401 'os' imported but unused": ErrorType.LINT_ERROR,
            "Type 'string' is not assignable to type 'number'": ErrorType.TYPE_ERROR,
            "something odd happened": ErrorType.UNKNOWN,
        }
        for message, expected in cases.items():
            with self.subTest(message=message):
                self.assertEqual(SelfHealer.classify_error(message), expected)

    def test_extract_location_prefers_innermost_traceback_frame(self):
        trace = ('Traceback (most recent call last):\n'
                 '  File "main.py", line 3, in <module>\n'
                 '  File "pkg/util.py", line 17, in helper\n')
        self.assertEqual(SelfHealer.extract_location(trace), {"file": "pkg/util.py", "line": 17, "column": None})

    def test_extract_location_with_column(self):
        self.assertEqual(SelfHealer.extract_location("src/app.tsx:12:5 - error"),
                         {"file": "src/app.tsx", "line": 12, "column": 5})

    def test_extract_location_none(self):
        self.assertEqual(SelfHealer.extract_location("no location here"), {})

    def test_is_command(self):
        self.assertTrue(SelfHealer.is_command("npm install left-pad"))
        self.assertFalse(SelfHealer.is_command("Check the import"))


class TestPatternDiagnosis(unittest.TestCase):

    def test_missing_node_module(self):
        healer, _ = _healer()
        diagnosis = healer.diagnose(ErrorContext(ErrorType.UNKNOWN, LEFT_PAD))
        self.assertEqual(diagnosis.root_cause, "Missing module: left-pad")
        self.assertEqual(diagnosis.suggested_fixes[0], "npm install left-pad")
        self.assertAlmostEqual(diagnosis.confidence, 0.7)

    def test_missing_python_module(self):
        healer, _ = _healer()
        diagnosis = healer.diagnose(ErrorContext(ErrorType.UNKNOWN, "ModuleNotFoundError: No module named 'yaml'"))
        self.assertEqual(diagnosis.suggested_fixes, ["pip install yaml"])

    def test_low_confidence_model_reply_falls_back_to_patterns(self):
        model = RoutedCompletion({"debugging an error": json.dumps(
            {"rootCause": "guess", "suggestedFixes": ["x"], "confidence": 0.1})})
        healer, _ = _healer(model=model)
        diagnosis = healer.diagnose(ErrorContext(ErrorType.BUILD_ERROR, LEFT_PAD))
        self.assertEqual(diagnosis.root_cause, "Missing module: left-pad")


class TestHealing(unittest.TestCase):

    def test_command_fix_is_applied_and_verified(self):
        tools = FakeToolExecutor()
        healer, _ = _healer(tools)

        result = healer.heal(ErrorContext(ErrorType.UNKNOWN, LEFT_PAD))

        self.assertTrue(result.fixed)
        self.assertEqual(result.state, HealingState.RESOLVED)
        self.assertEqual(len(result.attempts), 1)
        self.assertEqual(tools.calls[0].params["command"], "npm install left-pad")
        self.assertEqual(tools.kinds(), [ToolKind.SHELL, ToolKind.BUILD])
        self.assertEqual(result.message, "Error fixed after 1 attempt(s).")

    def test_never_fixed_without_passing_verification(self):
        tools = FakeToolExecutor({ToolKind.BUILD: ToolResult(False, output=LEFT_PAD, error="build failed")})
        healer, memory = _healer(tools)

        result = healer.heal(ErrorContext(ErrorType.UNKNOWN, LEFT_PAD))

        self.assertFalse(result.fixed)
        self.assertEqual(result.state, HealingState.UNRESOLVABLE)
        self.assertEqual(len(result.attempts), 3)
        self.assertTrue(all(a.result == "partial" for a in result.attempts))
        self.assertTrue(memory.should_avoid("Fix: Missing module: left-pad"))

    def test_unrecognized_error_needs_human(self):
        healer, _ = _healer()
        first = healer.heal(ErrorContext(ErrorType.UNKNOWN, "weird failure"))
        self.assertEqual(first.state, HealingState.NEEDS_HUMAN)
        self.assertEqual(first.attempts, [])

    def test_dangerous_command_fix_is_blocked(self):
        model = RoutedCompletion({
            "debugging an error": json.dumps({"rootCause": "disk full", "suggestedFixes": ["clean"],
                                              "confidence": 0.9}),
            "Generate the exact fix": "git clean -fdx && sudo rm -rf /tmp/cache",
        })
        tools = FakeToolExecutor()
        healer, _ = _healer(tools, model=model)

        result = healer.heal(ErrorContext(ErrorType.BUILD_ERROR, "Build failed: no space left"))

        self.assertFalse(result.fixed)
        self.assertNotIn(ToolKind.SHELL, tools.kinds())
        self.assertIn("Dangerous command blocked", result.attempts[0].output)

    def test_patch_with_missing_old_code_does_not_write(self):
        model = RoutedCompletion({
            "debugging an error": json.dumps({"rootCause": "typo", "suggestedFixes": ["fix typo"],
                                              "affectedFiles": ["app.py"], "confidence": 0.8}),
            "Generate the exact fix": "<<<\nprnt('hi')\n>>>\nprint('hi')",
        })
        tools = FakeToolExecutor(files={"app.py": "print('hello')\n"})
        healer, _ = _healer(tools, model=model, max_attempts=1)

        result = healer.heal(ErrorContext(ErrorType.RUNTIME_ERROR, "NameError: name 'prnt' is not defined"))

        self.assertFalse(result.fixed)
        self.assertNotIn(ToolKind.FILE_WRITE, tools.kinds())
        self.assertEqual(tools.files["app.py"], "print('hello')\n")
        self.assertIn("Patch application failed", result.attempts[0].output)

    def test_patch_fix_edits_the_located_file(self):
        model = RoutedCompletion({
            "debugging an error": json.dumps({"rootCause": "typo", "suggestedFixes": ["fix typo"],
                                              "confidence": 0.8}),
            "Generate the exact fix": "```\n<<<\nprnt('hi')\n>>>\nprint('hi')\n```",
        })
        tools = FakeToolExecutor(files={"app.py": "prnt('hi')\n"})
        healer, _ = _healer(tools, model=model)
        error = ErrorContext(ErrorType.RUNTIME_ERROR, "NameError: name 'prnt' is not defined",
                             stack='  File "app.py", line 1, in <module>')

        result = healer.heal(error)

        self.assertTrue(result.fixed)
        self.assertEqual(error.file, "app.py")
        self.assertEqual(tools.files["app.py"], "print('hi')\n")

    def test_prose_fix_is_refused(self):
        healer, _ = _healer()
        result = healer.apply_fix("Check the import statement", ErrorContext(ErrorType.BUILD_ERROR, "x"))
        self.assertFalse(result.success)
        self.assertEqual(result.error, "fix is neither a patch nor a command")

    def test_healing_log_records_and_clears(self):
        healer, _ = _healer()
        healer.heal(ErrorContext(ErrorType.UNKNOWN, LEFT_PAD))
        self.assertEqual(len(healer.get_healing_log()), 1)
        healer.clear_healing_log()
        self.assertEqual(healer.get_healing_log(), [])


def test_summary_mentions_last_fix():
    from core.types import FixAttempt
    attempts = [FixAttempt("d", "npm install a", "failed"), FixAttempt("d", "npm install b", "failed")]
    assert SelfHealer.generate_healing_summary(attempts, False) == \
        "Failed to fix after 2 attempt(s). Last tried: npm install b"
    assert SelfHealer.generate_healing_summary([], False) == "No fix attempts were made."
