import json
import unittest
import tempfile
from pathlib import Path

from core.types import (
    Action,
    ActionKind,
    CodeKnowledge,
    Discovery,
    Importance,
    Observation,
    ObservationKind,
    ToolCall,
    ToolKind,
    ToolResult,
)
from memory.manager import MAX_DISCOVERIES, MAX_RECENT_ACTIONS, MAX_RECENT_OBSERVATIONS, MemoryManager
from memory.store import InMemoryStore, JsonFileStore


def _action(success=True, output="ok"):
    return Action(ActionKind.EXECUTE, task_id="t1", tool_call=ToolCall(ToolKind.SHELL, {"command": "ls"}),
                  result=ToolResult(success, output))


def _observation(content, importance=Importance.LOW):
    return Observation(ObservationKind.TOOL_RESULT, "t1", content, importance)


class TestShortTermMemory(unittest.TestCase):

    def setUp(self):
        self.memory = MemoryManager(persist=False)

    def test_recent_actions_are_bounded(self):
        for i in range(MAX_RECENT_ACTIONS + 5):
            self.memory.add_action(_action(output=str(i)))
        actions = self.memory.get_recent_actions()
        self.assertEqual(len(actions), MAX_RECENT_ACTIONS)
        self.assertEqual(actions[-1].result.output, str(MAX_RECENT_ACTIONS + 4))
        self.assertEqual(len(self.memory.get_recent_actions(3)), 3)

    def test_recent_observations_are_bounded(self):
        for i in range(MAX_RECENT_OBSERVATIONS + 1):
            self.memory.add_observation(_observation(f"o{i}"))
        self.assertEqual(len(self.memory.get_recent_observations()), MAX_RECENT_OBSERVATIONS)

    def test_important_observation_becomes_discovery(self):
        self.memory.add_observation(_observation("Error: build failed", Importance.HIGH))
        self.memory.add_observation(_observation("routine"))
        self.assertEqual([d.content for d in self.memory.discoveries], ["Error: build failed"])
        self.assertEqual(len(self.memory.get_important_observations()), 1)

    def test_context_summary_lists_recent_actions(self):
        self.memory.set_working_variable("port", 8080)
        self.memory.add_action(_action(success=False))
        context = self.memory.get_current_context()
        self.assertIn("## Recent Actions (last 5)", context)
        self.assertIn("- execute: FAILED", context)
        self.assertIn("- port: 8080", context)

    def test_clear_short_term_keeps_long_term(self):
        self.memory.add_action(_action())
        self.memory.record_failure("npm install", "network")
        self.memory.clear_short_term()
        self.assertEqual(self.memory.get_recent_actions(), [])
        self.assertEqual(len(self.memory.failed_approaches), 1)


class TestLongTermMemory(unittest.TestCase):

    def setUp(self):
        self.memory = MemoryManager(persist=False)

    def test_discoveries_deduplicate_by_content(self):
        self.memory.record_discovery(Discovery("uses vite", "t1"))
        self.memory.record_discovery(Discovery("uses vite", "t2"))
        self.assertEqual(len(self.memory.discoveries), 1)

    def test_discoveries_ring_drops_oldest(self):
        for i in range(MAX_DISCOVERIES + 3):
            self.memory.record_discovery(Discovery(f"d{i}", "s"))
        self.assertEqual(len(self.memory.discoveries), MAX_DISCOVERIES)
        self.assertEqual(self.memory.discoveries[0].content, "d3")

    def test_should_avoid_is_substring_and_case_insensitive(self):
        self.memory.record_failure("npm install left-pad", "404")
        self.assertTrue(self.memory.should_avoid("Run NPM INSTALL LEFT-PAD --save"))
        self.assertFalse(self.memory.should_avoid("npm install"))

    def test_completed_goals_are_unique(self):
        self.memory.record_completed_goal("build login page")
        self.memory.record_completed_goal("build login page")
        self.assertEqual(self.memory.completed_goals, ["build login page"])

    def test_code_knowledge_upserts_by_file(self):
        self.memory.update_code_knowledge(CodeKnowledge("src/app.py", "flask app"))
        self.memory.update_code_knowledge(CodeKnowledge("src/app.py", "flask app with login", ["blueprints"]))
        self.assertEqual(len(self.memory.code_knowledge), 1)
        self.assertEqual(self.memory.get_code_knowledge("src/app.py").patterns, ["blueprints"])
        self.assertIsNone(self.memory.get_code_knowledge("missing.py"))

    def test_relevant_memories_rank_by_term_overlap(self):
        self.memory.record_discovery(Discovery("login form uses react", "t1"))
        self.memory.record_discovery(Discovery("database is postgres", "t2"))
        self.memory.record_discovery(Discovery("login route", "t3"))
        self.memory.record_failure("webpack login build", "config missing")

        found = self.memory.get_relevant_memories("react login")

        self.assertEqual([d.content for d in found.discoveries], ["login form uses react", "login route"])
        self.assertEqual(len(found.failed_approaches), 1)

    def test_summary_respects_budget(self):
        for i in range(10):
            self.memory.add_action(_action(output="x" * 90))
            self.memory.record_failure(f"approach {i}", "r" * 150)
        text = self.memory.summarize_for_llm(budget=400)
        self.assertLessEqual(len(text), 400)
        self.assertTrue(text.startswith("## Agent Memory Summary"))


class TestPersistence(unittest.TestCase):

    def test_long_term_survives_restart(self):
        store = InMemoryStore()
        first = MemoryManager(store=store)
        first.record_failure("pip install foo", "not found")
        first.record_discovery(Discovery("python 3.11", "t1", Importance.HIGH))
        first.record_completed_goal("ship it")
        first.update_code_knowledge(CodeKnowledge("main.py", "entry point"))

        second = MemoryManager(store=store)

        self.assertTrue(second.should_avoid("pip install foo"))
        self.assertEqual(second.discoveries[0].importance, Importance.HIGH)
        self.assertEqual(second.completed_goals, ["ship it"])
        self.assertEqual(second.get_code_knowledge("main.py").summary, "entry point")

    def test_short_term_is_not_persisted_by_default(self):
        store = InMemoryStore()
        first = MemoryManager(store=store)
        first.add_action(_action())
        first.record_failure("x", "y")
        self.assertNotIn("short_term", store.data)
        self.assertEqual(MemoryManager(store=store).get_recent_actions(), [])

    def test_short_term_round_trips_when_enabled(self):
        store = InMemoryStore()
        first = MemoryManager(store=store, persist_short_term=True)
        first.set_working_variable("port", 3000)
        first.add_action(_action(output="built"))
        first.add_observation(_observation("done"))
        first.record_failure("x", "y")

        second = MemoryManager(store=store, persist_short_term=True)
        self.assertEqual(second.get_recent_actions()[0].result.output, "built")
        self.assertEqual(second.get_recent_actions()[0].tool_call.kind, ToolKind.SHELL)
        self.assertEqual(second.get_working_variable("port"), 3000)

    def test_corrupt_snapshot_starts_empty(self):
        root = Path(tempfile.mkdtemp())
        (root / "long_term.json").write_text("{broken")
        memory = MemoryManager(store=JsonFileStore(root))
        self.assertEqual(memory.discoveries, [])

    def test_malformed_entries_reset_memory(self):
        store = InMemoryStore()
        store.save("long_term", {"failed_approaches": [{"unexpected": 1}]})
        memory = MemoryManager(store=store)
        self.assertEqual(memory.failed_approaches, [])

    def test_file_store_writes_json(self):
        root = Path(tempfile.mkdtemp()) / "nested" / "memory"
        memory = MemoryManager(store=JsonFileStore(root))
        memory.record_completed_goal("goal")
        data = json.loads((root / "long_term.json").read_text())
        self.assertEqual(data["completed_goals"], ["goal"])

    def test_export_has_both_tiers(self):
        memory = MemoryManager(persist=False)
        memory.set_working_variable("k", "v")
        exported = memory.export()
        self.assertEqual(exported["short_term"]["working_set"], {"k": "v"})
        self.assertIn("discoveries", exported["long_term"])


class _UnavailableStore:
    def save(self, key, value):
        raise ConnectionError("store offline")

    def load(self, key):
        raise ConnectionError("store offline")


class TestDegradedStorage(unittest.TestCase):

    def test_unavailable_store_degrades_to_in_memory(self):
        memory = MemoryManager(store=_UnavailableStore(), persist=True)

        memory.record_failure("npm install", "network")
        memory.record_discovery(Discovery("uses vite", "t1"))

        self.assertTrue(memory.should_avoid("npm install"))
        self.assertEqual(len(memory.discoveries), 1)
        self.assertEqual(memory.completed_goals, [])


class TestContextAndFailures(unittest.TestCase):

    def test_context_includes_the_latest_observation(self):
        memory = MemoryManager(persist=False)
        memory.add_action(_action(success=False))
        memory.add_observation(_observation("Error: port 3000 in use", Importance.HIGH))
        self.assertIn("Error: port 3000 in use", memory.get_current_context())

    def test_failure_context_is_kept_and_persisted(self):
        store = InMemoryStore()
        first = MemoryManager(store=store)
        first.record_failure("Start server", "port in use", context="Start the dev server on port 3000")

        second = MemoryManager(store=store)
        self.assertEqual(second.failed_approaches[0].context, "Start the dev server on port 3000")
        relevant = second.get_relevant_memories("dev server")
        self.assertEqual([f.approach for f in relevant.failed_approaches], ["Start server"])
