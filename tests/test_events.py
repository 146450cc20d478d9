import unittest

from core.events import ALL_EVENTS, AgentEventType, EventBus


class TestEventBus(unittest.TestCase):

    def setUp(self):
        self.bus = EventBus(verbose=False)
        self.seen = []

    def test_listener_receives_matching_events_only(self):
        self.bus.on(AgentEventType.TASK_STARTED, self.seen.append)
        self.bus.emit(AgentEventType.TASK_STARTED, {"task_id": "t1"})
        self.bus.emit(AgentEventType.TASK_COMPLETED, {"task_id": "t1"})
        self.assertEqual(len(self.seen), 1)
        self.assertEqual(self.seen[0].data, {"task_id": "t1"})

    def test_wildcard_listener_sees_everything_in_order(self):
        self.bus.on(ALL_EVENTS, self.seen.append)
        self.bus.emit(AgentEventType.PLAN_CREATED)
        self.bus.emit(AgentEventType.ITERATION_COMPLETED)
        self.assertEqual([e.type for e in self.seen],
                         [AgentEventType.PLAN_CREATED, AgentEventType.ITERATION_COMPLETED])
        self.assertLess(self.seen[0].seq, self.seen[1].seq)

    def test_string_event_names_are_accepted(self):
        self.bus.on("agent_completed", self.seen.append)
        self.bus.emit(AgentEventType.AGENT_COMPLETED)
        self.assertEqual(len(self.seen), 1)

    def test_unsubscribe(self):
        unsubscribe = self.bus.on(AgentEventType.TASK_FAILED, self.seen.append)
        unsubscribe()
        self.bus.emit(AgentEventType.TASK_FAILED)
        self.assertEqual(self.seen, [])

    def test_failing_listener_does_not_block_others(self):
        def broken(event):
            raise RuntimeError("listener bug")

        self.bus.on(AgentEventType.ERROR_DETECTED, broken)
        self.bus.on(AgentEventType.ERROR_DETECTED, self.seen.append)
        event = self.bus.emit(AgentEventType.ERROR_DETECTED, {"error": "x"})
        self.assertEqual(self.seen, [event])

    def test_emit_copies_payload(self):
        payload = {"count": 1}
        event = self.bus.emit(AgentEventType.TOOL_EXECUTED, payload)
        payload["count"] = 2
        self.assertEqual(event.data["count"], 1)
