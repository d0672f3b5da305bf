import unittest
from datetime import datetime

from dateutil.tz import tzutc

from posthog_core.event_queue import EventQueue
from posthog_core.storage import MemoryStorage, PersistedState, PersistedStore
from posthog_core.types import PersistedProperty


def _message(uuid, event="python event"):
    return {"event": event, "distinct_id": "distinct_id", "uuid": uuid, "properties": {}}


class TestPersistedState(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStorage()
        self.state = PersistedState(self.store)

    def test_memory_storage_is_a_store(self):
        self.assertIsInstance(self.store, PersistedStore)

    def test_values_are_stored_as_json(self):
        self.state.set(PersistedProperty.DISTINCT_ID, "user-1")
        self.state.set(PersistedProperty.PERSON_PROPERTIES, {"plan": "pro"})

        self.assertEqual(self.store.get_item("distinct_id"), '"user-1"')
        self.assertEqual(self.state.get(PersistedProperty.DISTINCT_ID), "user-1")
        self.assertEqual(self.state.get("person_properties"), {"plan": "pro"})

    def test_none_removes_the_key(self):
        self.state.set(PersistedProperty.OPTED_OUT, True)
        self.state.set(PersistedProperty.OPTED_OUT, None)

        self.assertIsNone(self.store.get_item("opted_out"))
        self.assertEqual(self.state.get(PersistedProperty.OPTED_OUT, False), False)

    def test_datetimes_are_serialized(self):
        self.state.set("when", {"at": datetime(2024, 1, 1, tzinfo=tzutc())})
        self.assertEqual(self.state.get("when"), {"at": "2024-01-01T00:00:00+00:00"})

    def test_corrupt_value_returns_default(self):
        self.store.set_item("props", "{not json")
        with self.assertLogs("posthog", level="WARNING"):
            self.assertEqual(self.state.get(PersistedProperty.PROPS, {}), {})


class TestEventQueue(unittest.TestCase):
    def setUp(self):
        self.state = PersistedState(MemoryStorage())

    def test_enqueue_and_peek_in_order(self):
        queue = EventQueue(self.state)
        self.assertEqual(queue.enqueue(_message("1")), 1)
        self.assertEqual(queue.enqueue(_message("2")), 2)

        self.assertEqual([m["uuid"] for m in queue.peek()], ["1", "2"])
        self.assertEqual([m["uuid"] for m in queue.peek(1)], ["1"])
        self.assertEqual(len(queue), 2)

    def test_peek_returns_copies(self):
        queue = EventQueue(self.state)
        queue.enqueue(_message("1"))
        queue.peek()[0]["event"] = "changed"
        self.assertEqual(queue.peek()[0]["event"], "python event")

    def test_remove_by_uuid(self):
        queue = EventQueue(self.state)
        for uuid in ("1", "2", "3"):
            queue.enqueue(_message(uuid))

        queue.remove([_message("1"), _message("3")])

        self.assertEqual([m["uuid"] for m in queue.peek()], ["2"])

    def test_remove_takes_one_item_per_message(self):
        queue = EventQueue(self.state)
        queue.enqueue(_message("1", event="first"))
        queue.enqueue(_message("2"))
        queue.enqueue(_message("1", event="second"))

        queue.remove([_message("1")])

        self.assertEqual(
            [(m["uuid"], m["event"]) for m in queue.peek()],
            [("2", "python event"), ("1", "second")],
        )

    def test_queue_is_persisted(self):
        queue = EventQueue(self.state)
        queue.enqueue(_message("1"))

        self.assertEqual(
            self.state.get(PersistedProperty.QUEUE), [{"message": _message("1")}]
        )
        restored = EventQueue(self.state)
        self.assertEqual([m["uuid"] for m in restored.peek()], ["1"])

    def test_oldest_event_dropped_when_full(self):
        queue = EventQueue(self.state, max_queue_size=2)
        for uuid in ("1", "2", "3"):
            queue.enqueue(_message(uuid))

        self.assertEqual([m["uuid"] for m in queue.peek()], ["2", "3"])

    def test_clear(self):
        queue = EventQueue(self.state)
        queue.enqueue(_message("1"))
        queue.clear()
        self.assertEqual(len(queue), 0)
        self.assertEqual(self.state.get(PersistedProperty.QUEUE), [])
