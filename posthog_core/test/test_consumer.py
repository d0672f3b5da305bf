import json
import threading
import time
import unittest

import mock
import requests
from parameterized import parameterized

from posthog_core.consumer import Consumer, FlushEngine
from posthog_core.errors import APIError, NetworkError, PayloadTooLargeError
from posthog_core.event_queue import EventQueue
from posthog_core.events import EventEmitter
from posthog_core.storage import MemoryStorage, PersistedState
from posthog_core.test.fake_transport import FakeResponse, FakeTransport, ok
from posthog_core.test.test_utils import TEST_API_KEY


def _event(uuid, event="python event"):
    return {
        "type": "capture",
        "event": event,
        "distinct_id": "distinct_id",
        "uuid": uuid,
        "properties": {},
    }


def _batch(options):
    return json.loads(options["body"])["batch"]


def _uuids(messages):
    return [message["uuid"] for message in messages]


class TestFlushEngine(unittest.TestCase):
    def setUp(self):
        self.queue = EventQueue(PersistedState(MemoryStorage()))
        self.events = EventEmitter()
        self.errors = []
        self.flushed = []
        self.events.on("error", self.errors.append)
        self.events.on("flush", self.flushed.append)

    def _engine(self, transport, **kwargs):
        kwargs.setdefault("retry_delay", 0)
        return FlushEngine(
            self.queue,
            transport,
            TEST_API_KEY,
            host="https://test.posthog.com",
            events=self.events,
            **kwargs,
        )

    def _enqueue(self, *uuids):
        for uuid in uuids:
            self.queue.enqueue(_event(uuid))

    def test_flush(self):
        transport = FakeTransport()
        self._enqueue("1", "2", "3")

        self._engine(transport).flush()

        self.assertEqual([_uuids(batch) for batch in transport.batches()], [["1", "2", "3"]])
        self.assertEqual(len(self.queue), 0)
        self.assertEqual([_uuids(sent) for sent in self.flushed], [["1", "2", "3"]])
        self.assertEqual(transport.calls[0][0], "https://test.posthog.com/batch/")

    def test_empty_queue_makes_no_request(self):
        transport = FakeTransport()
        self._engine(transport).flush()
        self.assertEqual(transport.calls, [])
        self.assertEqual(self.flushed, [])

    def test_max_batch_size(self):
        transport = FakeTransport()
        self._enqueue("1", "2", "3", "4", "5")

        self._engine(transport, max_batch_size=2).flush()

        self.assertEqual(
            [_uuids(batch) for batch in transport.batches()],
            [["1", "2"], ["3", "4"], ["5"]],
        )

    def test_max_batch_size_is_at_least_one(self):
        engine = self._engine(FakeTransport(), max_batch_size=0)
        self.assertEqual(engine.max_batch_size, 1)

    def test_payload_too_large_halves_batch_size(self):
        def handler(url, options):
            if len(_batch(options)) > 1:
                return FakeResponse(413, {"detail": "Payload too large"})
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2", "3", "4")
        engine = self._engine(transport)

        engine.flush()

        self.assertEqual(
            [len(batch) for batch in transport.batches()], [4, 2, 1, 1, 1, 1]
        )
        delivered = [batch for batch in transport.batches() if len(batch) == 1]
        self.assertEqual([_uuids(batch)[0] for batch in delivered], ["1", "2", "3", "4"])
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(engine.max_batch_size, 1)
        self.assertEqual(self.errors, [])

    def test_payload_too_large_stops_halving_once_accepted(self):
        def handler(url, options):
            if len(_batch(options)) > 2:
                return FakeResponse(413, {"detail": "Payload too large"})
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2", "3", "4")
        engine = self._engine(transport)

        engine.flush()

        self.assertEqual(
            [_uuids(batch) for batch in transport.batches()],
            [["1", "2", "3", "4"], ["1", "2"], ["3", "4"]],
        )
        # the reduced size is kept for later flushes
        self.assertEqual(engine.max_batch_size, 2)

    def test_payload_too_large_single_event(self):
        def handler(url, options):
            if _uuids(_batch(options)) == ["big"]:
                return FakeResponse(413, {"detail": "Payload too large"})
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("big", "small")

        with self.assertRaises(PayloadTooLargeError) as ctx:
            self._engine(transport, max_batch_size=1).flush()

        self.assertEqual(ctx.exception.error_type, "payload_too_large_terminal")
        self.assertEqual(ctx.exception.status, 413)
        # the oversized event is dropped, the rest waits for the next flush
        self.assertEqual(_uuids(self.queue.peek()), ["small"])
        self.assertEqual(self.errors, [ctx.exception])

    def test_stops_at_first_error(self):
        def handler(url, options):
            if _uuids(_batch(options)) == ["2"]:
                return FakeResponse(500, {"detail": "Internal Server Error"})
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2", "3")

        with self.assertRaises(APIError) as ctx:
            self._engine(transport, max_batch_size=1).flush()

        self.assertEqual(ctx.exception.status, 500)
        # one attempt for the first event, then the second one and its three retries
        self.assertEqual(
            [_uuids(batch) for batch in transport.batches()],
            [["1"], ["2"], ["2"], ["2"], ["2"]],
        )
        self.assertEqual(_uuids(self.queue.peek()), ["3"])
        self.assertEqual(len(self.errors), 1)
        self.assertEqual(self.flushed, [])

    def test_network_error_keeps_batch(self):
        transport = FakeTransport(
            lambda url, options: requests.exceptions.ConnectionError("connection refused")
        )
        self._enqueue("1", "2")

        with self.assertRaises(NetworkError):
            self._engine(transport).flush()

        self.assertEqual(len(transport.calls), 4)
        self.assertEqual(_uuids(self.queue.peek()), ["1", "2"])
        self.assertEqual(self.errors[0].error_type, "connection_error")

    @parameterized.expand(
        [
            ("server_errors", 500),
            ("rate_limit_errors", 429),
        ]
    )
    def test_retries_then_succeeds(self, _name, status):
        responses = [FakeResponse(status, {"detail": "nope"}), ok()]
        transport = FakeTransport(lambda url, options: responses.pop(0))
        self._enqueue("1")

        self._engine(transport).flush()

        self.assertEqual(len(transport.calls), 2)
        self.assertEqual(len(self.queue), 0)

    def test_retry_count(self):
        transport = FakeTransport(lambda url, options: FakeResponse(503, {"detail": "down"}))
        self._enqueue("1")

        with self.assertRaises(APIError):
            self._engine(transport, retries=1).flush()

        self.assertEqual(len(transport.calls), 2)

    def test_events_captured_during_flush_wait_for_next_cycle(self):
        engine = None

        def handler(url, options):
            if len(transport.calls) == 1:
                self.queue.enqueue(_event("late"))
                # nested flush from inside the transport returns right away
                engine.flush()
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2")
        engine = self._engine(transport, max_batch_size=1)

        engine.flush()

        self.assertEqual([_uuids(batch) for batch in transport.batches()], [["1"], ["2"]])
        self.assertEqual(_uuids(self.queue.peek()), ["late"])

        engine.flush()
        self.assertEqual(_uuids(transport.batches()[-1]), ["late"])
        self.assertEqual(len(self.queue), 0)

    def test_concurrent_flush_joins_in_flight_flush(self):
        entered = threading.Event()
        release = threading.Event()

        def handler(url, options):
            entered.set()
            release.wait(5)
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2")
        engine = self._engine(transport)

        first = threading.Thread(target=engine.flush)
        first.start()
        entered.wait(5)
        self.assertTrue(engine.is_flushing)

        second = threading.Thread(target=engine.flush)
        second.start()
        time.sleep(0.2)
        release.set()
        first.join(5)
        second.join(5)

        self.assertEqual(len(transport.batches()), 1)
        self.assertEqual(len(self.queue), 0)
        self.assertFalse(engine.is_flushing)

    def test_concurrent_flush_shares_error(self):
        entered = threading.Event()
        release = threading.Event()

        def handler(url, options):
            entered.set()
            release.wait(5)
            return FakeResponse(400, {"detail": "bad request"})

        transport = FakeTransport(handler)
        self._enqueue("1")
        engine = self._engine(transport, retries=0)
        raised = []

        def flush():
            try:
                engine.flush()
            except APIError as e:
                raised.append(e)

        first = threading.Thread(target=flush)
        first.start()
        entered.wait(5)
        second = threading.Thread(target=flush)
        second.start()
        time.sleep(0.2)
        release.set()
        first.join(5)
        second.join(5)

        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(len(raised), 2)
        self.assertIs(raised[0], raised[1])

    def test_opted_out_does_not_flush(self):
        transport = FakeTransport()
        self._enqueue("1")

        self._engine(transport, is_opted_out=lambda: True).flush()

        self.assertEqual(transport.calls, [])
        self.assertEqual(len(self.queue), 1)

    def test_opt_out_during_flush_stops_sending(self):
        opted_out = []

        def handler(url, options):
            opted_out.append(True)
            return ok()

        transport = FakeTransport(handler)
        self._enqueue("1", "2", "3")
        engine = self._engine(
            transport, max_batch_size=1, is_opted_out=lambda: bool(opted_out)
        )

        engine.flush()

        self.assertEqual([_uuids(batch) for batch in transport.batches()], [["1"]])
        self.assertEqual(_uuids(self.queue.peek()), ["2", "3"])
        self.assertEqual([_uuids(sent) for sent in self.flushed], [["1"]])

    def test_event_reusing_uuid_during_flush_is_kept(self):
        def handler(url, options):
            if len(transport.calls) == 1:
                self.queue.enqueue(_event("same", event="captured during flush"))
            return ok()

        transport = FakeTransport(handler)
        self.queue.enqueue(_event("same"))

        self._engine(transport).flush()

        remaining = self.queue.peek()
        self.assertEqual(len(remaining), 1)
        self.assertEqual(remaining[0]["event"], "captured during flush")

    def test_historical_migration(self):
        transport = FakeTransport()
        self._enqueue("1")
        self._engine(transport, historical_migration=True).flush()
        body = json.loads(transport.calls[0][1]["body"])
        self.assertTrue(body["historical_migration"])

    def test_request(self):
        with mock.patch("posthog_core.consumer.batch_post") as mock_post:
            engine = self._engine(FakeTransport(), retries=5, timeout=3)
            engine.request([_event("1")])
        kwargs = mock_post.call_args[1]
        self.assertEqual(kwargs["batch"], [_event("1")])
        self.assertEqual(kwargs["retry_count"], 5)
        self.assertEqual(kwargs["timeout"], 3)


class TestConsumer(unittest.TestCase):
    def setUp(self):
        self.queue = EventQueue(PersistedState(MemoryStorage()))

    def _engine(self, transport):
        return FlushEngine(self.queue, transport, TEST_API_KEY, retry_delay=0)

    def test_upload(self):
        transport = FakeTransport()
        consumer = Consumer(self._engine(transport))
        self.queue.enqueue(_event("1"))
        success = consumer.upload()
        self.assertTrue(success)
        self.assertEqual(len(self.queue), 0)

    def test_upload_empty_queue(self):
        transport = FakeTransport()
        consumer = Consumer(self._engine(transport))
        self.assertFalse(consumer.upload())
        self.assertEqual(transport.calls, [])

    def test_flush_interval(self):
        # Put _n_ items in the queue, pausing a little bit more than
        # _flush_interval_ after each one.
        # The consumer should upload _n_ times.
        flush_interval = 0.3
        transport = FakeTransport()
        consumer = Consumer(self._engine(transport), flush_interval=flush_interval)
        consumer.start()
        try:
            for i in range(3):
                self.queue.enqueue(_event(str(i)))
                time.sleep(flush_interval * 1.5)
            self.assertEqual(len(transport.batches()), 3)
        finally:
            consumer.pause()
            consumer.join(5)

    def test_wake(self):
        transport = FakeTransport()
        consumer = Consumer(self._engine(transport), flush_interval=None)
        consumer.start()
        try:
            self.queue.enqueue(_event("1"))
            consumer.wake()
            for _ in range(50):
                if len(self.queue) == 0:
                    break
                time.sleep(0.02)
            self.assertEqual(len(transport.batches()), 1)
        finally:
            consumer.pause()
            consumer.join(5)

    def test_pause(self):
        consumer = Consumer(self._engine(FakeTransport()), flush_interval=10)
        consumer.start()
        consumer.pause()
        consumer.join(5)
        self.assertFalse(consumer.is_alive())

    def test_on_error(self):
        transport = FakeTransport(lambda url, options: FakeResponse(400, {"detail": "bad"}))
        failures = []
        engine = FlushEngine(self.queue, transport, TEST_API_KEY, retries=0)
        consumer = Consumer(engine, on_error=lambda e, batch: failures.append((e, batch)))
        self.queue.enqueue(_event("1"))

        with self.assertLogs("posthog", level="ERROR"):
            self.assertFalse(consumer.upload())

        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0][0], APIError)
        self.assertEqual(_uuids(failures[0][1]), ["1"])

    def test_on_error_raises(self):
        transport = FakeTransport(lambda url, options: FakeResponse(400, {"detail": "bad"}))
        engine = FlushEngine(self.queue, transport, TEST_API_KEY, retries=0)

        def on_error(e, batch):
            raise Exception("on_error failed")

        consumer = Consumer(engine, on_error=on_error)
        self.queue.enqueue(_event("1"))
        with self.assertLogs("posthog", level="ERROR"):
            self.assertFalse(consumer.upload())
