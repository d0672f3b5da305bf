import logging
import threading
from concurrent.futures import Future
from threading import Thread
from typing import Any, Callable, Dict, List, Optional

from posthog_core.errors import APIError, NetworkError, PayloadTooLargeError
from posthog_core.event_queue import EventQueue
from posthog_core.events import EventEmitter
from posthog_core.request import Transport, batch_post

DEFAULT_MAX_BATCH_SIZE = 100


class FlushEngine(object):
    """
    Drains the event queue to the batch endpoint.

    Only one flush cycle runs at a time; callers arriving while a cycle is in
    flight wait for it and share its outcome. The queue is only mutated once
    the outcome of a batch is known.
    """

    log = logging.getLogger("posthog")

    def __init__(
        self,
        queue: EventQueue,
        transport: Transport,
        api_key: str,
        host: Optional[str] = None,
        max_batch_size=DEFAULT_MAX_BATCH_SIZE,
        retries=3,
        retry_delay=3.0,
        timeout=10,
        historical_migration=False,
        events: Optional[EventEmitter] = None,
        is_opted_out: Optional[Callable[[], bool]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.queue = queue
        self.transport = transport
        self.api_key = api_key
        self.host = host
        self.max_batch_size = max(1, max_batch_size)
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.historical_migration = historical_migration
        self.events = events or EventEmitter()
        self.is_opted_out = is_opted_out or (lambda: False)
        self.headers = headers
        self._lock = threading.Lock()
        self._in_flight: Optional[Future] = None
        self._flushing_thread: Optional[int] = None

    @property
    def is_flushing(self) -> bool:
        with self._lock:
            return self._in_flight is not None

    def flush(self) -> None:
        """
        Send everything queued when the call started.

        Joins the in-flight cycle if there is one, re-raising its error.

        Raises:
            APIError: the server rejected a batch after all retries.
            PayloadTooLargeError: a single event was rejected with 413.
            NetworkError: no response could be obtained after all retries.
        """
        if self.is_opted_out():
            self.log.debug("opted out, not flushing")
            return

        with self._lock:
            in_flight = self._in_flight
            owner = in_flight is None
            if owner:
                in_flight = self._in_flight = Future()
                self._flushing_thread = threading.get_ident()
            elif self._flushing_thread == threading.get_ident():
                # flush() called from inside the transport of the running cycle
                self.log.debug("flush already in progress on this thread")
                return

        if not owner:
            in_flight.result()
            return

        error = None
        try:
            self._flush()
        except Exception as e:
            error = e

        with self._lock:
            self._in_flight = None
            self._flushing_thread = None

        if error is not None:
            in_flight.set_exception(error)
            raise error
        in_flight.set_result(None)

    def _flush(self) -> None:
        pending = self.queue.peek()
        if not pending:
            return

        # new events enqueued while we are sending are left for the next cycle
        original_queue_length = len(pending)
        sent: List[Dict[str, Any]] = []

        while pending and len(sent) < original_queue_length:
            if self.is_opted_out():
                self.log.debug("opted out during flush, leaving %d items queued", len(pending))
                break
            batch = pending[: self.max_batch_size]
            try:
                self.request(batch)
            except APIError as e:
                if e.status == 413 and len(batch) > 1:
                    self.max_batch_size = max(1, len(batch) // 2)
                    self.log.warning(
                        "Received 413 when sending batch of size %d, reducing batch size to %d",
                        len(batch),
                        self.max_batch_size,
                    )
                    pending = self.queue.peek()
                    continue

                error = e
                if e.status == 413:
                    error = PayloadTooLargeError(
                        "Event %s is too large to be sent" % batch[0].get("uuid")
                    )
                # terminal failure, the batch can't be delivered as is
                self.queue.remove(batch)
                self.events.emit("error", error)
                if error is e:
                    raise
                raise error from e
            except NetworkError as e:
                self.events.emit("error", e)
                raise

            self.queue.remove(batch)
            sent.extend(batch)
            pending = self.queue.peek()

        self.log.debug("successfully flushed %d items.", len(sent))
        self.events.emit("flush", sent)

    def request(self, batch: List[Dict[str, Any]]) -> None:
        """Upload the batch, retrying retryable errors before raising."""
        batch_post(
            self.transport,
            self.api_key,
            self.host,
            batch=batch,
            timeout=self.timeout,
            retry_count=self.retries,
            retry_delay=self.retry_delay,
            historical_migration=self.historical_migration,
            headers=self.headers,
        )


class Consumer(Thread):
    """Flushes the engine every `flush_interval` seconds, or as soon as it is woken up."""

    log = logging.getLogger("posthog")

    def __init__(self, engine: FlushEngine, flush_interval=10, on_error=None):
        """Create a consumer thread."""
        Thread.__init__(self)
        # Make consumer a daemon thread so that it doesn't block program exit
        self.daemon = True
        self.engine = engine
        self.flush_interval = flush_interval or None
        self.on_error = on_error
        # It's important to set running in the constructor: if we are asked to
        # pause immediately after construction, we might set running to True in
        # run() *after* we set it to False in pause... and keep running
        # forever.
        self.running = True
        self._wake = threading.Event()

    def run(self):
        """Runs the consumer."""
        self.log.debug("consumer is running...")
        while self.running:
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            if not self.running:
                break
            self.upload()

        self.log.debug("consumer exited.")

    def wake(self):
        """Ask for a flush without waiting for the interval."""
        self._wake.set()

    def pause(self):
        """Pause the consumer."""
        self.running = False
        self._wake.set()

    def upload(self):
        """Flush whatever is queued, return whether successful."""
        if len(self.engine.queue) == 0:
            return False

        batch = self.engine.queue.peek()
        try:
            self.engine.flush()
            return True
        except Exception as e:
            self.log.error("error uploading: %s", e)
            if self.on_error:
                try:
                    self.on_error(e, batch)
                except Exception as callback_error:
                    self.log.exception(f"Error in on_error callback: {callback_error}")
            return False
