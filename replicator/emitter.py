import logging
import threading
from queue import Full, Queue
from typing import Union

from replicator.cdc_event import DDLEvent, DMLEvent

logger = logging.getLogger(__name__)

Event = Union[DDLEvent, DMLEvent]


class EventEmitter:
    """Sink for normalized events."""

    def emit(self, event: Event) -> bool:
        """
        Hand one event to the sink, blocking while it applies backpressure.

        Returns False if the emission was cancelled, in which case the caller
        must halt the upstream connector.
        """
        raise NotImplementedError


class QueueEventEmitter(EventEmitter):
    """Blocking emitter over a bounded queue, cancellable from another thread."""

    POLL_SECONDS = 0.1

    def __init__(self, maxsize: int = 1000):
        self.queue: Queue = Queue(maxsize=maxsize)  # backpressure protection
        self._cancelled = threading.Event()

    def emit(self, event: Event) -> bool:
        while not self._cancelled.is_set():
            try:
                self.queue.put(event, timeout=self.POLL_SECONDS)
                return True
            except Full:
                continue
        logger.info("Emission cancelled")
        return False

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class SourceContext:
    """Health reporting towards the pipeline runtime."""

    def __init__(self):
        self.healthy = False
        self.last_error = None

    def set_ok(self):
        self.healthy = True
        self.last_error = None

    def set_error(self, error: Exception):
        self.healthy = False
        self.last_error = error
        logger.error(f"Source reported error: {error}")
