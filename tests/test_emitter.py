import threading
import time

from conftest import customer_row, make_record
from replicator.emitter import QueueEventEmitter, SourceContext
from replicator.record_consumer import ChangeEventConsumer, ProcessOutcome


def test_emit_puts_event_on_queue():
    emitter = QueueEventEmitter(maxsize=2)

    assert emitter.emit("event")
    assert emitter.queue.get_nowait() == "event"


def test_cancel_unblocks_full_queue():
    emitter = QueueEventEmitter(maxsize=1)
    emitter.emit("first")
    result = {}

    def blocked_emit():
        result["accepted"] = emitter.emit("second")

    worker = threading.Thread(target=blocked_emit)
    worker.start()
    time.sleep(0.3)
    assert worker.is_alive()

    emitter.cancel()
    worker.join(timeout=2)

    assert not worker.is_alive()
    assert result["accepted"] is False
    assert emitter.cancelled


def test_consumer_stops_when_blocked_emission_is_cancelled():
    emitter = QueueEventEmitter(maxsize=2)
    consumer = ChangeEventConsumer(emitter=emitter, database_name="test",
                                   replicate_existing_data=False)
    outcome = {}

    def run():
        outcome["value"] = consumer.accept(make_record(after=customer_row(0)))

    worker = threading.Thread(target=run)
    worker.start()
    time.sleep(0.3)
    emitter.cancel()
    worker.join(timeout=2)

    # CREATE_DATABASE and CREATE_TABLE filled the queue, the INSERT was cancelled
    assert outcome["value"] is ProcessOutcome.STOP_REQUESTED
    assert emitter.queue.qsize() == 2
    assert consumer.accept(make_record(after=customer_row(1))) is ProcessOutcome.STOP_REQUESTED


def test_source_context_tracks_health():
    context = SourceContext()

    context.set_error(RuntimeError("down"))
    assert not context.healthy
    context.set_ok()
    assert context.healthy
    assert context.last_error is None
