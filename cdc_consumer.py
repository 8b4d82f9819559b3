import argparse
import json
import logging
import signal
import sys
import threading
from queue import Empty

from replicator.cdc_config import (
    ConsumerConfig,
    SourceConfig,
    load_latest_offset,
    load_table_specs,
    save_offset,
)
from replicator.debezium import record_from_message
from replicator.emitter import QueueEventEmitter
from replicator.pg_source import PostgresChangeSource
from replicator.record_consumer import (
    ChangeEventConsumer,
    ProcessOutcome,
    ReplicationError,
)
from replicator.tables import TableRegistry

logger = logging.getLogger(__name__)


def build_consumer(config: ConsumerConfig, emitter: QueueEventEmitter) -> ChangeEventConsumer:
    specs = load_table_specs(config.tables_file)
    latest_offset = load_latest_offset(config.offset_file)
    logger.info(
        f"Replicating {len(specs) or 'all'} tables of {config.database_name}, "
        f"replicate existing data: {config.replicate_existing_data}"
    )
    return ChangeEventConsumer(
        emitter=emitter,
        database_name=config.database_name,
        tables=TableRegistry(specs),
        replicate_existing_data=config.replicate_existing_data,
        latest_offset=latest_offset,
    )


def print_events(emitter: QueueEventEmitter, offset_file, done: threading.Event):
    """Drain the emitter queue, print events and record the latest offset."""
    while not (done.is_set() and emitter.queue.empty()):
        try:
            event = emitter.queue.get(timeout=0.2)
        except Empty:
            continue
        data = event.to_dict()
        print("\n" + "=" * 60)
        print(f"EVENT: {data['operation']}  {data['database']}.{data['schema']}.{data['table'] or ''}")
        print(json.dumps(data, indent=2, default=str))
        print("=" * 60)
        if offset_file:
            save_offset(offset_file, event.offset)
        emitter.queue.task_done()


def replay(path: str, consumer: ChangeEventConsumer):
    """Feed a JSON-lines capture of Debezium messages through the consumer"""
    with open(path) as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
                if not isinstance(message, dict):
                    raise ValueError(f"expected an object, got {type(message).__name__}")
                record = record_from_message(
                    message.get("topic"),
                    message.get("key"),
                    message.get("value"),
                    message.get("offset"),
                )
            except ValueError as e:
                logger.warning(f"Skipping malformed message at {path}:{line_no}: {e}")
                continue
            if consumer.accept(record) is ProcessOutcome.STOP_REQUESTED:
                logger.info(f"Stop requested at line {line_no}")
                return


def stream(source_config: SourceConfig, consumer: ChangeEventConsumer, snapshot: bool,
           drop_slot: bool = False):
    source = PostgresChangeSource(source_config, consumer)
    signal.signal(signal.SIGTERM, lambda signum, frame: source.stop())
    try:
        source.connect()
        source.create_replication_slot()
        if snapshot and not source.snapshot():
            return
        source.start_replication()
    finally:
        if drop_slot:
            source.drop_replication_slot()
        source.close()


def needs_snapshot(config: ConsumerConfig, consumer: ChangeEventConsumer, no_snapshot: bool) -> bool:
    """Existing rows are copied unless a streaming position was already acknowledged."""
    if no_snapshot or not config.replicate_existing_data:
        return False
    latest = consumer.latest_offset
    if not latest.is_empty() and not latest.is_snapshot():
        logger.info(f"Resuming from {latest.source_offset}, skipping snapshot")
        return False
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Translate change records into DDL/DML events")
    sub = parser.add_subparsers(dest="command", required=True)
    replay_parser = sub.add_parser("replay", help="replay a JSON-lines file of Debezium messages")
    replay_parser.add_argument("path")
    stream_parser = sub.add_parser("stream", help="stream changes from PostgreSQL")
    stream_parser.add_argument("--no-snapshot", action="store_true",
                               help="skip copying existing rows")
    stream_parser.add_argument("--drop-slot", action="store_true",
                               help="drop the replication slot on exit")
    args = parser.parse_args(argv)

    config = ConsumerConfig()
    logging.basicConfig(
        level=config.log_level.upper(), format="%(asctime)s - %(levelname)s - %(message)s"
    )

    emitter = QueueEventEmitter(maxsize=config.queue_size)
    done = threading.Event()
    printer = threading.Thread(
        target=print_events, args=(emitter, config.offset_file, done), daemon=True
    )
    printer.start()

    try:
        consumer = build_consumer(config, emitter)
        if args.command == "replay":
            replay(args.path, consumer)
        else:
            snapshot = needs_snapshot(config, consumer, args.no_snapshot)
            stream(SourceConfig(), consumer, snapshot, drop_slot=args.drop_slot)
    except KeyboardInterrupt:
        logger.info("\nShutting down gracefully...")
        emitter.cancel()
    except ReplicationError as e:
        logger.error(f"Replication failed: {e}")
        emitter.cancel()
        return 1
    finally:
        done.set()
        printer.join(timeout=5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
