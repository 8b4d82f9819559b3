import logging
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from replicator.cdc_event import (
    DDLEvent,
    DDLOperation,
    DMLEvent,
    DMLOperation,
    RawChangeRecord,
)
from replicator.ddl_gate import DDLGate
from replicator.emitter import EventEmitter, SourceContext
from replicator.offset import Offset
from replicator.tables import TableRegistry, project, table_id

logger = logging.getLogger(__name__)


class ReplicationError(Exception):
    """Base exception for replication failures."""
    pass


class MissingPrimaryKeyError(ReplicationError):
    """Table of interest has no primary key; processing cannot continue."""
    pass


class ProcessOutcome(Enum):
    EMITTED = "emitted"
    SKIPPED = "skipped"
    STOP_REQUESTED = "stop_requested"


def parse_topic(topic: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split `server.schema.table` into (schema, table)."""
    if not topic:
        return None
    parts = topic.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[1], parts[2]


class ChangeEventConsumer:
    """
    Turns raw connector records into DDL and DML events.

    Records are processed one at a time. The first record seen for a table
    produces its DDL burst (optional DROP_TABLE, CREATE_DATABASE,
    CREATE_TABLE), then every record produces at most one DML event.

    Args:
        emitter: sink for the events
        database_name: database name put on every event
        tables: registry of replicated tables, empty means all of them
        replicate_existing_data: emit DROP_TABLE before CREATE_TABLE and
            DROP_DATABASE before the first snapshot burst
        latest_offset: last acknowledged offset, older records are duplicates
        context: health reporting, set OK on every record
        ddl_sent: tables whose DDL is known to be applied downstream already
    """

    def __init__(
        self,
        emitter: EventEmitter,
        database_name: str,
        tables: Optional[TableRegistry] = None,
        replicate_existing_data: bool = True,
        latest_offset: Optional[Offset] = None,
        context: Optional[SourceContext] = None,
        ddl_sent: Iterable[str] = (),
    ):
        self.emitter = emitter
        self.context = context or SourceContext()
        self.database_name = database_name
        self.tables = tables or TableRegistry()
        self.replicate_existing_data = replicate_existing_data
        self.latest_offset = latest_offset or Offset()
        self.gate = DDLGate(ddl_sent)
        self.database_reset_sent = False
        self.stopped = False

    def accept(self, record: RawChangeRecord) -> ProcessOutcome:
        """Process one raw record; raises MissingPrimaryKeyError on fatal input."""
        if self.stopped:
            return ProcessOutcome.STOP_REQUESTED

        try:
            self.context.set_ok()
        except Exception as e:
            logger.warning(f"Unable to set source state to OK: {e}")

        if record.value is None:
            logger.debug(f"Skipping record with no value on topic '{record.topic}'")
            return ProcessOutcome.SKIPPED

        # The connector redelivers the last event at its committed offset.
        # Snapshots restart from the beginning and the table is dropped first,
        # so snapshot records are never duplicates.
        offset = Offset(record.source_offset, self.gate.sent)
        if not offset.is_snapshot() and offset.is_before_or_at(self.latest_offset):
            logger.debug(f"Got duplicated event at {record.source_offset}")
            return ProcessOutcome.SKIPPED

        op = DMLOperation.from_op_code(record.value.op)
        if op is DMLOperation.UNKNOWN:
            logger.warning(f"Skipping unknown operation type '{record.value.op}'")
            return ProcessOutcome.SKIPPED

        names = parse_topic(record.topic)
        if names is None:
            logger.warning(f"Skipping record with unexpected topic '{record.topic}'")
            return ProcessOutcome.SKIPPED
        schema_name, table_name = names
        source_table = table_id(schema_name, table_name)

        if not self.tables.is_of_interest(source_table):
            logger.debug(f"Skipping record of table {source_table}, not replicated")
            return ProcessOutcome.SKIPPED
        spec = self.tables.lookup(source_table)

        if record.key is None:
            raise MissingPrimaryKeyError(
                f"Table '{table_name}' in database '{self.database_name}' has no primary key. "
                f"Tables without a primary key are not supported."
            )

        before = project(record.value.before, spec)
        after = project(record.value.after, spec)
        row = before if op is DMLOperation.DELETE else after
        if row is None:
            logger.warning(
                f"There is no value in the source record from table {table_name} "
                f"in database {self.database_name}"
            )
            return ProcessOutcome.SKIPPED

        if not self.gate.has_sent(source_table):
            events = self._ddl_burst(record, schema_name, table_name, row)
            for event in events:
                if not self._emit(event):
                    return ProcessOutcome.STOP_REQUESTED
            self.gate.mark_sent(source_table)

        if spec is not None and spec.is_blacklisted(op):
            logger.debug(f"Skipping {op.value} on {source_table}, operation is blacklisted")
            return ProcessOutcome.SKIPPED

        dml_offset = Offset(record.source_offset, self.gate.sent)
        event = DMLEvent(
            operation=op,
            database=self.database_name,
            schema=schema_name,
            table=table_name,
            row=row,
            offset=dml_offset,
            snapshot=dml_offset.is_snapshot(),
            ingest_timestamp=record.value.ts_ms or 0,
            previous_row=before if op is DMLOperation.UPDATE else None,
        )
        if not self._emit(event):
            return ProcessOutcome.STOP_REQUESTED
        return ProcessOutcome.EMITTED

    def _ddl_burst(self, record: RawChangeRecord, schema_name: str, table_name: str,
                   row) -> List[DDLEvent]:
        offset = Offset(record.source_offset, self.gate.sent)
        snapshot = offset.is_snapshot()

        def ddl(operation, **kwargs):
            return DDLEvent(operation=operation, database=self.database_name,
                            schema=schema_name, offset=offset, snapshot=snapshot, **kwargs)

        events = []
        if self.replicate_existing_data:
            if snapshot and not self.database_reset_sent:
                events.append(ddl(DDLOperation.DROP_DATABASE))
                self.database_reset_sent = True
            # always drop the table before snapshotting its schema
            events.append(ddl(DDLOperation.DROP_TABLE, table=table_name))
        events.append(ddl(DDLOperation.CREATE_DATABASE))
        events.append(ddl(
            DDLOperation.CREATE_TABLE,
            table=table_name,
            row_schema=row.schema,
            primary_key=record.key.schema.field_names,
        ))
        logger.info(
            f"Sending DDL for {schema_name}.{table_name}: "
            f"{', '.join(e.operation.value for e in events)}"
        )
        return events

    def _emit(self, event) -> bool:
        if self.emitter.emit(event):
            return True
        logger.warning(
            f"Interrupted while emitting {event.operation.value} for "
            f"{event.schema}.{event.table or ''}; requesting connector stop"
        )
        self.stopped = True
        return False
