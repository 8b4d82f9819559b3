import pytest

from replicator.cdc_event import (
    ChangeValue,
    DDLEvent,
    DMLEvent,
    Field,
    RawChangeRecord,
    RowSchema,
    StructuredRow,
)
from replicator.emitter import EventEmitter

CUSTOMER_SCHEMA = RowSchema(
    "server.dbo.customers.Value",
    (
        Field("id", "int32", optional=False),
        Field("name", "string"),
        Field("bday", "int32", logical_type="io.debezium.time.Date"),
    ),
)
CUSTOMER_KEY_SCHEMA = RowSchema("server.dbo.customers.Key", (Field("id", "int32", optional=False),))


class RecordingEmitter(EventEmitter):
    """Collects events; cancels once `cancel_after` events were accepted."""

    def __init__(self, cancel_after=None):
        self.events = []
        self.cancel_after = cancel_after

    def emit(self, event):
        if self.cancel_after is not None and len(self.events) >= self.cancel_after:
            return False
        self.events.append(event)
        return True

    @property
    def ddl_events(self):
        return [e for e in self.events if isinstance(e, DDLEvent)]

    @property
    def dml_events(self):
        return [e for e in self.events if isinstance(e, DMLEvent)]


def customer_row(id, name="alice", bday=0):
    return StructuredRow(CUSTOMER_SCHEMA, {"id": id, "name": name, "bday": bday})


def make_record(op="c", before=None, after=None, offset=None, topic="server.dbo.customers",
                key="auto", ts_ms=1000):
    if key == "auto":
        source = after if after is not None else before
        key = StructuredRow(CUSTOMER_KEY_SCHEMA, {"id": source.get("id") if source else 0})
    return RawChangeRecord(
        topic=topic,
        key=key,
        value=ChangeValue(op=op, before=before, after=after, ts_ms=ts_ms),
        source_offset=offset if offset is not None else {"lsn": 10, "snapshot": False},
    )


@pytest.fixture
def emitter():
    return RecordingEmitter()
