from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DMLOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UNKNOWN = "UNKNOWN"  # unrecognised connector op code, never emitted

    @classmethod
    def from_op_code(cls, op: Optional[str]) -> "DMLOperation":
        """Map a connector op code (c, r, u, d) to an operation."""
        return _OP_CODES.get(op, cls.UNKNOWN)


_OP_CODES = {
    "c": DMLOperation.INSERT,
    "r": DMLOperation.INSERT,  # snapshot read
    "u": DMLOperation.UPDATE,
    "d": DMLOperation.DELETE,
}


class DDLOperation(str, Enum):
    DROP_DATABASE = "DROP_DATABASE"
    CREATE_DATABASE = "CREATE_DATABASE"
    DROP_TABLE = "DROP_TABLE"
    CREATE_TABLE = "CREATE_TABLE"


@dataclass(frozen=True)
class Field:
    name: str
    type: str
    optional: bool = True
    logical_type: Optional[str] = None  # e.g. io.debezium.time.Date

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "optional": self.optional,
            "logical_type": self.logical_type,
        }


@dataclass(frozen=True)
class RowSchema:
    name: str
    fields: Tuple[Field, ...]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def to_dict(self) -> dict:
        return {"name": self.name, "fields": [f.to_dict() for f in self.fields]}


@dataclass
class StructuredRow:
    schema: RowSchema
    values: Dict[str, Any]

    def get(self, column: str) -> Any:
        return self.values.get(column)

    def keep_columns(self, columns) -> "StructuredRow":
        """Return a copy holding only `columns`, in declared order."""
        fields = tuple(f for f in self.schema.fields if f.name in columns)
        return StructuredRow(
            schema=RowSchema(self.schema.name, fields),
            values={f.name: self.values.get(f.name) for f in fields},
        )

    def to_dict(self) -> dict:
        return {name: self.values.get(name) for name in self.schema.field_names}


@dataclass(frozen=True)
class ChangeValue:
    op: Optional[str]
    before: Optional[StructuredRow] = None
    after: Optional[StructuredRow] = None
    ts_ms: Optional[int] = None


@dataclass(frozen=True)
class RawChangeRecord:
    """One record as delivered by the log-tailing connector."""

    topic: Optional[str]  # server.schema.table
    key: Optional[StructuredRow]
    value: Optional[ChangeValue]
    source_offset: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DDLEvent:
    operation: DDLOperation
    database: str
    schema: str
    offset: Any  # replicator.offset.Offset
    snapshot: bool
    table: Optional[str] = None
    row_schema: Optional[RowSchema] = None
    primary_key: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "database": self.database,
            "schema": self.schema,
            "table": self.table,
            "row_schema": self.row_schema.to_dict() if self.row_schema else None,
            "primary_key": list(self.primary_key),
            "offset": self.offset.as_state(),
            "snapshot": self.snapshot,
        }


@dataclass
class DMLEvent:
    operation: DMLOperation
    database: str
    schema: str
    table: str
    row: StructuredRow
    offset: Any  # replicator.offset.Offset
    snapshot: bool
    ingest_timestamp: int = 0
    previous_row: Optional[StructuredRow] = None  # UPDATE only
    transaction_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "database": self.database,
            "schema": self.schema,
            "table": self.table,
            "row": self.row.to_dict(),
            "previous_row": self.previous_row.to_dict() if self.previous_row else None,
            "offset": self.offset.as_state(),
            "snapshot": self.snapshot,
            "ingest_timestamp": self.ingest_timestamp,
            "transaction_id": self.transaction_id,
        }
