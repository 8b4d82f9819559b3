import json
import logging
import re
import struct
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from replicator.cdc_event import ChangeValue, Field, RawChangeRecord, RowSchema, StructuredRow

logger = logging.getLogger(__name__)

PG_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)
EPOCH = datetime(1970, 1, 1)
UNCHANGED_TOAST = "[unchanged]"

DATE = "io.debezium.time.Date"
MICRO_TIMESTAMP = "io.debezium.time.MicroTimestamp"
ZONED_TIMESTAMP = "io.debezium.time.ZonedTimestamp"

_FRACTION = re.compile(r"\.(\d+)")
_SHORT_OFFSET = re.compile(r"([+-]\d\d)$")

# type oid -> (connect type, logical type)
PG_TYPES = {
    16: ("boolean", None),
    17: ("bytes", None),
    20: ("int64", None),
    21: ("int16", None),
    23: ("int32", None),
    25: ("string", None),
    114: ("string", "io.debezium.data.Json"),
    700: ("float32", None),
    701: ("float64", None),
    1042: ("string", None),
    1043: ("string", None),
    1082: ("int32", DATE),
    1114: ("int64", MICRO_TIMESTAMP),
    1184: ("string", ZONED_TIMESTAMP),
    1700: ("string", "org.apache.kafka.connect.data.Decimal"),
    2950: ("string", "io.debezium.data.Uuid"),
    3802: ("string", "io.debezium.data.Json"),
}


def pg_field(name: str, type_id: int, optional: bool = True) -> Field:
    type_name, logical = PG_TYPES.get(type_id, ("string", None))
    return Field(name=name, type=type_name, optional=optional, logical_type=logical)


def _parse_pg_timestamp(text: str) -> datetime:
    # fromisoformat wants six fraction digits and a +HH:MM offset
    text = _FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], text, count=1)
    text = _SHORT_OFFSET.sub(r"\1:00", text)
    return datetime.fromisoformat(text)


def _epoch_micros(value: datetime) -> int:
    return (value - EPOCH) // timedelta(microseconds=1)


def convert_text(value: str, field: Field) -> Any:
    """Convert a pgoutput text value to the field's declared representation."""
    try:
        if field.logical_type == DATE:
            return (date.fromisoformat(value) - EPOCH.date()).days
        if field.logical_type == MICRO_TIMESTAMP:
            return _epoch_micros(_parse_pg_timestamp(value))
        if field.logical_type == ZONED_TIMESTAMP:
            return _parse_pg_timestamp(value).astimezone(timezone.utc).isoformat()
    except ValueError:
        # infinity and other special values stay as text
        return value
    if field.logical_type:
        return value
    if field.type in ("int16", "int32", "int64"):
        return int(value)
    if field.type in ("float32", "float64"):
        return float(value)
    if field.type == "boolean":
        return value == "t"
    if field.type == "bytes":
        return value[2:] if value.startswith("\\x") else value
    return value


def convert_value(value: Any, field: Field) -> Any:
    """Convert a value read by psycopg2 to the representation streamed rows use."""
    if value is None:
        return None
    if field.logical_type == DATE and isinstance(value, date):
        return (value - EPOCH.date()).days
    if field.logical_type == MICRO_TIMESTAMP and isinstance(value, datetime):
        return _epoch_micros(value.replace(tzinfo=None))
    if field.logical_type == ZONED_TIMESTAMP and isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if field.type == "bytes":
        return bytes(value).hex()
    if field.type == "string" and not isinstance(value, str):
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
    return value


class PgOutputParser:
    """Decodes pgoutput logical replication messages into raw change records"""

    def __init__(self, server_name: str = "pg"):
        self.server_name = server_name
        self.relations: Dict[int, dict] = {}  # relation_id -> relation info
        self.commit_ts_ms: Optional[int] = None

    def parse_message(self, payload: bytes, lsn: int = 0) -> Optional[RawChangeRecord]:
        """Decode one message; only Insert, Update and Delete yield a record"""
        if not payload:
            return None

        msg_type = chr(payload[0])
        data = payload[1:]

        if msg_type == "R":
            self._parse_relation(data)
            return None
        elif msg_type == "I":
            return self._parse_insert(data, lsn)
        elif msg_type == "U":
            return self._parse_update(data, lsn)
        elif msg_type == "D":
            return self._parse_delete(data, lsn)
        elif msg_type == "B":
            self._parse_begin(data)
            return None
        elif msg_type == "C":
            logger.debug("Transaction COMMIT")
            self.commit_ts_ms = None
            return None

        logger.debug(f"Ignoring pgoutput message type '{msg_type}'")
        return None

    def _parse_begin(self, data: bytes):
        # final LSN (8), commit timestamp in microseconds since 2000-01-01 (8), xid (4)
        _, commit_us, xid = struct.unpack(">QqI", data[:20])
        commit_time = PG_EPOCH + timedelta(microseconds=commit_us)
        self.commit_ts_ms = int(commit_time.timestamp() * 1000)
        logger.debug(f"Transaction BEGIN xid={xid}")

    def _parse_relation(self, data: bytes):
        pos = 0

        relation_id = struct.unpack(">I", data[pos : pos + 4])[0]
        pos += 4

        namespace_end = data.index(b"\x00", pos)
        namespace = data[pos:namespace_end].decode("utf-8")
        pos = namespace_end + 1

        name_end = data.index(b"\x00", pos)
        relation_name = data[pos:name_end].decode("utf-8")
        pos = name_end + 1

        replica_identity = chr(data[pos])
        pos += 1

        num_columns = struct.unpack(">H", data[pos : pos + 2])[0]
        pos += 2

        fields = []
        key_columns = []
        for _ in range(num_columns):
            flags = data[pos]
            pos += 1

            col_name_end = data.index(b"\x00", pos)
            col_name = data[pos:col_name_end].decode("utf-8")
            pos = col_name_end + 1

            type_id, _type_modifier = struct.unpack(">Ii", data[pos : pos + 8])
            pos += 8

            is_key = bool(flags & 1)
            fields.append(pg_field(col_name, type_id, optional=not is_key))
            if is_key:
                key_columns.append(col_name)

        name = f"{self.server_name}.{namespace}.{relation_name}"
        schema = RowSchema(f"{name}.Value", tuple(fields))
        key_schema = RowSchema(
            f"{name}.Key", tuple(f for f in fields if f.name in key_columns)
        )
        self.relations[relation_id] = {
            "schema": namespace,
            "table": relation_name,
            "row_schema": schema,
            "key_schema": key_schema,
            "replica_identity": replica_identity,
        }

        logger.info(
            f"Registered relation: {namespace}.{relation_name} with {num_columns} columns, "
            f"key {key_columns}"
        )

    def _parse_tuple_data(self, data: bytes, pos: int, schema: RowSchema) -> Tuple[StructuredRow, int]:
        """Parse tuple data and return (row, new_position)"""
        num_cols = struct.unpack(">H", data[pos : pos + 2])[0]
        pos += 2

        values = {}
        for i in range(num_cols):
            field = schema.fields[i]
            col_type = chr(data[pos])
            pos += 1

            if col_type == "n":  # NULL
                values[field.name] = None
            elif col_type == "u":  # unchanged TOAST value
                values[field.name] = UNCHANGED_TOAST
            elif col_type == "t":
                length = struct.unpack(">I", data[pos : pos + 4])[0]
                pos += 4
                values[field.name] = convert_text(data[pos : pos + length].decode("utf-8"), field)
                pos += length
            elif col_type == "b":
                length = struct.unpack(">I", data[pos : pos + 4])[0]
                pos += 4
                values[field.name] = data[pos : pos + length].hex()
                pos += length

        return StructuredRow(schema, values), pos

    def _relation(self, data: bytes) -> Optional[dict]:
        relation_id = struct.unpack(">I", data[:4])[0]
        relation = self.relations.get(relation_id)
        if not relation:
            logger.warning(f"Unknown relation ID: {relation_id}")
        return relation

    def _record(self, relation: dict, op: str, lsn: int,
                before: Optional[StructuredRow], after: Optional[StructuredRow]) -> RawChangeRecord:
        key_schema = relation["key_schema"]
        key = None
        source = after if after is not None else before
        if key_schema.fields and source is not None:
            key = StructuredRow(key_schema, {n: source.get(n) for n in key_schema.field_names})
        return RawChangeRecord(
            topic=f"{self.server_name}.{relation['schema']}.{relation['table']}",
            key=key,
            value=ChangeValue(op=op, before=before, after=after, ts_ms=self.commit_ts_ms),
            source_offset={"lsn": lsn, "snapshot": False},
        )

    def _parse_insert(self, data: bytes, lsn: int) -> Optional[RawChangeRecord]:
        relation = self._relation(data)
        if not relation:
            return None
        pos = 4

        # 'N' for new tuple
        if chr(data[pos]) != "N":
            return None
        pos += 1

        after, _ = self._parse_tuple_data(data, pos, relation["row_schema"])
        return self._record(relation, "c", lsn, None, after)

    def _parse_update(self, data: bytes, lsn: int) -> Optional[RawChangeRecord]:
        relation = self._relation(data)
        if not relation:
            return None
        pos = 4

        before = None
        after = None

        # old tuple ('O') or old key ('K') only with REPLICA IDENTITY or a key change
        tuple_type = chr(data[pos])
        if tuple_type in ("O", "K"):
            pos += 1
            before, pos = self._parse_tuple_data(data, pos, relation["row_schema"])
            tuple_type = chr(data[pos])

        if tuple_type == "N":
            pos += 1
            after, _ = self._parse_tuple_data(data, pos, relation["row_schema"])

        return self._record(relation, "u", lsn, before, after)

    def _parse_delete(self, data: bytes, lsn: int) -> Optional[RawChangeRecord]:
        relation = self._relation(data)
        if not relation:
            return None
        pos = 4

        # old tuple type ('O' or 'K')
        pos += 1

        before, _ = self._parse_tuple_data(data, pos, relation["row_schema"])
        return self._record(relation, "d", lsn, before, None)
