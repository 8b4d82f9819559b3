"""
Conversion of Debezium JSON messages into raw change records.

Debezium's JSON converter wraps every key and value in an envelope:

    {"schema": {"type": "struct", "fields": [...], "name": "..."},
     "payload": {...}}

With `schemas.enable=false` the message is the payload alone, in which case
field types are inferred from the Python values.
"""
from typing import Any, Dict, Optional, Tuple

from replicator.cdc_event import ChangeValue, Field, RawChangeRecord, RowSchema, StructuredRow
from replicator.offset import POSITION_KEYS

_PY_TYPES = (
    (bool, "boolean"),
    (int, "int64"),
    (float, "float64"),
    (str, "string"),
    (bytes, "bytes"),
    (dict, "struct"),
    (list, "array"),
)


def _split_envelope(message: Any) -> Tuple[Optional[dict], Any]:
    if isinstance(message, dict) and "payload" in message and "schema" in message:
        return message["schema"], message["payload"]
    return None, message


def _infer_type(value: Any) -> str:
    for py_type, name in _PY_TYPES:
        if isinstance(value, py_type):
            return name
    return "string"


def schema_from_json(schema: dict) -> RowSchema:
    """Build a RowSchema from a Connect struct schema."""
    fields = tuple(
        Field(
            name=f["field"],
            type=f.get("type", "string"),
            optional=f.get("optional", True),
            logical_type=f.get("name"),
        )
        for f in schema.get("fields") or ()
    )
    return RowSchema(name=schema.get("name") or "", fields=fields)


def infer_schema(name: str, payload: Dict[str, Any]) -> RowSchema:
    return RowSchema(
        name=name,
        fields=tuple(Field(k, _infer_type(v), optional=True) for k, v in payload.items()),
    )


def row_from_struct(schema: Optional[dict], payload: Optional[dict], name: str = "") -> Optional[StructuredRow]:
    if payload is None:
        return None
    row_schema = schema_from_json(schema) if schema else infer_schema(name, payload)
    return StructuredRow(
        schema=row_schema,
        values={f.name: payload.get(f.name) for f in row_schema.fields},
    )


def _sub_schema(schema: Optional[dict], field_name: str) -> Optional[dict]:
    if not schema:
        return None
    for f in schema.get("fields") or ():
        if f.get("field") == field_name:
            return f
    return None


def value_from_message(message: Any, topic: str = "") -> Optional[ChangeValue]:
    schema, payload = _split_envelope(message)
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected change payload of type {type(payload).__name__}")
    return ChangeValue(
        op=payload.get("op"),
        before=row_from_struct(_sub_schema(schema, "before"), payload.get("before"), topic),
        after=row_from_struct(_sub_schema(schema, "after"), payload.get("after"), topic),
        ts_ms=payload.get("ts_ms"),
    )


def key_from_message(message: Any, topic: str = "") -> Optional[StructuredRow]:
    schema, payload = _split_envelope(message)
    if payload is None:
        return None
    return row_from_struct(schema, payload, f"{topic}.Key")


def offset_from_source_block(value_message: Any) -> Dict[str, Any]:
    """Positional fields of the envelope's `source` block, used when no offset is given."""
    _, payload = _split_envelope(value_message)
    source = (payload or {}).get("source") if isinstance(payload, dict) else None
    if not source:
        return {}
    offset = {k: source[k] for k in POSITION_KEYS if source.get(k) is not None}
    offset["snapshot"] = source.get("snapshot", False)
    return offset


def record_from_message(
    topic: str,
    key_message: Any,
    value_message: Any,
    source_offset: Optional[Dict[str, Any]] = None,
) -> RawChangeRecord:
    """Turn a Debezium key/value message pair into a RawChangeRecord."""
    if source_offset is None:
        source_offset = offset_from_source_block(value_message)
    return RawChangeRecord(
        topic=topic,
        key=key_from_message(key_message, topic),
        value=value_from_message(value_message, topic),
        source_offset=dict(source_offset),
    )
