import json
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from replicator.cdc_event import DMLOperation
from replicator.offset import Offset
from replicator.record_consumer import ReplicationError
from replicator.tables import TableSpec

load_dotenv()


class ConfigError(ReplicationError):
    pass


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SourceConfig:
    host: str = field(default_factory=lambda: os.environ.get("PG_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(os.environ.get("PG_PORT", 5432)))
    user: str = field(default_factory=lambda: os.environ.get("PG_USER", "postgres"))
    password: str = field(default_factory=lambda: os.environ.get("PG_PASSWORD", ""))
    database: str = field(default_factory=lambda: os.environ.get("PG_DATABASE", "postgres"))
    slot_name: str = field(default_factory=lambda: os.environ.get("PG_SLOT_NAME", "replicator_slot"))
    publication_name: str = field(
        default_factory=lambda: os.environ.get("PG_PUBLICATION", "replicator_publication")
    )
    server_name: str = field(default_factory=lambda: os.environ.get("CDC_SERVER_NAME", "pg"))


@dataclass
class ConsumerConfig:
    database_name: str = field(
        default_factory=lambda: os.environ.get(
            "CDC_DATABASE_NAME", os.environ.get("PG_DATABASE", "postgres")
        )
    )
    replicate_existing_data: bool = field(
        default_factory=lambda: _env_bool("CDC_REPLICATE_EXISTING_DATA", True)
    )
    tables_file: Optional[str] = field(default_factory=lambda: os.environ.get("CDC_TABLES_FILE"))
    offset_file: Optional[str] = field(default_factory=lambda: os.environ.get("CDC_OFFSET_FILE"))
    queue_size: int = field(default_factory=lambda: int(os.environ.get("CDC_QUEUE_SIZE", 1000)))
    log_level: str = field(default_factory=lambda: os.environ.get("CDC_LOG_LEVEL", "INFO"))


def parse_table_spec(entry: dict) -> TableSpec:
    try:
        schema = entry["schema"]
        table = entry["table"]
    except (KeyError, TypeError):
        raise ConfigError(f"Table spec needs 'schema' and 'table': {entry!r}")
    try:
        blacklist = frozenset(
            DMLOperation(op.upper()) for op in entry.get("dml_blacklist") or ()
        )
    except ValueError as e:
        raise ConfigError(f"Invalid DML operation in blacklist of {schema}.{table}: {e}")
    if DMLOperation.UNKNOWN in blacklist:
        raise ConfigError(f"Invalid DML operation in blacklist of {schema}.{table}: UNKNOWN")
    return TableSpec(
        schema=schema,
        table=table,
        columns=frozenset(entry.get("columns") or ()),
        dml_blacklist=blacklist,
    )


def load_table_specs(path: Optional[str]) -> List[TableSpec]:
    """Read the table specs JSON list; no file means replicate everything."""
    if not path:
        return []
    try:
        with open(path) as f:
            entries = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unable to read table specs from {path}: {e}")
    if not isinstance(entries, list):
        raise ConfigError(f"Table specs in {path} must be a JSON list")
    return [parse_table_spec(entry) for entry in entries]


def load_latest_offset(path: Optional[str]) -> Offset:
    """Read the last acknowledged offset state, empty if there is none yet."""
    if not path or not os.path.exists(path):
        return Offset()
    try:
        with open(path) as f:
            return Offset.from_state(json.load(f))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unable to read offset from {path}: {e}")


def save_offset(path: str, offset: Offset):
    with open(path, "w") as f:
        json.dump(offset.as_state(), f, indent=2, default=str)
