import logging
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

# Positional keys of the raw connector offsets, most significant first.
#   SQL Server: commit_lsn, change_lsn, event_serial_no
#   Postgres:   lsn
#   MySQL:      file, pos, event, row
POSITION_KEYS = ("commit_lsn", "change_lsn", "event_serial_no", "lsn", "file", "pos", "event", "row")

# binlog offsets omit event and row when they are 0
BINLOG_DEFAULTS = {"event": 0, "row": 0}

SNAPSHOT_MARKERS = {"true", "last", "first", "first_in_data_collection",
                    "last_in_data_collection", "incremental", "initial"}


def _is_snapshot_marker(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in SNAPSHOT_MARKERS
    return False


class Offset:
    """
    Position in the raw change stream plus the tables whose DDL was already sent.

    Built fresh for every record and never mutated afterwards.
    """

    def __init__(self, source_offset: Optional[Dict[str, Any]] = None,
                 ddl_sent: Iterable[str] = ()):
        self.source_offset: Dict[str, Any] = dict(source_offset or {})
        self.ddl_sent: FrozenSet[str] = frozenset(ddl_sent)

    def _positional(self) -> Dict[str, Any]:
        source = {k: v for k, v in self.source_offset.items() if v is not None}
        if "file" in source:
            for key, default in BINLOG_DEFAULTS.items():
                source.setdefault(key, default)
        return source

    @property
    def position_keys(self) -> Tuple[str, ...]:
        source = self._positional()
        return tuple(k for k in POSITION_KEYS if k in source)

    @property
    def position(self) -> Tuple[Any, ...]:
        source = self._positional()
        return tuple(source[k] for k in POSITION_KEYS if k in source)

    def is_snapshot(self) -> bool:
        return _is_snapshot_marker(self.source_offset.get("snapshot"))

    def is_empty(self) -> bool:
        return not self.position_keys

    def is_before_or_at(self, other: Optional["Offset"]) -> bool:
        """
        True if this streaming offset is not strictly after `other`.

        Snapshot offsets are never before anything: a snapshot restarts the
        table history from scratch. A streaming offset is never compared
        against a snapshot high-water mark either.
        """
        if self.is_snapshot():
            return False
        if other is None or other.is_empty() or other.is_snapshot():
            return False
        if self.position_keys != other.position_keys:
            logger.debug(
                f"Offsets not comparable: {self.position_keys} vs {other.position_keys}"
            )
            return False
        try:
            return self.position <= other.position
        except TypeError:
            return False

    def as_state(self) -> dict:
        """JSON-friendly form, persisted by the downstream runtime."""
        return {"source": dict(self.source_offset), "ddl_sent": sorted(self.ddl_sent)}

    @classmethod
    def from_state(cls, state: Optional[dict]) -> "Offset":
        if not state:
            return cls()
        return cls(state.get("source") or {}, state.get("ddl_sent") or ())

    def __eq__(self, other):
        if not isinstance(other, Offset):
            return NotImplemented
        return self.source_offset == other.source_offset and self.ddl_sent == other.ddl_sent

    def __repr__(self):
        return f"Offset(source_offset={self.source_offset!r}, ddl_sent={sorted(self.ddl_sent)!r})"
