from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional

from replicator.cdc_event import DMLOperation, StructuredRow


def table_id(schema: str, table: str) -> str:
    return f"{schema}.{table}"


@dataclass(frozen=True)
class TableSpec:
    schema: str
    table: str
    columns: FrozenSet[str] = field(default_factory=frozenset)  # empty = all
    dml_blacklist: FrozenSet[DMLOperation] = field(default_factory=frozenset)

    @property
    def table_id(self) -> str:
        return table_id(self.schema, self.table)

    def is_blacklisted(self, op: DMLOperation) -> bool:
        return op in self.dml_blacklist


class TableRegistry:
    """Tables to replicate. An empty registry replicates everything."""

    def __init__(self, specs: Iterable[TableSpec] = ()):
        self._specs: Dict[str, TableSpec] = {s.table_id: s for s in specs}

    @property
    def read_all_tables(self) -> bool:
        return not self._specs

    def lookup(self, table: str) -> Optional[TableSpec]:
        return self._specs.get(table)

    def is_of_interest(self, table: str) -> bool:
        return self.read_all_tables or table in self._specs

    def __len__(self):
        return len(self._specs)

    def __iter__(self):
        return iter(self._specs.values())


def project(row: Optional[StructuredRow], spec: Optional[TableSpec]) -> Optional[StructuredRow]:
    """Keep only the columns selected by `spec`; unfiltered without a selection."""
    if row is None or spec is None or not spec.columns:
        return row
    return row.keep_columns(spec.columns)
