from typing import FrozenSet, Iterable, Set


class DDLGate:
    """Tables whose schema has already been announced downstream."""

    def __init__(self, sent: Iterable[str] = ()):
        self._sent: Set[str] = set(sent)

    def has_sent(self, table: str) -> bool:
        return table in self._sent

    def mark_sent(self, table: str):
        self._sent.add(table)

    @property
    def sent(self) -> FrozenSet[str]:
        return frozenset(self._sent)
