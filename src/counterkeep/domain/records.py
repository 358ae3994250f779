"""Point-in-time views of a record's attribute values."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any


class Snapshot(Mapping[str, Any]):
    """Read-only attribute values of one record, keyed by attribute name.

    Values are also reachable as attributes so that dynamic column functions can
    be written against a snapshot the same way they would be against a live
    record (``lambda review: review.kind``).
    """

    __slots__ = ("_values", "record_type")

    def __init__(self, record_type: type, values: Mapping[str, Any]) -> None:
        self.record_type = record_type
        self._values = dict(values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(
                f"{self.record_type.__name__} snapshot has no attribute {name!r}"
            ) from None

    def __repr__(self) -> str:
        return f"Snapshot({self.record_type.__name__}, {self._values!r})"


@dataclass(frozen=True, slots=True)
class RecordChange:
    """Attribute values of one record before and after an update."""

    before: Snapshot
    after: Snapshot

    @property
    def record_type(self) -> type:
        return self.after.record_type

    def changed(self, key: str) -> bool:
        return self.before.get(key) != self.after.get(key)

    def state(self, *, prior: bool) -> Snapshot:
        return self.before if prior else self.after
