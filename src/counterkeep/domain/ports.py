"""Ports the counter engine needs from the host persistence layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Hashable, Sequence

    from counterkeep.domain.records import Snapshot
    from counterkeep.domain.relations import PolymorphicStep, RelationStep


@runtime_checkable
class RelationCatalog(Protocol):
    """Relationship metadata and type-tag registry."""

    def step(self, source: type, name: str) -> RelationStep:
        """Return the step called ``name`` on ``source`` or raise ``UnknownRelationError``."""
        ...

    def type_for_tag(self, tag: str) -> type | None: ...

    def tag_for_type(self, record_type: type) -> str: ...


@runtime_checkable
class RecordReader(Protocol):
    """Read access to the current unit of work's view of the data."""

    def load(self, record_type: type, primary_key: Hashable) -> Snapshot | None: ...

    def type_tags(self, step: PolymorphicStep) -> Sequence[str]:
        """Return the distinct non-null type tags stored for ``step``."""
        ...
