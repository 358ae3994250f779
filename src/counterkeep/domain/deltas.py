"""Decide which counters a lifecycle event changes, and by how much."""

from __future__ import annotations

from collections.abc import Collection, Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from counterkeep.domain.counters import CounterDefinition, CounterRegistry
    from counterkeep.domain.records import RecordChange, Snapshot
    from counterkeep.domain.relations import ResolvedTarget
    from counterkeep.domain.resolver import RelationResolver


@dataclass(frozen=True, slots=True, kw_only=True)
class CounterDelta:
    """A single ``column = COALESCE(column, 0) +/- magnitude`` on target rows."""

    target_type: type
    primary_keys: tuple[Hashable, ...]
    column: str
    magnitude: Any
    increment: bool
    touch: bool = False

    @property
    def operator(self) -> str:
        return "+" if self.increment else "-"


@dataclass(slots=True)
class DeltaPlanner:
    registry: CounterRegistry
    resolver: RelationResolver

    def on_create(self, record: Snapshot) -> list[CounterDelta]:
        return self._for_each_counter(record, increment=True)

    def on_destroy(self, record: Snapshot) -> list[CounterDelta]:
        return self._for_each_counter(record, increment=False)

    def on_update(self, change: RecordChange) -> list[CounterDelta]:
        deltas: list[CounterDelta] = []
        for counter in self.registry.counters_for(change.record_type):
            column_before = counter.column_for(change.before)
            column_after = counter.column_for(change.after)
            moved = (
                self.resolver.first_hop_changed(counter.relation, change)
                or (counter.delta_column is not None and change.changed(counter.delta_column))
                or column_before != column_after
            )
            if not moved:
                continue
            # both legs always, even when they cancel on the same row
            resolve = self.resolver.resolve_change
            after = resolve(counter.relation, change, prior=False, only=counter.only)
            before = resolve(counter.relation, change, prior=True, only=counter.only)
            incremented = self._delta(counter, change.after, after, column_after, increment=True)
            decremented = self._delta(
                counter, change.before, before, column_before, increment=False
            )
            deltas.extend(delta for delta in (incremented, decremented) if delta is not None)
        return deltas

    def _for_each_counter(self, record: Snapshot, *, increment: bool) -> list[CounterDelta]:
        deltas: list[CounterDelta] = []
        for counter in self.registry.counters_for(record.record_type):
            target = self.resolver.resolve(counter.relation, record, only=counter.only)
            column = counter.column_for(record)
            delta = self._delta(counter, record, target, column, increment=increment)
            if delta is not None:
                deltas.append(delta)
        return deltas

    def _delta(
        self,
        counter: CounterDefinition,
        record: Snapshot,
        target: ResolvedTarget | None,
        column: str | None,
        *,
        increment: bool,
    ) -> CounterDelta | None:
        if target is None or column is None:
            return None
        keys = _target_keys(counter, target.primary_key)
        if not keys:
            return None
        return CounterDelta(
            target_type=target.target_type,
            primary_keys=keys,
            column=column,
            magnitude=counter.delta_for(record),
            increment=increment,
            touch=counter.touch,
        )


def _target_keys(counter: CounterDefinition, key: Hashable) -> tuple[Hashable, ...]:
    if counter.foreign_key_values is None:
        return (key,)
    remapped = counter.foreign_key_values(key)
    if remapped is None:
        return ()
    if isinstance(remapped, Collection) and not isinstance(remapped, (str, bytes)):
        return tuple(remapped)
    return (remapped,)
