"""Walk relation chains from a dependent record to the row that owns a counter.

Two walks are offered. ``resolve`` follows one live record hop by hop and
answers with a single target row (or ``None`` when any hop is unset or points
at a missing row). ``trace`` works without a record: it lists, per chain
position, every step and every concrete type the chain can reach, reading the
distinct stored type tags for polymorphic hops. Reconciliation builds its joins
from that trace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from counterkeep.domain.errors import CounterConfigurationError
from counterkeep.domain.relations import ChainLevel, PolymorphicStep, ResolvedTarget

if TYPE_CHECKING:
    from collections.abc import Sequence

    from counterkeep.domain.counters import OnlyFilter
    from counterkeep.domain.ports import RecordReader, RelationCatalog
    from counterkeep.domain.records import RecordChange, Snapshot
    from counterkeep.domain.relations import RelationStep

log = logging.getLogger(__name__)


@dataclass(slots=True)
class RelationResolver:
    catalog: RelationCatalog
    reader: RecordReader

    def resolve(
        self,
        chain: Sequence[str],
        record: Snapshot,
        *,
        only: OnlyFilter | None = None,
    ) -> ResolvedTarget | None:
        """Return the row at the end of ``chain`` starting from ``record``.

        Only the first hop reads ``record`` itself, so passing the pre-update
        snapshot resolves the old target while the rest of the chain is read as
        it currently stands.
        """

        current = record
        result: ResolvedTarget | None = None
        for position, name in enumerate(chain):
            step = self.catalog.step(current.record_type, name)
            target_type = self._target_type(step, current)
            if target_type is None:
                return None
            tag = self.catalog.tag_for_type(target_type)
            if only is not None and not only.allows(position, tag):
                log.debug("Chain %r stops at %r: %s filtered out", tuple(chain), name, tag)
                return None
            key = current.get(step.foreign_key)
            if key is None:
                log.debug("Chain %r stops at %r: %s is null", tuple(chain), name, step.foreign_key)
                return None
            loaded = self.reader.load(target_type, key)
            if loaded is None:
                log.debug("Chain %r stops at %r: %s %r not found", tuple(chain), name, tag, key)
                return None
            current = loaded
            result = ResolvedTarget(target_type=target_type, primary_key=key)
        return result

    def resolve_change(
        self,
        chain: Sequence[str],
        change: RecordChange,
        *,
        prior: bool,
        only: OnlyFilter | None = None,
    ) -> ResolvedTarget | None:
        return self.resolve(chain, change.state(prior=prior), only=only)

    def first_hop_changed(self, chain: Sequence[str], change: RecordChange) -> bool:
        step = self.catalog.step(change.record_type, chain[0])
        if change.changed(step.foreign_key):
            return True
        return isinstance(step, PolymorphicStep) and change.changed(step.foreign_type)

    def trace(
        self,
        chain: Sequence[str],
        start_type: type,
        *,
        only: OnlyFilter | None = None,
    ) -> list[ChainLevel]:
        """Resolve ``chain`` statically into one ``ChainLevel`` per position."""

        sources: tuple[type, ...] = (start_type,)
        levels: list[ChainLevel] = []
        for position, name in enumerate(chain):
            steps = tuple(self.catalog.step(source, name) for source in sources)
            if len({step.polymorphic for step in steps}) > 1:
                raise CounterConfigurationError(
                    f"Relation {name!r} is polymorphic on some of "
                    f"{', '.join(t.__name__ for t in sources)} but not on others"
                )
            targets = self._possible_targets(steps)
            if only is not None:
                targets = tuple(
                    t for t in targets if only.allows(position, self.catalog.tag_for_type(t))
                )
            levels.append(ChainLevel(position=position, steps=steps, targets=targets))
            sources = targets
        return levels

    def resolve_all_possible_types(
        self,
        chain: Sequence[str],
        start_type: type,
        *,
        only: OnlyFilter | None = None,
    ) -> list[type]:
        return list(self.trace(chain, start_type, only=only)[-1].targets)

    def _target_type(self, step: RelationStep, record: Snapshot) -> type | None:
        if not isinstance(step, PolymorphicStep):
            return step.target
        tag = record.get(step.foreign_type)
        if tag is None:
            log.debug("Polymorphic step %r has no type tag", step.name)
            return None
        target_type = self.catalog.type_for_tag(tag)
        if target_type is None:
            log.debug("Polymorphic step %r has unknown type tag %r", step.name, tag)
        return target_type

    def _possible_targets(self, steps: tuple[RelationStep, ...]) -> tuple[type, ...]:
        found: dict[type, None] = {}
        for step in steps:
            if not isinstance(step, PolymorphicStep):
                found[step.target] = None
                continue
            for tag in self.reader.type_tags(step):
                target_type = self.catalog.type_for_tag(tag)
                if target_type is None:
                    log.warning(
                        "Ignoring unknown type tag %r stored for %s.%s",
                        tag,
                        step.source.__name__,
                        step.foreign_type,
                    )
                    continue
                found[target_type] = None
        return tuple(found)
