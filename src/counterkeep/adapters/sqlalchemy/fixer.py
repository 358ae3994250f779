"""Recompute stored counters from the dependent rows and correct drift."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from counterkeep.adapters.sqlalchemy.joins import CountQueryBuilder
from counterkeep.adapters.sqlalchemy.reader import SqlAlchemyRecordReader
from counterkeep.adapters.sqlalchemy.statements import counter_value_update
from counterkeep.config import get_reconcile_config, positive_int
from counterkeep.domain.counters import normalize_relation
from counterkeep.domain.errors import NoCountersDefinedError, UnsupportedCounterError
from counterkeep.domain.relations import FixRecord
from counterkeep.domain.resolver import RelationResolver

if TYPE_CHECKING:
    from collections.abc import Collection

    from sqlalchemy.engine import Engine

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.counters import ColumnCondition, CounterDefinition, CounterRegistry
    from counterkeep.domain.relations import Relation

    type RelationSelector = str | Collection[str | Collection[str]]

log = logging.getLogger(__name__)


def _relations(selector: RelationSelector | None) -> set[Relation] | None:
    if selector is None:
        return None
    if isinstance(selector, str):
        return {(selector,)}
    return {normalize_relation(item) for item in selector}


@dataclass(slots=True)
class CounterFixer:
    """Reconciles every counter declared on a dependent record type."""

    registry: CounterRegistry
    catalog: SqlAlchemyRelationCatalog

    def fix_counts(
        self,
        engine: Engine,
        record_type: type,
        *,
        exclude: RelationSelector | None = None,
        only: RelationSelector | None = None,
        skip_unsupported: bool = False,
        batch_size: int | None = None,
        include_empty: bool = False,
    ) -> list[FixRecord]:
        """Correct stored counters that differ from a fresh count.

        ``exclude`` and ``only`` select counters by relation: a bare name, or a
        collection of names and chains (tuples of names). Targets are visited in
        primary-key order, ``batch_size`` at a time, each batch in its own
        transaction. With ``include_empty`` targets without any dependent row
        are compared as well and reset to zero.
        """

        counters = self.registry.counters_for(record_type)
        if not counters:
            raise NoCountersDefinedError(f"No counters defined on {record_type.__name__}")

        excluded = _relations(exclude)
        selected = _relations(only)
        if batch_size is None:
            resolved_batch_size = get_reconcile_config().batch_size
        else:
            resolved_batch_size = positive_int("batch_size", batch_size)

        fixed: list[FixRecord] = []
        for counter in counters:
            if excluded is not None and counter.relation in excluded:
                continue
            if selected is not None and counter.relation not in selected:
                continue
            reason = counter.unsupported_reason()
            if reason is not None:
                if not skip_unsupported:
                    raise UnsupportedCounterError(reason)
                log.info(
                    "Skipping counter %r on %s: unsupported for fixing",
                    counter.relation,
                    record_type.__name__,
                )
                continue
            fixed.extend(
                self._fix_counter(
                    engine,
                    record_type,
                    counter,
                    batch_size=resolved_batch_size,
                    include_empty=include_empty,
                )
            )
        return fixed

    def _fix_counter(
        self,
        engine: Engine,
        record_type: type,
        counter: CounterDefinition,
        *,
        batch_size: int,
        include_empty: bool,
    ) -> list[FixRecord]:
        with engine.connect() as connection:
            reader = SqlAlchemyRecordReader(connection, self.catalog)
            levels = RelationResolver(self.catalog, reader).trace(
                counter.relation, record_type, only=counter.only
            )

        fixed: list[FixRecord] = []
        for target_type in levels[-1].targets:
            builder = CountQueryBuilder(
                catalog=self.catalog,
                counter=counter,
                levels=levels,
                target_type=target_type,
                include_empty=include_empty,
            )
            for condition, column_name in counter.reconciled_columns():
                fixed.extend(
                    self._fix_column(
                        engine, builder, condition, column_name, batch_size=batch_size
                    )
                )
        return fixed

    def _fix_column(
        self,
        engine: Engine,
        builder: CountQueryBuilder,
        condition: ColumnCondition | None,
        column_name: str,
        *,
        batch_size: int,
    ) -> list[FixRecord]:
        target_type = builder.target_type
        query = builder.build(condition, column_name)
        fixed: list[FixRecord] = []
        offset = 0
        while True:
            with engine.begin() as connection:
                rows = connection.execute(query.offset(offset).limit(batch_size)).all()
                for row in rows:
                    counted = row.counted or 0
                    if row.stored == counted:
                        continue
                    fix = FixRecord(
                        entity=target_type,
                        primary_key=row.primary_key,
                        column=column_name,
                        wrong_value=row.stored,
                        correct_value=counted,
                    )
                    connection.execute(
                        counter_value_update(
                            self.catalog, target_type, row.primary_key, column_name, counted
                        )
                    )
                    log.info(
                        "Fixed %s %r %s: %r -> %r",
                        target_type.__name__,
                        row.primary_key,
                        column_name,
                        row.stored,
                        counted,
                    )
                    fixed.append(fix)
            if len(rows) < batch_size:
                return fixed
            offset += batch_size
