"""Count queries that recompute a counter from the dependent rows.

The query starts at the counter's target table and joins back along the
relation chain, one ``ChainLevel`` at a time, until it reaches the dependent
table. A level with a single step joins the source table directly; a level with
several steps (the sources of a polymorphic hop further out) joins a
``UNION ALL`` of all source tables carrying their own type tag in
``next_type``. Sources mapped as single-table-inheritance subclasses only
match rows carrying their own discriminator values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, literal, select, text, union_all

from counterkeep.domain.errors import CounterConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import ColumnElement, FromClause, Select

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.counters import ColumnCondition, CounterDefinition
    from counterkeep.domain.relations import ChainLevel, RelationStep


@dataclass(frozen=True, slots=True)
class _Node:
    """The most recently joined selectable, seen from the next level inwards."""

    selectable: FromClause
    primary_key: ColumnElement[Any]
    type_tag: ColumnElement[Any]
    types: frozenset[type]
    from_union: bool


@dataclass(slots=True)
class CountQueryBuilder:
    """Builds the grouped count query for one counter and one target type."""

    catalog: SqlAlchemyRelationCatalog
    counter: CounterDefinition
    levels: Sequence[ChainLevel]
    target_type: type
    include_empty: bool = False
    _used_names: set[str] = field(default_factory=set)

    def build(self, condition: ColumnCondition | None, column_name: str) -> Select[Any]:
        """Rows of ``(primary_key, stored, counted)`` grouped by target, ordered by key."""

        self._used_names = set()
        target_table = self.catalog.table_for(self.target_type)
        target_pk = self.catalog.primary_key(self.target_type)
        stored = self.catalog.counter_column(self.target_type, column_name)
        self._used_names.add(target_table.name)

        node = _Node(
            selectable=target_table,
            primary_key=target_pk,
            type_tag=literal(self.catalog.tag_for_type(self.target_type)),
            types=frozenset((self.target_type,)),
            from_union=False,
        )
        joined: FromClause = target_table
        for level in reversed(self.levels):
            innermost = level.position == 0
            node, on_clause = self._join_level(level, node)
            if innermost and condition is not None:
                on_clause = and_(on_clause, self._condition(condition, node.selectable))
            joined = joined.join(node.selectable, on_clause, isouter=self.include_empty)

        return (
            select(
                target_pk.label("primary_key"),
                stored.label("stored"),
                self._aggregate(node).label("counted"),
            )
            .select_from(joined)
            .group_by(target_pk, stored)
            .order_by(target_pk)
        )

    def _join_level(self, level: ChainLevel, node: _Node) -> tuple[_Node, ColumnElement[bool]]:
        steps = [
            step for step in level.steps if step.polymorphic or step.target in node.types
        ]
        if not steps:
            raise CounterConfigurationError(
                f"Relation {self.counter.relation!r} cannot reach "
                f"{self.target_type.__name__} at position {level.position}"
            )
        if len(steps) == 1:
            return self._join_direct(steps[0], node)
        return self._join_union(level, steps, node)

    def _join_direct(self, step: RelationStep, node: _Node) -> tuple[_Node, ColumnElement[bool]]:
        table = self.catalog.table_for(step.source)
        source = self._alias(table)
        foreign_key = self._column(source, step.source, step.foreign_key)
        on_clause = foreign_key == node.primary_key
        if step.polymorphic:
            foreign_type = self._column(source, step.source, step.foreign_type)
            on_clause = and_(on_clause, foreign_type == node.type_tag)
        elif node.from_union:
            target_tag = literal(self.catalog.tag_for_type(step.target))
            on_clause = and_(on_clause, target_tag == node.type_tag)
        subtype = self.catalog.subtype_condition(step.source, source)
        if subtype is not None:
            on_clause = and_(on_clause, subtype)
        primary_key = source.corresponding_column(self.catalog.primary_key(step.source))
        next_node = _Node(
            selectable=source,
            primary_key=primary_key,
            type_tag=literal(self.catalog.tag_for_type(step.source)),
            types=frozenset((step.source,)),
            from_union=False,
        )
        return next_node, on_clause

    def _join_union(
        self,
        level: ChainLevel,
        steps: Sequence[RelationStep],
        node: _Node,
    ) -> tuple[_Node, ColumnElement[bool]]:
        selects = []
        for step in steps:
            table = self.catalog.table_for(step.source)
            if step.polymorphic:
                foreign_type = self.catalog.column_for_attribute(step.source, step.foreign_type)
            else:
                foreign_type = literal(self.catalog.tag_for_type(step.target))
            query = select(
                self.catalog.primary_key(step.source).label("primary_key"),
                self.catalog.column_for_attribute(step.source, step.foreign_key).label(
                    "foreign_key"
                ),
                foreign_type.label("foreign_type"),
                literal(self.catalog.tag_for_type(step.source)).label("next_type"),
            ).select_from(table)
            subtype = self.catalog.subtype_condition(step.source)
            if subtype is not None:
                query = query.where(subtype)
            selects.append(query)
        name = self._unique_name(f"join_query_{steps[0].name}_{level.position}")
        union = union_all(*selects).subquery(name)
        on_clause = and_(
            union.c.foreign_key == node.primary_key,
            union.c.foreign_type == node.type_tag,
        )
        next_node = _Node(
            selectable=union,
            primary_key=union.c.primary_key,
            type_tag=union.c.next_type,
            types=frozenset(step.source for step in steps),
            from_union=True,
        )
        return next_node, on_clause

    def _aggregate(self, dependent: _Node) -> ColumnElement[Any]:
        if self.counter.delta_column is None:
            return func.count(dependent.primary_key.distinct())
        column = self._column(
            dependent.selectable, self.counter.record_type, self.counter.delta_column
        )
        return func.sum(func.coalesce(column, 0))

    def _condition(self, condition: ColumnCondition, dependent: FromClause) -> ColumnElement[bool]:
        if isinstance(condition, str):
            return text(condition)  # type: ignore[return-value]
        return condition(dependent)

    def _column(self, selectable: FromClause, record_type: type, key: str) -> ColumnElement[Any]:
        column = selectable.corresponding_column(
            self.catalog.column_for_attribute(record_type, key)
        )
        if column is None:
            raise CounterConfigurationError(f"{key} is not a column of {record_type.__name__}")
        return column

    def _alias(self, table: FromClause) -> FromClause:
        name = table.name  # type: ignore[attr-defined]
        if name not in self._used_names:
            self._used_names.add(name)
            return table
        return table.alias(self._unique_name(f"{name}_{name}"))

    def _unique_name(self, base: str) -> str:
        name = base
        number = 2
        while name in self._used_names:
            name = f"{base}_{number}"
            number += 1
        self._used_names.add(name)
        return name
