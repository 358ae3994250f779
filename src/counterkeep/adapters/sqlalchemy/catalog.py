"""Relationship metadata read from SQLAlchemy mappers.

Plain many-to-one ``relationship()`` properties are reflected directly.
SQLAlchemy has no polymorphic belongs-to, so those hops are declared here with
``polymorphic()`` and their stored type tags are mapped back to classes through
``register_type()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import MANYTOONE, ColumnProperty, Mapper

from counterkeep.domain.errors import CounterConfigurationError, UnknownRelationError
from counterkeep.domain.relations import ForeignKeyStep, PolymorphicStep

if TYPE_CHECKING:
    from sqlalchemy import Column, ColumnElement, FromClause, Table

    from counterkeep.domain.relations import RelationStep

log = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_COLUMNS: Final[tuple[str, ...]] = ("updated_at", "updated_on")


def mapper_for(record_type: type) -> Mapper[object]:
    mapper = sa_inspect(record_type, raiseerr=False)
    if not isinstance(mapper, Mapper):
        raise CounterConfigurationError(f"{record_type.__name__} is not a mapped class")
    return mapper


@dataclass(slots=True)
class SqlAlchemyRelationCatalog:
    timestamp_columns: tuple[str, ...] = DEFAULT_TIMESTAMP_COLUMNS
    _polymorphic: dict[tuple[type, str], PolymorphicStep] = field(default_factory=dict)
    _type_by_tag: dict[str, type] = field(default_factory=dict)
    _tag_by_type: dict[type, str] = field(default_factory=dict)

    def register_type(self, record_type: type, tag: str | None = None) -> str:
        """Make ``record_type`` reachable from polymorphic steps storing ``tag``."""

        resolved_tag = tag or record_type.__name__
        existing = self._type_by_tag.get(resolved_tag)
        if existing is not None and existing is not record_type:
            raise CounterConfigurationError(
                f"Type tag {resolved_tag!r} already registered for {existing.__name__}"
            )
        self._type_by_tag[resolved_tag] = record_type
        self._tag_by_type[record_type] = resolved_tag
        return resolved_tag

    def polymorphic(
        self,
        source: type,
        name: str,
        *,
        foreign_key: str | None = None,
        foreign_type: str | None = None,
    ) -> PolymorphicStep:
        """Declare a polymorphic hop ``name`` stored in ``<name>_id``/``<name>_type``."""

        step = PolymorphicStep(
            name=name,
            source=source,
            foreign_key=foreign_key or f"{name}_id",
            foreign_type=foreign_type or f"{name}_type",
        )
        for attribute in (step.foreign_key, step.foreign_type):
            self.column_for_attribute(source, attribute)
        self._polymorphic[(source, name)] = step
        log.debug(
            "Declared polymorphic relation %s.%s (%s, %s)",
            source.__name__,
            name,
            step.foreign_key,
            step.foreign_type,
        )
        return step

    def step(self, source: type, name: str) -> RelationStep:
        for klass in source.__mro__:
            declared = self._polymorphic.get((klass, name))
            if declared is not None:
                return declared

        mapper = mapper_for(source)
        if name not in mapper.relationships:
            raise UnknownRelationError(f"No relation {name} on {source.__name__}")
        relationship = mapper.relationships[name]
        if relationship.direction is not MANYTOONE:
            raise CounterConfigurationError(
                f"Relation {name} on {source.__name__} must be many-to-one to carry counters"
            )
        local_columns = list(relationship.local_columns)
        if len(local_columns) != 1:
            raise CounterConfigurationError(
                f"Relation {name} on {source.__name__} must use exactly one foreign key column"
            )
        foreign_key = mapper.get_property_by_column(local_columns[0]).key
        return ForeignKeyStep(
            name=name,
            source=source,
            foreign_key=foreign_key,
            target=relationship.mapper.class_,
        )

    def type_for_tag(self, tag: str) -> type | None:
        return self._type_by_tag.get(tag)

    def tag_for_type(self, record_type: type) -> str:
        return self._tag_by_type.get(record_type, record_type.__name__)

    def table_for(self, record_type: type) -> Table:
        return mapper_for(record_type).local_table  # type: ignore[return-value]

    def primary_key(self, record_type: type) -> Column[object]:
        primary_key = mapper_for(record_type).primary_key
        if len(primary_key) != 1:
            raise CounterConfigurationError(
                f"{record_type.__name__} must have a single-column primary key"
            )
        return primary_key[0]

    def column_for_attribute(self, record_type: type, key: str) -> Column[object]:
        prop = mapper_for(record_type).attrs.get(key)
        if not isinstance(prop, ColumnProperty):
            raise UnknownRelationError(f"No column attribute {key} on {record_type.__name__}")
        return prop.columns[0]  # type: ignore[return-value]

    def counter_column(self, record_type: type, name: str) -> Column[object]:
        table = self.table_for(record_type)
        if name not in table.c:
            raise CounterConfigurationError(
                f"Counter column {name} does not exist on table {table.name}"
            )
        return table.c[name]

    def touched_columns(self, record_type: type) -> list[Column[object]]:
        table = self.table_for(record_type)
        return [table.c[name] for name in self.timestamp_columns if name in table.c]

    def subtype_condition(
        self,
        record_type: type,
        selectable: FromClause | None = None,
    ) -> ColumnElement[bool] | None:
        """Restrict a single-table-inheritance table to ``record_type`` and its subclasses.

        ``None`` when ``record_type`` owns its table, base classes included.
        """

        mapper = mapper_for(record_type)
        discriminator = mapper.polymorphic_on
        if discriminator is None or not mapper.single:
            return None
        if selectable is not None:
            discriminator = selectable.corresponding_column(discriminator)
            if discriminator is None:
                raise CounterConfigurationError(
                    f"Discriminator of {record_type.__name__} is not a plain table column"
                )
        identities = [
            descendant.polymorphic_identity
            for descendant in mapper.self_and_descendants
            if descendant.polymorphic_identity is not None
        ]
        return discriminator.in_(identities)

    def default_counter_name(self, record_type: type) -> str:
        return f"{self.table_for(record_type).name}_count"
