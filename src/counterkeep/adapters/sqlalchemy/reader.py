"""Core-level row access on the connection of the current transaction."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select

from counterkeep.adapters.sqlalchemy.catalog import mapper_for
from counterkeep.domain.records import Snapshot

if TYPE_CHECKING:
    from collections.abc import Hashable

    from sqlalchemy.engine import Connection

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.relations import PolymorphicStep


class SqlAlchemyRecordReader:
    """Loads rows with plain ``SELECT`` statements.

    Mapper flush events must not use the ``Session``, so chain resolution reads
    through the ``Connection`` the flush is running on.
    """

    def __init__(self, connection: Connection, catalog: SqlAlchemyRelationCatalog) -> None:
        self.connection = connection
        self.catalog = catalog

    def load(self, record_type: type, primary_key: Hashable) -> Snapshot | None:
        mapper = mapper_for(record_type)
        table = self.catalog.table_for(record_type)
        stmt = select(table).where(self.catalog.primary_key(record_type) == primary_key)
        row = self.connection.execute(stmt).first()
        if row is None:
            return None
        values = {
            prop.key: row._mapping[prop.columns[0]]  # noqa: SLF001
            for prop in mapper.column_attrs
            if prop.columns[0].table is table
        }
        return Snapshot(record_type, values)

    def type_tags(self, step: PolymorphicStep) -> list[str]:
        column = self.catalog.column_for_attribute(step.source, step.foreign_type)
        stmt = select(column).where(column.is_not(None)).distinct().order_by(column)
        return [str(tag) for tag in self.connection.execute(stmt).scalars()]
