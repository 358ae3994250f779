"""UPDATE statements writing counter columns."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, update

if TYPE_CHECKING:
    from collections.abc import Hashable

    from sqlalchemy import Update

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.deltas import CounterDelta


def counter_delta_update(
    catalog: SqlAlchemyRelationCatalog,
    delta: CounterDelta,
    *,
    now: datetime | None = None,
) -> Update:
    """``SET col = COALESCE(col, 0) +/- magnitude`` evaluated by the database."""

    table = catalog.table_for(delta.target_type)
    primary_key = catalog.primary_key(delta.target_type)
    column = catalog.counter_column(delta.target_type, delta.column)

    current = func.coalesce(column, 0)
    values: dict[Any, Any] = {
        column: current + delta.magnitude if delta.increment else current - delta.magnitude
    }
    if delta.touch:
        touched_at = now or datetime.now(tz=UTC)
        for timestamp_column in catalog.touched_columns(delta.target_type):
            values[timestamp_column] = touched_at

    if len(delta.primary_keys) == 1:
        condition = primary_key == delta.primary_keys[0]
    else:
        condition = primary_key.in_(delta.primary_keys)
    return update(table).where(condition).values(values)


def counter_value_update(
    catalog: SqlAlchemyRelationCatalog,
    target_type: type,
    primary_key: Hashable,
    column_name: str,
    value: object,
) -> Update:
    """Overwrite a stored counter without touching timestamps."""

    table = catalog.table_for(target_type)
    column = catalog.counter_column(target_type, column_name)
    return (
        update(table)
        .where(catalog.primary_key(target_type) == primary_key)
        .values({column: value})
    )
