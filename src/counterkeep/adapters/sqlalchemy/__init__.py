"""SQLAlchemy adapter package for counterkeep."""

from __future__ import annotations

from .catalog import SqlAlchemyRelationCatalog, mapper_for
from .fixer import CounterFixer
from .hooks import CounterContext, CounterHooks, counter_context
from .joins import CountQueryBuilder
from .reader import SqlAlchemyRecordReader
from .statements import counter_delta_update, counter_value_update
from .unit_of_work import (
    SqlAlchemyUnitOfWork,
    StartupError,
    configured_engine,
    is_started,
    shutdown,
    startup,
)

__all__ = [
    "CountQueryBuilder",
    "CounterContext",
    "CounterFixer",
    "CounterHooks",
    "SqlAlchemyRecordReader",
    "SqlAlchemyRelationCatalog",
    "SqlAlchemyUnitOfWork",
    "StartupError",
    "configured_engine",
    "counter_context",
    "counter_delta_update",
    "counter_value_update",
    "is_started",
    "mapper_for",
    "shutdown",
    "startup",
]
