from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine  # noqa: TC002
from sqlalchemy.orm import Session

from counterkeep.adapters.sqlalchemy import CounterFixer, CounterHooks, SqlAlchemyRelationCatalog
from counterkeep.domain import CounterRegistry
from tests.support.schema import build_catalog, create_all_tables, start_mappers

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture
def sqlite_engine(tmp_path: Path) -> Iterator[Engine]:
    # a file database, so the after-commit connection sees the committed rows
    start_mappers()
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'counters.db'}")
    create_all_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_session(sqlite_engine: Engine) -> Iterator[Session]:
    session = Session(sqlite_engine)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog() -> SqlAlchemyRelationCatalog:
    return build_catalog()


@pytest.fixture
def counters(catalog: SqlAlchemyRelationCatalog) -> Iterator[CounterRegistry]:
    """A registry whose counters are maintained for the duration of the test."""

    registry = CounterRegistry(naming=catalog.default_counter_name)
    hooks = CounterHooks(registry, catalog)
    hooks.attach()
    try:
        yield registry
    finally:
        hooks.uninstall()


@pytest.fixture
def fixer(counters: CounterRegistry, catalog: SqlAlchemyRelationCatalog) -> CounterFixer:
    return CounterFixer(counters, catalog)
