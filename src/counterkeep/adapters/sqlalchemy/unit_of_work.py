"""SQLAlchemy unit of work with counter caches wired into its sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from counterkeep.adapters.sqlalchemy.fixer import CounterFixer
from counterkeep.adapters.sqlalchemy.hooks import CounterHooks
from counterkeep.config import MissingConfigurationError, get_database_config

if TYPE_CHECKING:
    from types import TracebackType

    from sqlalchemy.engine import Engine

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.counters import CounterRegistry
    from counterkeep.domain.relations import FixRecord

log = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """Raised when a SQLAlchemy unit of work is used before initialisation."""


@dataclass(slots=True)
class _AdapterState:
    _engine: Engine | None = None
    _session_factory: sessionmaker[Session] | None = None
    hooks: CounterHooks | None = None
    fixer: CounterFixer | None = None
    expire_on_commit: bool = True

    @property
    def engine(self) -> Engine | None:
        return self._engine

    @engine.setter
    def engine(self, value: Engine | None) -> None:
        self._session_factory = None
        self._engine = value

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._engine is None:
            raise StartupError(
                "SQLAlchemy adapter not initialised. Call counterkeep.adapters.sqlalchemy."
                "unit_of_work.startup() before requesting a unit of work."
            )
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self._engine, expire_on_commit=self.expire_on_commit
            )
        return self._session_factory


_STATE = _AdapterState()


def _configured_uri() -> str:
    try:
        return get_database_config().uri
    except MissingConfigurationError as exc:
        raise StartupError(
            "No database to maintain counters in. Pass engine= or database_uri= to "
            "startup(), or set DATABASE_URI."
        ) from exc


def startup(
    *,
    registry: CounterRegistry,
    catalog: SqlAlchemyRelationCatalog,
    engine: Engine | None = None,
    database_uri: str | None = None,
    expire_on_commit: bool = True,
    force: bool = False,
) -> None:
    """Install counter hooks, freeze ``registry`` and create the session factory.

    The engine is ``engine``, else one created from ``database_uri``, else from
    ``DATABASE_URI``. Mappers must already be configured; the schema is owned by
    the host application and is not created here.
    """

    if _STATE.engine is not None and not force:
        raise StartupError(
            "SQLAlchemy adapter already initialised. Pass force=True to reconfigure."
        )
    if _STATE.engine is not None:
        shutdown()

    resolved_engine = engine or create_engine(database_uri or _configured_uri())
    hooks = CounterHooks(registry, catalog)
    hooks.attach()
    registry.freeze()

    _STATE.hooks = hooks
    _STATE.fixer = CounterFixer(registry, catalog)
    _STATE.expire_on_commit = expire_on_commit
    _STATE.engine = resolved_engine
    log.info("Counter caches started on %s", resolved_engine.url.render_as_string())


def configured_engine() -> Engine | None:
    """Return the engine currently managed by the adapter (if any)."""

    return _STATE.engine


def is_started() -> bool:
    return _STATE.engine is not None


def shutdown() -> None:
    """Remove counter hooks, dispose the engine and reset state (primarily for tests)."""

    if _STATE.hooks is not None:
        _STATE.hooks.uninstall()
    if _STATE.engine is not None:
        _STATE.engine.dispose()
    _STATE.hooks = None
    _STATE.fixer = None
    _STATE.engine = None


class SqlAlchemyUnitOfWork:
    """Session scope whose commits carry the scheduled counter updates."""

    def __init__(self) -> None:
        self.session_factory: sessionmaker[Session] = _STATE.session_factory
        self._session: Session | None = None

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        self.session = self.session_factory()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        if exc_type is not None:
            self.rollback()
        self.session.close()
        self.session = None
        return False

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def fix_counts(self, record_type: type, **options: Any) -> list[FixRecord]:
        """Reconcile the counters of ``record_type`` outside of this session."""

        if _STATE.fixer is None or _STATE.engine is None:
            raise StartupError("Counter caches not started")
        return _STATE.fixer.fix_counts(_STATE.engine, record_type, **options)

    @property
    def session(self) -> Session:
        if self._session is None:
            raise StartupError("Unit of work session not initialised")
        return self._session

    @session.setter
    def session(self, session: Session | None) -> None:
        if self._session is not None and session is not None:
            raise StartupError("Unit of work session already initialised")
        self._session = session
