"""Lifecycle hooks that keep counters current as dependent rows change.

Mapper flush events plan counter deltas while the flush runs; the resulting
``UPDATE`` statements wait in a ``CounterContext`` stored in ``Session.info``
and run once the session's outermost transaction has committed. Work done
inside a savepoint that is rolled back is dropped with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from itertools import groupby
from typing import TYPE_CHECKING, Any, Final

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from counterkeep.adapters.sqlalchemy.catalog import mapper_for
from counterkeep.adapters.sqlalchemy.reader import SqlAlchemyRecordReader
from counterkeep.adapters.sqlalchemy.statements import counter_delta_update
from counterkeep.domain.deltas import DeltaPlanner
from counterkeep.domain.records import RecordChange, Snapshot
from counterkeep.domain.resolver import RelationResolver

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable, Iterable

    from sqlalchemy.engine import Connection, Engine
    from sqlalchemy.orm import Mapper, SessionTransaction
    from sqlalchemy.orm.state import InstanceState

    from counterkeep.adapters.sqlalchemy.catalog import SqlAlchemyRelationCatalog
    from counterkeep.domain.counters import CounterRegistry
    from counterkeep.domain.deltas import CounterDelta

log = logging.getLogger(__name__)

CONTEXT_KEY: Final[str] = "counterkeep.counter_context"

type RecordIdentity = tuple[type, tuple[Hashable, ...]]


@dataclass(frozen=True, slots=True)
class PendingUpdate:
    engine: Engine
    catalog: SqlAlchemyRelationCatalog
    delta: CounterDelta
    # innermost savepoint open when the update was scheduled; None for the outer transaction
    scope: SessionTransaction | None = None


def _enclosing_savepoint(transaction: SessionTransaction) -> SessionTransaction | None:
    parent = transaction.parent
    while parent is not None and not parent.nested:
        parent = parent.parent
    return parent


def _within(scope: SessionTransaction | None, transaction: SessionTransaction) -> bool:
    while scope is not None:
        if scope is transaction:
            return True
        scope = scope.parent
    return False


@dataclass(slots=True)
class CounterContext:
    """Counter work collected during one session transaction.

    Claims and pending updates remember the savepoint they were made in. A
    released savepoint hands them to the enclosing one; a rolled back savepoint
    drops them.
    """

    handled: dict[RecordIdentity, SessionTransaction | None] = field(default_factory=dict)
    pending: list[PendingUpdate] = field(default_factory=list)

    def claim(self, identity: RecordIdentity, scope: SessionTransaction | None = None) -> bool:
        """Mark ``identity`` handled; ``False`` when it already was."""

        if identity in self.handled:
            return False
        self.handled[identity] = scope
        return True

    def release_savepoint(self, savepoint: SessionTransaction) -> None:
        enclosing = _enclosing_savepoint(savepoint)
        for identity, scope in self.handled.items():
            if scope is savepoint:
                self.handled[identity] = enclosing
        self.pending = [
            replace(pending, scope=enclosing) if pending.scope is savepoint else pending
            for pending in self.pending
        ]

    def rollback_savepoint(self, savepoint: SessionTransaction) -> None:
        kept = [pending for pending in self.pending if not _within(pending.scope, savepoint)]
        if len(kept) < len(self.pending):
            log.debug(
                "Dropping %d counter updates of a rolled back savepoint",
                len(self.pending) - len(kept),
            )
        self.pending = kept
        self.handled = {
            identity: scope
            for identity, scope in self.handled.items()
            if not _within(scope, savepoint)
        }

    def apply(self, *, now: datetime | None = None) -> None:
        """Run pending updates in scheduling order, one transaction per engine run."""

        touched_at = now or datetime.now(tz=UTC)
        for engine, updates in groupby(self.pending, key=lambda pending: pending.engine):
            with engine.begin() as connection:
                for pending in updates:
                    log.debug(
                        "Applying %s %s %s on %s %r",
                        pending.delta.column,
                        pending.delta.operator,
                        pending.delta.magnitude,
                        pending.delta.target_type.__name__,
                        pending.delta.primary_keys,
                    )
                    connection.execute(
                        counter_delta_update(pending.catalog, pending.delta, now=touched_at)
                    )
        self.pending.clear()


def counter_context(session: Session) -> CounterContext:
    context = session.info.get(CONTEXT_KEY)
    if context is None:
        context = CounterContext()
        session.info[CONTEXT_KEY] = context
    return context


def _apply_after_commit(session: Session) -> None:
    savepoint = session.get_nested_transaction()
    if savepoint is not None:
        context: CounterContext | None = session.info.get(CONTEXT_KEY)
        if context is not None:
            context.release_savepoint(savepoint)
        return
    context = session.info.pop(CONTEXT_KEY, None)
    if context is not None:
        context.apply()


def _end_transaction(session: Session, transaction: SessionTransaction) -> None:
    if transaction.nested:
        # released savepoints already handed their work over in after_commit
        context: CounterContext | None = session.info.get(CONTEXT_KEY)
        if context is not None:
            context.rollback_savepoint(transaction)
        return
    if transaction.parent is not None:
        return
    context = session.info.pop(CONTEXT_KEY, None)
    if context is not None and context.pending:
        log.debug("Discarding %d uncommitted counter updates", len(context.pending))


def _install_session_events() -> None:
    if not event.contains(Session, "after_commit", _apply_after_commit):
        event.listen(Session, "after_commit", _apply_after_commit)
    if not event.contains(Session, "after_transaction_end", _end_transaction):
        event.listen(Session, "after_transaction_end", _end_transaction)


def _keep_prior_value(target: object, value: object, oldvalue: object, initiator: object) -> None:
    """No-op ``set`` listener registered with ``active_history`` so old values get loaded."""

    _ = (target, value, oldvalue, initiator)


def _column_keys(mapper: Mapper[Any]) -> list[str]:
    return [prop.key for prop in mapper.column_attrs]


def snapshot_current(
    mapper: Mapper[Any],
    state: InstanceState[Any],
    stored: Snapshot | None = None,
) -> Snapshot:
    """Current attribute values; unloaded attributes are taken from ``stored``."""

    values: dict[str, object] = {}
    for key in _column_keys(mapper):
        if key in state.dict or stored is None:
            values[key] = state.dict.get(key)
        else:
            values[key] = stored.get(key)
    return Snapshot(state.class_, values)


def snapshot_prior(mapper: Mapper[Any], state: InstanceState[Any], current: Snapshot) -> Snapshot:
    """Attribute values as they were before the pending changes were flushed."""

    values: dict[str, object] = {}
    for key in _column_keys(mapper):
        history = state.attrs[key].history
        if history.deleted:
            values[key] = history.deleted[0]
        elif history.unchanged:
            values[key] = history.unchanged[0]
        else:
            values[key] = current.get(key)
    return Snapshot(state.class_, values)


def _has_column_changes(mapper: Mapper[Any], state: InstanceState[Any]) -> bool:
    return any(state.attrs[key].history.has_changes() for key in _column_keys(mapper))


def _primary_key(mapper: Mapper[Any], state: InstanceState[Any]) -> tuple[Hashable, ...]:
    # persistent rows keep their key even when expired; reading attributes would load them
    if state.key is not None:
        return tuple(state.key[1])
    return tuple(mapper.primary_key_from_instance(state.obj()))


class CounterHooks:
    """Installs the create/destroy/update hooks for every counted record type."""

    def __init__(self, registry: CounterRegistry, catalog: SqlAlchemyRelationCatalog) -> None:
        self.registry = registry
        self.catalog = catalog
        self._listeners: list[tuple[Any, str, Callable[..., Any]]] = []
        self._installed: set[type] = set()

    def attach(self) -> None:
        """Install hooks for all declared types and for any declared later."""

        _install_session_events()
        self.registry.subscribe(self.install)

    def install(self, record_type: type) -> None:
        if record_type in self._installed:
            return
        log.info("Installing counter hooks on %s", record_type.__name__)
        self._listen(record_type, "after_insert", self._after_insert, propagate=True)
        self._listen(record_type, "before_delete", self._before_delete, propagate=True)
        self._listen(record_type, "after_delete", self._after_delete, propagate=True)
        self._listen(record_type, "after_update", self._after_update, propagate=True)
        for prop in mapper_for(record_type).column_attrs:
            self._listen(prop.class_attribute, "set", _keep_prior_value, active_history=True)
        self._installed.add(record_type)

    def uninstall(self) -> None:
        for target, identifier, listener in reversed(self._listeners):
            if event.contains(target, identifier, listener):
                event.remove(target, identifier, listener)
        self._listeners.clear()
        self._installed.clear()

    def _listen(
        self,
        target: Any,
        identifier: str,
        listener: Callable[..., Any],
        **kw: Any,
    ) -> None:
        event.listen(target, identifier, listener, **kw)
        self._listeners.append((target, identifier, listener))

    def _after_insert(self, mapper: Mapper[Any], connection: Connection, target: object) -> None:
        state = sa_inspect(target)
        context = self._claim(mapper, state)
        if context is None:
            return
        record = snapshot_current(mapper, state, self._stored(mapper, connection, state))
        deltas = self._planner(connection).on_create(record)
        self._schedule(context, state, connection, deltas)

    def _before_delete(self, mapper: Mapper[Any], connection: Connection, target: object) -> None:
        # expired attributes are not reloaded by a DELETE; read them while the row exists
        state = sa_inspect(target)
        stored = self._stored(mapper, connection, state)
        if stored is None:
            return
        for key in _column_keys(mapper):
            if key not in state.dict:
                set_committed_value(target, key, stored.get(key))

    def _after_delete(self, mapper: Mapper[Any], connection: Connection, target: object) -> None:
        state = sa_inspect(target)
        context = self._claim(mapper, state)
        if context is None:
            return
        record = snapshot_current(mapper, state)
        deltas = self._planner(connection).on_destroy(record)
        self._schedule(context, state, connection, deltas)

    def _after_update(self, mapper: Mapper[Any], connection: Connection, target: object) -> None:
        state = sa_inspect(target)
        if not _has_column_changes(mapper, state):
            return
        context = self._claim(mapper, state)
        if context is None:
            return
        after = snapshot_current(mapper, state, self._stored(mapper, connection, state))
        change = RecordChange(before=snapshot_prior(mapper, state, after), after=after)
        deltas = self._planner(connection).on_update(change)
        self._schedule(context, state, connection, deltas)

    def _stored(
        self,
        mapper: Mapper[Any],
        connection: Connection,
        state: InstanceState[Any],
    ) -> Snapshot | None:
        """The row as stored, read only when some column attribute is unloaded."""

        if all(key in state.dict for key in _column_keys(mapper)):
            return None
        primary_key = _primary_key(mapper, state)
        if len(primary_key) != 1 or primary_key[0] is None:
            return None
        reader = SqlAlchemyRecordReader(connection, self.catalog)
        return reader.load(mapper.class_, primary_key[0])

    def _claim(self, mapper: Mapper[Any], state: InstanceState[Any]) -> CounterContext | None:
        session = state.session
        if session is None:
            log.warning("Skipping counters for %s outside of a session", mapper.class_.__name__)
            return None
        context = counter_context(session)
        primary_key = _primary_key(mapper, state)
        identity = (mapper.base_mapper.class_, primary_key)
        if not context.claim(identity, session.get_nested_transaction()):
            log.debug("Counters for %s %r already handled", mapper.class_.__name__, primary_key)
            return None
        return context

    def _planner(self, connection: Connection) -> DeltaPlanner:
        reader = SqlAlchemyRecordReader(connection, self.catalog)
        return DeltaPlanner(self.registry, RelationResolver(self.catalog, reader))

    def _schedule(
        self,
        context: CounterContext,
        state: InstanceState[Any],
        connection: Connection,
        deltas: Iterable[CounterDelta],
    ) -> None:
        session = state.session
        scope = session.get_nested_transaction() if session is not None else None
        for delta in deltas:
            # unknown counter columns fail the flush rather than the commit
            self.catalog.counter_column(delta.target_type, delta.column)
            context.pending.append(PendingUpdate(connection.engine, self.catalog, delta, scope))
            log.debug(
                "Scheduled %s %s %s on %s %r",
                delta.column,
                delta.operator,
                delta.magnitude,
                delta.target_type.__name__,
                delta.primary_keys,
            )
