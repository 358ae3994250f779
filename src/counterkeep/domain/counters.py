"""Counter declarations and the registry that holds them."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Collection, Hashable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from counterkeep.domain.errors import CounterConfigurationError, InvalidColumnConditionsError

if TYPE_CHECKING:
    from counterkeep.domain.records import Snapshot
    from counterkeep.domain.relations import Relation

log = logging.getLogger(__name__)

type ColumnNameFunction = Callable[[Snapshot], str | None]
# SQL text, or a callable building a boolean expression from the dependent selectable
type ColumnCondition = str | Callable[[Any], Any]
type ForeignKeyValues = Callable[[Hashable], Hashable | Collection[Hashable] | None]
type OnlySpec = str | Collection[str] | Mapping[int, str | Collection[str]]


@dataclass(frozen=True, slots=True)
class OnlyFilter:
    """Allowed type tags per chain position; positions not listed are unrestricted."""

    allowed: Mapping[int, frozenset[str]]

    @classmethod
    def build(cls, spec: OnlySpec | OnlyFilter | None) -> OnlyFilter | None:
        if spec is None or isinstance(spec, OnlyFilter):
            return spec
        if isinstance(spec, Mapping):
            allowed = {int(position): _tag_set(tags) for position, tags in spec.items()}
        else:
            allowed = {0: _tag_set(spec)}
        return cls(allowed=MappingProxyType(allowed))

    def allows(self, position: int, tag: str) -> bool:
        tags = self.allowed.get(position)
        return tags is None or tag in tags


def _tag_set(tags: str | Collection[str]) -> frozenset[str]:
    if isinstance(tags, str):
        return frozenset((tags,))
    return frozenset(tags)


def normalize_relation(relation: str | Collection[str]) -> Relation:
    if isinstance(relation, str):
        return (relation,)
    return tuple(relation)


@dataclass(frozen=True, slots=True, kw_only=True)
class CounterDefinition:
    """One counter maintained on the target of ``relation``."""

    record_type: type
    relation: Relation
    column_name: str | ColumnNameFunction
    column_names: Mapping[ColumnCondition | None, str] | None = None
    delta_column: str | None = None
    foreign_key_values: ForeignKeyValues | None = None
    touch: bool = False
    only: OnlyFilter | None = None

    def __post_init__(self) -> None:
        if not self.relation:
            raise CounterConfigurationError(
                f"Counter on {self.record_type.__name__} needs at least one relation step"
            )
        if self.column_names is not None:
            if not isinstance(self.column_names, Mapping):
                raise InvalidColumnConditionsError(
                    "column_names must be a mapping of conditions to column names"
                )
            for column in self.column_names.values():
                if not isinstance(column, str):
                    raise InvalidColumnConditionsError(
                        f"column_names values must be column names, got {column!r}"
                    )

    @property
    def is_dynamic(self) -> bool:
        return callable(self.column_name)

    @property
    def is_sum(self) -> bool:
        return self.delta_column is not None

    def column_for(self, record: Snapshot) -> str | None:
        if callable(self.column_name):
            return self.column_name(record)
        return self.column_name

    def delta_for(self, record: Snapshot) -> Any:
        if self.delta_column is None:
            return 1
        value = record.get(self.delta_column)
        return 0 if value is None else value

    def unsupported_reason(self) -> str | None:
        """Why reconciliation cannot handle this counter, if it cannot."""

        if self.foreign_key_values is not None:
            return (
                f"Fixing counters is not supported when using foreign_key_values "
                f"(relation {self.relation!r}); skip it with skip_unsupported=True"
            )
        if self.is_dynamic and self.column_names is None:
            return (
                f"Must provide column_names for relation {self.relation!r} when "
                f"column_name is a function; skip it with skip_unsupported=True"
            )
        return None

    def reconciled_columns(self) -> list[tuple[ColumnCondition | None, str]]:
        if self.column_names is not None:
            return list(self.column_names.items())
        if callable(self.column_name):
            raise InvalidColumnConditionsError(
                f"Relation {self.relation!r} has a dynamic column name and no column_names"
            )
        return [(None, self.column_name)]


def default_counter_name(record_type: type) -> str:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", record_type.__name__).lower()
    return f"{snake}s_count"


@dataclass(slots=True)
class CounterRegistry:
    """Ordered counter definitions per dependent record type.

    Built once at configuration time. Subscribers are told about every record
    type the first time a counter is declared on it; the SQLAlchemy adapter uses
    this to install its lifecycle hooks.
    """

    naming: Callable[[type], str] = default_counter_name
    _counters: dict[type, list[CounterDefinition]] = field(default_factory=dict)
    _subscribers: list[Callable[[type], None]] = field(default_factory=list)
    _frozen: bool = False

    def counter(
        self,
        record_type: type,
        relation: str | Collection[str],
        *,
        column_name: str | ColumnNameFunction | None = None,
        column_names: Mapping[ColumnCondition | None, str] | None = None,
        delta_column: str | None = None,
        foreign_key_values: ForeignKeyValues | None = None,
        touch: bool = False,
        only: OnlySpec | OnlyFilter | None = None,
    ) -> CounterDefinition:
        """Declare a counter on the target of ``relation`` for ``record_type`` rows."""

        if self._frozen:
            raise CounterConfigurationError(
                f"Counter registry is frozen; cannot declare counters on {record_type.__name__}"
            )
        definition = CounterDefinition(
            record_type=record_type,
            relation=normalize_relation(relation),
            column_name=column_name if column_name is not None else self.naming(record_type),
            column_names=column_names,
            delta_column=delta_column,
            foreign_key_values=foreign_key_values,
            touch=touch,
            only=OnlyFilter.build(only),
        )
        first = record_type not in self._counters
        self._counters.setdefault(record_type, []).append(definition)
        if first:
            for subscriber in self._subscribers:
                subscriber(record_type)
        return definition

    def subscribe(self, callback: Callable[[type], None]) -> None:
        """Call ``callback`` for every declared record type, now and in future."""

        self._subscribers.append(callback)
        for record_type in self._counters:
            callback(record_type)

    def counters_for(self, record_type: type) -> tuple[CounterDefinition, ...]:
        for klass in record_type.__mro__:
            counters = self._counters.get(klass)
            if counters:
                return tuple(counters)
        return ()

    def record_types(self) -> tuple[type, ...]:
        return tuple(self._counters)

    def freeze(self) -> None:
        self._frozen = True
        log.debug("Counter registry frozen with %d record types", len(self._counters))

    @property
    def frozen(self) -> bool:
        return self._frozen
