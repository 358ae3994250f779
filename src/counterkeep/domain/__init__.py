"""Counter declarations, relation resolution and delta planning."""

from __future__ import annotations

from .counters import CounterDefinition, CounterRegistry, OnlyFilter
from .deltas import CounterDelta, DeltaPlanner
from .errors import (
    CounterConfigurationError,
    InvalidColumnConditionsError,
    NoCountersDefinedError,
    UnknownRelationError,
    UnsupportedCounterError,
)
from .records import RecordChange, Snapshot
from .relations import (
    ChainLevel,
    FixRecord,
    ForeignKeyStep,
    PolymorphicStep,
    RelationStep,
    ResolvedTarget,
)
from .resolver import RelationResolver

__all__ = [
    "ChainLevel",
    "CounterConfigurationError",
    "CounterDefinition",
    "CounterDelta",
    "CounterRegistry",
    "DeltaPlanner",
    "FixRecord",
    "ForeignKeyStep",
    "InvalidColumnConditionsError",
    "NoCountersDefinedError",
    "OnlyFilter",
    "PolymorphicStep",
    "RecordChange",
    "RelationResolver",
    "RelationStep",
    "ResolvedTarget",
    "Snapshot",
    "UnknownRelationError",
    "UnsupportedCounterError",
]
