"""Relationship steps and the values produced by walking them."""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True, slots=True, kw_only=True)
class ForeignKeyStep:
    """A hop whose target type is fixed by the schema."""

    name: str
    source: type
    foreign_key: str
    target: type
    polymorphic: Literal[False] = False


@dataclass(frozen=True, slots=True, kw_only=True)
class PolymorphicStep:
    """A hop whose target type is stored per row next to the foreign key."""

    name: str
    source: type
    foreign_key: str
    foreign_type: str
    polymorphic: Literal[True] = True


type RelationStep = ForeignKeyStep | PolymorphicStep
type Relation = tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ResolvedTarget:
    """The row a counter change applies to."""

    target_type: type
    primary_key: Hashable


@dataclass(frozen=True, slots=True)
class ChainLevel:
    """All steps taken at one position of a chain during static resolution.

    ``steps`` holds one step per possible source type (several when the previous
    level was polymorphic); ``targets`` lists every concrete type reachable at
    this position after ``only`` filtering.
    """

    position: int
    steps: tuple[RelationStep, ...]
    targets: tuple[type, ...]

    @property
    def polymorphic(self) -> bool:
        return self.steps[0].polymorphic


@dataclass(frozen=True, slots=True, kw_only=True)
class FixRecord:
    """One stored counter value corrected by reconciliation."""

    entity: type
    primary_key: Hashable
    column: str
    wrong_value: object
    correct_value: object
