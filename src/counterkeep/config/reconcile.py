"""Defaults for the counter reconciliation pass."""

from __future__ import annotations

from dataclasses import dataclass

from .env import optional_positive_int

DEFAULT_FIX_BATCH_SIZE = 1000


@dataclass(frozen=True, slots=True)
class ReconcileConfig:
    batch_size: int = DEFAULT_FIX_BATCH_SIZE


def get_reconcile_config() -> ReconcileConfig:
    return ReconcileConfig(
        batch_size=optional_positive_int("COUNTERKEEP_FIX_BATCH_SIZE", DEFAULT_FIX_BATCH_SIZE),
    )
