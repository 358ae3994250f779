"""Errors raised for mis-declared counters."""

from __future__ import annotations

from counterkeep.config.errors import ConfigurationError


class CounterConfigurationError(ConfigurationError):
    """Base class for programming mistakes in declared counters."""


class UnknownRelationError(CounterConfigurationError):
    """Raised when a relation chain names a step the record type does not have."""


class NoCountersDefinedError(CounterConfigurationError):
    """Raised when reconciliation is requested for a type without counters."""


class UnsupportedCounterError(CounterConfigurationError):
    """Raised when a counter cannot be reconciled with an aggregation query."""


class InvalidColumnConditionsError(CounterConfigurationError):
    """Raised when ``column_names`` is not a mapping of conditions to column names."""
