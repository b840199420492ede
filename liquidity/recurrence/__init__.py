"""Recurrence package: calendar stepping and occurrence generation."""

from liquidity.recurrence.dates import (
    AnchorMode,
    add_months,
    default_horizon,
    next_occurrence,
)
from liquidity.recurrence.generator import (
    GenerationLimitExceeded,
    GenerationOutcome,
    OccurrenceGenerator,
    generate_occurrences,
)

__all__ = [
    "AnchorMode",
    "GenerationLimitExceeded",
    "GenerationOutcome",
    "OccurrenceGenerator",
    "add_months",
    "default_horizon",
    "generate_occurrences",
    "next_occurrence",
]
