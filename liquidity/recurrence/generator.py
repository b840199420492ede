"""
Occurrence Generator

Turns a RecurringTemplate into the draft transactions that are missing from
its series, up to a horizon.

DESIGN DECISION: Generation is a pure function of
(template, horizon, existing occurrence dates). It performs no I/O and
reads no clock, which makes repeated invocations trivially idempotent:
a date already present in existing_dates is never emitted again.

The walk always starts at template.start_date. Dates before the watermark
are re-examined but deduplicated, which is what lets a resumed template
fill the gap it left while paused.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import AbstractSet, Optional

from liquidity.models.recurring import (
    RecurringTemplate,
    Transaction,
    TransactionStatus,
)
from liquidity.recurrence.dates import AnchorMode, next_occurrence


DEFAULT_MAX_ITERATIONS = 1000


class GenerationLimitExceeded(UserWarning):
    """
    The iteration safety cap stopped generation for a template.

    This is a warning, not a failure: the drafts produced before the cap
    form a consistent prefix of the series and are still persisted.
    """

    def __init__(self, template_id, max_iterations: int):
        self.template_id = template_id
        self.max_iterations = max_iterations
        super().__init__(
            f"Generation for template {template_id} stopped after "
            f"{max_iterations} iterations; the series may be incomplete"
        )


@dataclass
class GenerationOutcome:
    """Drafts produced by one generation call."""
    drafts: list[Transaction] = field(default_factory=list)
    iterations: int = 0
    limit_exceeded: bool = False

    @property
    def last_date(self) -> Optional[date]:
        return self.drafts[-1].occurrence_date if self.drafts else None


def build_draft(template: RecurringTemplate, occurrence_date: date) -> Transaction:
    """A fresh to_pay occurrence of template for one slot."""
    return Transaction(
        type=template.type,
        amount=template.amount,
        currency=template.currency,
        due_date=occurrence_date,
        company_id=template.company_id,
        payee=template.payee,
        reference=template.reference,
        category_id=template.category_id,
        status=TransactionStatus.TO_PAY,
        recurring_template_id=template.id,
        is_recurring=True,
        is_exception=False,
        occurrence_date=occurrence_date,
    )


def generate_occurrences(
    template: RecurringTemplate,
    horizon: date,
    existing_dates: AbstractSet[date] = frozenset(),
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    anchor_mode: AnchorMode = AnchorMode.PREVIOUS,
    not_before: Optional[date] = None,
) -> GenerationOutcome:
    """
    Generate the occurrences of template that are not yet persisted.

    Args:
        template: The template to expand
        horizon: Last date (inclusive) that may be generated
        existing_dates: occurrence_date values already stored for template
        max_iterations: Maximum number of candidate dates examined
        anchor_mode: Month-end anchoring rule for month-based frequencies
        not_before: Dates before this are walked but never emitted

    Returns:
        GenerationOutcome with drafts in ascending date order
    """
    outcome = GenerationOutcome()
    count_cap = template.effective_occurrences_count
    current = template.start_date

    while True:
        if current > horizon:
            break
        if template.end_date is not None and current > template.end_date:
            break
        if count_cap is not None and len(existing_dates) + len(outcome.drafts) >= count_cap:
            break
        if outcome.iterations >= max_iterations:
            outcome.limit_exceeded = True
            break

        outcome.iterations += 1
        if current not in existing_dates and (not_before is None or current >= not_before):
            outcome.drafts.append(build_draft(template, current))

        current = next_occurrence(
            current,
            template.frequency,
            anchor_mode=anchor_mode,
            start_date=template.start_date,
        )

    return outcome


class OccurrenceGenerator:
    """
    Configured generator used by the reconciliation engine.

    Holds the iteration cap and anchor mode so callers only pass the
    per-call inputs.
    """

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        anchor_mode: AnchorMode = AnchorMode.PREVIOUS,
    ):
        self.max_iterations = max_iterations
        self.anchor_mode = AnchorMode(anchor_mode)

    def generate(
        self,
        template: RecurringTemplate,
        horizon: date,
        existing_dates: AbstractSet[date] = frozenset(),
        not_before: Optional[date] = None,
    ) -> GenerationOutcome:
        return generate_occurrences(
            template,
            horizon,
            existing_dates,
            not_before=not_before,
            max_iterations=self.max_iterations,
            anchor_mode=self.anchor_mode,
        )
