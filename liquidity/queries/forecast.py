"""
Forecast Queries

DESIGN DECISION: Queries are read-only and deterministic. They only
report rows that exist in storage; nothing here projects occurrences
that have not been generated yet.

"Open" means still expected to move money: paid and skipped rows are
excluded from every forecast.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from liquidity.models.recurring import (
    Frequency,
    RecurringTemplate,
    TemplateStatus,
    TemplateSummary,
    Transaction,
    TransactionType,
)
from liquidity.services.storage import Store


# Converts one occurrence's amount into a monthly equivalent
MONTHLY_FACTOR = {
    Frequency.WEEKLY: Decimal("4.33"),
    Frequency.MONTHLY: Decimal("1"),
    Frequency.QUARTERLY: Decimal("1") / Decimal("3"),
    Frequency.YEARLY: Decimal("1") / Decimal("12"),
}

CENTS = Decimal("0.01")


class ForecastQueries:
    """
    Read-side views over templates and their occurrences.

    GUARANTEES:
    - Only returns stored rows
    - Never mutates storage
    """

    def __init__(self, store: Store):
        self._store = store

    def unpaid(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        """Open transactions (neither paid nor skipped), by due date."""
        with self._store.unit_of_work() as uow:
            return uow.transactions.list_open(
                date_from=date_from,
                date_to=date_to,
                transaction_type=transaction_type,
            )

    def series(self, template_id: UUID) -> list[Transaction]:
        """Every stored row of a template, by due date."""
        with self._store.unit_of_work() as uow:
            return uow.transactions.list_by_template(template_id)

    def next_due_date(self, template_id: UUID) -> Optional[date]:
        """Earliest due date among a template's open occurrences."""
        open_dates = [tx.due_date for tx in self.series(template_id) if tx.is_open]
        return min(open_dates) if open_dates else None

    def describe(self, template: RecurringTemplate, transaction_count: Optional[int] = None) -> str:
        """
        One-line schedule description.

        Examples:
            "Monthly (3 remaining)"
            "Weekly (until 2024-12-31)"
            "Yearly (Ongoing)"
        """
        label = template.frequency.label
        if template.end_date is not None:
            return f"{label} (until {template.end_date.isoformat()})"
        if template.occurrences_count is not None:
            if transaction_count is None:
                transaction_count = len(self.series(template.id))
            remaining = max(template.occurrences_count - transaction_count, 0)
            return f"{label} ({remaining} remaining)"
        return f"{label} (Ongoing)"

    def summarize(self) -> TemplateSummary:
        """
        Counts by status, plus monthly-equivalent totals of active
        templates per type and currency.
        """
        with self._store.unit_of_work() as uow:
            templates = uow.templates.list_templates()

        summary = TemplateSummary()
        for template in templates:
            if template.status == TemplateStatus.PAUSED:
                summary.paused_count += 1
                continue
            summary.active_count += 1

            totals = (
                summary.monthly_payments
                if template.type == TransactionType.PAYMENT
                else summary.monthly_earnings
            )
            monthly = template.amount * MONTHLY_FACTOR[template.frequency]
            totals[template.currency] = totals.get(template.currency, Decimal("0")) + monthly

        for totals in (summary.monthly_payments, summary.monthly_earnings):
            for currency, amount in totals.items():
                totals[currency] = amount.quantize(CENTS, rounding=ROUND_HALF_UP)

        return summary
