"""
Core Data Models for Liquidity Planner

These models define the strict schemas for all data flowing through the system.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage, logging and JSON responses
4. Support the audit trail

DESIGN DECISION: User input (TemplateInput, *Changes) is modelled separately
from persisted records (RecurringTemplate, Transaction). Input models are
lenient so the validator can report every problem at once; persisted models
are strict and can never hold an invalid template or occurrence.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of a cash movement."""
    PAYMENT = "payment"
    EARNING = "earning"


class Frequency(str, Enum):
    """How often a template produces an occurrence."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class TemplateStatus(str, Enum):
    """
    Template lifecycle status.

    Deletion is terminal and is represented by the row disappearing,
    not by a status value.
    """
    ACTIVE = "active"
    PAUSED = "paused"


class TransactionStatus(str, Enum):
    """
    Payment status of a transaction.

    to_pay <-> postponed is reversible.
    paid and skipped are terminal.
    """
    TO_PAY = "to_pay"
    POSTPONED = "postponed"
    PAID = "paid"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.PAID, TransactionStatus.SKIPPED)


# =============================================================================
# PERSISTED RECORDS
# =============================================================================

class RecurringTemplate(BaseModel):
    """
    A recurring-generation rule.

    CRITICAL: end_date and occurrences_count are alternative end conditions.
    When both are present, end_date wins and occurrences_count is ignored
    by generation (see effective_occurrences_count).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique template ID"
    )

    type: TransactionType = Field(
        default=TransactionType.PAYMENT,
        description="Payment or earning"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Amount of every generated occurrence"
    )
    currency: str = Field(
        default="EUR",
        min_length=1,
        max_length=10,
        description="Currency code"
    )
    frequency: Frequency
    start_date: date = Field(
        ...,
        description="Date of the first occurrence"
    )

    # End conditions
    end_date: Optional[date] = None
    occurrences_count: Optional[int] = Field(
        default=None,
        ge=1,
        description="Total number of occurrences the series may ever hold"
    )

    # Counterparty (referential only - existence is not checked here)
    company_id: str = Field(
        ...,
        min_length=1,
        description="Owning company ID"
    )
    payee: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Who is paid, or who pays"
    )
    reference: Optional[str] = Field(
        default=None,
        max_length=200
    )
    category_id: Optional[str] = None

    # Lifecycle
    status: TemplateStatus = Field(
        default=TemplateStatus.ACTIVE,
        description="Template status"
    )
    last_generated_date: Optional[date] = Field(
        default=None,
        description="Watermark: latest occurrence date held by the series"
    )
    generate_from: Optional[date] = Field(
        default=None,
        description="Regeneration floor: slots before it are never generated"
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="When the template was created"
    )

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def validate_dates(self) -> "RecurringTemplate":
        """Validate date relationships."""
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == TemplateStatus.ACTIVE

    @property
    def effective_occurrences_count(self) -> Optional[int]:
        """Occurrence cap actually applied by generation."""
        if self.end_date is not None:
            return None
        return self.occurrences_count


class Transaction(BaseModel):
    """
    A dated payment or earning.

    Occurrences generated from a template carry recurring_template_id and an
    immutable occurrence_date (the slot they fill). One-off transactions
    have neither.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique transaction ID"
    )
    type: TransactionType = TransactionType.PAYMENT
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="EUR", min_length=1, max_length=10)
    due_date: date
    company_id: Optional[str] = None
    payee: str = Field(..., min_length=1, max_length=200)
    reference: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.TO_PAY

    # Recurrence linkage
    recurring_template_id: Optional[UUID] = None
    is_recurring: bool = False
    is_exception: bool = Field(
        default=False,
        description="Edited independently of its template"
    )
    occurrence_date: Optional[date] = Field(
        default=None,
        description="Generation slot; unique per template"
    )

    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def validate_exception_dates(self) -> "Transaction":
        """Only exceptions may be rescheduled away from their slot."""
        if (
            self.occurrence_date is not None
            and not self.is_exception
            and self.due_date != self.occurrence_date
        ):
            raise ValueError(
                "Due date can only differ from the occurrence date on an exception"
            )
        return self

    @property
    def is_open(self) -> bool:
        """Still expected to move money (counts towards forecasts)."""
        return not self.status.is_terminal


# =============================================================================
# INPUT MODELS
# =============================================================================

class TemplateInput(BaseModel):
    """
    Proposed template data, as submitted by a caller.

    All fields are optional so the validator can report every missing
    field together instead of stopping at the first one.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: TransactionType = TransactionType.PAYMENT
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    occurrences_count: Optional[int] = None
    company_id: Optional[str] = None
    payee: Optional[str] = None
    reference: Optional[str] = None
    category_id: Optional[str] = None


class TemplateChanges(BaseModel):
    """
    Series-level edit.

    Only fields explicitly set by the caller are applied, so an optional
    field can be cleared by passing None.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    occurrences_count: Optional[int] = None
    company_id: Optional[str] = None
    payee: Optional[str] = None
    reference: Optional[str] = None
    category_id: Optional[str] = None

    def applied(self) -> dict:
        return self.model_dump(exclude_unset=True)


class TransactionChanges(BaseModel):
    """
    Single-instance edit.

    status and occurrence_date are deliberately absent: status moves
    through the state machine and the occurrence slot never changes.
    """
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None
    company_id: Optional[str] = None
    payee: Optional[str] = None
    reference: Optional[str] = None
    category_id: Optional[str] = None

    def applied(self) -> dict:
        return self.model_dump(exclude_unset=True)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'conflict')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (types, required fields)
    Stage 2: Semantic validation (business rules)
    """

    subject: str = Field(
        ...,
        description="What was validated (e.g. 'template', 'template:<id>')"
    )
    schema_valid: bool
    semantic_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.schema_valid and self.semantic_valid

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warnings(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.severity == "warning"]


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class ReconciliationResult(BaseModel):
    """
    Outcome of one engine mutation.

    Serialises to JSON with model_dump(mode="json").
    """

    operation: str
    template: Optional[RecurringTemplate] = None
    transaction: Optional[Transaction] = None
    generated_count: int = Field(default=0, ge=0)
    deleted_count: int = Field(default=0, ge=0)
    warnings: list[str] = Field(default_factory=list)
    truncated: bool = Field(
        default=False,
        description="Generation stopped at the iteration cap"
    )


class TopUpResult(BaseModel):
    """Outcome of a top-up run across templates."""

    templates_processed: int = Field(default=0, ge=0)
    generated_count: int = Field(default=0, ge=0)
    generated_by_template: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    truncated: bool = False
    deferred_template_ids: list[UUID] = Field(
        default_factory=list,
        description="Templates not reached before the run's time budget ran out"
    )


class TemplateSummary(BaseModel):
    """Portfolio view of recurring templates."""

    active_count: int = 0
    paused_count: int = 0
    # Monthly-equivalent totals of active templates, keyed by currency
    monthly_payments: dict[str, Decimal] = Field(default_factory=dict)
    monthly_earnings: dict[str, Decimal] = Field(default_factory=dict)
