"""
Data Models Package

This package contains all Pydantic models used in the Liquidity Planner.
All data flowing through the system must conform to these schemas.
"""

from liquidity.models.recurring import (
    Frequency,
    ReconciliationResult,
    RecurringTemplate,
    TemplateChanges,
    TemplateInput,
    TemplateStatus,
    TemplateSummary,
    TopUpResult,
    Transaction,
    TransactionChanges,
    TransactionStatus,
    TransactionType,
    ValidationIssue,
    ValidationResult,
)
from liquidity.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Recurring models
    "Frequency",
    "ReconciliationResult",
    "RecurringTemplate",
    "TemplateChanges",
    "TemplateInput",
    "TemplateStatus",
    "TemplateSummary",
    "TopUpResult",
    "Transaction",
    "TransactionChanges",
    "TransactionStatus",
    "TransactionType",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
