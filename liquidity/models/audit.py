"""
Audit Models for Liquidity Planner

Every mutation of a template or its occurrences is logged for audit purposes.
This provides:
1. Complete traceability of generated, deleted and edited occurrences
2. Debugging information when generation behaves unexpectedly
3. A record of truncated runs (the iteration cap)

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Template lifecycle
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_PAUSED = "template_paused"
    TEMPLATE_RESUMED = "template_resumed"
    TEMPLATE_DELETED = "template_deleted"

    # Occurrences
    OCCURRENCES_GENERATED = "occurrences_generated"
    OCCURRENCES_DELETED = "occurrences_deleted"
    INSTANCE_EDITED = "instance_edited"
    OCCURRENCE_SKIPPED = "occurrence_skipped"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"

    # Maintenance
    TOP_UP_COMPLETED = "top_up_completed"
    GENERATION_LIMIT_EXCEEDED = "generation_limit_exceeded"

    # Failures
    VALIDATION_FAILED = "validation_failed"
    PERSISTENCE_FAILED = "persistence_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every engine mutation creates at least one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity ('template', 'transaction', 'run')"
    )
    entity_id: Optional[UUID] = None

    # Correlation - one id per engine operation
    correlation_id: Optional[UUID] = None

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_row(self) -> dict:
        """Flatten to column values for the audit_events table."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": self.correlation_id,
            "description": self.description,
            "details_json": json.dumps(self.details, default=str) if self.details else "",
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.template_created(template_id, payee, correlation_id)
        event = AuditEventBuilder.occurrences_generated(template_id, 12, last, correlation_id)
    """

    @staticmethod
    def template_created(
        template_id: UUID,
        payee: str,
        frequency: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_CREATED,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Recurring template created: {payee} ({frequency})",
            details={"payee": payee, "frequency": frequency},
        )

    @staticmethod
    def template_updated(
        template_id: UUID,
        fields: list[str],
        regenerate_future: bool,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_UPDATED,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Template updated: {', '.join(fields) or 'no fields'}",
            details={"fields": fields, "regenerate_future": regenerate_future},
        )

    @staticmethod
    def template_status_changed(
        template_id: UUID,
        status: str,
        correlation_id: UUID
    ) -> AuditEvent:
        event_type = (
            AuditEventType.TEMPLATE_PAUSED
            if status == "paused"
            else AuditEventType.TEMPLATE_RESUMED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Template {status}",
            details={"status": status},
        )

    @staticmethod
    def template_deleted(
        template_id: UUID,
        deleted_occurrences: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_DELETED,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=(
                f"Template deleted with {deleted_occurrences} unpaid occurrences; "
                "paid occurrences retained"
            ),
            details={"deleted_occurrences": deleted_occurrences},
        )

    @staticmethod
    def occurrences_generated(
        template_id: UUID,
        count: int,
        last_date: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCES_GENERATED,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Generated {count} occurrences",
            details={"count": count, "last_date": last_date},
        )

    @staticmethod
    def occurrences_deleted(
        template_id: UUID,
        count: int,
        from_date: Optional[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCES_DELETED,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Deleted {count} unpaid occurrences",
            details={"count": count, "from_date": from_date},
        )

    @staticmethod
    def instance_edited(
        transaction_id: UUID,
        fields: list[str],
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSTANCE_EDITED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Occurrence edited as an exception",
            details={"fields": fields},
        )

    @staticmethod
    def transaction_status_changed(
        transaction_id: UUID,
        old_status: str,
        new_status: str,
        correlation_id: UUID
    ) -> AuditEvent:
        event_type = (
            AuditEventType.OCCURRENCE_SKIPPED
            if new_status == "skipped"
            else AuditEventType.TRANSACTION_STATUS_CHANGED
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Status changed: {old_status} -> {new_status}",
            details={"old_status": old_status, "new_status": new_status},
        )

    @staticmethod
    def top_up_completed(
        templates_processed: int,
        generated: int,
        deferred: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TOP_UP_COMPLETED,
            severity=AuditSeverity.WARNING if deferred else AuditSeverity.INFO,
            entity_type="run",
            correlation_id=correlation_id,
            description=(
                f"Top-up processed {templates_processed} templates, "
                f"generated {generated} occurrences"
            ),
            details={
                "templates_processed": templates_processed,
                "generated": generated,
                "deferred": deferred,
            },
        )

    @staticmethod
    def generation_limit_exceeded(
        template_id: UUID,
        max_iterations: int,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GENERATION_LIMIT_EXCEEDED,
            severity=AuditSeverity.WARNING,
            entity_type="template",
            entity_id=template_id,
            correlation_id=correlation_id,
            description=f"Generation stopped after {max_iterations} iterations",
            details={"max_iterations": max_iterations},
        )

    @staticmethod
    def validation_failed(
        subject: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="validation",
            correlation_id=correlation_id,
            description=f"Validation of {subject} failed with {len(issues)} issues",
            details={"subject": subject, "issues": issues},
        )

    @staticmethod
    def persistence_failed(
        operation: str,
        error_message: str,
        entity_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERSISTENCE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Persistence failed during {operation}; changes rolled back",
            error_message=error_message,
            details={"operation": operation},
        )
