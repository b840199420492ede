"""
Audit Logger

DESIGN DECISION: Every mutation the engine performs is logged.
This provides:
1. Complete traceability of each template's series
2. Debugging capability when a top-up generates unexpected dates
3. A persisted record of truncated and failed runs

The audit logger:
- Gracefully handles failures (an audit write never fails an operation)
- Supports correlation IDs to trace the events of one engine call
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from liquidity.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from liquidity.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("liquidity.audit")

    def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    def log_occurrences_generated(
        self,
        template_id: UUID,
        count: int,
        last_date: Optional[str],
        correlation_id: UUID,
    ) -> None:
        """Log a batch of generated occurrences. Empty batches are not logged."""
        if count == 0:
            return
        self.log(AuditEventBuilder.occurrences_generated(
            template_id=template_id,
            count=count,
            last_date=last_date,
            correlation_id=correlation_id,
        ))

    def log_occurrences_deleted(
        self,
        template_id: UUID,
        count: int,
        from_date: Optional[str],
        correlation_id: UUID,
    ) -> None:
        if count == 0:
            return
        self.log(AuditEventBuilder.occurrences_deleted(
            template_id=template_id,
            count=count,
            from_date=from_date,
            correlation_id=correlation_id,
        ))

    def log_generation_limit_exceeded(
        self,
        template_id: UUID,
        max_iterations: int,
        correlation_id: UUID,
    ) -> None:
        self.log(AuditEventBuilder.generation_limit_exceeded(
            template_id=template_id,
            max_iterations=max_iterations,
            correlation_id=correlation_id,
        ))

    def log_validation_failed(
        self,
        subject: str,
        issues: list[dict],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log validation failure."""
        self.log(AuditEventBuilder.validation_failed(
            subject=subject,
            issues=issues,
            correlation_id=correlation_id,
        ))

    def log_persistence_failed(
        self,
        operation: str,
        error_message: str,
        entity_id: Optional[UUID] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rolled-back operation."""
        self.log(AuditEventBuilder.persistence_failed(
            operation=operation,
            error_message=error_message,
            entity_id=entity_id,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    The engine creates one per public operation and passes it to every
    event that operation emits.
    """
    return uuid4()
