"""
Abstract Storage Interface

DESIGN DECISION: We define abstract repositories for storage operations.
This allows us to:
1. Keep the reconciliation engine free of any database handle
2. Use in-memory storage for testing
3. Swap SQLite for another SQL database through SQLAlchemy
4. Keep business logic decoupled from storage implementation

Repositories are always reached through a UnitOfWork, which is the
transaction boundary: every write made inside one ``with uow:`` block is
committed together or rolled back together.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable, Optional
from uuid import UUID

from liquidity.models.audit import AuditEvent
from liquidity.models.recurring import (
    RecurringTemplate,
    TemplateStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)


class TemplateRepository(ABC):
    """Persistence for RecurringTemplate rows."""

    @abstractmethod
    def get(self, template_id: UUID) -> Optional[RecurringTemplate]:
        """Return the template, or None if it does not exist."""
        pass

    @abstractmethod
    def list_templates(self, status: Optional[TemplateStatus] = None) -> list[RecurringTemplate]:
        """List templates, oldest first, optionally filtered by status."""
        pass

    @abstractmethod
    def add(self, template: RecurringTemplate) -> None:
        """
        Insert a new template.

        Raises:
            DuplicateError: If the id is already used
        """
        pass

    @abstractmethod
    def update(self, template: RecurringTemplate) -> None:
        """
        Replace a stored template.

        Raises:
            NotFoundError: If the template doesn't exist
        """
        pass

    @abstractmethod
    def delete(self, template_id: UUID) -> bool:
        """Delete a template. Returns False if it did not exist."""
        pass


class TransactionRepository(ABC):
    """Persistence for Transaction rows (one-off and recurring)."""

    @abstractmethod
    def get(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    def update(self, transaction: Transaction) -> None:
        """
        Replace a stored transaction.

        Raises:
            NotFoundError: If the transaction doesn't exist
        """
        pass

    @abstractmethod
    def list_by_template(self, template_id: UUID) -> list[Transaction]:
        """All transactions of a template, ordered by due date."""
        pass

    @abstractmethod
    def occurrence_dates(self, template_id: UUID) -> set[date]:
        """The occurrence_date of every stored row of a template, any status."""
        pass

    @abstractmethod
    def add_many(self, transactions: Iterable[Transaction]) -> int:
        """
        Insert transactions, ignoring any whose
        (recurring_template_id, occurrence_date) is already stored.

        Returns:
            Number of rows actually inserted
        """
        pass

    @abstractmethod
    def delete_for_template(
        self,
        template_id: UUID,
        keep_statuses: Iterable[TransactionStatus] = (TransactionStatus.PAID,),
        due_on_or_after: Optional[date] = None,
    ) -> int:
        """
        Delete a template's transactions except those in keep_statuses,
        optionally only those due on or after a date.

        Returns:
            Number of rows deleted
        """
        pass

    @abstractmethod
    def list_open(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        """Transactions that are neither paid nor skipped, ordered by due date."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        pass

    @abstractmethod
    def get_events_by_entity(self, entity_id: UUID) -> list[AuditEvent]:
        """Events for one entity in chronological order."""
        pass

    @abstractmethod
    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class UnitOfWork(ABC):
    """
    Transaction boundary over both repositories.

    Usage:
        with store.unit_of_work() as uow:
            uow.templates.add(template)
            uow.transactions.add_many(drafts)

    Leaving the block normally commits; an exception rolls back every
    write made inside the block and propagates.
    """

    templates: TemplateRepository
    transactions: TransactionRepository

    @abstractmethod
    def __enter__(self) -> "UnitOfWork":
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc, tb) -> None:
        pass


class Store(ABC):
    """A persistence backend able to open units of work."""

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork:
        pass

    @property
    @abstractmethod
    def audit(self) -> AuditStorageInterface:
        pass


class PersistenceError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(PersistenceError):
    """Entity not found in storage."""
    pass


class DuplicateError(PersistenceError):
    """Attempted to insert a duplicate entity."""
    pass
