"""
In-Memory Storage Implementation

Dict-backed repositories for tests and for embedding the engine without a
database. Behaves like the SQL store where it matters:
- (recurring_template_id, occurrence_date) is unique, and inserting a
  duplicate slot is silently ignored
- a unit of work is all-or-nothing: state is snapshotted on entry and
  restored if the block raises

A single re-entrant lock is held for the duration of each unit of work,
so the store has exactly one writer at a time.
"""

import threading
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
from liquidity.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    NotFoundError,
    Store,
    TemplateRepository,
    TransactionRepository,
    UnitOfWork,
)


class InMemoryTemplateRepository(TemplateRepository):

    def __init__(self, rows: dict[UUID, RecurringTemplate]):
        self._rows = rows

    def get(self, template_id: UUID) -> Optional[RecurringTemplate]:
        row = self._rows.get(template_id)
        return row.model_copy() if row else None

    def list_templates(self, status: Optional[TemplateStatus] = None) -> list[RecurringTemplate]:
        rows = [
            row.model_copy()
            for row in self._rows.values()
            if status is None or row.status == status
        ]
        rows.sort(key=lambda t: t.created_at)
        return rows

    def add(self, template: RecurringTemplate) -> None:
        if template.id in self._rows:
            raise DuplicateError(f"Template already exists: {template.id}")
        self._rows[template.id] = template.model_copy()

    def update(self, template: RecurringTemplate) -> None:
        if template.id not in self._rows:
            raise NotFoundError(f"Template not found: {template.id}")
        self._rows[template.id] = template.model_copy()

    def delete(self, template_id: UUID) -> bool:
        return self._rows.pop(template_id, None) is not None


class InMemoryTransactionRepository(TransactionRepository):

    def __init__(self, rows: dict[UUID, Transaction]):
        self._rows = rows

    def get(self, transaction_id: UUID) -> Optional[Transaction]:
        row = self._rows.get(transaction_id)
        return row.model_copy() if row else None

    def update(self, transaction: Transaction) -> None:
        if transaction.id not in self._rows:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        self._rows[transaction.id] = transaction.model_copy()

    def list_by_template(self, template_id: UUID) -> list[Transaction]:
        rows = [
            row.model_copy()
            for row in self._rows.values()
            if row.recurring_template_id == template_id
        ]
        rows.sort(key=lambda t: (t.due_date, t.occurrence_date or t.due_date))
        return rows

    def occurrence_dates(self, template_id: UUID) -> set[date]:
        return {
            row.occurrence_date
            for row in self._rows.values()
            if row.recurring_template_id == template_id
            and row.occurrence_date is not None
        }

    def add_many(self, transactions: Iterable[Transaction]) -> int:
        slots = {
            (row.recurring_template_id, row.occurrence_date)
            for row in self._rows.values()
            if row.recurring_template_id is not None
        }
        inserted = 0
        for tx in transactions:
            if tx.id in self._rows:
                raise DuplicateError(f"Transaction already exists: {tx.id}")
            if tx.recurring_template_id is not None and tx.occurrence_date is not None:
                slot = (tx.recurring_template_id, tx.occurrence_date)
                if slot in slots:
                    continue
                slots.add(slot)
            self._rows[tx.id] = tx.model_copy()
            inserted += 1
        return inserted

    def delete_for_template(
        self,
        template_id: UUID,
        keep_statuses: Iterable[TransactionStatus] = (TransactionStatus.PAID,),
        due_on_or_after: Optional[date] = None,
    ) -> int:
        keep = set(keep_statuses)
        doomed = [
            row.id
            for row in self._rows.values()
            if row.recurring_template_id == template_id
            and row.status not in keep
            and (due_on_or_after is None or row.due_date >= due_on_or_after)
        ]
        for tx_id in doomed:
            del self._rows[tx_id]
        return len(doomed)

    def list_open(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        rows = []
        for row in self._rows.values():
            if not row.is_open:
                continue
            if date_from and row.due_date < date_from:
                continue
            if date_to and row.due_date > date_to:
                continue
            if transaction_type and row.type != transaction_type:
                continue
            rows.append(row.model_copy())
        rows.sort(key=lambda t: t.due_date)
        return rows


class InMemoryAuditStorage(AuditStorageInterface):

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def append_event(self, event: AuditEvent) -> bool:
        with self._lock:
            self._events.append(event)
        return True

    def get_events_by_entity(self, entity_id: UUID) -> list[AuditEvent]:
        with self._lock:
            return [e for e in self._events if e.entity_id == entity_id]

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        with self._lock:
            return list(reversed(self._events))[:limit]


class InMemoryUnitOfWork(UnitOfWork):

    def __init__(self, store: "InMemoryStore"):
        self._store = store
        self.templates = InMemoryTemplateRepository(store._templates)
        self.transactions = InMemoryTransactionRepository(store._transactions)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._store._lock.acquire()
        self._snapshot = (
            dict(self._store._templates),
            dict(self._store._transactions),
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None:
                templates, transactions = self._snapshot
                self._store._templates.clear()
                self._store._templates.update(templates)
                self._store._transactions.clear()
                self._store._transactions.update(transactions)
        finally:
            self._snapshot = None
            self._store._lock.release()


class InMemoryStore(Store):
    """Process-local store. Rows are copied in and out, never shared."""

    def __init__(self):
        self._templates: dict[UUID, RecurringTemplate] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._lock = threading.RLock()
        self._audit = InMemoryAuditStorage()

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)

    @property
    def audit(self) -> InMemoryAuditStorage:
        return self._audit
