"""
SQL Storage Implementation (SQLAlchemy)

DESIGN DECISION: SQLAlchemy Core tables rather than ORM entities. The
pydantic models already are the domain objects; the tables only need to
round-trip them.

Invariants enforced by the schema:
- UNIQUE (recurring_template_id, occurrence_date): a slot can be filled
  only once. Inserts use ON CONFLICT DO NOTHING, so two racing
  generations for one template can never both insert the same date.
- transactions.recurring_template_id carries no foreign key: paid
  occurrences outlive their template with a dangling reference.

Amounts are stored as text to keep Decimal precision on SQLite.
"""

import json
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from liquidity.config import get_settings
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
    PersistenceError,
    Store,
    TemplateRepository,
    TransactionRepository,
    UnitOfWork,
)


class UUIDString(TypeDecorator):
    """UUID stored as String(36) for cross-database portability."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return UUID(value)
        return None


class DecimalString(TypeDecorator):
    """Decimal stored as its exact string form."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return Decimal(value)
        return None


metadata = MetaData()

templates_table = Table(
    "recurring_templates",
    metadata,
    Column("id", UUIDString, primary_key=True),
    Column("type", String(16), nullable=False),
    Column("amount", DecimalString, nullable=False),
    Column("currency", String(10), nullable=False),
    Column("frequency", String(16), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("occurrences_count", Integer),
    Column("company_id", String(64), nullable=False),
    Column("payee", String(200), nullable=False),
    Column("reference", String(200)),
    Column("category_id", String(64)),
    Column("status", String(16), nullable=False),
    Column("last_generated_date", Date),
    Column("generate_from", Date),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

transactions_table = Table(
    "transactions",
    metadata,
    Column("id", UUIDString, primary_key=True),
    Column("type", String(16), nullable=False),
    Column("amount", DecimalString, nullable=False),
    Column("currency", String(10), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("company_id", String(64)),
    Column("payee", String(200), nullable=False),
    Column("reference", String(200)),
    Column("category_id", String(64)),
    Column("status", String(16), nullable=False),
    Column("recurring_template_id", UUIDString),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("is_exception", Boolean, nullable=False, default=False),
    Column("occurrence_date", Date),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint(
        "recurring_template_id",
        "occurrence_date",
        name="uq_transactions_template_occurrence",
    ),
    Index("ix_transactions_due_date", "due_date"),
)

audit_events_table = Table(
    "audit_events",
    metadata,
    Column("event_id", UUIDString, primary_key=True),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("entity_type", String(32)),
    Column("entity_id", UUIDString),
    Column("correlation_id", UUIDString),
    Column("description", String(500), nullable=False),
    Column("details_json", Text),
    Column("error_message", Text),
    Index("ix_audit_events_entity", "entity_id"),
)

OPEN_STATUSES = (TransactionStatus.TO_PAY.value, TransactionStatus.POSTPONED.value)


def _to_row(model) -> dict:
    """Dump a model to column values (enums flattened to their values)."""
    return {
        key: value.value if isinstance(value, Enum) else value
        for key, value in model.model_dump().items()
    }


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as storage exceptions."""
    try:
        yield
    except IntegrityError as e:
        raise DuplicateError(f"Failed to {action}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to {action}: {e}") from e


class SqlTemplateRepository(TemplateRepository):

    def __init__(self, conn: Connection):
        self._conn = conn

    def get(self, template_id: UUID) -> Optional[RecurringTemplate]:
        with _translate_errors("get template"):
            row = self._conn.execute(
                select(templates_table).where(templates_table.c.id == template_id)
            ).mappings().first()
        return RecurringTemplate.model_validate(dict(row)) if row else None

    def list_templates(self, status: Optional[TemplateStatus] = None) -> list[RecurringTemplate]:
        query = select(templates_table).order_by(templates_table.c.created_at)
        if status is not None:
            query = query.where(templates_table.c.status == status.value)
        with _translate_errors("list templates"):
            rows = self._conn.execute(query).mappings().all()
        return [RecurringTemplate.model_validate(dict(row)) for row in rows]

    def add(self, template: RecurringTemplate) -> None:
        with _translate_errors("save template"):
            self._conn.execute(insert(templates_table).values(**_to_row(template)))

    def update(self, template: RecurringTemplate) -> None:
        values = _to_row(template)
        values.pop("id")
        with _translate_errors("update template"):
            result = self._conn.execute(
                update(templates_table)
                .where(templates_table.c.id == template.id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise NotFoundError(f"Template not found: {template.id}")

    def delete(self, template_id: UUID) -> bool:
        with _translate_errors("delete template"):
            result = self._conn.execute(
                delete(templates_table).where(templates_table.c.id == template_id)
            )
        return result.rowcount > 0


class SqlTransactionRepository(TransactionRepository):

    def __init__(self, conn: Connection):
        self._conn = conn

    def get(self, transaction_id: UUID) -> Optional[Transaction]:
        with _translate_errors("get transaction"):
            row = self._conn.execute(
                select(transactions_table).where(transactions_table.c.id == transaction_id)
            ).mappings().first()
        return Transaction.model_validate(dict(row)) if row else None

    def update(self, transaction: Transaction) -> None:
        values = _to_row(transaction)
        values.pop("id")
        with _translate_errors("update transaction"):
            result = self._conn.execute(
                update(transactions_table)
                .where(transactions_table.c.id == transaction.id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise NotFoundError(f"Transaction not found: {transaction.id}")

    def list_by_template(self, template_id: UUID) -> list[Transaction]:
        query = (
            select(transactions_table)
            .where(transactions_table.c.recurring_template_id == template_id)
            .order_by(transactions_table.c.due_date, transactions_table.c.occurrence_date)
        )
        with _translate_errors("list transactions"):
            rows = self._conn.execute(query).mappings().all()
        return [Transaction.model_validate(dict(row)) for row in rows]

    def occurrence_dates(self, template_id: UUID) -> set[date]:
        query = select(transactions_table.c.occurrence_date).where(
            and_(
                transactions_table.c.recurring_template_id == template_id,
                transactions_table.c.occurrence_date.is_not(None),
            )
        )
        with _translate_errors("load occurrence dates"):
            return set(self._conn.execute(query).scalars().all())

    def _insert_ignoring_slot_conflicts(self, values: dict) -> int:
        dialect = self._conn.dialect.name
        conflict_columns = ["recurring_template_id", "occurrence_date"]
        if dialect == "sqlite":
            stmt = sqlite_insert(transactions_table).values(**values).on_conflict_do_nothing(
                index_elements=conflict_columns
            )
        elif dialect == "postgresql":
            stmt = pg_insert(transactions_table).values(**values).on_conflict_do_nothing(
                index_elements=conflict_columns
            )
        else:
            if values["recurring_template_id"] is not None and values["occurrence_date"] is not None:
                taken = self._conn.execute(
                    select(transactions_table.c.id).where(
                        and_(
                            transactions_table.c.recurring_template_id == values["recurring_template_id"],
                            transactions_table.c.occurrence_date == values["occurrence_date"],
                        )
                    )
                ).first()
                if taken:
                    return 0
            stmt = insert(transactions_table).values(**values)
        return self._conn.execute(stmt).rowcount

    def add_many(self, transactions: Iterable[Transaction]) -> int:
        inserted = 0
        with _translate_errors("save transactions"):
            for tx in transactions:
                inserted += self._insert_ignoring_slot_conflicts(_to_row(tx))
        return inserted

    def delete_for_template(
        self,
        template_id: UUID,
        keep_statuses: Iterable[TransactionStatus] = (TransactionStatus.PAID,),
        due_on_or_after: Optional[date] = None,
    ) -> int:
        conditions = [transactions_table.c.recurring_template_id == template_id]
        keep = [status.value for status in keep_statuses]
        if keep:
            conditions.append(transactions_table.c.status.not_in(keep))
        if due_on_or_after is not None:
            conditions.append(transactions_table.c.due_date >= due_on_or_after)
        with _translate_errors("delete transactions"):
            result = self._conn.execute(delete(transactions_table).where(and_(*conditions)))
        return result.rowcount

    def list_open(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        query = select(transactions_table).where(
            transactions_table.c.status.in_(OPEN_STATUSES)
        )
        if date_from:
            query = query.where(transactions_table.c.due_date >= date_from)
        if date_to:
            query = query.where(transactions_table.c.due_date <= date_to)
        if transaction_type:
            query = query.where(transactions_table.c.type == transaction_type.value)
        query = query.order_by(transactions_table.c.due_date)
        with _translate_errors("list open transactions"):
            rows = self._conn.execute(query).mappings().all()
        return [Transaction.model_validate(dict(row)) for row in rows]


class SqlAuditStorage(AuditStorageInterface):
    """Audit events in their own table, written outside engine transactions."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def _row_to_event(self, row) -> AuditEvent:
        data = dict(row)
        details_json = data.pop("details_json")
        data["details"] = json.loads(details_json) if details_json else {}
        return AuditEvent.model_validate(data)

    def append_event(self, event: AuditEvent) -> bool:
        with _translate_errors("append audit event"):
            with self._engine.begin() as conn:
                conn.execute(insert(audit_events_table).values(**event.to_row()))
        return True

    def get_events_by_entity(self, entity_id: UUID) -> list[AuditEvent]:
        query = (
            select(audit_events_table)
            .where(audit_events_table.c.entity_id == entity_id)
            .order_by(audit_events_table.c.timestamp)
        )
        with _translate_errors("read audit events"):
            with self._engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        return [self._row_to_event(row) for row in rows]

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        query = (
            select(audit_events_table)
            .order_by(audit_events_table.c.timestamp.desc())
            .limit(limit)
        )
        with _translate_errors("read audit events"):
            with self._engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        return [self._row_to_event(row) for row in rows]


class SqlUnitOfWork(UnitOfWork):
    """One connection-level transaction spanning both repositories."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._conn: Optional[Connection] = None

    def __enter__(self) -> "SqlUnitOfWork":
        with _translate_errors("open transaction"):
            self._conn = self._engine.connect()
            self._tx = self._conn.begin()
        self.templates = SqlTemplateRepository(self._conn)
        self.transactions = SqlTransactionRepository(self._conn)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                with _translate_errors("commit"):
                    self._tx.commit()
            else:
                self._tx.rollback()
        finally:
            self._conn.close()
            self._conn = None


class SqlStore(Store):
    """
    SQLAlchemy-backed store.

    The schema is created on first use; migrations are out of scope.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: Optional[bool] = None,
        connect_attempts: Optional[int] = None,
    ):
        settings = get_settings().storage
        self._database_url = database_url or settings.database_url
        self._echo = settings.echo if echo is None else echo
        self._connect_attempts = connect_attempts or settings.connect_attempts
        self._engine = self._open_engine()
        self._audit = SqlAuditStorage(self._engine)

    def _create_engine(self) -> Engine:
        kwargs = {"echo": self._echo, "future": True}
        if self._database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every connection sees an empty database
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_engine(self._database_url, **kwargs)
        metadata.create_all(engine)
        return engine

    def _open_engine(self) -> Engine:
        opener = retry(
            stop=stop_after_attempt(self._connect_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        )(self._create_engine)
        try:
            return opener()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to open database {self._database_url}: {e}") from e

    @property
    def engine(self) -> Engine:
        return self._engine

    def unit_of_work(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(self._engine)

    @property
    def audit(self) -> SqlAuditStorage:
        return self._audit

    def dispose(self) -> None:
        self._engine.dispose()
