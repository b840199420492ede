"""
Reconciliation Engine

This module ties the generator to storage and defines every operation
that changes a template or its occurrences:
1. create_template / update_series / pause / resume / delete_template
2. update_instance / skip_occurrence / set_transaction_status
3. top_up (startup and maintenance trigger)

DESIGN DECISION: The engine enforces the boundaries:
- Nothing is written before validation passes
- Every operation runs in one unit of work (all-or-nothing)
- A template's read-generate-insert sequence holds that template's lock
- Every step is audited, after its unit of work has committed

Generation is idempotent: a top-up run repeated any number of times
inserts nothing once a series is complete up to the horizon.
"""

import threading
import time
import warnings
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Iterator, Optional, Union
from uuid import UUID

import structlog

from liquidity.audit import AuditLogger, create_correlation_id
from liquidity.clock import Clock, SystemClock
from liquidity.config import Settings, get_settings
from liquidity.models.audit import AuditEventBuilder
from liquidity.models.recurring import (
    ReconciliationResult,
    RecurringTemplate,
    TemplateChanges,
    TemplateInput,
    TemplateStatus,
    TopUpResult,
    Transaction,
    TransactionChanges,
    TransactionStatus,
)
from liquidity.recurrence import (
    GenerationLimitExceeded,
    OccurrenceGenerator,
    default_horizon,
)
from liquidity.services.storage import (
    InMemoryStore,
    NotFoundError,
    PersistenceError,
    SqlStore,
    Store,
    UnitOfWork,
)
from liquidity.validation import (
    InvalidTransitionError,
    TemplateValidator,
    ValidationError,
)


logger = structlog.get_logger(__name__)

# Statuses a regeneration never deletes: paid rows are history, and a
# skipped row is what keeps its slot from being filled again.
PRESERVED_ON_REGENERATION = (TransactionStatus.PAID, TransactionStatus.SKIPPED)

ALLOWED_TRANSITIONS = {
    TransactionStatus.TO_PAY: {TransactionStatus.POSTPONED, TransactionStatus.PAID, TransactionStatus.SKIPPED},
    TransactionStatus.POSTPONED: {TransactionStatus.TO_PAY, TransactionStatus.PAID, TransactionStatus.SKIPPED},
    TransactionStatus.PAID: set(),
    TransactionStatus.SKIPPED: set(),
}


@dataclass
class _Generation:
    """What one reconciliation pass did to a template's series."""
    template: RecurringTemplate
    inserted: int = 0
    last_date: Optional[date] = None
    limit_exceeded: bool = False


class ReconciliationEngine:
    """
    Keeps each template's stored occurrences in sync with its rule.

    Usage:
        engine = ReconciliationEngine(InMemoryStore())
        result = engine.create_template({...})
        engine.top_up()
    """

    def __init__(
        self,
        store: Store,
        clock: Optional[Clock] = None,
        generator: Optional[OccurrenceGenerator] = None,
        validator: Optional[TemplateValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        horizon_months: Optional[int] = None,
        max_run_seconds: Optional[float] = None,
    ):
        settings = get_settings().recurrence
        self._store = store
        self._clock = clock or SystemClock()
        self._generator = generator or OccurrenceGenerator(
            max_iterations=settings.max_iterations,
            anchor_mode=settings.anchor_mode,
        )
        self._validator = validator or TemplateValidator()
        self._audit_logger = audit_logger or AuditLogger(store.audit)
        self._horizon_months = horizon_months or settings.horizon_months
        self._max_run_seconds = (
            settings.max_run_seconds if max_run_seconds is None else max_run_seconds
        )
        self._locks: dict[UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    def _template_lock(self, template_id: UUID) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(template_id)
            if lock is None:
                lock = self._locks[template_id] = threading.Lock()
            return lock

    @contextmanager
    def _operation(
        self,
        operation: str,
        entity_id: Optional[UUID],
        correlation_id: UUID,
    ) -> Iterator[None]:
        """Audit a rolled-back unit of work, then let the error propagate."""
        try:
            yield
        except NotFoundError:
            raise
        except PersistenceError as e:
            self._audit_logger.log_persistence_failed(
                operation=operation,
                error_message=str(e),
                entity_id=entity_id,
                correlation_id=correlation_id,
            )
            raise

    def _horizon(self, horizon: Optional[date]) -> date:
        return horizon or default_horizon(self._clock.today(), self._horizon_months)

    @staticmethod
    def _require_template(uow: UnitOfWork, template_id: UUID) -> RecurringTemplate:
        template = uow.templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        return template

    @staticmethod
    def _require_transaction(uow: UnitOfWork, transaction_id: UUID) -> Transaction:
        transaction = uow.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    def _series_lock(self, transaction_id: UUID):
        """The lock of the template owning a transaction (no-op for one-offs)."""
        with self._store.unit_of_work() as uow:
            template_id = self._require_transaction(uow, transaction_id).recurring_template_id
        if template_id is None:
            return nullcontext()
        return self._template_lock(template_id)

    def _reconcile(
        self,
        uow: UnitOfWork,
        template: RecurringTemplate,
        horizon: date,
    ) -> _Generation:
        """
        Insert the occurrences template is missing and move its watermark.

        Slots before the template's regeneration floor are never emitted.
        The watermark is the latest occurrence date the series holds
        after this pass, whatever each row's status.
        """
        existing = uow.transactions.occurrence_dates(template.id)
        outcome = self._generator.generate(
            template, horizon, existing, not_before=template.generate_from
        )
        inserted = uow.transactions.add_many(outcome.drafts) if outcome.drafts else 0

        held = existing | {draft.occurrence_date for draft in outcome.drafts}
        watermark = max(held) if held else None
        if watermark != template.last_generated_date:
            template = template.model_copy(update={"last_generated_date": watermark})
            uow.templates.update(template)

        return _Generation(
            template=template,
            inserted=inserted,
            last_date=outcome.last_date,
            limit_exceeded=outcome.limit_exceeded,
        )

    def _report_generation(self, generation: _Generation, correlation_id: UUID) -> list[str]:
        """Audit a committed generation pass. Returns warning messages."""
        template_id = generation.template.id
        self._audit_logger.log_occurrences_generated(
            template_id=template_id,
            count=generation.inserted,
            last_date=generation.last_date.isoformat() if generation.last_date else None,
            correlation_id=correlation_id,
        )
        if not generation.limit_exceeded:
            return []

        warning = GenerationLimitExceeded(template_id, self._generator.max_iterations)
        warnings.warn(warning, stacklevel=3)
        self._audit_logger.log_generation_limit_exceeded(
            template_id=template_id,
            max_iterations=self._generator.max_iterations,
            correlation_id=correlation_id,
        )
        return [str(warning)]

    # -------------------------------------------------------------------------
    # Template operations
    # -------------------------------------------------------------------------

    def create_template(
        self,
        data: Union[dict, TemplateInput],
        horizon: Optional[date] = None,
    ) -> ReconciliationResult:
        """
        Validate, persist and expand a new template.

        The template starts active with no watermark; its occurrences up
        to the horizon are inserted in the same unit of work.

        Raises:
            ValidationError: Input rejected, nothing written
            PersistenceError: Storage failure, nothing written
        """
        correlation_id = create_correlation_id()
        try:
            template, validation = self._validator.build_template(data)
        except ValidationError as e:
            self._audit_logger.log_validation_failed(
                subject="template",
                issues=[issue.model_dump() for issue in e.issues],
                correlation_id=correlation_id,
            )
            raise

        horizon = self._horizon(horizon)
        with self._template_lock(template.id), \
                self._operation("create_template", template.id, correlation_id):
            with self._store.unit_of_work() as uow:
                uow.templates.add(template)
                generation = self._reconcile(uow, template, horizon)

        self._audit_logger.log(AuditEventBuilder.template_created(
            template_id=template.id,
            payee=template.payee,
            frequency=template.frequency.value,
            correlation_id=correlation_id,
        ))
        messages = validation.warnings + self._report_generation(generation, correlation_id)

        return ReconciliationResult(
            operation="create_template",
            template=generation.template,
            generated_count=generation.inserted,
            warnings=messages,
            truncated=generation.limit_exceeded,
        )

    def update_series(
        self,
        template_id: UUID,
        changes: Union[dict, TemplateChanges],
        regenerate_future: bool = False,
        horizon: Optional[date] = None,
    ) -> ReconciliationResult:
        """
        Apply a series-level edit.

        Without regenerate_future only the template row changes; existing
        occurrences keep their old values. With it, every occurrence due
        today or later that is neither paid nor skipped is deleted and the
        series is regenerated from today. Skipped slots survive and are
        never refilled. Today becomes the template's generate_from floor,
        so later top-ups and resumes do not backfill slots the new
        schedule places in the past. A paused template loses those
        occurrences but is only regenerated once resumed.

        Raises:
            NotFoundError: Unknown template
            ValidationError: Changes rejected, nothing written
        """
        correlation_id = create_correlation_id()
        horizon = self._horizon(horizon)
        today = self._clock.today()
        deleted = 0
        generation = None

        with self._template_lock(template_id), \
                self._operation("update_series", template_id, correlation_id):
            with self._store.unit_of_work() as uow:
                template = self._require_template(uow, template_id)
                try:
                    updated, fields, validation = self._validator.apply_changes(template, changes)
                except ValidationError as e:
                    self._audit_logger.log_validation_failed(
                        subject=f"template:{template_id}",
                        issues=[issue.model_dump() for issue in e.issues],
                        correlation_id=correlation_id,
                    )
                    raise
                if regenerate_future:
                    floor = max(today, updated.generate_from or today)
                    updated = updated.model_copy(update={"generate_from": floor})
                uow.templates.update(updated)

                if regenerate_future:
                    deleted = uow.transactions.delete_for_template(
                        template_id,
                        keep_statuses=PRESERVED_ON_REGENERATION,
                        due_on_or_after=today,
                    )
                    if updated.is_active:
                        generation = self._reconcile(uow, updated, horizon)
                        updated = generation.template
                    else:
                        held = uow.transactions.occurrence_dates(template_id)
                        updated = updated.model_copy(
                            update={"last_generated_date": max(held) if held else None}
                        )
                        uow.templates.update(updated)

        self._audit_logger.log(AuditEventBuilder.template_updated(
            template_id=template_id,
            fields=fields,
            regenerate_future=regenerate_future,
            correlation_id=correlation_id,
        ))
        self._audit_logger.log_occurrences_deleted(
            template_id=template_id,
            count=deleted,
            from_date=today.isoformat(),
            correlation_id=correlation_id,
        )
        messages = list(validation.warnings)
        if generation is not None:
            messages += self._report_generation(generation, correlation_id)

        return ReconciliationResult(
            operation="update_series",
            template=updated,
            generated_count=generation.inserted if generation else 0,
            deleted_count=deleted,
            warnings=messages,
            truncated=generation.limit_exceeded if generation else False,
        )

    def pause(self, template_id: UUID) -> ReconciliationResult:
        """
        Stop generating for a template. Existing occurrences are kept.

        Pausing a paused template is a no-op.
        """
        correlation_id = create_correlation_id()
        with self._template_lock(template_id), \
                self._operation("pause", template_id, correlation_id):
            with self._store.unit_of_work() as uow:
                template = self._require_template(uow, template_id)
                changed = template.status != TemplateStatus.PAUSED
                if changed:
                    template = template.model_copy(update={"status": TemplateStatus.PAUSED})
                    uow.templates.update(template)

        if changed:
            self._audit_logger.log(AuditEventBuilder.template_status_changed(
                template_id=template_id,
                status=TemplateStatus.PAUSED.value,
                correlation_id=correlation_id,
            ))
        return ReconciliationResult(operation="pause", template=template)

    def resume(self, template_id: UUID, horizon: Optional[date] = None) -> ReconciliationResult:
        """
        Reactivate a template and fill its series up to the horizon.

        Generation deduplicates against every stored date, so the gap left
        while paused is filled and nothing already stored is repeated.
        """
        correlation_id = create_correlation_id()
        horizon = self._horizon(horizon)
        with self._template_lock(template_id), \
                self._operation("resume", template_id, correlation_id):
            with self._store.unit_of_work() as uow:
                template = self._require_template(uow, template_id)
                changed = template.status != TemplateStatus.ACTIVE
                if changed:
                    template = template.model_copy(update={"status": TemplateStatus.ACTIVE})
                    uow.templates.update(template)
                generation = self._reconcile(uow, template, horizon)

        if changed:
            self._audit_logger.log(AuditEventBuilder.template_status_changed(
                template_id=template_id,
                status=TemplateStatus.ACTIVE.value,
                correlation_id=correlation_id,
            ))
        messages = self._report_generation(generation, correlation_id)

        return ReconciliationResult(
            operation="resume",
            template=generation.template,
            generated_count=generation.inserted,
            warnings=messages,
            truncated=generation.limit_exceeded,
        )

    def delete_template(self, template_id: UUID) -> ReconciliationResult:
        """
        Delete a template and its unpaid occurrences.

        Paid occurrences are kept and still reference the deleted id.
        """
        correlation_id = create_correlation_id()
        with self._template_lock(template_id), \
                self._operation("delete_template", template_id, correlation_id):
            with self._store.unit_of_work() as uow:
                template = self._require_template(uow, template_id)
                deleted = uow.transactions.delete_for_template(
                    template_id,
                    keep_statuses=(TransactionStatus.PAID,),
                )
                uow.templates.delete(template_id)

        with self._locks_guard:
            self._locks.pop(template_id, None)

        self._audit_logger.log(AuditEventBuilder.template_deleted(
            template_id=template_id,
            deleted_occurrences=deleted,
            correlation_id=correlation_id,
        ))
        return ReconciliationResult(
            operation="delete_template",
            template=template,
            deleted_count=deleted,
        )

    # -------------------------------------------------------------------------
    # Occurrence operations
    # -------------------------------------------------------------------------

    def update_instance(
        self,
        transaction_id: UUID,
        changes: Union[dict, TransactionChanges],
    ) -> ReconciliationResult:
        """
        Edit one occurrence without touching its template or siblings.

        A recurring row becomes an exception: its due date may now differ
        from its occurrence date, and regeneration treats its slot as
        taken. One-off transactions are edited in place and never flagged.

        Raises:
            NotFoundError: Unknown transaction
            ValidationError: Changes rejected, nothing written
        """
        correlation_id = create_correlation_id()
        with self._series_lock(transaction_id), \
                self._operation("update_instance", transaction_id, correlation_id):
            with self._store.unit_of_work() as uow:
                transaction = self._require_transaction(uow, transaction_id)
                try:
                    updated, fields = self._validator.apply_transaction_changes(transaction, changes)
                except ValidationError as e:
                    self._audit_logger.log_validation_failed(
                        subject=f"transaction:{transaction_id}",
                        issues=[issue.model_dump() for issue in e.issues],
                        correlation_id=correlation_id,
                    )
                    raise
                uow.transactions.update(updated)

        self._audit_logger.log(AuditEventBuilder.instance_edited(
            transaction_id=transaction_id,
            fields=fields,
            correlation_id=correlation_id,
        ))
        return ReconciliationResult(operation="update_instance", transaction=updated)

    def set_transaction_status(
        self,
        transaction_id: UUID,
        status: Union[str, TransactionStatus],
    ) -> ReconciliationResult:
        """
        Move a transaction through its status machine.

        to_pay <-> postponed, and either -> paid. paid and skipped are
        terminal. Setting an open transaction to its current status is a
        no-op.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransitionError: The move is not allowed
        """
        try:
            new_status = TransactionStatus(status)
        except ValueError as e:
            raise InvalidTransitionError(f"Unknown transaction status: {status}") from e
        return self._change_status(transaction_id, new_status, "set_transaction_status")

    def skip_occurrence(self, transaction_id: UUID) -> ReconciliationResult:
        """
        Mark one occurrence as skipped.

        The row stays in storage, so its occurrence date remains taken and
        no later generation run recreates it.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransitionError: Already paid or skipped, or not recurring
        """
        return self._change_status(transaction_id, TransactionStatus.SKIPPED, "skip_occurrence")

    def _change_status(
        self,
        transaction_id: UUID,
        new_status: TransactionStatus,
        operation: str,
    ) -> ReconciliationResult:
        correlation_id = create_correlation_id()
        with self._series_lock(transaction_id), \
                self._operation(operation, transaction_id, correlation_id):
            with self._store.unit_of_work() as uow:
                transaction = self._require_transaction(uow, transaction_id)
                old_status = transaction.status
                if new_status == old_status and not old_status.is_terminal:
                    return ReconciliationResult(operation=operation, transaction=transaction)
                if new_status not in ALLOWED_TRANSITIONS[old_status]:
                    raise InvalidTransitionError(
                        f"Cannot change status from {old_status.value} to {new_status.value}"
                    )
                if new_status == TransactionStatus.SKIPPED and transaction.recurring_template_id is None:
                    raise InvalidTransitionError("Only recurring occurrences can be skipped")
                transaction = transaction.model_copy(update={"status": new_status})
                uow.transactions.update(transaction)

        self._audit_logger.log(AuditEventBuilder.transaction_status_changed(
            transaction_id=transaction_id,
            old_status=old_status.value,
            new_status=new_status.value,
            correlation_id=correlation_id,
        ))
        return ReconciliationResult(operation=operation, transaction=transaction)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def top_up(
        self,
        template_ids: Optional[Iterable[UUID]] = None,
        horizon: Optional[date] = None,
    ) -> TopUpResult:
        """
        Extend every active template's series up to the horizon.

        Safe to call any number of times. Each template is reconciled in
        its own unit of work; a storage failure on one template is audited
        and re-raised after earlier templates have committed.

        Templates not reached within max_run_seconds are listed in
        deferred_template_ids and the result is marked truncated.
        """
        correlation_id = create_correlation_id()
        horizon = self._horizon(horizon)
        started = time.monotonic()

        with self._store.unit_of_work() as uow:
            active = uow.templates.list_templates(status=TemplateStatus.ACTIVE)
        if template_ids is not None:
            wanted = set(template_ids)
            active = [t for t in active if t.id in wanted]

        result = TopUpResult()
        for index, candidate in enumerate(active):
            if time.monotonic() - started > self._max_run_seconds:
                result.deferred_template_ids = [t.id for t in active[index:]]
                result.truncated = True
                break

            with self._template_lock(candidate.id), \
                    self._operation("top_up", candidate.id, correlation_id):
                with self._store.unit_of_work() as uow:
                    template = uow.templates.get(candidate.id)
                    if template is None or not template.is_active:
                        # Deleted or paused since the listing
                        continue
                    generation = self._reconcile(uow, template, horizon)

            result.templates_processed += 1
            result.generated_count += generation.inserted
            if generation.inserted:
                result.generated_by_template[str(template.id)] = generation.inserted
            messages = self._report_generation(generation, correlation_id)
            if messages:
                result.warnings.extend(messages)
                result.truncated = True

        self._audit_logger.log(AuditEventBuilder.top_up_completed(
            templates_processed=result.templates_processed,
            generated=result.generated_count,
            deferred=len(result.deferred_template_ids),
            correlation_id=correlation_id,
        ))
        logger.info(
            "top_up_finished",
            templates_processed=result.templates_processed,
            generated=result.generated_count,
            deferred=len(result.deferred_template_ids),
            seconds=round(time.monotonic() - started, 3),
        )
        return result

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_template(self, template_id: UUID) -> RecurringTemplate:
        with self._store.unit_of_work() as uow:
            return self._require_template(uow, template_id)

    def list_templates(self, status: Optional[TemplateStatus] = None) -> list[RecurringTemplate]:
        with self._store.unit_of_work() as uow:
            return uow.templates.list_templates(status=status)

    def list_series(self, template_id: UUID) -> list[Transaction]:
        """All stored occurrences of a template, including paid and skipped."""
        with self._store.unit_of_work() as uow:
            return uow.transactions.list_by_template(template_id)

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        with self._store.unit_of_work() as uow:
            return self._require_transaction(uow, transaction_id)


def build_components(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    clock: Optional[Clock] = None,
) -> tuple[ReconciliationEngine, Store]:
    """
    Factory function to create the engine and its store.

    Args:
        settings: Settings to use (defaults to get_settings())
        store: Store to use. Defaults to a SqlStore on the configured
               database URL, or an InMemoryStore for "memory://".
        clock: Clock to use (defaults to the system clock)

    Returns:
        (engine, store)
    """
    settings = settings or get_settings()
    if store is None:
        if settings.storage.database_url == "memory://":
            store = InMemoryStore()
        else:
            store = SqlStore(
                database_url=settings.storage.database_url,
                echo=settings.storage.echo,
                connect_attempts=settings.storage.connect_attempts,
            )

    engine = ReconciliationEngine(
        store=store,
        clock=clock,
        audit_logger=AuditLogger(store.audit),
        horizon_months=settings.recurrence.horizon_months,
        max_run_seconds=settings.recurrence.max_run_seconds,
        generator=OccurrenceGenerator(
            max_iterations=settings.recurrence.max_iterations,
            anchor_mode=settings.recurrence.anchor_mode,
        ),
    )
    return engine, store
