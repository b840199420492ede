"""
Tests for the reconciliation engine.

Every test runs against the in-memory store with the clock pinned to
2024-01-01, so the default horizon is 2025-01-01.
"""

import threading
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from liquidity.audit import AuditLogger
from liquidity.engine import ReconciliationEngine
from liquidity.models.audit import AuditEventType
from liquidity.models.recurring import TemplateStatus, TransactionStatus
from liquidity.recurrence import GenerationLimitExceeded, OccurrenceGenerator
from liquidity.services.storage import NotFoundError, PersistenceError
from liquidity.services.storage.memory import InMemoryTransactionRepository
from liquidity.validation import InvalidTransitionError, ValidationError


def occurrence_dates(engine, template_id):
    return [tx.occurrence_date for tx in engine.list_series(template_id)]


def event_types(store):
    return [event.event_type for event in store.audit.get_recent_events(limit=1000)]


class TestCreateTemplate:
    """Tests for create_template."""

    def test_generates_up_to_horizon(self, engine, template_data):
        """Test a monthly template fills twelve months ahead, inclusive."""
        result = engine.create_template(template_data())
        template_id = result.template.id

        dates = occurrence_dates(engine, template_id)
        assert result.generated_count == 13
        assert dates[0] == date(2024, 1, 1)
        assert dates[-1] == date(2025, 1, 1)
        assert result.template.status == TemplateStatus.ACTIVE
        assert result.template.last_generated_date == date(2025, 1, 1)
        assert engine.get_template(template_id).last_generated_date == date(2025, 1, 1)

    def test_watermark_stays_empty_without_occurrences(self, engine, template_data):
        """Test a template starting past the horizon has no watermark."""
        result = engine.create_template(template_data(start_date=date(2026, 1, 1)))
        assert result.generated_count == 0
        assert result.template.last_generated_date is None

    def test_occurrences_count_cap(self, engine, template_data):
        """Test occurrences_count=3 yields exactly three rows, even after top-ups."""
        result = engine.create_template(template_data(occurrences_count=3))
        engine.top_up()
        engine.top_up()

        assert occurrence_dates(engine, result.template.id) == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ]

    def test_end_date_cap(self, engine, template_data):
        """Test no occurrence is generated after the end date."""
        result = engine.create_template(template_data(end_date=date(2024, 5, 15)))
        dates = occurrence_dates(engine, result.template.id)
        assert dates[-1] == date(2024, 5, 1)
        assert len(dates) == 5

    def test_both_end_conditions_warns(self, engine, template_data):
        """Test end date precedence is reported as a warning."""
        result = engine.create_template(
            template_data(end_date=date(2024, 6, 1), occurrences_count=2)
        )
        assert result.generated_count == 6
        assert any("end date takes precedence" in w for w in result.warnings)

    def test_month_end_drift(self, engine, template_data):
        """Test a series starting on Jan 31 drifts to the 29th."""
        result = engine.create_template(
            template_data(start_date=date(2024, 1, 31)),
            horizon=date(2024, 4, 30),
        )
        assert occurrence_dates(engine, result.template.id) == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 29),
            date(2024, 4, 29),
        ]

    def test_weekly_scenario(self, engine, template_data):
        """Test a weekly template yields a year of seven-day steps."""
        result = engine.create_template(template_data(frequency="weekly"))
        dates = occurrence_dates(engine, result.template.id)

        assert abs(len(dates) - 53) <= 1
        assert all(b - a == timedelta(days=7) for a, b in zip(dates, dates[1:]))
        assert dates[-1] <= date(2025, 1, 1)

    def test_default_currency_applied(self, engine, template_data):
        """Test a missing currency falls back to the configured default."""
        data = template_data()
        del data["currency"]
        result = engine.create_template(data)
        assert result.template.currency == "EUR"

    @pytest.mark.parametrize("field,value", [
        ("amount", Decimal("0")),
        ("amount", Decimal("-5")),
        ("payee", "   "),
        ("company_id", None),
        ("start_date", None),
    ])
    def test_invalid_input_writes_nothing(self, engine, store, template_data, field, value):
        """Test rejected input leaves storage untouched."""
        with pytest.raises(ValidationError) as exc_info:
            engine.create_template(template_data(**{field: value}))

        assert any(issue.field == field for issue in exc_info.value.issues)
        assert engine.list_templates() == []
        assert AuditEventType.VALIDATION_FAILED in event_types(store)

    def test_end_before_start_rejected(self, engine, template_data):
        """Test an end date before the start date is rejected."""
        with pytest.raises(ValidationError, match="End date cannot be before start date"):
            engine.create_template(template_data(end_date=date(2023, 12, 1)))

    def test_unknown_field_rejected(self, engine, template_data):
        """Test unexpected keys fail schema validation."""
        with pytest.raises(ValidationError) as exc_info:
            engine.create_template(template_data(colour="blue"))
        assert exc_info.value.issues[0].issue_type == "unknown_field"

    def test_audited(self, engine, store, template_data):
        """Test creation and generation are both audited under one correlation id."""
        result = engine.create_template(template_data())
        events = store.audit.get_events_by_entity(result.template.id)
        types = [e.event_type for e in events]

        assert AuditEventType.TEMPLATE_CREATED in types
        assert AuditEventType.OCCURRENCES_GENERATED in types
        assert len({e.correlation_id for e in events}) == 1


class TestTopUp:
    """Tests for top_up."""

    def test_idempotent(self, engine, template_data):
        """Test repeated top-ups insert nothing new."""
        result = engine.create_template(template_data())
        before = occurrence_dates(engine, result.template.id)

        first = engine.top_up()
        second = engine.top_up()

        assert first.generated_count == 0
        assert second.generated_count == 0
        assert occurrence_dates(engine, result.template.id) == before

    def test_extends_series_as_time_passes(self, engine, clock, template_data):
        """Test a later top-up appends only the newly reachable months."""
        result = engine.create_template(template_data())
        clock.set_today(date(2024, 3, 10))

        top_up = engine.top_up()

        dates = occurrence_dates(engine, result.template.id)
        assert top_up.generated_count == 2
        assert top_up.generated_by_template == {str(result.template.id): 2}
        assert dates[-1] == date(2025, 3, 1)
        assert len(dates) == len(set(dates))
        assert engine.get_template(result.template.id).last_generated_date == date(2025, 3, 1)

    def test_skips_paused_templates(self, engine, clock, template_data):
        """Test paused templates are not extended."""
        result = engine.create_template(template_data())
        engine.pause(result.template.id)
        clock.set_today(date(2024, 6, 1))

        top_up = engine.top_up()

        assert top_up.templates_processed == 0
        assert occurrence_dates(engine, result.template.id)[-1] == date(2025, 1, 1)

    def test_restricted_to_given_ids(self, engine, clock, template_data):
        """Test only the requested templates are processed."""
        first = engine.create_template(template_data(payee="A"))
        second = engine.create_template(template_data(payee="B"))
        clock.set_today(date(2024, 2, 1))

        top_up = engine.top_up(template_ids=[first.template.id])

        assert top_up.templates_processed == 1
        assert occurrence_dates(engine, first.template.id)[-1] == date(2025, 2, 1)
        assert occurrence_dates(engine, second.template.id)[-1] == date(2025, 1, 1)

    def test_time_budget_defers_templates(self, store, clock, template_data):
        """Test templates not reached within the budget are reported."""
        engine = ReconciliationEngine(store=store, clock=clock, max_run_seconds=-1)
        created = engine.create_template(template_data())

        top_up = engine.top_up()

        assert top_up.truncated is True
        assert top_up.templates_processed == 0
        assert top_up.deferred_template_ids == [created.template.id]

    def test_generation_limit_is_a_warning(self, store, clock, template_data):
        """Test hitting the iteration cap warns, persists the prefix and audits it."""
        engine = ReconciliationEngine(
            store=store,
            clock=clock,
            generator=OccurrenceGenerator(max_iterations=10),
            audit_logger=AuditLogger(store.audit),
        )

        with pytest.warns(GenerationLimitExceeded):
            result = engine.create_template(template_data(frequency="weekly"))

        assert result.truncated is True
        assert result.generated_count == 10
        assert any("10 iterations" in w for w in result.warnings)
        assert AuditEventType.GENERATION_LIMIT_EXCEEDED in event_types(store)

    def test_concurrent_top_ups_never_duplicate(self, engine, template_data):
        """Test racing top-ups for one template insert each date once."""
        result = engine.create_template(template_data(), horizon=date(2024, 3, 1))
        errors = []

        def run():
            try:
                engine.top_up()
            except Exception as e:  # pragma: no cover - surfaced by the assert below
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        dates = occurrence_dates(engine, result.template.id)
        assert errors == []
        assert len(dates) == 13
        assert len(dates) == len(set(dates))


class TestPauseResume:
    """Tests for pause and resume."""

    def test_pause_keeps_existing_rows(self, engine, template_data):
        """Test pausing does not delete generated occurrences."""
        result = engine.create_template(template_data())
        paused = engine.pause(result.template.id)

        assert paused.template.status == TemplateStatus.PAUSED
        assert len(occurrence_dates(engine, result.template.id)) == 13

    def test_resume_fills_gap_without_duplicates(self, engine, clock, template_data):
        """Test resume generates the missing months and nothing twice."""
        result = engine.create_template(template_data(), horizon=date(2024, 3, 31))
        template_id = result.template.id
        engine.pause(template_id)
        clock.set_today(date(2024, 6, 15))
        engine.top_up()

        resumed = engine.resume(template_id)

        dates = occurrence_dates(engine, template_id)
        assert resumed.template.status == TemplateStatus.ACTIVE
        assert resumed.generated_count == 15
        assert len(dates) == 18
        assert len(dates) == len(set(dates))
        assert dates[-1] == date(2025, 6, 1)
        assert resumed.template.last_generated_date == date(2025, 6, 1)

    def test_pause_twice_is_noop(self, engine, store, template_data):
        """Test pausing a paused template changes nothing and is audited once."""
        result = engine.create_template(template_data())
        engine.pause(result.template.id)
        engine.pause(result.template.id)
        assert event_types(store).count(AuditEventType.TEMPLATE_PAUSED) == 1

    def test_unknown_template(self, engine):
        """Test lifecycle calls on an unknown id raise NotFoundError."""
        with pytest.raises(NotFoundError):
            engine.pause(uuid4())
        with pytest.raises(NotFoundError):
            engine.resume(uuid4())
        with pytest.raises(NotFoundError):
            engine.delete_template(uuid4())


class TestDeleteTemplate:
    """Tests for delete_template."""

    def test_keeps_paid_occurrences(self, engine, template_data):
        """Test deletion removes unpaid rows and keeps paid ones orphaned."""
        result = engine.create_template(template_data())
        template_id = result.template.id
        rows = engine.list_series(template_id)
        engine.set_transaction_status(rows[0].id, TransactionStatus.PAID)
        engine.set_transaction_status(rows[1].id, "paid")
        engine.skip_occurrence(rows[2].id)

        deleted = engine.delete_template(template_id)

        remaining = engine.list_series(template_id)
        assert deleted.deleted_count == 11
        assert [tx.id for tx in remaining] == [rows[0].id, rows[1].id]
        assert all(tx.recurring_template_id == template_id for tx in remaining)
        with pytest.raises(NotFoundError):
            engine.get_template(template_id)

    def test_deleted_template_is_not_topped_up(self, engine, clock, template_data):
        """Test a deleted template never generates again."""
        result = engine.create_template(template_data())
        engine.delete_template(result.template.id)
        clock.set_today(date(2024, 6, 1))

        assert engine.top_up().generated_count == 0
        assert engine.list_series(result.template.id) == []


class TestSkipOccurrence:
    """Tests for skip_occurrence."""

    def test_skipped_slot_never_regenerated(self, engine, clock, template_data):
        """Test a skipped date survives top-ups and series regeneration."""
        result = engine.create_template(template_data())
        template_id = result.template.id
        march = next(tx for tx in engine.list_series(template_id)
                     if tx.occurrence_date == date(2024, 3, 1))

        skipped = engine.skip_occurrence(march.id)
        engine.top_up()
        engine.update_series(template_id, {"amount": "120"}, regenerate_future=True)
        clock.set_today(date(2024, 2, 1))
        engine.top_up()

        march_rows = [tx for tx in engine.list_series(template_id)
                      if tx.occurrence_date == date(2024, 3, 1)]
        assert skipped.transaction.status == TransactionStatus.SKIPPED
        assert len(march_rows) == 1
        assert march_rows[0].status == TransactionStatus.SKIPPED
        assert march_rows[0].amount == Decimal("100.00")

    def test_skip_is_terminal(self, engine, template_data):
        """Test skipped and paid rows cannot be skipped again."""
        result = engine.create_template(template_data())
        rows = engine.list_series(result.template.id)
        engine.skip_occurrence(rows[0].id)
        engine.set_transaction_status(rows[1].id, TransactionStatus.PAID)

        with pytest.raises(InvalidTransitionError):
            engine.skip_occurrence(rows[0].id)
        with pytest.raises(InvalidTransitionError):
            engine.skip_occurrence(rows[1].id)
        with pytest.raises(InvalidTransitionError):
            engine.set_transaction_status(rows[0].id, TransactionStatus.TO_PAY)

    def test_skip_unknown_transaction(self, engine):
        """Test skipping an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            engine.skip_occurrence(uuid4())


class TestTransactionStatus:
    """Tests for the transaction status machine."""

    def test_postpone_and_pay(self, engine, store, template_data):
        """Test to_pay -> postponed -> to_pay -> paid."""
        result = engine.create_template(template_data())
        tx_id = engine.list_series(result.template.id)[0].id

        assert engine.set_transaction_status(tx_id, "postponed").transaction.status == TransactionStatus.POSTPONED
        assert engine.set_transaction_status(tx_id, "to_pay").transaction.status == TransactionStatus.TO_PAY
        assert engine.set_transaction_status(tx_id, "paid").transaction.status == TransactionStatus.PAID
        assert event_types(store).count(AuditEventType.TRANSACTION_STATUS_CHANGED) == 3

    def test_paid_is_terminal(self, engine, template_data):
        """Test a paid transaction cannot go back to to_pay or postponed."""
        result = engine.create_template(template_data())
        tx_id = engine.list_series(result.template.id)[0].id
        engine.set_transaction_status(tx_id, "paid")

        for status in ("to_pay", "postponed", "paid"):
            with pytest.raises(InvalidTransitionError):
                engine.set_transaction_status(tx_id, status)

    def test_unknown_status(self, engine, template_data):
        """Test an unknown status name is rejected."""
        result = engine.create_template(template_data())
        tx_id = engine.list_series(result.template.id)[0].id
        with pytest.raises(InvalidTransitionError, match="Unknown transaction status"):
            engine.set_transaction_status(tx_id, "cancelled")


class TestUpdateSeries:
    """Tests for update_series."""

    def test_without_regeneration_only_template_changes(self, engine, template_data):
        """Test existing occurrences keep old values when not regenerating."""
        result = engine.create_template(template_data())

        updated = engine.update_series(result.template.id, {"amount": "250"})

        assert updated.template.amount == Decimal("250")
        assert updated.generated_count == 0
        assert updated.deleted_count == 0
        assert {tx.amount for tx in engine.list_series(result.template.id)} == {Decimal("100.00")}

    def test_regeneration_replaces_future_open_rows(self, engine, clock, template_data):
        """Test future unpaid rows are rebuilt while paid and past rows stay."""
        result = engine.create_template(template_data())
        template_id = result.template.id
        january = engine.list_series(template_id)[0]
        engine.set_transaction_status(january.id, "paid")
        clock.set_today(date(2024, 3, 15))

        updated = engine.update_series(template_id, {"amount": "200"}, regenerate_future=True)

        rows = engine.list_series(template_id)
        dates = [tx.occurrence_date for tx in rows]
        assert updated.deleted_count == 10
        assert updated.generated_count == 12
        assert len(rows) == 15
        assert len(dates) == len(set(dates))
        assert rows[0].status == TransactionStatus.PAID
        assert rows[0].amount == Decimal("100.00")
        assert all(tx.amount == Decimal("200") for tx in rows if tx.due_date >= date(2024, 3, 15))
        assert all(tx.amount == Decimal("100.00") for tx in rows if tx.due_date < date(2024, 3, 15))
        assert updated.template.last_generated_date == date(2025, 3, 1)

    def test_regeneration_follows_new_frequency(self, engine, template_data):
        """Test a frequency change regenerates on the new schedule."""
        result = engine.create_template(template_data())
        updated = engine.update_series(
            result.template.id, {"frequency": "quarterly"}, regenerate_future=True
        )
        assert occurrence_dates(engine, result.template.id) == [
            date(2024, 1, 1),
            date(2024, 4, 1),
            date(2024, 7, 1),
            date(2024, 10, 1),
            date(2025, 1, 1),
        ]
        assert updated.deleted_count == 13

    def test_regeneration_waits_while_paused(self, engine, template_data):
        """Test a paused template loses future rows and refills on resume."""
        result = engine.create_template(template_data())
        template_id = result.template.id
        engine.pause(template_id)

        updated = engine.update_series(template_id, {"amount": "80"}, regenerate_future=True)
        assert updated.generated_count == 0
        assert engine.list_series(template_id) == []
        assert updated.template.last_generated_date is None

        resumed = engine.resume(template_id)
        assert resumed.generated_count == 13
        assert {tx.amount for tx in engine.list_series(template_id)} == {Decimal("80")}

    def test_later_runs_do_not_backfill_past_slots(self, engine, clock, template_data):
        """Test top-up and resume respect the floor set by a regeneration."""
        result = engine.create_template(template_data(start_date=date(2024, 1, 15)))
        template_id = result.template.id
        clock.set_today(date(2024, 6, 1))

        updated = engine.update_series(
            template_id, {"start_date": "2024-01-20"}, regenerate_future=True
        )
        assert updated.template.generate_from == date(2024, 6, 1)
        before = occurrence_dates(engine, template_id)

        assert engine.top_up().generated_count == 0
        engine.pause(template_id)
        assert engine.resume(template_id).generated_count == 0

        after = occurrence_dates(engine, template_id)
        assert after == before
        past = [d for d in after if d < date(2024, 6, 1)]
        assert past == [date(2024, m, 15) for m in range(1, 6)]
        assert all(d.day == 20 for d in after if d >= date(2024, 6, 1))

    def test_floor_only_moves_forward(self, engine, clock, template_data):
        """Test a second regeneration moves the floor to the new today."""
        result = engine.create_template(template_data())
        template_id = result.template.id
        clock.set_today(date(2024, 3, 1))
        engine.update_series(template_id, {"amount": "90"}, regenerate_future=True)
        clock.set_today(date(2024, 5, 1))
        engine.update_series(template_id, {"amount": "95"}, regenerate_future=True)

        assert engine.get_template(template_id).generate_from == date(2024, 5, 1)

    def test_plain_edit_keeps_floor_unset(self, engine, template_data):
        """Test an edit without regeneration leaves generate_from alone."""
        result = engine.create_template(template_data())
        updated = engine.update_series(result.template.id, {"payee": "New landlord"})
        assert updated.template.generate_from is None

    def test_invalid_changes_rejected(self, engine, template_data):
        """Test an edit producing an invalid template writes nothing."""
        result = engine.create_template(template_data())

        with pytest.raises(ValidationError):
            engine.update_series(result.template.id, {"end_date": "2023-06-01"})
        with pytest.raises(ValidationError):
            engine.update_series(result.template.id, {"payee": ""})

        assert engine.get_template(result.template.id).end_date is None

    def test_unknown_template(self, engine):
        """Test editing an unknown template raises NotFoundError."""
        with pytest.raises(NotFoundError):
            engine.update_series(uuid4(), {"amount": "1"})


class TestUpdateInstance:
    """Tests for update_instance."""

    def test_marks_exception_and_keeps_slot(self, engine, template_data):
        """Test an edited occurrence is an exception holding its original slot."""
        result = engine.create_template(template_data())
        row = engine.list_series(result.template.id)[1]

        edited = engine.update_instance(row.id, {"amount": "99.50", "due_date": "2024-02-10"})

        assert edited.transaction.is_exception is True
        assert edited.transaction.amount == Decimal("99.50")
        assert edited.transaction.due_date == date(2024, 2, 10)
        assert edited.transaction.occurrence_date == date(2024, 2, 1)

    def test_exception_not_regenerated(self, engine, template_data):
        """Test a rescheduled occurrence does not get a twin on top-up."""
        result = engine.create_template(template_data())
        row = engine.list_series(result.template.id)[1]
        engine.update_instance(row.id, {"due_date": "2024-02-20"})

        engine.top_up()

        february = [tx for tx in engine.list_series(result.template.id)
                    if tx.occurrence_date == date(2024, 2, 1)]
        assert len(february) == 1
        assert february[0].due_date == date(2024, 2, 20)

    def test_siblings_untouched(self, engine, template_data):
        """Test other occurrences and the template keep their values."""
        result = engine.create_template(template_data())
        rows = engine.list_series(result.template.id)
        engine.update_instance(rows[0].id, {"amount": "1"})

        after = engine.list_series(result.template.id)
        assert all(tx.amount == Decimal("100.00") for tx in after[1:])
        assert engine.get_template(result.template.id).amount == Decimal("100.00")

    def test_status_cannot_be_edited(self, engine, template_data):
        """Test status and occurrence_date are not instance-editable fields."""
        result = engine.create_template(template_data())
        row = engine.list_series(result.template.id)[0]

        with pytest.raises(ValidationError):
            engine.update_instance(row.id, {"status": "paid"})
        with pytest.raises(ValidationError):
            engine.update_instance(row.id, {"occurrence_date": "2024-05-01"})


class TestAtomicity:
    """Tests for all-or-nothing persistence."""

    def test_failed_insert_rolls_back_create(self, engine, store, template_data, monkeypatch):
        """Test a storage failure leaves neither template nor occurrences."""
        def fail(self, transactions):
            raise PersistenceError("disk full")

        monkeypatch.setattr(InMemoryTransactionRepository, "add_many", fail)

        with pytest.raises(PersistenceError):
            engine.create_template(template_data())

        assert engine.list_templates() == []
        assert AuditEventType.PERSISTENCE_FAILED in event_types(store)

    def test_failed_regeneration_restores_series(self, engine, template_data, monkeypatch):
        """Test deleted rows and template edits come back after a failed regeneration."""
        result = engine.create_template(template_data())
        before = engine.list_series(result.template.id)

        def fail(self, transactions):
            raise PersistenceError("connection lost")

        monkeypatch.setattr(InMemoryTransactionRepository, "add_many", fail)

        with pytest.raises(PersistenceError):
            engine.update_series(result.template.id, {"amount": "300"}, regenerate_future=True)

        assert engine.list_series(result.template.id) == before
        assert engine.get_template(result.template.id).amount == Decimal("100.00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
