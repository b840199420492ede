"""
JSON Facade

Plain-dict entry points for a request handler. Ids and dates arrive as
strings, results leave as JSON-ready dicts.

Errors are not swallowed: typed exceptions propagate, and error_payload()
renders one for the response body.
"""

from datetime import date
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from liquidity.engine import ReconciliationEngine
from liquidity.models.recurring import TemplateStatus, TransactionType, ValidationIssue
from liquidity.queries import ForecastQueries
from liquidity.recurrence import GenerationLimitExceeded
from liquidity.services.storage import DuplicateError, NotFoundError, PersistenceError
from liquidity.validation import InvalidTransitionError, ValidationError


def _parse_id(value: Union[str, UUID], field: str = "id") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as e:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            [ValidationIssue(
                field=field,
                issue_type="invalid_format",
                message=f"{field} must be a UUID",
                severity="error",
            )],
        ) from e


def _parse_date(value: Union[str, date, None], field: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            [ValidationIssue(
                field=field,
                issue_type="invalid_format",
                message=f"{field} must be an ISO date (YYYY-MM-DD)",
                severity="error",
            )],
        ) from e


def _parse_choice(value: Optional[str], choices: type[Enum], field: str):
    if value is None:
        return None
    try:
        return choices(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in choices)
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            [ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{field} must be one of: {allowed}",
                severity="error",
            )],
        ) from e


def error_payload(exc: Exception) -> dict[str, Any]:
    """Render an engine exception as a response body."""
    if isinstance(exc, InvalidTransitionError):
        kind = "invalid_transition"
    elif isinstance(exc, ValidationError):
        kind = "validation_error"
    elif isinstance(exc, NotFoundError):
        kind = "not_found"
    elif isinstance(exc, DuplicateError):
        kind = "duplicate"
    elif isinstance(exc, PersistenceError):
        kind = "persistence_error"
    elif isinstance(exc, GenerationLimitExceeded):
        kind = "generation_limit_exceeded"
    else:
        kind = "internal_error"

    issues = getattr(exc, "issues", [])
    return {
        "error": kind,
        "message": str(exc),
        "issues": [issue.model_dump() for issue in issues],
    }


class RecurringAPI:
    """
    The engine's operations with dict input and output.

    Every date argument accepts an ISO string; `horizon` overrides the
    default generation horizon.
    """

    def __init__(self, engine: ReconciliationEngine, queries: Optional[ForecastQueries] = None):
        self._engine = engine
        self._queries = queries

    def create_template(self, data: dict, horizon: Optional[str] = None) -> dict:
        result = self._engine.create_template(data, horizon=_parse_date(horizon, "horizon"))
        return result.model_dump(mode="json")

    def update_series(
        self,
        template_id: str,
        changes: dict,
        regenerate_future: bool = False,
        horizon: Optional[str] = None,
    ) -> dict:
        result = self._engine.update_series(
            _parse_id(template_id, "template_id"),
            changes,
            regenerate_future=regenerate_future,
            horizon=_parse_date(horizon, "horizon"),
        )
        return result.model_dump(mode="json")

    def update_instance(self, transaction_id: str, changes: dict) -> dict:
        result = self._engine.update_instance(_parse_id(transaction_id, "transaction_id"), changes)
        return result.model_dump(mode="json")

    def pause(self, template_id: str) -> dict:
        return self._engine.pause(_parse_id(template_id, "template_id")).model_dump(mode="json")

    def resume(self, template_id: str, horizon: Optional[str] = None) -> dict:
        result = self._engine.resume(
            _parse_id(template_id, "template_id"),
            horizon=_parse_date(horizon, "horizon"),
        )
        return result.model_dump(mode="json")

    def delete_template(self, template_id: str) -> dict:
        result = self._engine.delete_template(_parse_id(template_id, "template_id"))
        return result.model_dump(mode="json")

    def skip_occurrence(self, transaction_id: str) -> dict:
        result = self._engine.skip_occurrence(_parse_id(transaction_id, "transaction_id"))
        return result.model_dump(mode="json")

    def set_transaction_status(self, transaction_id: str, status: str) -> dict:
        result = self._engine.set_transaction_status(
            _parse_id(transaction_id, "transaction_id"),
            status,
        )
        return result.model_dump(mode="json")

    def top_up(self, template_ids: Optional[list[str]] = None, horizon: Optional[str] = None) -> dict:
        ids = None
        if template_ids is not None:
            ids = [_parse_id(value, "template_ids") for value in template_ids]
        result = self._engine.top_up(ids, horizon=_parse_date(horizon, "horizon"))
        return result.model_dump(mode="json")

    def get_template(self, template_id: str) -> dict:
        return self._engine.get_template(_parse_id(template_id, "template_id")).model_dump(mode="json")

    def list_templates(self, status: Optional[str] = None) -> list[dict]:
        status_filter = _parse_choice(status or None, TemplateStatus, "status")
        return [t.model_dump(mode="json") for t in self._engine.list_templates(status_filter)]

    def list_series(self, template_id: str) -> list[dict]:
        rows = self._engine.list_series(_parse_id(template_id, "template_id"))
        return [tx.model_dump(mode="json") for tx in rows]

    def unpaid(
        self,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        transaction_type: Optional[str] = None,
    ) -> list[dict]:
        rows = self._require_queries().unpaid(
            date_from=_parse_date(date_from, "date_from"),
            date_to=_parse_date(date_to, "date_to"),
            transaction_type=_parse_choice(transaction_type or None, TransactionType, "transaction_type"),
        )
        return [tx.model_dump(mode="json") for tx in rows]

    def summary(self) -> dict:
        return self._require_queries().summarize().model_dump(mode="json")

    def _require_queries(self) -> ForecastQueries:
        if self._queries is None:
            raise RuntimeError("RecurringAPI was created without ForecastQueries")
        return self._queries
