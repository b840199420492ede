"""
Two-Stage Template Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Type checking (dates parse, amount is a decimal, enums are known)
- Unknown fields are rejected
- This catches malformed input from forms and JSON payloads

STAGE 2 - SEMANTIC VALIDATION:
- Required fields for a template (amount, start date, payee, company)
- Amount must be positive
- End date must not precede start date
- Conflicting end conditions (end date wins; reported as a warning)

Stage 2 only runs when stage 1 passes.

IMPORTANT: Validation runs before any write. A template that fails
validation never reaches storage, and no occurrence is generated for it.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from liquidity.config import get_settings
from liquidity.models.recurring import (
    RecurringTemplate,
    TemplateChanges,
    TemplateInput,
    Transaction,
    TransactionChanges,
    ValidationIssue,
    ValidationResult,
)


class ValidationError(Exception):
    """Input was rejected before any write happened."""

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = issues or []

    @classmethod
    def from_result(cls, result: ValidationResult) -> "ValidationError":
        errors = [issue for issue in result.issues if issue.severity == "error"]
        summary = "; ".join(issue.message for issue in errors) or "invalid input"
        return cls(f"Invalid {result.subject}: {summary}", result.issues)


class InvalidTransitionError(ValidationError):
    """A status change the transaction state machine does not allow."""
    pass


REQUIRED_FIELDS = {
    "amount": "Amount is required",
    "frequency": "Frequency is required",
    "start_date": "Start date is required",
    "payee": "Payee is required",
    "company_id": "Company is required",
}


def _issues_from_pydantic(exc: PydanticValidationError) -> list[ValidationIssue]:
    issues = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "input"
        issue_type = "unknown_field" if error["type"] == "extra_forbidden" else "invalid_format"
        issues.append(ValidationIssue(
            field=field,
            issue_type=issue_type,
            message=f"{field}: {error['msg']}",
            severity="error",
        ))
    return issues


class TemplateValidator:
    """
    Validates template input through a two-stage pipeline.

    Stage 1: Schema validation (parsing into TemplateInput/TemplateChanges)
    Stage 2: Semantic validation (business rules on the merged values)
    """

    def __init__(self):
        self._settings = get_settings().app

    def _validate_schema(
        self,
        data: Union[dict, TemplateInput, TemplateChanges],
        model: type,
    ) -> tuple[Optional[Any], list[ValidationIssue]]:
        """
        Stage 1: parse raw input into the given input model.

        Returns: (parsed_model_or_None, list_of_issues)
        """
        if isinstance(data, model):
            return data, []
        if not isinstance(data, dict):
            return None, [ValidationIssue(
                field="input",
                issue_type="invalid_format",
                message=f"Expected an object, got {type(data).__name__}",
                severity="error",
            )]
        try:
            return model.model_validate(data), []
        except PydanticValidationError as e:
            return None, _issues_from_pydantic(e)

    def _validate_semantic(self, values: dict) -> list[ValidationIssue]:
        """
        Stage 2: business rules on a complete set of template values.

        Checks:
        - Required fields are present and non-empty
        - Amount is positive
        - Occurrence count is at least one
        - End date is not before start date
        - Both end conditions set (warning: end date wins)
        """
        issues = []

        for field, message in REQUIRED_FIELDS.items():
            value = values.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="missing",
                    message=message,
                    severity="error",
                ))

        amount = values.get("amount")
        if amount is not None:
            try:
                positive = Decimal(amount) > 0
            except (InvalidOperation, TypeError, ValueError):
                positive = False
            if not positive:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="invalid_value",
                    message="Amount must be greater than zero",
                    severity="error",
                ))

        count = values.get("occurrences_count")
        if count is not None and count < 1:
            issues.append(ValidationIssue(
                field="occurrences_count",
                issue_type="invalid_value",
                message="Number of occurrences must be at least 1",
                severity="error",
            ))

        start_date = values.get("start_date")
        end_date = values.get("end_date")
        if start_date and end_date and end_date < start_date:
            issues.append(ValidationIssue(
                field="end_date",
                issue_type="inconsistent",
                message="End date cannot be before start date",
                severity="error",
            ))

        if end_date is not None and count is not None:
            issues.append(ValidationIssue(
                field="occurrences_count",
                issue_type="conflict",
                message=(
                    "Both an end date and a number of occurrences were given; "
                    "the end date takes precedence"
                ),
                severity="warning",
            ))

        return issues

    def _run(self, subject: str, parsed, schema_issues, values_of) -> tuple[ValidationResult, dict]:
        if parsed is None:
            return ValidationResult(
                subject=subject,
                schema_valid=False,
                semantic_valid=False,
                issues=schema_issues,
            ), {}

        values = values_of(parsed)
        semantic_issues = self._validate_semantic(values)
        semantic_valid = not any(issue.severity == "error" for issue in semantic_issues)
        return ValidationResult(
            subject=subject,
            schema_valid=True,
            semantic_valid=semantic_valid,
            issues=schema_issues + semantic_issues,
        ), values

    def validate_input(self, data: Union[dict, TemplateInput]) -> tuple[ValidationResult, dict]:
        """
        Validate a new template.

        Returns:
            (ValidationResult, values) where values are the parsed fields
            ready to build a RecurringTemplate (empty when stage 1 failed)
        """
        parsed, issues = self._validate_schema(data, TemplateInput)

        def values_of(model: TemplateInput) -> dict:
            values = model.model_dump()
            if not values.get("currency"):
                values["currency"] = self._settings.default_currency
            return values

        return self._run("template", parsed, issues, values_of)

    def validate_changes(
        self,
        template: RecurringTemplate,
        changes: Union[dict, TemplateChanges],
    ) -> tuple[ValidationResult, dict]:
        """
        Validate a series-level edit against the template it modifies.

        The semantic stage runs on the merged result, so clearing a
        required field or moving the start date past the end date is
        caught even though the change itself is well-formed.

        Returns:
            (ValidationResult, applied) where applied holds only the
            fields the caller explicitly set
        """
        parsed, issues = self._validate_schema(changes, TemplateChanges)
        subject = f"template:{template.id}"
        applied: dict = {}

        def values_of(model: TemplateChanges) -> dict:
            applied.update(model.applied())
            merged = template.model_dump()
            merged.update(applied)
            return merged

        result, _ = self._run(subject, parsed, issues, values_of)
        return result, applied

    def build_template(self, data: Union[dict, TemplateInput]) -> tuple[RecurringTemplate, ValidationResult]:
        """
        Validate and construct a new, active template without a watermark.

        Raises:
            ValidationError: If either stage reports an error
        """
        result, values = self.validate_input(data)
        if not result.is_valid:
            raise ValidationError.from_result(result)
        return self._construct(RecurringTemplate, result, values), result

    def apply_changes(
        self,
        template: RecurringTemplate,
        changes: Union[dict, TemplateChanges],
    ) -> tuple[RecurringTemplate, list[str], ValidationResult]:
        """
        Validate a series edit and return the updated template.

        Returns:
            (updated_template, changed_field_names, ValidationResult)

        Raises:
            ValidationError: If either stage reports an error
        """
        result, applied = self.validate_changes(template, changes)
        if not result.is_valid:
            raise ValidationError.from_result(result)
        merged = template.model_dump()
        merged.update(applied)
        return self._construct(RecurringTemplate, result, merged), sorted(applied), result

    def apply_transaction_changes(
        self,
        transaction: Transaction,
        changes: Union[dict, TransactionChanges],
    ) -> tuple[Transaction, list[str]]:
        """
        Validate a single-instance edit and return the edited transaction.

        An edited occurrence of a template is flagged as an exception.
        One-off transactions have no series to diverge from and keep
        is_exception=False.

        Raises:
            ValidationError: If the changes do not parse or produce an
                invalid transaction
        """
        subject = f"transaction:{transaction.id}"
        parsed, issues = self._validate_schema(changes, TransactionChanges)
        result = ValidationResult(
            subject=subject,
            schema_valid=parsed is not None,
            semantic_valid=parsed is not None,
            issues=issues,
        )
        if parsed is None:
            raise ValidationError.from_result(result)

        applied = parsed.applied()
        values = transaction.model_dump()
        values.update(applied)
        if transaction.recurring_template_id is not None:
            values["is_exception"] = True
        return self._construct(Transaction, result, values), sorted(applied)

    def _construct(self, model: type, result: ValidationResult, values: dict):
        """Build a persisted model, reporting its own checks as issues."""
        try:
            return model.model_validate(values)
        except PydanticValidationError as e:
            failed = result.model_copy(update={
                "semantic_valid": False,
                "issues": result.issues + _issues_from_pydantic(e),
            })
            raise ValidationError.from_result(failed) from e
