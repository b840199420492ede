"""Validation module."""
from liquidity.validation.validator import (
    InvalidTransitionError,
    TemplateValidator,
    ValidationError,
)

__all__ = ["TemplateValidator", "ValidationError", "InvalidTransitionError"]
