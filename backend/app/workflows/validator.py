# /app/workflows/validator.py

"""
Pure validation functions for user input collected by flow steps.

This module checks free-text replies against a step's input contract:
- `validation_regex`, when the author configured one (full match)
- otherwise the built-in check for the step's `input_type`

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No logging
- No state mutation
"""

import re
from datetime import datetime
from typing import Optional, TypedDict

from app.models.flow import FlowStep, InputType

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\+?\d{7,15}$")
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%m/%d/%Y")


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def _valid() -> ValidationResult:
    return {
        "is_valid": True,
        "error_code": None,
        "message": None
    }


def _invalid(error_code: str, message: str) -> ValidationResult:
    return {
        "is_valid": False,
        "error_code": error_code,
        "message": message
    }


def validate_regex(pattern: str, value: str) -> ValidationResult:
    """
    Validate `value` against an author-supplied regular expression.

    An expression that does not compile cannot reject anything; graph
    analysis reports it as an authoring warning instead.
    """
    try:
        compiled = re.compile(pattern)
    except re.error:
        return _valid()

    if compiled.fullmatch(value) is None:
        return _invalid("REGEX_MISMATCH", f"Input does not match pattern {pattern!r}")
    return _valid()


def validate_input_type(input_type: InputType, value: str) -> ValidationResult:
    """Built-in format checks for typed inputs. Text and select accept anything non-empty."""
    if input_type == InputType.NUMBER:
        try:
            float(value.replace(",", ""))
        except ValueError:
            return _invalid("INVALID_NUMBER", "Input is not a number")
        return _valid()

    if input_type == InputType.EMAIL:
        if not EMAIL_RE.match(value):
            return _invalid("INVALID_EMAIL", "Input is not an email address")
        return _valid()

    if input_type == InputType.PHONE:
        digits = re.sub(r"[\s\-()]", "", value)
        if not PHONE_RE.match(digits):
            return _invalid("INVALID_PHONE", "Input is not a phone number")
        return _valid()

    if input_type == InputType.DATE:
        for fmt in DATE_FORMATS:
            try:
                datetime.strptime(value, fmt)
                return _valid()
            except ValueError:
                continue
        return _invalid("INVALID_DATE", "Input is not a date")

    return _valid()


def validate_input(step: FlowStep, value: str) -> ValidationResult:
    """
    Validate a free-text reply for `step`.

    Args:
        step: The step waiting for input
        value: The raw text the user typed

    Returns:
        ValidationResult with is_valid=True if the reply satisfies the step's contract
    """
    if value is None or not str(value).strip():
        return _invalid("EMPTY_INPUT", "Input cannot be empty")

    value = str(value).strip()
    if step.validation_regex:
        return validate_regex(step.validation_regex, value)
    return validate_input_type(step.input_type, value)
