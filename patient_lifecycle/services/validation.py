"""JSON Schema validation for free-form payloads entering the audit trail."""

from typing import Any

import jsonschema


def validate_against_schema(data: dict[str, Any], schema: dict[str, Any]) -> list[str]:
    """
    Validate a dict against a JSON schema.
    Returns every error message (empty list = valid).
    """
    validator = jsonschema.Draft7Validator(schema)
    return [error.message for error in validator.iter_errors(data)]


def require_valid(data: dict[str, Any], schema: dict[str, Any], label: str) -> None:
    """Raise ValueError listing all problems if ``data`` does not match ``schema``."""
    errors = validate_against_schema(data, schema)
    if errors:
        raise ValueError(f"Invalid {label}: " + "; ".join(sorted(errors)))
