from __future__ import annotations

import re
from typing import Any, Mapping

from opsportal.services.credentials import PHONE_MESSAGE, URL_MESSAGE, is_valid_url


_E164 = re.compile(r"^\+\d{10,15}$")
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce(kind: str, value: Any) -> tuple[Any, str | None]:
    # Returns (coerced value, error message); strings from forms are accepted for every type.
    if kind == "string":
        if not isinstance(value, str):
            return None, "Must be a string"
        return value.strip(), None
    if kind == "integer":
        if isinstance(value, bool):
            return None, "Must be an integer"
        if isinstance(value, int):
            return value, None
        if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
            return int(value.strip()), None
        return None, "Must be an integer"
    if kind == "number":
        if isinstance(value, bool):
            return None, "Must be a number"
        if isinstance(value, (int, float)):
            return value, None
        if isinstance(value, str):
            try:
                return float(value.strip()), None
            except ValueError:
                return None, "Must be a number"
        return None, "Must be a number"
    if kind == "boolean":
        if isinstance(value, bool):
            return value, None
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE, None
        return None, "Must be true or false"
    if kind == "url":
        if isinstance(value, str) and is_valid_url(value.strip()):
            return value.strip(), None
        return None, URL_MESSAGE
    if kind == "phone":
        if isinstance(value, str) and _E164.match(value.strip()):
            return value.strip(), None
        return None, PHONE_MESSAGE
    return None, f"Unsupported field type: {kind}"


def validate_config(
    schema: Mapping[str, str], values: Mapping[str, Any]
) -> tuple[dict[str, Any], dict[str, str]]:
    """Validate non-secret configuration fields against a template schema.

    Blank or null values mean "keep current" and are skipped. Returns the
    coerced values to merge and the per-field errors.
    """
    coerced: dict[str, Any] = {}
    errors: dict[str, str] = {}
    for name, value in values.items():
        kind = schema.get(name)
        if kind is None:
            errors[name] = "Unknown field"
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        result, error = _coerce(kind, value)
        if error:
            errors[name] = error
        else:
            coerced[name] = result
    return coerced, errors
