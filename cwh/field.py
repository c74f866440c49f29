"""Construct and render field errors.

The rendered messages match those of the API server, eg

    spec.ports[0].containerPort: Invalid value: 0: containerPort cannot <= 0

"""

import json
from typing import Any, List

from cwh.models import FieldError, StatusCause

# Error types and their human readable labels.
LABELS = {
    "FieldValueNotFound": "Not found",
    "FieldValueRequired": "Required value",
    "FieldValueDuplicate": "Duplicate value",
    "FieldValueInvalid": "Invalid value",
    "FieldValueNotSupported": "Unsupported value",
    "FieldValueForbidden": "Forbidden",
    "FieldValueTooLong": "Too long",
    "InternalError": "Internal error",
}

# These types never render the offending value.
_OMIT_VALUE = {
    "FieldValueRequired",
    "FieldValueForbidden",
    "FieldValueTooLong",
    "InternalError",
}


def join(*parts: str | int) -> str:
    """Return the field path of `parts`, eg `("spec", "ports", 0)` -> `spec.ports[0]`."""
    out = ""
    for part in parts:
        if isinstance(part, int):
            out += f"[{part}]"
        elif out == "":
            out = part
        else:
            out += f".{part}"
    return out


def invalid(path: str, value: Any, detail: str) -> FieldError:
    return FieldError(type="FieldValueInvalid", field=path, value=value, detail=detail)


def forbidden(path: str, detail: str) -> FieldError:
    return FieldError(type="FieldValueForbidden", field=path, detail=detail)


def required(path: str, detail: str = "") -> FieldError:
    return FieldError(type="FieldValueRequired", field=path, detail=detail)


def duplicate(path: str, value: Any) -> FieldError:
    return FieldError(type="FieldValueDuplicate", field=path, value=value)


def not_supported(path: str, value: Any, valid: List[str]) -> FieldError:
    detail = "supported values: " + ", ".join(json.dumps(_) for _ in valid)
    return FieldError(
        type="FieldValueNotSupported", field=path, value=value, detail=detail
    )


def too_long(path: str, length: int, limit: int) -> FieldError:
    return FieldError(
        type="FieldValueTooLong",
        field=path,
        value=length,
        detail=f"must have at most {limit} bytes",
    )


def internal(path: str, err: Exception) -> FieldError:
    return FieldError(type="InternalError", field=path, detail=str(err))


def error_body(err: FieldError) -> str:
    """Return the message of `err` without the field path."""
    body = LABELS.get(err.type, err.type)
    if err.type not in _OMIT_VALUE:
        value = json.dumps(err.value) if isinstance(err.value, str) else err.value
        body += f": {value}"
    if err.detail != "":
        body += f": {err.detail}"
    return body


def error_string(err: FieldError) -> str:
    return f"{err.field}: {error_body(err)}"


def aggregate(errs: List[FieldError]) -> str:
    """Return a single message for all `errs`."""
    msgs = [error_string(_) for _ in errs]
    if len(msgs) == 1:
        return msgs[0]
    return "[" + ", ".join(msgs) + "]"


def status_causes(errs: List[FieldError]) -> List[StatusCause]:
    return [
        StatusCause(reason=_.type, message=error_body(_), field=_.field) for _ in errs
    ]
