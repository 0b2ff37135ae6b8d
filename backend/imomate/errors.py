"""
Domain error taxonomy and the `{"ok": ...}` result convention.

Services raise these internally and convert them (plus storage errors) into
result dicts at their public boundary, so callers always branch on `ok`.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import Any, Callable

from .db.dynamodb.errors import DdbError


@dataclass(slots=True)
class CrmError(Exception):
    message: str
    field: str | None = None
    errors: dict[str, str] = dc_field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    @property
    def code(self) -> str:
        return "error"


@dataclass(slots=True)
class ValidationError(CrmError):
    @property
    def code(self) -> str:
        return "validation"


@dataclass(slots=True)
class DuplicateFound(CrmError):
    conflict: dict[str, Any] | None = None

    @property
    def code(self) -> str:
        return "duplicate"


@dataclass(slots=True)
class NotFound(CrmError):
    @property
    def code(self) -> str:
        return "not_found"


@dataclass(slots=True)
class Unauthorized(CrmError):
    # Rendered exactly like NotFound so callers cannot probe other tenants.
    @property
    def code(self) -> str:
        return "unauthorized"


@dataclass(slots=True)
class DerivationFailure(CrmError):
    qualification_id: str | None = None

    @property
    def code(self) -> str:
        return "derivation_failed"


NOT_FOUND_MESSAGE = "Document not found"


def ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    out: dict[str, Any] = {"ok": True, "data": data}
    out.update(extra)
    return out


def to_error_result(exc: Exception) -> dict[str, Any]:
    """Render a domain or storage error as a failure result."""
    if isinstance(exc, CrmError):
        out: dict[str, Any] = {"ok": False, "error": exc.message, "code": exc.code}
        if isinstance(exc, Unauthorized):
            out["error"] = NOT_FOUND_MESSAGE
        if exc.field:
            out["field"] = exc.field
        if exc.errors:
            out["errors"] = dict(exc.errors)
        if isinstance(exc, DuplicateFound) and exc.conflict is not None:
            out["conflict"] = exc.conflict
        if isinstance(exc, DerivationFailure) and exc.qualification_id:
            out["qualificationId"] = exc.qualification_id
        return out
    if isinstance(exc, DdbError):
        return {"ok": False, "error": exc.message, "code": exc.result_code}
    raise exc


def returns_result(fn: Callable[..., dict[str, Any]]) -> Callable[..., dict[str, Any]]:
    """Convert CrmError/DdbError raised by `fn` into a failure result."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            return fn(*args, **kwargs)
        except (CrmError, DdbError) as e:
            return to_error_result(e)

    return wrapper
