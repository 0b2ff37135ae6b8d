from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class DdbError(Exception):
    """Base error for DynamoDB operations.

    Services translate these into `{"ok": False, ...}` results at their
    boundary (see `imomate.errors.to_error_result`).
    """

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    @property
    def result_code(self) -> str:
        return "storage"


@dataclass(slots=True)
class DdbNotFound(DdbError):
    @property
    def result_code(self) -> str:
        return "not_found"


@dataclass(slots=True)
class DdbConflict(DdbError):
    # Conditional check failed or the transaction was cancelled.
    cancellation_codes: list[str] | None = None

    @property
    def result_code(self) -> str:
        return "conflict"


@dataclass(slots=True)
class DdbValidation(DdbError):
    @property
    def result_code(self) -> str:
        return "validation"


@dataclass(slots=True)
class DdbThrottled(DdbError):
    pass


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    pass


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass
