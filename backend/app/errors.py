"""Exception hierarchy shared by the custom table and workflow services."""

from __future__ import annotations

from dataclasses import dataclass


class CustomTablesError(Exception):
    """Base class for all service level errors."""


class SchemaError(CustomTablesError):
    """Raised when a table or field definition cannot be turned into a schema."""

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class UnsupportedTypeError(SchemaError):
    """Raised for data types that are not part of the registry."""

    def __init__(self, data_type: str, message: str | None = None) -> None:
        self.data_type = data_type
        super().__init__(message or f"unsupported data type {data_type!r}")


class SuspiciousTypeError(UnsupportedTypeError):
    """Raised for unknown data types that look like geometry declarations."""

    def __init__(self, data_type: str) -> None:
        super().__init__(
            data_type,
            f"data type {data_type!r} looks like a geometry type but is not recognised",
        )


class InvalidGeometryTypeError(SchemaError):
    """Raised when a geometry field's kind cannot be resolved."""


class SchemaDriftError(SchemaError):
    """Raised when an existing physical table does not match its definition."""


@dataclass(frozen=True)
class FieldError:
    field: str | None
    reason: str

    def to_dict(self) -> dict[str, str | None]:
        return {"field": self.field, "reason": self.reason}


class ValidationError(CustomTablesError):
    """Raised when a record payload violates its table's field constraints."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__(
            "; ".join(
                f"{error.field}: {error.reason}" if error.field else error.reason
                for error in self.errors
            )
        )


class ConcurrencyError(CustomTablesError):
    """Raised when a uniqueness race on the table registry is lost."""


class NotFoundError(CustomTablesError):
    """Raised when a table, record or workflow does not exist."""


class WorkflowGraphError(CustomTablesError):
    """Raised when a workflow graph is structurally invalid."""

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ConditionEvaluationError(CustomTablesError):
    """Raised when a condition cannot be evaluated against a record."""


class ActionExecutionError(CustomTablesError):
    """Raised when an action node fails to execute."""


__all__ = [
    "ActionExecutionError",
    "ConcurrencyError",
    "ConditionEvaluationError",
    "CustomTablesError",
    "FieldError",
    "InvalidGeometryTypeError",
    "NotFoundError",
    "SchemaDriftError",
    "SchemaError",
    "SuspiciousTypeError",
    "UnsupportedTypeError",
    "ValidationError",
    "WorkflowGraphError",
]
