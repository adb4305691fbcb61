"""Typed storage exceptions for the protection store.

Repository modules raise these to signal infrastructure failures (SQLite
connection or query errors, uniqueness violations) instead of leaking raw
``sqlite3`` exceptions. Domain outcomes such as "no protection at this
coordinate" stay as ``None``/``[]`` return values.

Hierarchy:
    StorageError
    ├── StorageOperationError
    │   ├── StorageUnavailable
    │   └── SchemaConflict
    └── MalformedExtensionData
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class StorageOperationContext:
    """Structured operation metadata carried by storage exceptions.

    Attributes:
        operation: Stable operation identifier (for example
            ``"protections.insert_protection"``).
        details: Optional human-readable context for logs and debugging.
    """

    operation: str
    details: str | None = None


class StorageError(RuntimeError):
    """Base exception for storage-layer failures."""


class StorageOperationError(StorageError):
    """Base exception for repository operation failures.

    Args:
        context: Structured operation metadata.
        cause: Optional underlying exception.
    """

    def __init__(
        self,
        *,
        context: StorageOperationContext,
        cause: Exception | None = None,
    ) -> None:
        message = context.operation
        if context.details:
            message = f"{message}: {context.details}"
        super().__init__(message)
        self.context = context
        self.cause = cause


class StorageUnavailable(StorageOperationError):
    """Connection, driver, or query failure."""


class SchemaConflict(StorageOperationError):
    """A write would violate a uniqueness invariant (for example a taken coordinate)."""


class MalformedExtensionData(StorageError):
    """The ``data`` column of a protection row is not a JSON object.

    Args:
        raw: The undecodable column text, kept so it can be written back.
        reason: Parser message.
    """

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"malformed protection data: {reason}")
        self.raw = raw
        self.reason = reason
