"""Typed reconciliation errors."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .identifiers import ResourceMetadata


class SpecMismatchError(Exception):
    """The current and target state differ in a field that cannot be updated.

    The object has to be deleted and recreated. For most kinds the ensurer does
    that itself; for a resource group the error is surfaced to the user.
    """

    def __init__(
        self,
        metadata: ResourceMetadata,
        field: str,
        expected: Any,
        found: Any,
        hint: str | None = None,
    ) -> None:
        self.metadata = metadata
        self.field = field
        self.expected = expected
        self.found = found
        self.hint = hint
        message = (
            "differences between the current and target spec require the object to be "
            f"deleted. Resource: {metadata.kind.key}, Name: {metadata.name}, "
            f"Field: {field}, Expected: {expected}, Found: {found}"
        )
        if hint:
            message += f". Additional info: {hint}"
        super().__init__(message)


class TerminalConditionError(Exception):
    """Reconciliation cannot proceed without user intervention."""

    def __init__(self, metadata: ResourceMetadata, error: Exception | str) -> None:
        self.metadata = metadata
        self.error = error if isinstance(error, Exception) else Exception(error)
        super().__init__(
            "terminal error prevents successful reconciliation. "
            f"Resource: {metadata.kind.key}, Name: {metadata.name}, Error: {self.error}"
        )
        self.__cause__ = self.error


class AdapterConfigurationError(Exception):
    """Raised when the infrastructure inputs cannot be translated to a desired state."""

    pass


class MigrationError(Exception):
    """Raised when the availability-set migration cannot make progress."""

    pass


def join_errors(
    errors: Iterable[BaseException | None], message: str = "multiple errors"
) -> Exception | None:
    """Combine the errors of a multi-item operation.

    Returns:
        None when there were no errors, the error itself when there was exactly
        one, an ExceptionGroup otherwise.
    """
    collected = [e for e in errors if e is not None]
    if not collected:
        return None
    if len(collected) == 1:
        return collected[0]  # type: ignore[return-value]
    return ExceptionGroup(message, collected)  # type: ignore[arg-type]
