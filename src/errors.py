"""
Reconciliation errors.

Fatal conditions raised inside the reconciler state machine. They are caught
once at the public operation boundary and reported as fatal diagnostics.
Absence of a remote object is not an error; see classifier.Classification.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for fatal reconciliation errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_key: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource_key = resource_key

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.resource_key:
            context.append(f"resource={self.resource_key}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ConflictError(ReconcileError):
    """Natural key owned by another organization, or delete blocked."""


class UnsupportedMutation(ReconcileError):
    """An immutable attribute changed and replacement was not requested."""

    def __init__(self, attributes, operation=None, resource_key=None):
        self.attributes = sorted(attributes)
        super().__init__(
            f"attributes {', '.join(self.attributes)} cannot be changed in place; "
            f"the resource must be replaced",
            operation=operation,
            resource_key=resource_key,
        )


class TransportFailure(ReconcileError):
    """A remote call outcome that could not be mapped to anything but failure."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        resource_key: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, operation=operation, resource_key=resource_key)
        self.status_code = status_code


class InvalidDescriptor(ReconcileError):
    """Declared attributes failed validation."""
