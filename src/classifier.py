"""
Error Classifier - maps remote call outcomes to reconciliation verdicts.

Every call made through the IAM client yields a CallOutcome instead of raising.
The reconciler passes each outcome through classify() to decide whether the
call succeeded, found nothing, succeeded with a caveat, or failed.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


HTTP_NO_CONTENT = 204
HTTP_CONFLICT = 409


class CallKind(Enum):
    """Remote call categories the classifier distinguishes."""

    LOOKUP = "lookup"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class ErrorKind(Enum):
    """Kinds of errors a remote call can report."""

    EMPTY_RESULTS = "empty_results"
    DOMAIN = "domain"
    HTTP = "http"
    TRANSPORT = "transport"


class Classification(Enum):
    """Verdict categories."""

    SUCCESS = "success"
    RECOVERABLE_EMPTY = "recoverable_empty"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass
class RemoteError:
    """Structured error reported by the IAM client."""

    kind: ErrorKind
    message: str = ""
    issues: List[Dict[str, Any]] = field(default_factory=list)

    def __str__(self) -> str:
        return self.message or self.kind.value


@dataclass
class CallOutcome:
    """Result of one remote call."""

    operation: str
    status_code: Optional[int] = None
    record: Optional[Dict[str, Any]] = None
    error: Optional[RemoteError] = None
    ok: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class Verdict:
    """Classification of a CallOutcome."""

    classification: Classification
    detail: str = ""
    status_code: Optional[int] = None

    @property
    def is_success(self) -> bool:
        return self.classification == Classification.SUCCESS

    @property
    def is_empty(self) -> bool:
        return self.classification == Classification.RECOVERABLE_EMPTY

    @property
    def is_warning(self) -> bool:
        return self.classification == Classification.WARNING

    @property
    def is_fatal(self) -> bool:
        return self.classification == Classification.FATAL

    @property
    def is_conflict(self) -> bool:
        return self.is_fatal and self.status_code == HTTP_CONFLICT


def _describe(outcome: CallOutcome) -> str:
    parts = [outcome.operation]
    if outcome.status_code is not None:
        parts.append(f"HTTP {outcome.status_code}")
    if outcome.error is not None:
        parts.append(str(outcome.error))
    return ": ".join(parts)


def classify(call: CallKind, outcome: CallOutcome) -> Verdict:
    """
    Classify a remote call outcome.

    Args:
        call: The kind of call that produced the outcome.
        outcome: The CallOutcome returned by the client.

    Returns:
        A Verdict. The classifier never retries.
    """
    status = outcome.status_code
    error = outcome.error

    if call == CallKind.DELETE and status == HTTP_CONFLICT:
        return Verdict(
            Classification.FATAL,
            f"{outcome.operation} returned HTTP 409 Conflict: {error or 'resource is in use'}",
            status,
        )

    if error is not None:
        if error.kind == ErrorKind.EMPTY_RESULTS and call in (
            CallKind.LOOKUP,
            CallKind.READ,
            CallKind.DELETE,
        ):
            return Verdict(Classification.RECOVERABLE_EMPTY, _describe(outcome), status)
        return Verdict(Classification.FATAL, _describe(outcome), status)

    if call == CallKind.DELETE:
        if not outcome.ok:
            return Verdict(Classification.FATAL, _describe(outcome), status)
        if status is not None and status != HTTP_NO_CONTENT:
            return Verdict(
                Classification.WARNING,
                f"{outcome.operation} returned status '{status}', which is unexpected",
                status,
            )
        return Verdict(Classification.SUCCESS, status_code=status)

    if call in (CallKind.LOOKUP, CallKind.READ) and not outcome.record:
        return Verdict(Classification.RECOVERABLE_EMPTY, _describe(outcome), status)

    if call == CallKind.CREATE and not (outcome.record and outcome.record.get("id")):
        return Verdict(
            Classification.FATAL,
            f"{_describe(outcome)}: response did not carry a resource id",
            status,
        )

    return Verdict(Classification.SUCCESS, status_code=status)
