"""
Resource Kind Base - interface each managed resource type implements.

A resource kind knows how to validate a declared descriptor, talk to the IAM
client for its own type, and which attributes are immutable, write-only or
subject to diff suppression. The reconciler state machine is generic over
this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Type

from pydantic import BaseModel, ValidationError

from classifier import CallOutcome
from db import ResourceHandle
from errors import InvalidDescriptor, ReconcileError
from migrate import current_version
from suppression import SuppressionEngine, SuppressionRule


class Severity(Enum):
    """Diagnostic severity."""

    WARNING = "warning"
    FATAL = "fatal"


@dataclass
class Diagnostic:
    """A message surfaced to the caller alongside an outcome."""

    severity: Severity
    summary: str
    detail: str = ""

    @classmethod
    def warning(cls, summary: str, detail: str = "") -> "Diagnostic":
        return cls(Severity.WARNING, summary, detail)

    @classmethod
    def fatal(cls, summary: str, detail: str = "") -> "Diagnostic":
        return cls(Severity.FATAL, summary, detail)


class Outcome(Enum):
    """Tagged result of one lifecycle step."""

    CREATED = "created"
    ADOPTED = "adopted"
    READ = "read"
    UPDATED = "updated"
    DRIFTED_ABSENT = "drifted_absent"
    DELETED_CLEAN = "deleted_clean"
    DELETE_CONFLICT = "delete_conflict"
    DELETE_UNEXPECTED_STATUS = "delete_unexpected_status"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result returned by every public reconciler operation."""

    outcome: Outcome
    handle: Optional[ResourceHandle] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    error: Optional[ReconcileError] = None

    @property
    def success(self) -> bool:
        return not self.fatal

    @property
    def fatal(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.FATAL]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    @property
    def absent(self) -> bool:
        return self.outcome == Outcome.DRIFTED_ABSENT


@dataclass(frozen=True)
class UpdateCall:
    """One remote update sub-operation covering a set of attributes."""

    name: str
    attributes: FrozenSet[str]


class ResourceKind(ABC):
    """
    Abstract base class for managed resource kinds.

    Subclasses declare their pydantic descriptor model and attribute
    classification as class attributes and implement the remote calls.
    """

    declared_model: Type[BaseModel]

    # Attributes that can only change by replacing the resource.
    immutable_attributes: FrozenSet[str] = frozenset()

    # Attributes never returned by a read.
    write_only_attributes: FrozenSet[str] = frozenset()

    # Attributes set by the service, never declared.
    computed_attributes: FrozenSet[str] = frozenset()

    # Attributes accepted on change but never pushed, with the warning to emit.
    unpropagated_attributes: Mapping[str, Tuple[str, str]] = {}

    def __init__(self):
        self._engine: Optional[SuppressionEngine] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique kind name (e.g., 'iam_user')."""
        pass

    @property
    def schema_version(self) -> int:
        return current_version(self.name)

    def suppression_rules(self) -> Dict[str, List[SuppressionRule]]:
        """Per-attribute suppression rules."""
        return {}

    @property
    def engine(self) -> SuppressionEngine:
        if self._engine is None:
            self._engine = SuppressionEngine(
                self.suppression_rules(), self.write_only_attributes
            )
        return self._engine

    def validate(self, declared: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a declared descriptor against the kind's model.

        Returns:
            The normalized descriptor as a plain dict.

        Raises:
            InvalidDescriptor: If validation fails.
        """
        try:
            model = self.declared_model.model_validate(dict(declared))
        except ValidationError as e:
            messages = []
            for error in e.errors():
                path = ".".join(str(p) for p in error["loc"]) or "(root)"
                messages.append(f"{path}: {error['msg']}")
            raise InvalidDescriptor(
                f"Invalid {self.name} descriptor: {'; '.join(messages)}",
                operation="validate",
            ) from e
        return model.model_dump(by_alias=True)

    def natural_key(self, declared: Mapping[str, Any]) -> Optional[str]:
        """Caller-assignable unique key, or None if the kind has none."""
        return None

    @abstractmethod
    def managing_organization(self, declared: Mapping[str, Any]) -> str:
        """The managing organization a declared descriptor asks for."""
        pass

    def owner_of(self, record: Mapping[str, Any]) -> str:
        """The managing organization of a remote record."""
        return record.get("managingOrganization") or ""

    def handle_from(
        self, record: Mapping[str, Any], declared: Mapping[str, Any]
    ) -> ResourceHandle:
        """Build a handle from a created or adopted remote record."""
        return ResourceHandle(
            resource_id=str(record["id"]),
            managing_organization=self.owner_of(record)
            or self.managing_organization(declared),
        )

    def created_attributes(
        self, record: Mapping[str, Any], declared: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """Computed attributes to persist after a successful create."""
        return {}

    def unpropagated_changes(self, changed: Set[str]) -> Set[str]:
        """Changed attributes that are recorded but never sent to the service."""
        return changed & set(self.unpropagated_attributes)

    def update_calls(self, changed: Set[str]) -> List[UpdateCall]:
        """Remote update sub-operations needed for a changed attribute set."""
        return []

    async def lookup(self, client, key: str) -> CallOutcome:
        """Look up a remote record by natural key."""
        raise NotImplementedError(f"{self.name} has no natural key lookup")

    async def update(
        self,
        client,
        handle: ResourceHandle,
        call: UpdateCall,
        declared: Mapping[str, Any],
    ) -> CallOutcome:
        """Issue one update sub-operation."""
        raise NotImplementedError(f"{self.name} does not support in-place updates")

    @abstractmethod
    async def create(self, client, declared: Mapping[str, Any]) -> CallOutcome:
        """Create the remote resource."""
        pass

    @abstractmethod
    async def read(self, client, handle: ResourceHandle) -> CallOutcome:
        """Fetch the remote record by handle."""
        pass

    @abstractmethod
    def attributes_from_remote(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Map a remote record onto declared attribute names."""
        pass

    @abstractmethod
    async def delete(self, client, handle: ResourceHandle) -> CallOutcome:
        """Delete the remote resource."""
        pass
