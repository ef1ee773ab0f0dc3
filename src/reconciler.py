"""
Resource Reconciler - lifecycle state machine for one managed resource.

Drives a single resource, identified by a local key, through
resolve -> adopt/create -> read -> update -> delete against the IAM service,
keeping its persisted state record consistent with what is known to have
happened remotely.

Every step (a remote call together with the state write that follows it)
runs shielded from cancellation, so a cancelled caller stops the state
machine between steps and never in the middle of one.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Set, TypeVar

from classifier import CallKind, classify
from db import ResourceHandle, StateRecord, StateStore
from errors import (
    ConflictError,
    ReconcileError,
    TransportFailure,
    UnsupportedMutation,
)
from migrate import migrate, needs_migration
from resolver import resolve
from resources.base import (
    Diagnostic,
    Outcome,
    ReconcileResult,
    ResourceKind,
    UpdateCall,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class State(Enum):
    """Reconciler states."""

    ABSENT = "absent"
    RESOLVING = "resolving"
    CREATING = "creating"
    ADOPTING = "adopting"
    CREATED = "created"
    READING = "reading"
    STABLE = "stable"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    CONFLICT = "conflict"


@dataclass
class ChangePlan:
    """What an update from one declared descriptor to another requires."""

    changed: Set[str] = field(default_factory=set)
    replace: Set[str] = field(default_factory=set)
    calls: List[UpdateCall] = field(default_factory=list)
    unpropagated: Set[str] = field(default_factory=set)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed)

    @property
    def requires_replacement(self) -> bool:
        return bool(self.replace)


class Reconciler:
    """
    Reconciles one resource of one kind.

    The IAM client and state store are injected. Operations on one
    Reconciler are serialized by its lock; pass a shared lock when several
    Reconciler instances may be created for the same key.
    """

    def __init__(
        self,
        kind: ResourceKind,
        client,
        store: StateStore,
        key: str,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.kind = kind
        self.client = client
        self.store = store
        self.key = key
        self.state = State.ABSENT
        self._lock = lock or asyncio.Lock()
        self._record: Optional[StateRecord] = None

    # ==================== Public operations ====================

    async def create(self, declared: Mapping[str, Any]) -> ReconcileResult:
        """
        Create the resource, adopt an existing one, or re-read it if it is
        already managed.

        Args:
            declared: The declared descriptor.

        Returns:
            ReconcileResult with outcome CREATED, ADOPTED, READ or a failure.
        """
        async with self._lock:
            try:
                descriptor = self.kind.validate(declared)
                record = await self._load()
                if record is not None and record.handle is not None:
                    logger.debug(
                        f"{self.key} is already bound to {record.resource_id}; "
                        f"skipping create"
                    )
                    return await self._read(record, Outcome.READ)
                return await self._create(descriptor)
            except ReconcileError as e:
                return self._failed(e)

    async def refresh(self) -> ReconcileResult:
        """
        Re-read the remote resource into the state record.

        Returns:
            ReconcileResult with outcome READ, or DRIFTED_ABSENT when the
            remote object is gone (the state record is then cleared).
        """
        async with self._lock:
            try:
                record = await self._load()
                if record is None or record.handle is None:
                    self._transition(State.ABSENT)
                    return ReconcileResult(Outcome.DRIFTED_ABSENT)
                return await self._read(record, Outcome.READ)
            except ReconcileError as e:
                return self._failed(e)

    async def apply_changes(
        self,
        old: Optional[Mapping[str, Any]],
        new: Mapping[str, Any],
        force_replace: bool = False,
    ) -> ReconcileResult:
        """
        Push the difference between two declared descriptors.

        Args:
            old: The previously applied descriptor. Defaults to the state
                record's attributes.
            new: The newly declared descriptor.
            force_replace: Allow replacing the resource (delete then create)
                when an immutable attribute changed.

        Returns:
            ReconcileResult with outcome UPDATED, READ (nothing to do),
            CREATED (replaced) or a failure.
        """
        async with self._lock:
            try:
                descriptor = self.kind.validate(new)
                record = await self._load()
                if record is None or record.handle is None:
                    raise ReconcileError(
                        f"No remote {self.kind.name} is bound to this key; "
                        f"create it first",
                        operation="apply_changes",
                        resource_key=self.key,
                    )
                baseline = (
                    self.kind.validate(old) if old is not None else record.attributes
                )
                plan = self.plan(baseline, descriptor)

                if plan.requires_replacement:
                    if not force_replace:
                        raise UnsupportedMutation(
                            plan.replace,
                            operation="apply_changes",
                            resource_key=self.key,
                        )
                    return await self._replace(record, descriptor)

                if not plan.has_changes:
                    record = await self._adopt_write_only(record, descriptor)
                    return await self._read(record, Outcome.READ)

                return await self._update(record, descriptor, plan)
            except ReconcileError as e:
                return self._failed(e)

    async def destroy(self) -> ReconcileResult:
        """
        Delete the remote resource and clear the state record.

        Returns:
            ReconcileResult with outcome DELETED_CLEAN,
            DELETE_UNEXPECTED_STATUS (warning, state cleared) or
            DELETE_CONFLICT (fatal, state retained).
        """
        async with self._lock:
            try:
                record = await self._load()
                if record is None or record.handle is None:
                    logger.warning(
                        f"No {self.kind.name} is bound to {self.key}; nothing deleted"
                    )
                    self._transition(State.DELETED)
                    return ReconcileResult(
                        Outcome.DELETED_CLEAN,
                        diagnostics=[
                            Diagnostic.warning(
                                "nothing to delete",
                                f"no {self.kind.name} is bound to {self.key}",
                            )
                        ],
                    )
                return await self._delete(record)
            except ReconcileError as e:
                return self._failed(e)

    async def import_handle(
        self, resource_id: str, managing_organization: str = ""
    ) -> ReconcileResult:
        """
        Start managing an existing remote resource known only by its ID.

        Args:
            resource_id: Remote-assigned ID of the resource.
            managing_organization: Owning organization, if known.

        Returns:
            ReconcileResult with outcome READ, or DRIFTED_ABSENT if no such
            resource exists.
        """
        async with self._lock:
            try:
                record = await self._load()
                if record is not None and record.handle is not None:
                    if record.resource_id != resource_id:
                        raise ReconcileError(
                            f"Key is already bound to {self.kind.name} "
                            f"{record.resource_id}, refusing to rebind it to "
                            f"{resource_id}",
                            operation="import",
                            resource_key=self.key,
                        )
                    return await self._read(record, Outcome.READ)

                record = StateRecord(
                    key=self.key,
                    kind=self.kind.name,
                    handle=ResourceHandle(resource_id, managing_organization),
                    attributes={},
                    schema_version=self.kind.schema_version,
                )
                await self._step(self._save(record))
                logger.info(f"Importing {self.kind.name} {resource_id} as {self.key}")
                return await self._read(record, Outcome.READ)
            except ReconcileError as e:
                return self._failed(e)

    def plan(self, old: Mapping[str, Any], new: Mapping[str, Any]) -> ChangePlan:
        """Compute the change plan between two declared descriptors."""
        computed = self.kind.computed_attributes
        old = {k: v for k, v in old.items() if k not in computed}
        new = {k: v for k, v in new.items() if k not in computed}

        changed = self.kind.engine.changed_attributes(old, new)
        # A write-only value never recorded (e.g. after an import) is unknown,
        # not changed.
        changed -= {a for a in self.kind.write_only_attributes if a not in old}
        replace = changed & self.kind.immutable_attributes
        unpropagated = self.kind.unpropagated_changes(changed)
        calls = self.kind.update_calls(changed - replace - unpropagated)
        return ChangePlan(
            changed=changed,
            replace=replace,
            calls=calls,
            unpropagated=unpropagated,
        )

    async def diff(self, declared: Mapping[str, Any]) -> Optional[ChangePlan]:
        """
        Plan the changes a declared descriptor needs against the state record.

        Returns:
            A ChangePlan, or None if no resource is bound to the key yet.
        """
        descriptor = self.kind.validate(declared)
        async with self._lock:
            record = await self._load()
        if record is None or record.handle is None:
            return None
        return self.plan(record.attributes, descriptor)

    # ==================== State machine steps ====================

    async def _create(self, declared: Dict[str, Any]) -> ReconcileResult:
        self._transition(State.RESOLVING)
        found = await self._step(
            resolve(self.kind, self.client, declared, resource_key=self.key)
        )

        if found is not None:
            self._transition(State.ADOPTING)
            record = StateRecord(
                key=self.key,
                kind=self.kind.name,
                handle=self.kind.handle_from(found, declared),
                attributes=dict(declared),
                schema_version=self.kind.schema_version,
            )
            await self._step(self._save(record))
            logger.info(f"Adopted {self.kind.name} {record.resource_id} as {self.key}")
            outcome = Outcome.ADOPTED
        else:
            self._transition(State.CREATING)
            record = await self._step(self._create_and_record(declared))
            outcome = Outcome.CREATED

        self._transition(State.CREATED)
        return await self._read(record, outcome)

    async def _create_and_record(self, declared: Dict[str, Any]) -> StateRecord:
        """Issue the create call and persist the returned handle as one step."""
        outcome = await self.kind.create(self.client, declared)
        verdict = classify(CallKind.CREATE, outcome)
        if not verdict.is_success:
            raise TransportFailure(
                f"Creating {self.kind.name} failed: {verdict.detail}",
                operation=outcome.operation,
                resource_key=self.key,
                status_code=verdict.status_code,
            )

        attributes = dict(declared)
        attributes.update(self.kind.created_attributes(outcome.record, declared))
        record = StateRecord(
            key=self.key,
            kind=self.kind.name,
            handle=self.kind.handle_from(outcome.record, declared),
            attributes=attributes,
            schema_version=self.kind.schema_version,
        )
        await self._save(record)
        logger.info(f"Created {self.kind.name} {record.resource_id} for {self.key}")
        return record

    async def _read(
        self,
        record: StateRecord,
        outcome: Outcome,
        diagnostics: Optional[List[Diagnostic]] = None,
    ) -> ReconcileResult:
        self._transition(State.READING)
        call = await self._step(self.kind.read(self.client, record.handle))
        verdict = classify(CallKind.READ, call)

        if verdict.is_empty:
            logger.info(
                f"{self.kind.name} {record.resource_id} no longer exists; "
                f"clearing state for {self.key}"
            )
            await self._step(self._clear())
            self._transition(State.ABSENT)
            return ReconcileResult(
                Outcome.DRIFTED_ABSENT, diagnostics=list(diagnostics or [])
            )
        if not verdict.is_success:
            raise TransportFailure(
                f"Reading {self.kind.name} {record.resource_id} failed: "
                f"{verdict.detail}",
                operation=call.operation,
                resource_key=self.key,
                status_code=verdict.status_code,
            )

        remote_id = call.record.get("id")
        if remote_id and str(remote_id) != record.resource_id:
            logger.warning(
                f"Read of {record.resource_id} returned {self.kind.name} "
                f"{remote_id}; keeping the recorded handle"
            )

        handle = record.handle
        owner = self.kind.owner_of(call.record)
        if owner and not handle.managing_organization:
            handle = dataclasses.replace(handle, managing_organization=owner)

        attributes = self.kind.engine.merge_read(
            record.attributes, self.kind.attributes_from_remote(call.record)
        )
        if attributes != record.attributes or handle != record.handle:
            record = dataclasses.replace(record, handle=handle, attributes=attributes)
            await self._step(self._save(record))

        self._transition(State.STABLE)
        return ReconcileResult(
            outcome,
            handle=record.handle,
            attributes=dict(record.attributes),
            diagnostics=list(diagnostics or []),
        )

    async def _update(
        self, record: StateRecord, declared: Dict[str, Any], plan: ChangePlan
    ) -> ReconcileResult:
        self._transition(State.UPDATING)
        diagnostics = []
        for attr in sorted(plan.unpropagated):
            summary, detail = self.kind.unpropagated_attributes[attr]
            logger.warning(f"{self.key}: {summary}")
            diagnostics.append(Diagnostic.warning(summary, detail))

        for call in plan.calls:
            record = await self._step(self._apply_update(record, call, declared))

        attributes = dict(record.attributes)
        for attr in plan.changed:
            attributes[attr] = declared.get(attr)
        record = dataclasses.replace(record, attributes=attributes)
        await self._step(self._save(record))
        logger.info(
            f"Updated {self.kind.name} {record.resource_id} "
            f"({', '.join(sorted(plan.changed))})"
        )
        return await self._read(record, Outcome.UPDATED, diagnostics)

    async def _apply_update(
        self, record: StateRecord, call: UpdateCall, declared: Dict[str, Any]
    ) -> StateRecord:
        """Issue one update sub-operation and record the attributes it applied."""
        outcome = await self.kind.update(self.client, record.handle, call, declared)
        verdict = classify(CallKind.UPDATE, outcome)
        if not verdict.is_success:
            raise TransportFailure(
                f"Updating {self.kind.name} {record.resource_id} failed: "
                f"{verdict.detail}",
                operation=outcome.operation,
                resource_key=self.key,
                status_code=verdict.status_code,
            )

        attributes = dict(record.attributes)
        for attr in call.attributes:
            attributes[attr] = declared.get(attr)
        record = dataclasses.replace(record, attributes=attributes)
        await self._save(record)
        logger.debug(f"{self.key}: {call.name} applied")
        return record

    async def _adopt_write_only(
        self, record: StateRecord, declared: Dict[str, Any]
    ) -> StateRecord:
        """Record declared write-only values the state has never held."""
        missing = {
            attr: declared[attr]
            for attr in self.kind.write_only_attributes
            if attr in declared and attr not in record.attributes
        }
        if not missing:
            return record
        record = dataclasses.replace(
            record, attributes={**record.attributes, **missing}
        )
        await self._step(self._save(record))
        return record

    async def _replace(
        self, record: StateRecord, declared: Dict[str, Any]
    ) -> ReconcileResult:
        logger.info(f"Replacing {self.kind.name} {record.resource_id} for {self.key}")
        deleted = await self._delete(record)
        result = await self._create(declared)
        result.diagnostics = deleted.diagnostics + result.diagnostics
        return result

    async def _delete(self, record: StateRecord) -> ReconcileResult:
        self._transition(State.DELETING)
        call = await self._step(self.kind.delete(self.client, record.handle))
        verdict = classify(CallKind.DELETE, call)

        if verdict.is_conflict:
            raise ConflictError(
                f"{self.kind.name} {record.resource_id} cannot be deleted: "
                f"{verdict.detail}",
                operation=call.operation,
                resource_key=self.key,
            )
        if verdict.is_fatal:
            raise TransportFailure(
                f"Deleting {self.kind.name} {record.resource_id} failed: "
                f"{verdict.detail}",
                operation=call.operation,
                resource_key=self.key,
                status_code=verdict.status_code,
            )

        await self._step(self._clear())
        self._transition(State.DELETED)

        if verdict.is_warning:
            logger.warning(f"{self.key}: {verdict.detail}")
            return ReconcileResult(
                Outcome.DELETE_UNEXPECTED_STATUS,
                diagnostics=[
                    Diagnostic.warning(
                        f"{call.operation} returned unexpected result", verdict.detail
                    )
                ],
            )

        if verdict.is_empty:
            logger.info(
                f"{self.kind.name} {record.resource_id} was already gone; "
                f"cleared state for {self.key}"
            )
        else:
            logger.info(f"Deleted {self.kind.name} {record.resource_id}")
        return ReconcileResult(Outcome.DELETED_CLEAN)

    # ==================== Helpers ====================

    async def _load(self) -> Optional[StateRecord]:
        """Load the state record, upgrading it to the current schema first."""
        record = await self.store.get(self.key)
        if record is None:
            self._record = None
            return None

        if record.kind != self.kind.name:
            raise ReconcileError(
                f"State under this key belongs to kind '{record.kind}', "
                f"not '{self.kind.name}'",
                operation="load",
                resource_key=self.key,
            )

        if needs_migration(record):
            upgraded = migrate(record)
            logger.info(
                f"Migrated state for {self.key} from schema "
                f"v{record.schema_version} to v{upgraded.schema_version}"
            )
            await self._step(self._save(upgraded))
            record = upgraded

        self._record = record
        if record.handle is not None and self.state == State.ABSENT:
            self.state = State.STABLE
        return record

    async def _save(self, record: StateRecord) -> None:
        await self.store.put(record)
        self._record = record

    async def _clear(self) -> None:
        await self.store.delete(self.key)
        self._record = None

    async def _step(self, aw: Awaitable[T]) -> T:
        task = asyncio.ensure_future(aw)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The caller still holds the key's lock; keep it until the step
            # has finished so no other operation sees a half-done step.
            while not task.done():
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    continue
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    f"{self.key}: step failed after cancellation: {task.exception()}"
                )
            raise

    def _transition(self, state: State) -> None:
        if state != self.state:
            logger.debug(
                f"{self.kind.name} {self.key}: {self.state.value} -> {state.value}"
            )
        self.state = state

    def _failed(self, error: ReconcileError) -> ReconcileResult:
        if isinstance(error, ConflictError):
            outcome = (
                Outcome.DELETE_CONFLICT
                if self.state == State.DELETING
                else Outcome.CONFLICT
            )
            self._transition(State.CONFLICT)
        else:
            outcome = Outcome.FAILED

        logger.error(f"{self.kind.name} {self.key}: {error}")
        record = self._record
        return ReconcileResult(
            outcome,
            handle=record.handle if record else None,
            attributes=dict(record.attributes) if record else {},
            diagnostics=[Diagnostic.fatal(error.message, str(error))],
            error=error,
        )
