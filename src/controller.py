"""
Reconcile Controller - runs reconciliation requests concurrently.

Independent resources are reconciled in parallel, bounded by a semaphore.
All requests for the same resource key share one lock, so their steps never
interleave.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from config import ControllerConfig
from db import StateStore
from errors import ReconcileError
from reconciler import Reconciler
from resources.base import Diagnostic, Outcome, ReconcileResult
from resources.registry import KindRegistry, get_registry

logger = logging.getLogger(__name__)


class Action(Enum):
    """What a request asks the controller to do."""

    APPLY = "apply"
    REFRESH = "refresh"
    DESTROY = "destroy"
    IMPORT = "import"


@dataclass
class ReconcileRequest:
    """One unit of work for the controller."""

    action: Action
    kind: str
    key: str
    declared: Optional[Dict[str, Any]] = None
    resource_id: Optional[str] = None
    managing_organization: str = ""
    force_replace: bool = True


@dataclass
class ReconcileReport:
    """Result of one request, with timing."""

    request: ReconcileRequest
    result: ReconcileResult
    duration_seconds: float = 0.0


class ReconcileController:
    """Dispatches reconciliation requests to per-key Reconcilers."""

    def __init__(
        self,
        client,
        store: StateStore,
        registry: Optional[KindRegistry] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.client = client
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_reconciles)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _hold_key(self, key: str) -> None:
        self._lock_users[key] = self._lock_users.get(key, 0) + 1

    def _release_key(self, key: str) -> None:
        """Drop a key's lock once no pending request uses it."""
        users = self._lock_users.get(key, 0) - 1
        if users > 0:
            self._lock_users[key] = users
            return
        self._lock_users.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def reconciler_for(self, kind_name: str, key: str) -> Reconciler:
        """
        Build a Reconciler for a key, sharing the key's lock.

        Raises:
            ValueError: If the kind is not registered
        """
        kind = self.registry.get(kind_name)
        return Reconciler(kind, self.client, self.store, key, lock=self._lock_for(key))

    async def reconcile(self, request: ReconcileRequest) -> ReconcileReport:
        """Run one request."""
        self._hold_key(request.key)
        try:
            return await self._reconcile(request)
        finally:
            self._release_key(request.key)

    async def _reconcile(self, request: ReconcileRequest) -> ReconcileReport:
        async with self.semaphore:
            start_time = time.monotonic()
            reconciler = self.reconciler_for(request.kind, request.key)
            logger.info(
                f"Reconciling {request.kind} {request.key} ({request.action.value})"
            )

            if request.action == Action.APPLY:
                result = await self._apply(reconciler, request)
            elif request.action == Action.REFRESH:
                result = await reconciler.refresh()
            elif request.action == Action.DESTROY:
                result = await reconciler.destroy()
            elif request.action == Action.IMPORT:
                result = await reconciler.import_handle(
                    request.resource_id or "", request.managing_organization
                )
            else:
                raise ValueError(f"Unknown action: {request.action}")

            duration_seconds = time.monotonic() - start_time
            if result.success:
                logger.info(
                    f"Reconciled {request.key}: {result.outcome.value} "
                    f"in {duration_seconds:.2f}s"
                )
            else:
                logger.error(
                    f"Failed to reconcile {request.key}: {result.outcome.value}"
                )
            return ReconcileReport(request, result, duration_seconds)

    async def _apply(
        self, reconciler: Reconciler, request: ReconcileRequest
    ) -> ReconcileResult:
        declared = request.declared or {}
        try:
            plan = await reconciler.diff(declared)
        except ReconcileError as e:
            logger.error(f"{request.key}: {e}")
            return ReconcileResult(
                Outcome.FAILED,
                diagnostics=[Diagnostic.fatal(e.message, str(e))],
                error=e,
            )

        if plan is None:
            return await reconciler.create(declared)
        return await reconciler.apply_changes(
            None, declared, force_replace=request.force_replace
        )

    async def run(self, requests: List[ReconcileRequest]) -> List[ReconcileReport]:
        """
        Run requests concurrently.

        Requests for the same key never run their steps concurrently.
        """
        return await asyncio.gather(*(self.reconcile(r) for r in requests))
