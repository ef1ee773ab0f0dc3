"""
State Store - persistence of reconciliation state records.

Holds one StateRecord per caller-chosen resource key: the last applied
declared attributes, the remote resource handle and the schema version the
record was written with. Two backends are provided, an in-memory store and a
PostgreSQL store built on asyncpg.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceHandle:
    """Remote-assigned identity of a managed resource."""

    resource_id: str
    managing_organization: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "resource_id": self.resource_id,
            "managing_organization": self.managing_organization,
        }


@dataclass
class StateRecord:
    """Persisted state of one managed resource."""

    key: str
    kind: str
    handle: Optional[ResourceHandle] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = 0

    @property
    def resource_id(self) -> Optional[str]:
        return self.handle.resource_id if self.handle else None


class StateStore(ABC):
    """Durable key-value store of StateRecords."""

    @abstractmethod
    async def get(self, key: str) -> Optional[StateRecord]:
        """Return the record stored under key, or None."""
        pass

    @abstractmethod
    async def put(self, record: StateRecord) -> None:
        """Insert or replace the record stored under record.key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove the record under key. Returns True if one existed."""
        pass

    @abstractmethod
    async def list_keys(self, kind: Optional[str] = None) -> List[str]:
        """List stored keys, optionally restricted to one kind."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class MemoryStateStore(StateStore):
    """Process-local store. Records are copied in and out."""

    def __init__(self):
        self._records: Dict[str, StateRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[StateRecord]:
        async with self._lock:
            record = self._records.get(key)
            return copy.deepcopy(record) if record else None

    async def put(self, record: StateRecord) -> None:
        async with self._lock:
            self._records[record.key] = copy.deepcopy(record)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._records.pop(key, None) is not None

    async def list_keys(self, kind: Optional[str] = None) -> List[str]:
        async with self._lock:
            return sorted(
                key
                for key, record in self._records.items()
                if kind is None or record.kind == kind
            )


class DatabaseStateStore(StateStore):
    """Stores StateRecords in PostgreSQL."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create the state table if it doesn't exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS reconciler_state (
                    key VARCHAR(255) PRIMARY KEY,
                    kind VARCHAR(64) NOT NULL,
                    resource_id VARCHAR(255),
                    managing_organization VARCHAR(255),
                    attributes TEXT NOT NULL DEFAULT '{}',
                    schema_version INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP NOT NULL DEFAULT NOW()
                )
                """)
        logger.info("State schema initialized")

    async def get(self, key: str) -> Optional[StateRecord]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM reconciler_state WHERE key = $1",
                key,
            )
            if not row:
                return None
            return self._parse_state_row(row)

    async def put(self, record: StateRecord) -> None:
        self._ensure_connected()
        handle = record.handle
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciler_state (
                    key, kind, resource_id, managing_organization,
                    attributes, schema_version, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, NOW())
                ON CONFLICT (key) DO UPDATE
                SET kind = EXCLUDED.kind,
                    resource_id = EXCLUDED.resource_id,
                    managing_organization = EXCLUDED.managing_organization,
                    attributes = EXCLUDED.attributes,
                    schema_version = EXCLUDED.schema_version,
                    updated_at = NOW()
                """,
                record.key,
                record.kind,
                handle.resource_id if handle else None,
                handle.managing_organization if handle else None,
                json.dumps(record.attributes, sort_keys=True),
                record.schema_version,
            )
        logger.debug(f"Stored state for {record.key}")

    async def delete(self, key: str) -> bool:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM reconciler_state WHERE key = $1",
                key,
            )
        deleted = result == "DELETE 1"
        if deleted:
            logger.debug(f"Deleted state for {key}")
        return deleted

    async def list_keys(self, kind: Optional[str] = None) -> List[str]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            if kind:
                rows = await conn.fetch(
                    "SELECT key FROM reconciler_state WHERE kind = $1 ORDER BY key",
                    kind,
                )
            else:
                rows = await conn.fetch(
                    "SELECT key FROM reconciler_state ORDER BY key"
                )
            return [row["key"] for row in rows]

    def _parse_state_row(self, row: asyncpg.Record) -> StateRecord:
        """Convert a reconciler_state row into a StateRecord."""
        result = dict(row)
        handle = None
        if result.get("resource_id"):
            handle = ResourceHandle(
                resource_id=result["resource_id"],
                managing_organization=result.get("managing_organization") or "",
            )
        return StateRecord(
            key=result["key"],
            kind=result["kind"],
            handle=handle,
            attributes=(
                json.loads(result["attributes"]) if result.get("attributes") else {}
            ),
            schema_version=result.get("schema_version") or 0,
        )
