"""Effect log stores for durable workflows.

Two implementations of IEffectLogStore:
- InMemoryEffectLogStore: process-local, used by tests and one-shot CLI runs
- PostgresEffectLogStore: asyncpg-backed, survives restarts

Records are JSON documents (see workflow.durable.EffectRecord). Both
stores round-trip every record through JSON so a payload that could not
be persisted fails on append, not on resume.
"""

import json
import logging
from typing import TYPE_CHECKING, Any

from ..domain.ports import IEffectLogStore

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class InMemoryEffectLogStore(IEffectLogStore):
    """Effect log kept in a dict of instance id to record list."""

    def __init__(self):
        self._logs: dict[str, list[dict[str, Any]]] = {}

    async def append(self, instance_id: str, record: dict[str, Any]) -> None:
        self._logs.setdefault(instance_id, []).append(json.loads(json.dumps(record)))

    async def load(self, instance_id: str) -> list[dict[str, Any]]:
        records = self._logs.get(instance_id, [])
        return sorted((dict(r) for r in records), key=lambda r: r["sequence"])

    async def list_instances(self) -> list[str]:
        return sorted(self._logs)

    async def delete(self, instance_id: str) -> None:
        self._logs.pop(instance_id, None)


class PostgresEffectLogStore(IEffectLogStore):
    """PostgreSQL implementation of IEffectLogStore.

    One row per effect in ``workflow_effects``; (instance_id, sequence) is
    the primary key, so re-appending a record after a crash between the
    write and the acknowledgement is a no-op.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS workflow_effects (
            instance_id TEXT NOT NULL,
            sequence INTEGER NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            payload JSONB,
            recorded_at DOUBLE PRECISION NOT NULL,
            PRIMARY KEY (instance_id, sequence)
        )
    """

    def __init__(self, pool: "asyncpg.Pool"):
        """Initialize the store.

        Args:
            pool: asyncpg connection pool for database operations
        """
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(self.SCHEMA)

    async def append(self, instance_id: str, record: dict[str, Any]) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO workflow_effects (
                    instance_id, sequence, name, status, payload, recorded_at
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                ON CONFLICT (instance_id, sequence) DO NOTHING
                """,
                instance_id,
                record["sequence"],
                record["name"],
                record["status"],
                json.dumps(record.get("payload")),
                float(record.get("recorded_at") or 0.0),
            )

    async def load(self, instance_id: str) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT sequence, name, status, payload, recorded_at
                FROM workflow_effects
                WHERE instance_id = $1
                ORDER BY sequence
                """,
                instance_id,
            )

        return [
            {
                "sequence": row["sequence"],
                "name": row["name"],
                "status": row["status"],
                "payload": json.loads(row["payload"]) if row["payload"] is not None else None,
                "recorded_at": row["recorded_at"],
            }
            for row in rows
        ]

    async def list_instances(self) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT DISTINCT instance_id FROM workflow_effects ORDER BY instance_id"
            )
        return [row["instance_id"] for row in rows]

    async def delete(self, instance_id: str) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM workflow_effects WHERE instance_id = $1",
                instance_id,
            )
        logger.debug(f"Deleted effect log for {instance_id}: {result}")
