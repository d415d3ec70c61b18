"""
Durable resume positions, one row per event type key.
"""

from __future__ import annotations

import logging
from typing import Protocol

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from .models import CursorRecord, Position

logger = logging.getLogger(__name__)


class CursorStoreProtocol(Protocol):
    async def get(self, event_type: str) -> Position | None: ...

    async def upsert(self, event_type: str, position: Position) -> Position: ...


class CursorStore:
    """Cursor table access. ``upsert`` is a single atomic INSERT .. ON CONFLICT."""

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def get(self, event_type: str) -> Position | None:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    "SELECT tx_digest, event_seq FROM cursors WHERE id = %s",
                    (event_type,),
                )
                row = await cur.fetchone()
        if row is None:
            return None
        return Position(row["tx_digest"], int(row["event_seq"]))

    async def upsert(self, event_type: str, position: Position) -> Position:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    INSERT INTO cursors (id, tx_digest, event_seq)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET tx_digest = EXCLUDED.tx_digest,
                        event_seq = EXCLUDED.event_seq,
                        updated_at = NOW()
                    RETURNING tx_digest, event_seq
                    """,
                    (event_type, position.tx_digest, position.event_seq),
                )
                row = await cur.fetchone()
        logger.debug(f"Cursor {event_type} -> {position}")
        return Position(row["tx_digest"], int(row["event_seq"])) if row else position

    async def list(self, limit: int = 100) -> list[CursorRecord]:
        """Most recently advanced cursors first."""
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT id, tx_digest, event_seq, created_at, updated_at
                    FROM cursors
                    ORDER BY updated_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = await cur.fetchall()
        return [
            CursorRecord(
                event_type=row["id"],
                position=Position(row["tx_digest"], int(row["event_seq"])),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    async def delete(self, event_type: str) -> bool:
        """Forget a cursor so its event type is re-read from the beginning."""
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("DELETE FROM cursors WHERE id = %s", (event_type,))
                deleted = cur.rowcount > 0
        if deleted:
            logger.warning(f"Cursor {event_type} deleted; type will be re-read from the start")
        return deleted
