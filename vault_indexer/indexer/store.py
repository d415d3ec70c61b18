"""
Materialization store: idempotent writes of decoded records.

Every write is safe to repeat. Creation events insert-if-absent on their
natural key, append-only events insert-if-absent on ledger provenance, and
lifecycle events go through a locked read-validate-update inside one
transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from psycopg import AsyncCursor
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..core.errors import ApplyError, IllegalTransitionError, UnknownRequestError
from .lifecycle import validate_consumption, validate_transition
from .models import (
    DeadLetter,
    Deposit,
    Position,
    Provenance,
    RawEvent,
    VaultCreated,
    Withdrawal,
    WithdrawalRequest,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)


class MaterializationStoreProtocol(Protocol):
    async def create_vault(self, record: VaultCreated) -> bool: ...

    async def record_deposit(self, record: Deposit) -> bool: ...

    async def create_withdrawal_request(self, record: WithdrawalRequest) -> bool: ...

    async def transition_withdrawal_request(
        self,
        request_id: str,
        new_status: WithdrawalStatus,
        auditor: str | None,
        audit_at_ms: int | None,
    ) -> bool: ...

    async def record_withdrawal(self, record: Withdrawal) -> bool: ...

    async def record_dead_letter(
        self, event_type: str, event: RawEvent, stage: str, error: BaseException
    ) -> None: ...

    async def list_dead_letters(
        self, limit: int = 100, max_attempts: int | None = None, include_resolved: bool = False
    ) -> list[DeadLetter]: ...

    async def resolve_dead_letter(self, dead_letter_id: int) -> None: ...

    async def record_dead_letter_attempt(self, dead_letter_id: int, error: BaseException) -> None: ...


def _require_provenance(record: Any, what: str) -> Provenance:
    if record.provenance is None:
        raise ApplyError(f"{what} has no ledger provenance")
    return record.provenance


class MaterializationStore:
    """PostgreSQL implementation over the shared async pool."""

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    # =========================================================================
    # Creation and append-only records
    # =========================================================================

    async def create_vault(self, record: VaultCreated) -> bool:
        """Insert a vault; a repeat for the same vault id is a no-op. Returns True if inserted."""
        prov = record.provenance
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO vaults (
                        vault_id, name, parent_address, child_address, target_amount,
                        created_at_ms, deadline_ms, duration_days, current_balance,
                        tx_digest, event_seq
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (vault_id) DO NOTHING
                    """,
                    (
                        record.vault_id,
                        record.name,
                        record.parent_address,
                        record.child_address,
                        record.target_amount,
                        record.created_at_ms,
                        record.deadline_ms,
                        record.duration_days,
                        record.current_balance,
                        prov.tx_digest if prov else None,
                        prov.event_seq if prov else None,
                    ),
                )
                inserted = cur.rowcount > 0
        if not inserted:
            logger.info(
                f"Vault {record.vault_id} already indexed; skipping",
                extra={"vault_id": record.vault_id},
            )
        return inserted

    async def record_deposit(self, record: Deposit) -> bool:
        prov = _require_provenance(record, "deposit")
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO deposits (
                        vault_id, amount, depositor, created_at_ms, tx_digest, event_seq
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (tx_digest, event_seq) DO NOTHING
                    """,
                    (
                        record.vault_id,
                        record.amount,
                        record.depositor,
                        record.created_at_ms,
                        prov.tx_digest,
                        prov.event_seq,
                    ),
                )
                return cur.rowcount > 0

    async def create_withdrawal_request(self, record: WithdrawalRequest) -> bool:
        """Insert a request; a repeat for the same request id is already applied."""
        prov = record.provenance
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO withdrawal_requests (
                        request_id, vault_id, amount, requester, reason, status,
                        created_at_ms, tx_digest, event_seq, event_timestamp_ms
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (request_id) DO NOTHING
                    """,
                    (
                        record.request_id,
                        record.vault_id,
                        record.amount,
                        record.requester,
                        record.reason,
                        record.status.value,
                        record.created_at_ms,
                        prov.tx_digest if prov else None,
                        prov.event_seq if prov else None,
                        prov.timestamp_ms if prov else None,
                    ),
                )
                inserted = cur.rowcount > 0
        if not inserted:
            logger.info(
                f"Withdrawal request {record.request_id} already indexed; skipping",
                extra={"request_id": record.request_id},
            )
        return inserted

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _lock_request(self, cur: AsyncCursor[Any], request_id: str) -> dict[str, Any] | None:
        await cur.execute(
            """
            SELECT status, approved_by FROM withdrawal_requests
            WHERE request_id = %s FOR UPDATE
            """,
            (request_id,),
        )
        return await cur.fetchone()

    async def _set_status(
        self,
        cur: AsyncCursor[Any],
        request_id: str,
        current: WithdrawalStatus,
        new_status: WithdrawalStatus,
        auditor: str | None,
        audit_at_ms: int | None,
    ) -> None:
        await cur.execute(
            """
            UPDATE withdrawal_requests
            SET status = %s,
                approved_by = COALESCE(%s, approved_by),
                audit_at_ms = COALESCE(%s, audit_at_ms),
                updated_at = NOW()
            WHERE request_id = %s
            """,
            (new_status.value, auditor, audit_at_ms, request_id),
        )
        logger.info(
            f"Withdrawal request {request_id}: {current.value} -> {new_status.value}",
            extra={"request_id": request_id, "status": new_status.value},
        )

    async def _transition(
        self,
        cur: AsyncCursor[Any],
        request_id: str,
        new_status: WithdrawalStatus,
        auditor: str | None,
        audit_at_ms: int | None,
    ) -> bool:
        """Locked read-validate-update. Caller owns the transaction."""
        row = await self._lock_request(cur, request_id)
        if row is None:
            return False

        current = WithdrawalStatus(row["status"])
        if validate_transition(request_id, current, new_status):
            await self._set_status(cur, request_id, current, new_status, auditor, audit_at_ms)
            return True

        logger.debug(f"Request {request_id} already {current.value}; {new_status.value} is a replay")
        if auditor is not None and row.get("approved_by") is None:
            # Withdrawn before the approval was indexed: keep the audit fields
            await cur.execute(
                """
                UPDATE withdrawal_requests
                SET approved_by = %s,
                    audit_at_ms = COALESCE(audit_at_ms, %s),
                    updated_at = NOW()
                WHERE request_id = %s
                """,
                (auditor, audit_at_ms, request_id),
            )
            logger.info(
                f"Withdrawal request {request_id}: recorded auditor from late "
                f"{new_status.value} event",
                extra={"request_id": request_id, "status": current.value},
            )
        return True

    async def transition_withdrawal_request(
        self,
        request_id: str,
        new_status: WithdrawalStatus,
        auditor: str | None,
        audit_at_ms: int | None,
    ) -> bool:
        """
        Move a request to ``new_status``.

        Returns:
            True when the row exists (updated, or already reflecting the event),
            False when no request with that id is stored.

        Raises:
            IllegalTransitionError: if the lifecycle graph forbids the change
        """
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    return await self._transition(
                        cur, request_id, new_status, auditor, audit_at_ms
                    )

    async def record_withdrawal(self, record: Withdrawal) -> bool:
        """
        Insert the withdrawal and mark its request Withdrawn in one transaction.

        The withdrawal is ledger truth. A Pending request is marked Withdrawn
        without waiting for its approval, and a Rejected or Cancelled request
        keeps its status while the withdrawal row is stored and logged as an
        anomaly.

        Raises:
            UnknownRequestError: when the request is not stored yet; nothing
                is written, so a later replay inserts the withdrawal once.
        """
        prov = _require_provenance(record, "withdrawal")
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    row = await self._lock_request(cur, record.request_id)
                    if row is None:
                        raise UnknownRequestError(record.request_id)

                    await cur.execute(
                        """
                        INSERT INTO withdrawals (
                            request_id, vault_id, amount, left_balance, withdrawer,
                            created_at_ms, tx_digest, event_seq
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (tx_digest, event_seq) DO NOTHING
                        """,
                        (
                            record.request_id,
                            record.vault_id,
                            record.amount,
                            record.left_balance,
                            record.withdrawer,
                            record.created_at_ms,
                            prov.tx_digest,
                            prov.event_seq,
                        ),
                    )
                    inserted = cur.rowcount > 0

                    current = WithdrawalStatus(row["status"])
                    try:
                        consume = validate_consumption(record.request_id, current)
                    except IllegalTransitionError as e:
                        logger.warning(
                            f"Withdrawal {prov.tx_digest}:{prov.event_seq} kept; {e}",
                            extra={"request_id": record.request_id},
                        )
                        return inserted

                    if consume:
                        await self._set_status(
                            cur, record.request_id, current, WithdrawalStatus.WITHDRAWN, None, None
                        )
        return inserted

    # =========================================================================
    # Dead letters
    # =========================================================================

    async def record_dead_letter(
        self, event_type: str, event: RawEvent, stage: str, error: BaseException
    ) -> None:
        """Record a failed event; a letter already resolved stays resolved."""
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO dead_letter_events (
                        event_type, type_tag, tx_digest, event_seq, timestamp_ms,
                        payload, stage, error_type, error_message
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (event_type, tx_digest, event_seq) DO UPDATE
                    SET stage = EXCLUDED.stage,
                        error_type = EXCLUDED.error_type,
                        error_message = EXCLUDED.error_message,
                        updated_at = NOW()
                    WHERE dead_letter_events.resolved_at IS NULL
                    """,
                    (
                        event_type,
                        event.type_tag,
                        event.position.tx_digest,
                        event.position.event_seq,
                        event.timestamp_ms,
                        Jsonb(event.payload),
                        stage,
                        type(error).__name__,
                        str(error)[:2000],
                    ),
                )

    async def list_dead_letters(
        self, limit: int = 100, max_attempts: int | None = None, include_resolved: bool = False
    ) -> list[DeadLetter]:
        """Oldest first, so replays follow ledger order."""
        clauses = []
        params: list[Any] = []
        if not include_resolved:
            clauses.append("resolved_at IS NULL")
        if max_attempts is not None:
            clauses.append("attempts < %s")
            params.append(max_attempts)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT id, event_type, type_tag, tx_digest, event_seq, timestamp_ms,
                           payload, stage, error_type, error_message, attempts,
                           created_at, resolved_at
                    FROM dead_letter_events
                    {where}
                    ORDER BY created_at ASC, id ASC
                    LIMIT %s
                    """,
                    params,
                )
                rows = await cur.fetchall()

        return [
            DeadLetter(
                id=row["id"],
                event_type=row["event_type"],
                stage=row["stage"],
                error_type=row["error_type"],
                error_message=row["error_message"],
                event=RawEvent(
                    type_tag=row["type_tag"],
                    position=Position(row["tx_digest"], int(row["event_seq"])),
                    payload=row["payload"],
                    timestamp_ms=row["timestamp_ms"],
                ),
                attempts=row["attempts"],
                created_at=row["created_at"],
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]

    async def resolve_dead_letter(self, dead_letter_id: int) -> None:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE dead_letter_events
                    SET resolved_at = NOW(), attempts = attempts + 1, updated_at = NOW()
                    WHERE id = %s
                    """,
                    (dead_letter_id,),
                )

    async def record_dead_letter_attempt(self, dead_letter_id: int, error: BaseException) -> None:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE dead_letter_events
                    SET attempts = attempts + 1,
                        error_type = %s,
                        error_message = %s,
                        updated_at = NOW()
                    WHERE id = %s
                    """,
                    (type(error).__name__, str(error)[:2000], dead_letter_id),
                )
