"""
Vault Indexer - Database Schema

Idempotent DDL for the materialized tables. Applied by ``vault-indexer
migrate`` and by the integration test fixtures.

Natural keys carry the idempotency guarantees:
  vaults.vault_id, withdrawal_requests.request_id, cursors.id
Append-only tables are keyed by ledger provenance (tx_digest, event_seq) so
a replayed page inserts nothing.
"""

from __future__ import annotations

import logging

from psycopg_pool import AsyncConnectionPool

logger = logging.getLogger(__name__)

# u64 amounts do not fit BIGINT; millisecond timestamps do
SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS vaults (
        id               BIGSERIAL PRIMARY KEY,
        vault_id         TEXT NOT NULL UNIQUE,
        name             TEXT,
        parent_address   TEXT NOT NULL,
        child_address    TEXT NOT NULL,
        target_amount    NUMERIC(20, 0) NOT NULL,
        created_at_ms    BIGINT,
        deadline_ms      BIGINT NOT NULL,
        duration_days    BIGINT,
        current_balance  NUMERIC(20, 0) NOT NULL DEFAULT 0,
        tx_digest        TEXT,
        event_seq        BIGINT,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vaults_parent_address ON vaults (parent_address)",
    "CREATE INDEX IF NOT EXISTS idx_vaults_child_address ON vaults (child_address)",
    """
    CREATE TABLE IF NOT EXISTS deposits (
        id              BIGSERIAL PRIMARY KEY,
        vault_id        TEXT NOT NULL,
        amount          NUMERIC(20, 0) NOT NULL,
        depositor       TEXT NOT NULL,
        created_at_ms   BIGINT NOT NULL,
        tx_digest       TEXT NOT NULL,
        event_seq       BIGINT NOT NULL,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (tx_digest, event_seq)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deposits_vault_id ON deposits (vault_id)",
    """
    CREATE TABLE IF NOT EXISTS withdrawal_requests (
        id                  BIGSERIAL PRIMARY KEY,
        request_id          TEXT NOT NULL UNIQUE,
        vault_id            TEXT NOT NULL,
        amount              NUMERIC(20, 0) NOT NULL,
        requester           TEXT NOT NULL,
        reason              TEXT NOT NULL DEFAULT '',
        status              TEXT NOT NULL CHECK (
            status IN ('Pending', 'Approved', 'Rejected', 'Cancelled', 'Withdrawn')
        ),
        approved_by         TEXT,
        created_at_ms       BIGINT NOT NULL,
        audit_at_ms         BIGINT,
        tx_digest           TEXT,
        event_seq           BIGINT,
        event_timestamp_ms  BIGINT,
        indexed_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_withdrawal_requests_vault_id ON withdrawal_requests (vault_id)",
    "CREATE INDEX IF NOT EXISTS idx_withdrawal_requests_requester ON withdrawal_requests (requester)",
    """
    CREATE TABLE IF NOT EXISTS withdrawals (
        id              BIGSERIAL PRIMARY KEY,
        request_id      TEXT NOT NULL,
        vault_id        TEXT NOT NULL,
        amount          NUMERIC(20, 0) NOT NULL,
        left_balance    NUMERIC(20, 0) NOT NULL,
        withdrawer      TEXT NOT NULL,
        created_at_ms   BIGINT NOT NULL,
        tx_digest       TEXT NOT NULL,
        event_seq       BIGINT NOT NULL,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (tx_digest, event_seq)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_withdrawals_vault_id ON withdrawals (vault_id)",
    """
    CREATE TABLE IF NOT EXISTS cursors (
        id          TEXT PRIMARY KEY,
        tx_digest   TEXT NOT NULL,
        event_seq   BIGINT NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letter_events (
        id             BIGSERIAL PRIMARY KEY,
        event_type     TEXT NOT NULL,
        type_tag       TEXT NOT NULL,
        tx_digest      TEXT NOT NULL,
        event_seq      BIGINT NOT NULL,
        timestamp_ms   BIGINT,
        payload        JSONB,
        stage          TEXT NOT NULL CHECK (stage IN ('decode', 'apply')),
        error_type     TEXT NOT NULL,
        error_message  TEXT NOT NULL,
        attempts       INTEGER NOT NULL DEFAULT 0,
        created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        resolved_at    TIMESTAMPTZ,
        UNIQUE (event_type, tx_digest, event_seq)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_dead_letter_events_unresolved
        ON dead_letter_events (created_at) WHERE resolved_at IS NULL
    """,
)

TABLES = (
    "vaults",
    "deposits",
    "withdrawal_requests",
    "withdrawals",
    "cursors",
    "dead_letter_events",
)


async def apply_schema(pool: AsyncConnectionPool) -> int:
    """Create any missing tables and indexes. Returns the number of statements run."""
    async with pool.connection() as conn:
        async with conn.transaction():
            async with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    await cur.execute(statement)
    logger.info(f"Schema applied ({len(SCHEMA_STATEMENTS)} statements)")
    return len(SCHEMA_STATEMENTS)
