"""SQLite database operations for split-sync."""

import sqlite3
from datetime import datetime
from pathlib import Path
from uuid import UUID

from .models import (
    CounterpartyProviderMapping,
    ProviderConnection,
    Split,
    SyncRecord,
    SyncStatus,
    Transaction,
    utcnow,
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class Database:
    """SQLite database manager.

    Holds the ledger rows the sync subsystem reads (transactions, splits,
    counterparty mappings, provider connections) and the sync record store.
    There is no row locking: callers must not run triggers for the same
    transaction concurrently.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                amount TEXT NOT NULL,
                date TEXT NOT NULL,
                notes TEXT
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_splits (
                id TEXT PRIMARY KEY,
                transaction_id TEXT NOT NULL,
                counterparty_id TEXT NOT NULL,
                amount TEXT NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_splits_transaction
            ON transaction_splits(transaction_id)
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS provider_connections (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                provider_type TEXT NOT NULL,
                credentials TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                UNIQUE(user_id, provider_type)
            )
        """
        )

        # One mapping per counterparty
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS counterparty_provider_mappings (
                id TEXT PRIMARY KEY,
                counterparty_id TEXT NOT NULL UNIQUE,
                provider_id TEXT NOT NULL,
                external_user_id TEXT NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_records (
                id TEXT PRIMARY KEY,
                split_id TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                external_expense_id TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'synced', 'failed', 'deleted')),
                last_sync_at TIMESTAMP,
                last_error TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                UNIQUE(split_id, provider_id)
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_sync_records_status
            ON sync_records(status)
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Transaction and split operations
    # ========================================================================

    def save_transaction(self, transaction: Transaction) -> Transaction:
        """Insert or replace a transaction."""
        self.conn.execute(
            """
            INSERT INTO transactions (id, user_id, title, amount, date, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                amount = excluded.amount,
                date = excluded.date,
                notes = excluded.notes
            """,
            (
                str(transaction.id),
                str(transaction.user_id),
                transaction.title,
                str(transaction.amount),
                transaction.date.isoformat(),
                transaction.notes,
            ),
        )
        self.conn.commit()
        return transaction

    def get_transaction(self, transaction_id: UUID) -> Transaction | None:
        """Get a transaction by ID."""
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (str(transaction_id),)
        ).fetchone()
        return Transaction.model_validate(dict(row)) if row else None

    def save_split(self, split: Split) -> Split:
        """Insert a split, or update its amount and counterparty."""
        self.conn.execute(
            """
            INSERT INTO transaction_splits (id, transaction_id, counterparty_id, amount)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                counterparty_id = excluded.counterparty_id,
                amount = excluded.amount
            """,
            (
                str(split.id),
                str(split.transaction_id),
                str(split.counterparty_id),
                str(split.amount),
            ),
        )
        self.conn.commit()
        return split

    def get_split(self, split_id: UUID) -> Split | None:
        """Get a split by ID."""
        row = self.conn.execute(
            "SELECT * FROM transaction_splits WHERE id = ?", (str(split_id),)
        ).fetchone()
        return Split.model_validate(dict(row)) if row else None

    def delete_split(self, split_id: UUID):
        """Delete a split. Its sync records are left for the orchestrator."""
        self.conn.execute(
            "DELETE FROM transaction_splits WHERE id = ?", (str(split_id),)
        )
        self.conn.commit()

    def list_splits_with_mappings(
        self, transaction_id: UUID
    ) -> list[tuple[Split, CounterpartyProviderMapping | None]]:
        """
        Get all splits of a transaction with their counterparty's mapping.

        Splits whose counterparty has no mapping are returned with None.
        Rows come back in insertion order.
        """
        rows = self.conn.execute(
            """
            SELECT s.id, s.transaction_id, s.counterparty_id, s.amount,
                   m.id AS mapping_id, m.provider_id, m.external_user_id
            FROM transaction_splits s
            LEFT JOIN counterparty_provider_mappings m
                ON m.counterparty_id = s.counterparty_id
            WHERE s.transaction_id = ?
            ORDER BY s.rowid
            """,
            (str(transaction_id),),
        ).fetchall()

        result: list[tuple[Split, CounterpartyProviderMapping | None]] = []
        for row in rows:
            split = Split(
                id=row["id"],
                transaction_id=row["transaction_id"],
                counterparty_id=row["counterparty_id"],
                amount=row["amount"],
            )
            mapping = None
            if row["mapping_id"] is not None:
                mapping = CounterpartyProviderMapping(
                    id=row["mapping_id"],
                    counterparty_id=row["counterparty_id"],
                    provider_id=row["provider_id"],
                    external_user_id=row["external_user_id"],
                )
            result.append((split, mapping))
        return result

    # ========================================================================
    # Counterparty mapping operations
    # ========================================================================

    def save_mapping(
        self, mapping: CounterpartyProviderMapping
    ) -> CounterpartyProviderMapping:
        """Insert a mapping, replacing any existing one for the counterparty."""
        self.conn.execute(
            """
            INSERT INTO counterparty_provider_mappings (
                id, counterparty_id, provider_id, external_user_id
            ) VALUES (?, ?, ?, ?)
            ON CONFLICT(counterparty_id) DO UPDATE SET
                provider_id = excluded.provider_id,
                external_user_id = excluded.external_user_id
            """,
            (
                str(mapping.id),
                str(mapping.counterparty_id),
                str(mapping.provider_id),
                mapping.external_user_id,
            ),
        )
        self.conn.commit()
        stored = self.get_mapping(mapping.counterparty_id)
        if stored is None:
            raise RuntimeError("Failed to save counterparty mapping")
        return stored

    def get_mapping(self, counterparty_id: UUID) -> CounterpartyProviderMapping | None:
        """Get the mapping of a counterparty."""
        row = self.conn.execute(
            "SELECT * FROM counterparty_provider_mappings WHERE counterparty_id = ?",
            (str(counterparty_id),),
        ).fetchone()
        return CounterpartyProviderMapping.model_validate(dict(row)) if row else None

    def delete_mapping(self, counterparty_id: UUID) -> int:
        """Delete the mapping of a counterparty."""
        cursor = self.conn.execute(
            "DELETE FROM counterparty_provider_mappings WHERE counterparty_id = ?",
            (str(counterparty_id),),
        )
        self.conn.commit()
        return cursor.rowcount

    # ========================================================================
    # Provider connection operations
    # ========================================================================

    def save_provider_connection(
        self, connection: ProviderConnection
    ) -> ProviderConnection:
        """Insert a connection, or replace the user's existing one of that type."""
        now = utcnow()
        self.conn.execute(
            """
            INSERT INTO provider_connections (
                id, user_id, provider_type, credentials, is_active,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, provider_type) DO UPDATE SET
                credentials = excluded.credentials,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
            """,
            (
                str(connection.id),
                str(connection.user_id),
                connection.provider_type,
                connection.credentials,
                int(connection.is_active),
                connection.created_at.isoformat(),
                now.isoformat(),
            ),
        )
        self.conn.commit()
        stored = self.find_provider_connection(
            connection.user_id, connection.provider_type
        )
        if stored is None:
            raise RuntimeError("Failed to save provider connection")
        return stored

    def get_provider_connection(self, connection_id: UUID) -> ProviderConnection | None:
        """Get a provider connection by ID."""
        row = self.conn.execute(
            "SELECT * FROM provider_connections WHERE id = ?", (str(connection_id),)
        ).fetchone()
        return ProviderConnection.model_validate(dict(row)) if row else None

    def find_provider_connection(
        self, user_id: UUID, provider_type: str
    ) -> ProviderConnection | None:
        """Get a user's connection to a provider type."""
        row = self.conn.execute(
            """
            SELECT * FROM provider_connections
            WHERE user_id = ? AND provider_type = ?
            """,
            (str(user_id), provider_type),
        ).fetchone()
        return ProviderConnection.model_validate(dict(row)) if row else None

    def list_provider_connections(self, user_id: UUID) -> list[ProviderConnection]:
        """Get all connections of a user, oldest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM provider_connections
            WHERE user_id = ?
            ORDER BY created_at, rowid
            """,
            (str(user_id),),
        ).fetchall()
        return [ProviderConnection.model_validate(dict(row)) for row in rows]

    def update_provider_credentials(self, connection_id: UUID, credentials: str):
        """Replace the encrypted credential blob of a connection."""
        self.conn.execute(
            """
            UPDATE provider_connections
            SET credentials = ?, updated_at = ?
            WHERE id = ?
            """,
            (credentials, utcnow().isoformat(), str(connection_id)),
        )
        self.conn.commit()

    def delete_provider_connection(self, connection_id: UUID) -> int:
        """Delete a connection with its mappings and sync records."""
        key = (str(connection_id),)
        self.conn.execute(
            "DELETE FROM counterparty_provider_mappings WHERE provider_id = ?", key
        )
        self.conn.execute("DELETE FROM sync_records WHERE provider_id = ?", key)
        cursor = self.conn.execute("DELETE FROM provider_connections WHERE id = ?", key)
        self.conn.commit()
        return cursor.rowcount

    # ========================================================================
    # Sync record store
    # ========================================================================

    def create_sync_record(self, record: SyncRecord) -> SyncRecord:
        """Insert a new sync record."""
        self.conn.execute(
            """
            INSERT INTO sync_records (
                id, split_id, provider_id, external_expense_id, status,
                last_sync_at, last_error, retry_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(record.id),
                str(record.split_id),
                str(record.provider_id),
                record.external_expense_id,
                record.status.value,
                _ts(record.last_sync_at),
                record.last_error,
                record.retry_count,
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ),
        )
        self.conn.commit()
        return record

    def update_sync_record(self, record: SyncRecord) -> SyncRecord:
        """Write every mutable field of an existing sync record in place."""
        record.updated_at = utcnow()
        cursor = self.conn.execute(
            """
            UPDATE sync_records SET
                external_expense_id = ?,
                status = ?,
                last_sync_at = ?,
                last_error = ?,
                retry_count = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                record.external_expense_id,
                record.status.value,
                _ts(record.last_sync_at),
                record.last_error,
                record.retry_count,
                record.updated_at.isoformat(),
                str(record.id),
            ),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise RuntimeError(f"Sync record {record.id} does not exist")
        return record

    def delete_sync_record(self, record_id: UUID):
        """Delete a sync record."""
        self.conn.execute("DELETE FROM sync_records WHERE id = ?", (str(record_id),))
        self.conn.commit()

    def delete_sync_records_for_split(self, split_id: UUID) -> int:
        """Delete all sync records of a split, returning how many were removed."""
        cursor = self.conn.execute(
            "DELETE FROM sync_records WHERE split_id = ?", (str(split_id),)
        )
        self.conn.commit()
        return cursor.rowcount

    def get_sync_record(self, record_id: UUID) -> SyncRecord | None:
        """Get a sync record by ID."""
        row = self.conn.execute(
            "SELECT * FROM sync_records WHERE id = ?", (str(record_id),)
        ).fetchone()
        return SyncRecord.model_validate(dict(row)) if row else None

    def find_sync_records_by_split(self, split_id: UUID) -> list[SyncRecord]:
        """Get all sync records of a split."""
        rows = self.conn.execute(
            "SELECT * FROM sync_records WHERE split_id = ? ORDER BY created_at",
            (str(split_id),),
        ).fetchall()
        return [SyncRecord.model_validate(dict(row)) for row in rows]

    def find_sync_record(self, split_id: UUID, provider_id: UUID) -> SyncRecord | None:
        """Get the sync record of a (split, provider) pair."""
        row = self.conn.execute(
            "SELECT * FROM sync_records WHERE split_id = ? AND provider_id = ?",
            (str(split_id), str(provider_id)),
        ).fetchone()
        return SyncRecord.model_validate(dict(row)) if row else None

    def find_sync_records_by_transaction(
        self, transaction_id: UUID
    ) -> list[SyncRecord]:
        """Get all sync records of a transaction's current splits."""
        rows = self.conn.execute(
            """
            SELECT r.* FROM sync_records r
            JOIN transaction_splits s ON s.id = r.split_id
            WHERE s.transaction_id = ?
            ORDER BY s.rowid
            """,
            (str(transaction_id),),
        ).fetchall()
        return [SyncRecord.model_validate(dict(row)) for row in rows]

    def find_failed_sync_records(self, max_retry_count: int) -> list[SyncRecord]:
        """Get failed sync records that have been retried fewer than max times."""
        rows = self.conn.execute(
            """
            SELECT * FROM sync_records
            WHERE status = ? AND retry_count < ?
            ORDER BY updated_at
            """,
            (SyncStatus.FAILED.value, max_retry_count),
        ).fetchall()
        return [SyncRecord.model_validate(dict(row)) for row in rows]
