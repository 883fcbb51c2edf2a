from __future__ import annotations

import aiosqlite


class EntityMigrations:
    """Database schema bootstrap and additive migrations for campaign entities."""

    def __init__(self) -> None:
        self.initialized = False

    async def ensure_initialized(self, conn: aiosqlite.Connection) -> None:
        if self.initialized:
            return

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                raw_query TEXT NOT NULL DEFAULT '',
                parsed_spec_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                created_at DATETIME,
                updated_at DATETIME
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS counterparties (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                name TEXT NOT NULL,
                url TEXT,
                phone TEXT,
                email TEXT,
                source TEXT NOT NULL,
                source_url TEXT,
                metadata_json TEXT,
                created_at DATETIME,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS calls (
                id TEXT PRIMARY KEY,
                counterparty_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                round INTEGER NOT NULL DEFAULT 1,
                handle TEXT UNIQUE,
                transcript TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                duration INTEGER,
                attempt INTEGER NOT NULL DEFAULT 1,
                created_at DATETIME,
                submitted_at DATETIME,
                updated_at DATETIME,
                FOREIGN KEY(counterparty_id) REFERENCES counterparties(id),
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """
        )

        try:
            await conn.execute("ALTER TABLE calls ADD COLUMN failure_reason TEXT")
        except aiosqlite.OperationalError:
            pass

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS offers (
                id TEXT PRIMARY KEY,
                counterparty_id TEXT NOT NULL,
                call_id TEXT UNIQUE,
                unit_price REAL,
                moq TEXT,
                lead_time_days INTEGER,
                shipping TEXT,
                terms TEXT,
                confidence INTEGER,
                source TEXT NOT NULL,
                raw_evidence TEXT,
                created_at DATETIME,
                FOREIGN KEY(counterparty_id) REFERENCES counterparties(id)
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                counterparty_id TEXT NOT NULL,
                recipient TEXT NOT NULL,
                message_id TEXT,
                thread_id TEXT,
                created_at DATETIME,
                FOREIGN KEY(run_id) REFERENCES runs(id)
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                from_status TEXT,
                to_status TEXT NOT NULL,
                reason TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

        await conn.execute("CREATE INDEX IF NOT EXISTS idx_calls_run_round ON calls(run_id, round, status)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_counterparties_run ON counterparties(run_id)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_offers_counterparty ON offers(counterparty_id)")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient)")
        await conn.commit()
        self.initialized = True
