"""SQLite persistence layer for per-user credentials."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from maimai.models import UserCredential

SCHEMA_VERSION = 1

_USER_FIELDS = (
    "token",
    "auto_claim_enabled",
    "last_auto_claim_date",
    "last_auto_claim_at",
    "last_auto_claim_status",
)


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                token TEXT,
                auto_claim_enabled INTEGER NOT NULL DEFAULT 0,
                last_auto_claim_date TEXT,
                last_auto_claim_at TEXT,
                last_auto_claim_status TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

    def get(self, user_id: str) -> UserCredential | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return _to_credential(row) if row else None

    def upsert(self, user_id: str, **fields: Any) -> None:
        """Merge the given fields into the user's record, creating it if absent."""

        unknown = set(fields) - set(_USER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)}")
        if "auto_claim_enabled" in fields:
            fields["auto_claim_enabled"] = int(bool(fields["auto_claim_enabled"]))

        now = _utc_now_iso()
        columns = ["user_id", *fields, "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{name}=excluded.{name}" for name in [*fields, "updated_at"])
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO users({", ".join(columns)})
                VALUES({placeholders})
                ON CONFLICT(user_id) DO UPDATE SET {updates}
                """,
                (user_id, *fields.values(), now, now),
            )

    def delete(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            return cur.rowcount > 0

    def all_users(self) -> dict[str, UserCredential]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at ASC").fetchall()
        return {row["user_id"]: _to_credential(row) for row in rows}


def _to_credential(row: sqlite3.Row) -> UserCredential:
    return UserCredential(
        user_id=row["user_id"],
        token=row["token"] or None,
        auto_claim_enabled=bool(row["auto_claim_enabled"]),
        last_auto_claim_date=row["last_auto_claim_date"],
        last_auto_claim_at=row["last_auto_claim_at"],
        last_auto_claim_status=row["last_auto_claim_status"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
