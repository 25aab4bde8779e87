from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

T = TypeVar("T")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class Database:
    """A single sqlite connection shared by every connection handler.

    Statements are serialised behind a lock and run on a worker thread, so
    callers on the event loop suspend at each persistence call instead of
    blocking other connections.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def call(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` under the connection lock, rolling back if it raises."""
        with self._lock:
            try:
                return fn()
            except BaseException:
                self._conn.rollback()
                raise

    async def run(self, fn: Callable[[], T]) -> T:
        return await asyncio.to_thread(self.call, fn)

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'STAFF', 'ADMIN')),
                api_token TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS invitations (
                id TEXT PRIMARY KEY,
                token TEXT NOT NULL UNIQUE,
                quota_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scenarios (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                partner_persona TEXT NOT NULL,
                partner_model TEXT NOT NULL,
                coach_model TEXT NOT NULL,
                partner_system_prompt TEXT NOT NULL,
                coach_system_prompt TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                scenario_id INTEGER NULL REFERENCES scenarios(id),
                invitation_id TEXT NULL REFERENCES invitations(id),
                custom_scenario_name TEXT NULL,
                custom_description TEXT NULL,
                custom_partner_persona TEXT NULL,
                custom_partner_prompt TEXT NULL,
                custom_coach_prompt TEXT NULL,
                total_messages INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'partner', 'coach')),
                content TEXT NOT NULL,
                thread TEXT NOT NULL DEFAULT 'main' CHECK (thread IN ('main', 'aside')),
                thread_id TEXT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                CHECK ((thread = 'aside') = (thread_id IS NOT NULL))
            );

            CREATE TABLE IF NOT EXISTS usage_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                invitation_id TEXT NULL REFERENCES invitations(id),
                model TEXT NOT NULL,
                stream_type TEXT NOT NULL CHECK (stream_type IN ('partner', 'coach', 'aside')),
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS telemetry_events (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                properties_json TEXT NOT NULL DEFAULT '{}',
                user_id TEXT NULL,
                session_id INTEGER NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_id
                ON messages(session_id, id);
            CREATE INDEX IF NOT EXISTS idx_usage_logs_invitation
                ON usage_logs(invitation_id);
            CREATE INDEX IF NOT EXISTS idx_telemetry_events_name_created
                ON telemetry_events(name, created_at);
            """
        )
        self._conn.commit()
