from __future__ import annotations

import json
import secrets
import sqlite3
from uuid import uuid4

from practice_coach.models import (
    THREAD_ASIDE,
    THREAD_MAIN,
    ConversationSession,
    Invitation,
    Message,
    Quota,
    Scenario,
    UsageRecord,
    User,
)
from practice_coach.storage.database import Database, utc_now


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def _parse_json_object(raw: str | None) -> dict:
    try:
        parsed = json.loads(raw or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
        thread=row["thread"],
        thread_id=row["thread_id"],
        metadata=_parse_json_object(row["metadata_json"]),
    )


def _row_to_scenario(row: sqlite3.Row) -> Scenario:
    return Scenario(
        id=int(row["id"]),
        name=row["name"],
        description=row["description"],
        partner_persona=row["partner_persona"],
        partner_model=row["partner_model"],
        coach_model=row["coach_model"],
        partner_system_prompt=row["partner_system_prompt"],
        coach_system_prompt=row["coach_system_prompt"],
    )


class SessionStore:
    """Async persistence for sessions, messages, usage and seed data.

    Each public coroutine is one atomic statement group, committed before it
    returns. Nothing here spans a whole conversation turn.
    """

    def __init__(self, db: Database):
        self._db = db

    @property
    def database(self) -> Database:
        return self._db

    def close(self) -> None:
        self._db.close()

    # -- seed helpers -------------------------------------------------------

    async def create_user(
        self,
        user_id: str | None = None,
        *,
        role: str = "USER",
        api_token: str | None = None,
    ) -> User:
        user = User(id=user_id or str(uuid4()), role=role, api_token=api_token or generate_token())

        def insert() -> None:
            self._db.execute(
                "INSERT INTO users (id, role, api_token, created_at) VALUES (?, ?, ?, ?)",
                (user.id, user.role, user.api_token, utc_now()),
            )
            self._db.commit()

        await self._db.run(insert)
        return user

    async def create_invitation(
        self,
        *,
        quota: Quota,
        invitation_id: str | None = None,
        token: str | None = None,
    ) -> Invitation:
        invitation = Invitation(id=invitation_id or str(uuid4()), token=token or generate_token(), quota=quota)
        quota_json = json.dumps(
            {k: v for k, v in (("tokens", quota.tokens), ("label", quota.label)) if v is not None},
            ensure_ascii=True,
        )

        def insert() -> None:
            self._db.execute(
                "INSERT INTO invitations (id, token, quota_json, created_at) VALUES (?, ?, ?, ?)",
                (invitation.id, invitation.token, quota_json, utc_now()),
            )
            self._db.commit()

        await self._db.run(insert)
        return invitation

    async def create_scenario(
        self,
        *,
        name: str,
        description: str,
        partner_persona: str,
        partner_model: str,
        coach_model: str,
        partner_system_prompt: str,
        coach_system_prompt: str,
    ) -> Scenario:
        def insert() -> int:
            cursor = self._db.execute(
                """
                INSERT INTO scenarios (
                    name, description, partner_persona, partner_model, coach_model,
                    partner_system_prompt, coach_system_prompt, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    name,
                    description,
                    partner_persona,
                    partner_model,
                    coach_model,
                    partner_system_prompt,
                    coach_system_prompt,
                    utc_now(),
                ),
            )
            self._db.commit()
            return int(cursor.lastrowid)

        scenario_id = await self._db.run(insert)
        return Scenario(
            id=scenario_id,
            name=name,
            description=description,
            partner_persona=partner_persona,
            partner_model=partner_model,
            coach_model=coach_model,
            partner_system_prompt=partner_system_prompt,
            coach_system_prompt=coach_system_prompt,
        )

    async def create_session(
        self,
        *,
        user_id: str,
        scenario_id: int | None = None,
        invitation_id: str | None = None,
        custom_scenario_name: str | None = None,
        custom_description: str | None = None,
        custom_partner_persona: str | None = None,
        custom_partner_prompt: str | None = None,
        custom_coach_prompt: str | None = None,
    ) -> int:
        def insert() -> int:
            now = utc_now()
            cursor = self._db.execute(
                """
                INSERT INTO sessions (
                    user_id, scenario_id, invitation_id, custom_scenario_name, custom_description,
                    custom_partner_persona, custom_partner_prompt, custom_coach_prompt,
                    total_messages, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    user_id,
                    scenario_id,
                    invitation_id,
                    custom_scenario_name,
                    custom_description,
                    custom_partner_persona,
                    custom_partner_prompt,
                    custom_coach_prompt,
                    now,
                    now,
                ),
            )
            self._db.commit()
            return int(cursor.lastrowid)

        return await self._db.run(insert)

    # -- lookups --------------------------------------------------------------

    async def get_user_by_token(self, api_token: str) -> User | None:
        def select() -> User | None:
            row = self._db.execute(
                "SELECT id, role, api_token FROM users WHERE api_token = ? LIMIT 1",
                (api_token,),
            ).fetchone()
            if row is None:
                return None
            return User(id=row["id"], role=row["role"], api_token=row["api_token"])

        return await self._db.run(select)

    async def load_session(self, session_id: int) -> ConversationSession | None:
        def select() -> ConversationSession | None:
            row = self._db.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
            if row is None:
                return None

            scenario: Scenario | None = None
            if row["scenario_id"] is not None:
                scenario_row = self._db.execute(
                    "SELECT * FROM scenarios WHERE id = ? LIMIT 1",
                    (row["scenario_id"],),
                ).fetchone()
                if scenario_row is not None:
                    scenario = _row_to_scenario(scenario_row)

            invitation: Invitation | None = None
            if row["invitation_id"] is not None:
                invitation_row = self._db.execute(
                    "SELECT id, token, quota_json FROM invitations WHERE id = ? LIMIT 1",
                    (row["invitation_id"],),
                ).fetchone()
                if invitation_row is not None:
                    invitation = Invitation(
                        id=invitation_row["id"],
                        token=invitation_row["token"],
                        quota=Quota.from_dict(_parse_json_object(invitation_row["quota_json"])),
                    )

            message_rows = self._db.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()

            return ConversationSession(
                id=int(row["id"]),
                user_id=row["user_id"],
                scenario=scenario,
                invitation=invitation,
                custom_scenario_name=row["custom_scenario_name"],
                custom_description=row["custom_description"],
                custom_partner_persona=row["custom_partner_persona"],
                custom_partner_prompt=row["custom_partner_prompt"],
                custom_coach_prompt=row["custom_coach_prompt"],
                total_messages=int(row["total_messages"]),
                messages=[_row_to_message(r) for r in message_rows],
            )

        return await self._db.run(select)

    async def load_messages(self, session_id: int, after_message_id: int | None = None) -> list[Message]:
        def select() -> list[Message]:
            if after_message_id is None:
                rows = self._db.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC",
                    (session_id,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM messages WHERE session_id = ? AND id > ? ORDER BY id ASC",
                    (session_id, after_message_id),
                ).fetchall()
            return [_row_to_message(r) for r in rows]

        return await self._db.run(select)

    async def sum_usage_for_invitation(self, invitation_id: str) -> int:
        def select() -> int:
            row = self._db.execute(
                """
                SELECT COALESCE(SUM(input_tokens), 0) + COALESCE(SUM(output_tokens), 0) AS used
                FROM usage_logs
                WHERE invitation_id = ?
                """,
                (invitation_id,),
            ).fetchone()
            return int(row["used"])

        return await self._db.run(select)

    # -- writes ---------------------------------------------------------------

    async def create_message(
        self,
        session_id: int,
        role: str,
        content: str,
        *,
        thread: str = THREAD_MAIN,
        thread_id: str | None = None,
        metadata: dict | None = None,
    ) -> Message:
        if thread not in (THREAD_MAIN, THREAD_ASIDE):
            raise ValueError(f"Unknown thread classification: {thread!r}")
        if (thread == THREAD_ASIDE) != (thread_id is not None):
            raise ValueError("thread_id is required for aside messages and forbidden otherwise")

        def insert() -> Message:
            now = utc_now()
            metadata_json = json.dumps(metadata or {}, ensure_ascii=True)
            cursor = self._db.execute(
                """
                INSERT INTO messages (session_id, role, content, thread, thread_id, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (session_id, role, content, thread, thread_id, metadata_json, now),
            )
            self._db.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
            self._db.commit()
            return Message(
                id=int(cursor.lastrowid),
                session_id=session_id,
                role=role,
                content=content,
                created_at=now,
                thread=thread,
                thread_id=thread_id,
                metadata=dict(metadata or {}),
            )

        return await self._db.run(insert)

    async def create_usage_logs(self, records: list[UsageRecord]) -> None:
        if not records:
            return

        def insert() -> None:
            now = utc_now()
            self._db.executemany(
                """
                INSERT INTO usage_logs (
                    session_id, user_id, invitation_id, model, stream_type,
                    input_tokens, output_tokens, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.session_id,
                        r.user_id,
                        r.invitation_id,
                        r.model,
                        r.stream_type,
                        r.usage.input_tokens,
                        r.usage.output_tokens,
                        now,
                    )
                    for r in records
                ],
            )
            self._db.commit()

        await self._db.run(insert)

    async def increment_message_count(self, session_id: int, count: int) -> None:
        def update() -> None:
            self._db.execute(
                "UPDATE sessions SET total_messages = total_messages + ?, updated_at = ? WHERE id = ?",
                (count, utc_now(), session_id),
            )
            self._db.commit()

        await self._db.run(update)
