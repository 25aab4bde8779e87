from __future__ import annotations

import json
from uuid import uuid4

from loguru import logger

from practice_coach.storage.database import Database, utc_now

CONVERSATION_STARTED = "conversation_started"
MESSAGE_SENT = "message_sent"
STREAM_COMPLETED = "stream_completed"
STREAM_ERROR = "stream_error"
RECONNECTION = "reconnection"
QUOTA_WARNING = "quota_warning"
QUOTA_EXHAUSTED = "quota_exhausted"
ASIDE_STARTED = "aside_started"
ASIDE_CANCELLED = "aside_cancelled"


class TelemetryTracker:
    def __init__(self, db: Database):
        self._db = db

    async def track(
        self,
        name: str,
        properties: dict | None = None,
        *,
        user_id: str | None = None,
        session_id: int | None = None,
    ) -> None:
        """Record a product event. Failures are logged, never raised."""

        def insert() -> None:
            self._db.execute(
                """
                INSERT INTO telemetry_events (id, name, properties_json, user_id, session_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    name,
                    json.dumps(properties or {}, ensure_ascii=True),
                    user_id,
                    session_id,
                    utc_now(),
                ),
            )
            self._db.commit()

        try:
            await self._db.run(insert)
        except Exception as ex:
            logger.warning(f"Failed to track telemetry event {name!r}: {ex}")
