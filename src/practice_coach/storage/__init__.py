from practice_coach.storage.database import Database
from practice_coach.storage.session_store import SessionStore, generate_token
from practice_coach.storage.telemetry import TelemetryTracker

__all__ = [
    "Database",
    "SessionStore",
    "TelemetryTracker",
    "generate_token",
]
