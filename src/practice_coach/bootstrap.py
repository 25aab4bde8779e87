from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from practice_coach.app_config import AppConfig, RuntimeEnv
from practice_coach.broadcast import ObserverHub
from practice_coach.logging_config import setup_logging
from practice_coach.provider import ProviderRegistry
from practice_coach.server import ConversationServer
from practice_coach.storage import Database, SessionStore, TelemetryTracker
from practice_coach.stream_runner import StreamRunner


@dataclass
class AppRuntime:
    server: ConversationServer
    store: SessionStore
    hub: ObserverHub
    telemetry: TelemetryTracker
    log_descriptions: list[str]

    def close(self) -> None:
        self.hub.close()
        self.store.close()


def resolve_database_path(database_path: str) -> str:
    if database_path == ":memory:":
        return database_path
    db_path = Path(database_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    return str(db_path)


def open_store(app: AppConfig) -> SessionStore:
    return SessionStore(Database(resolve_database_path(app.database_path)))


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    store = open_store(app)
    hub = ObserverHub(send_timeout_seconds=app.observer_send_timeout_seconds)
    telemetry = TelemetryTracker(store.database)
    stream_runner = StreamRunner(
        ProviderRegistry(env.api_keys),
        fallback_model=app.fallback_model,
        max_tokens=app.max_tokens,
        max_retries=app.max_retries,
        retry_delay_seconds=app.retry_delay_seconds,
    )
    server = ConversationServer(store, hub, stream_runner, app, telemetry=telemetry)

    return AppRuntime(
        server=server,
        store=store,
        hub=hub,
        telemetry=telemetry,
        log_descriptions=log_descriptions,
    )
