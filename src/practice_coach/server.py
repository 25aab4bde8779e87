from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator
from urllib.parse import parse_qs

from loguru import logger
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from practice_coach.app_config import AppConfig
from practice_coach.broadcast import FrameSocket, ObserverHub
from practice_coach.models import ConversationSession, SessionConfigError, User
from practice_coach.observer import ObserverSession
from practice_coach.orchestrator import ConversationOrchestrator, OrchestratorSettings
from practice_coach.protocol import (
    AsideCancel,
    AsideStart,
    ErrorCode,
    Ping,
    Resume,
    UserMessage,
    decode_client_message,
    encode_server_message,
    error_frame,
)
from practice_coach.storage import SessionStore, TelemetryTracker
from practice_coach.stream_runner import StreamRunner

POLICY_VIOLATION = 1008
GOING_AWAY = 1001

_ROUTE = re.compile(r"^/ws/(?P<kind>conversation|observe)/(?P<session_id>[^/]+)/?$")


class ConnectionRejected(Exception):
    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _parse_session_id(raw: str) -> int:
    if not raw.isdigit():
        raise ConnectionRejected(ErrorCode.SESSION_NOT_FOUND, "Session not found")
    return int(raw)


class FrameDispatcher:
    """Decodes inbound participant frames and routes them to the orchestrator."""

    def __init__(
        self,
        orchestrator: ConversationOrchestrator,
        socket: FrameSocket,
        *,
        max_message_chars: int,
        max_aside_chars: int,
    ):
        self._orchestrator = orchestrator
        self._socket = socket
        self._max_message_chars = max_message_chars
        self._max_aside_chars = max_aside_chars

    async def dispatch(self, raw: str | bytes) -> None:
        try:
            await self._route(raw)
        except Exception:
            logger.exception("Error dispatching frame")
            await self._send_error(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")

    async def _route(self, raw: str | bytes) -> None:
        message = decode_client_message(raw)
        if message is None:
            await self._send_error(ErrorCode.INVALID_MESSAGE, "Invalid message format")
            return

        if isinstance(message, Ping):
            return
        if isinstance(message, Resume):
            await self._orchestrator.handle_resume(message.after_message_id)
            return
        if isinstance(message, AsideCancel):
            await self._orchestrator.handle_aside_cancel(message.thread_id)
            return

        if isinstance(message, UserMessage):
            if not message.content.strip():
                return
            if len(message.content) > self._max_message_chars:
                await self._send_error(
                    ErrorCode.MESSAGE_TOO_LONG,
                    f"Message exceeds {self._max_message_chars} characters",
                )
                return
            await self._orchestrator.handle_user_message(message.content)
            return

        if isinstance(message, AsideStart):
            if not message.content.strip():
                return
            if len(message.content) > self._max_aside_chars:
                await self._send_error(
                    ErrorCode.MESSAGE_TOO_LONG,
                    f"Aside question exceeds {self._max_aside_chars} characters",
                )
                return
            await self._orchestrator.handle_aside_start(message.thread_id, message.content)

    async def _send_error(self, code: ErrorCode, message: str) -> None:
        try:
            await self._socket.send(encode_server_message(error_frame(code, message, recoverable=True)))
        except ConnectionClosed:
            logger.debug(f"Dropped {code.value} error for closed socket")


class ConversationServer:
    """Websocket host for participant and observer connections.

    Each accepted participant connection gets its own orchestrator. Inbound
    frames are dispatched as independent tasks so an ``aside:cancel`` is
    processed while the aside it targets is still streaming.
    """

    def __init__(
        self,
        store: SessionStore,
        hub: ObserverHub,
        stream_runner: StreamRunner,
        app: AppConfig,
        *,
        telemetry: TelemetryTracker | None = None,
    ):
        self._store = store
        self._hub = hub
        self._runner = stream_runner
        self._app = app
        self._telemetry = telemetry
        self._orchestrator_settings = OrchestratorSettings(
            default_model=app.default_model,
            quota_warning_ratio=app.quota_warning_ratio,
            aside_cancel_grace_seconds=app.aside_cancel_grace_seconds,
            aside_timeout_seconds=app.aside_timeout_seconds,
        )

    async def serve_forever(self) -> None:
        async with serve(self.handle_connection, self._app.host, self._app.port) as server:
            logger.info(f"Listening on ws://{self._app.host}:{self._app.port}")
            await server.serve_forever()

    async def handle_connection(self, connection: ServerConnection) -> None:
        path, _, query = connection.request.path.partition("?")
        token = parse_qs(query).get("token", [""])[0]

        try:
            route = _ROUTE.match(path)
            if route is None:
                raise ConnectionRejected(ErrorCode.SESSION_NOT_FOUND, "Unknown endpoint")
            if not token:
                raise ConnectionRejected(ErrorCode.AUTH_FAILED, "Authentication required")
            session_id = _parse_session_id(route["session_id"])
            user = await self._store.get_user_by_token(token)
            if user is None:
                raise ConnectionRejected(ErrorCode.AUTH_FAILED, "Invalid token")
            session = await self._store.load_session(session_id)
            if session is None:
                raise ConnectionRejected(ErrorCode.SESSION_NOT_FOUND, "Session not found")
            observing = route["kind"] == "observe"
            if observing and not user.can_observe:
                raise ConnectionRejected(ErrorCode.AUTH_FAILED, "Observer access requires staff role")
            if not observing and session.user_id != user.id:
                raise ConnectionRejected(ErrorCode.AUTH_FAILED, "Session does not belong to this user")
            if not session.has_prompt_config():
                raise ConnectionRejected(ErrorCode.NO_SCENARIO, "Session has no scenario configured")
        except ConnectionRejected as ex:
            await self._reject(connection, ex)
            return

        if observing:
            await self._serve_observer(connection, session, user)
        else:
            await self._serve_participant(connection, session, user)

    async def _serve_participant(self, connection: ServerConnection, session: ConversationSession, user: User) -> None:
        log = logger.bind(session_id=session.id, user_id=user.id)
        orchestrator = ConversationOrchestrator(
            connection,
            self._store,
            session,
            hub=self._hub,
            stream_runner=self._runner,
            settings=self._orchestrator_settings,
            telemetry=self._telemetry,
        )
        try:
            await orchestrator.initialize()
        except SessionConfigError as ex:
            await self._reject(connection, ConnectionRejected(ErrorCode.NO_SCENARIO, str(ex)))
            return

        dispatcher = FrameDispatcher(
            orchestrator,
            connection,
            max_message_chars=self._app.max_message_chars,
            max_aside_chars=self._app.max_aside_chars,
        )
        pending: set[asyncio.Task] = set()
        log.info("Participant connected")
        try:
            async for raw in self._frames(connection, session.id):
                task = asyncio.create_task(dispatcher.dispatch(raw))
                pending.add(task)
                task.add_done_callback(pending.discard)
        finally:
            orchestrator.close()
            if pending:
                # Let in-flight turns finish persisting; cancelling the handler cancels them too
                await asyncio.gather(*list(pending), return_exceptions=True)
            log.info("Participant disconnected")

    async def _serve_observer(self, connection: ServerConnection, session: ConversationSession, user: User) -> None:
        observer = ObserverSession(connection, session, self._hub, self._store, user.id)
        try:
            await observer.start()
            async for _ in self._frames(connection, session.id):
                pass
        finally:
            observer.stop()

    async def _frames(self, connection: ServerConnection, session_id: int) -> AsyncIterator[str | bytes]:
        """Yield inbound frames until the peer leaves or the idle window elapses."""
        while True:
            try:
                async with asyncio.timeout(self._app.idle_timeout_seconds):
                    raw = await connection.recv()
            except TimeoutError:
                logger.bind(session_id=session_id).info("Closing idle connection")
                await connection.close(code=GOING_AWAY, reason="Idle timeout")
                return
            except ConnectionClosed:
                return
            yield raw

    async def _reject(self, connection: ServerConnection, ex: ConnectionRejected) -> None:
        path = connection.request.path.partition("?")[0]
        logger.warning(f"Rejecting connection to {path}: {ex.code.value} {ex.message}")
        try:
            await connection.send(encode_server_message(error_frame(ex.code, ex.message, recoverable=False)))
        except ConnectionClosed:
            return
        await connection.close(code=POLICY_VIOLATION, reason=ex.message)
