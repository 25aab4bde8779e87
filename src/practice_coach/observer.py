from __future__ import annotations

from loguru import logger
from websockets.exceptions import ConnectionClosed

from practice_coach.broadcast import FrameSocket, ObserverHub
from practice_coach.models import ConversationSession
from practice_coach.protocol import connected_frame, encode_server_message, history_frame
from practice_coach.storage import SessionStore


class ObserverSession:
    """A read-only view of a live session for staff.

    Observers get the same ``connected`` and ``history`` frames a participant
    gets on connect, then every live frame through the hub. Nothing they send
    reaches the orchestrator.

    The observer subscribes before history is read, so a message persisted
    around connect time may arrive twice (once in history, once live) but is
    never missed. Clients dedupe on ``messageId``.
    """

    def __init__(
        self,
        socket: FrameSocket,
        session: ConversationSession,
        hub: ObserverHub,
        store: SessionStore,
        observer_id: str,
    ):
        self._socket = socket
        self._session = session
        self._hub = hub
        self._store = store
        self._log = logger.bind(session_id=session.id, observer_id=observer_id)
        self._subscribed = False

    async def start(self) -> None:
        self._hub.subscribe(self._session.id, self._socket)
        self._subscribed = True
        await self._send(connected_frame(self._session.id, self._session.scenario_info()))
        messages = await self._store.load_messages(self._session.id)
        await self._send(history_frame(messages))
        self._log.info("Observer attached")

    def stop(self) -> None:
        if self._subscribed:
            self._hub.unsubscribe(self._session.id, self._socket)
            self._subscribed = False
            self._log.info("Observer detached")

    async def _send(self, frame: dict) -> None:
        try:
            await self._socket.send(encode_server_message(frame))
        except ConnectionClosed:
            self._log.debug(f"Dropped {frame['type']} frame for closed observer socket")
