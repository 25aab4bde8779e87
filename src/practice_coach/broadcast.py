from __future__ import annotations

import asyncio
from typing import Protocol

from loguru import logger
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from practice_coach.protocol import encode_server_message


class FrameSocket(Protocol):
    @property
    def state(self) -> State: ...

    async def send(self, message: str) -> None: ...


class ObserverHub:
    """Fans live conversation frames out to read-only observers.

    One hub is created at process start and shared by every connection
    handler. Subscriptions are keyed by session id; a session's entry is
    removed as soon as its last observer leaves.

    Each observer send is bounded by ``send_timeout_seconds``. An observer
    that cannot take a frame within that window is unsubscribed, so a stalled
    observer delays the participant's stream at most once.
    """

    def __init__(self, send_timeout_seconds: float = 2.0) -> None:
        self._observers: dict[int, set[FrameSocket]] = {}
        self._send_timeout_seconds = send_timeout_seconds
        self._closed = False

    def subscribe(self, session_id: int, socket: FrameSocket) -> None:
        if self._closed:
            raise RuntimeError("ObserverHub is closed")
        self._observers.setdefault(session_id, set()).add(socket)
        logger.debug(f"Observer subscribed to session {session_id} ({self.observer_count(session_id)} total)")

    def unsubscribe(self, session_id: int, socket: FrameSocket) -> None:
        sockets = self._observers.get(session_id)
        if sockets is None:
            return
        sockets.discard(socket)
        if not sockets:
            del self._observers[session_id]
        logger.debug(f"Observer unsubscribed from session {session_id}")

    def observer_count(self, session_id: int) -> int:
        return len(self._observers.get(session_id, ()))

    async def broadcast(self, session_id: int, frame: dict) -> None:
        sockets = self._observers.get(session_id)
        if not sockets:
            return

        data = encode_server_message(frame)
        # Snapshot: the set may change while sends are suspended
        targets = [s for s in list(sockets) if s.state is State.OPEN]
        if not targets:
            return
        results = await asyncio.gather(
            *(asyncio.wait_for(s.send(data), self._send_timeout_seconds) for s in targets),
            return_exceptions=True,
        )
        for socket, result in zip(targets, results):
            if isinstance(result, TimeoutError):
                logger.warning(
                    f"Observer of session {session_id} did not take a frame within "
                    f"{self._send_timeout_seconds}s; unsubscribing it"
                )
                self.unsubscribe(session_id, socket)
            elif isinstance(result, ConnectionClosed):
                logger.debug(f"Observer of session {session_id} closed during broadcast")
            elif isinstance(result, Exception):
                logger.warning(f"Broadcast to observer of session {session_id} failed: {result!r}")

    def close(self) -> None:
        count = sum(len(s) for s in self._observers.values())
        self._observers.clear()
        self._closed = True
        logger.info(f"ObserverHub closed ({count} observer subscriptions dropped)")
