import asyncio
import json
import unittest
from types import SimpleNamespace

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from practice_coach.app_config import AppConfig
from practice_coach.broadcast import ObserverHub
from practice_coach.provider import ProviderRegistry
from practice_coach.server import ConversationServer, FrameDispatcher
from practice_coach.stream_runner import StreamRunner
from tests.fakes import RecordingSocket, ScriptedProvider, no_sleep, text_stream
from tests.storage.base import StoreTestCase


class FakeConnection(RecordingSocket):
    def __init__(self, path: str, *inbound):
        super().__init__()
        self.request = SimpleNamespace(path=path)
        self.inbound = list(inbound)
        self.close_code: int | None = None
        self.close_reason = ""
        self._closed = asyncio.Event()

    async def recv(self):
        if not self.inbound:
            await self._closed.wait()
            raise ConnectionClosed(None, None)
        item = self.inbound.pop(0)
        if isinstance(item, float):
            await asyncio.sleep(item)
            return await self.recv()
        if item is None:
            raise ConnectionClosed(None, None)
        return item if isinstance(item, str) else json.dumps(item)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason
        self.state = State.CLOSED
        self._closed.set()


class _RecordingOrchestrator:
    def __init__(self):
        self.calls: list[tuple] = []

    async def handle_user_message(self, content):
        self.calls.append(("message", content))

    async def handle_resume(self, after_message_id):
        self.calls.append(("resume", after_message_id))

    async def handle_aside_start(self, thread_id, content):
        self.calls.append(("aside:start", thread_id, content))

    async def handle_aside_cancel(self, thread_id):
        self.calls.append(("aside:cancel", thread_id))


class FrameDispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.orchestrator = _RecordingOrchestrator()
        self.socket = RecordingSocket()
        self.dispatcher = FrameDispatcher(self.orchestrator, self.socket, max_message_chars=20, max_aside_chars=10)

    def _dispatch(self, *frames) -> None:
        async def scenario():
            for frame in frames:
                await self.dispatcher.dispatch(frame if isinstance(frame, str) else json.dumps(frame))

        asyncio.run(scenario())

    def test_routes_by_type(self) -> None:
        self._dispatch(
            {"type": "ping"},
            {"type": "message", "content": "Hi"},
            {"type": "resume", "afterMessageId": 4},
            {"type": "aside:start", "threadId": "t-1", "content": "Why?"},
            {"type": "aside:cancel", "threadId": "t-1"},
        )
        self.assertEqual(
            [("message", "Hi"), ("resume", 4), ("aside:start", "t-1", "Why?"), ("aside:cancel", "t-1")],
            self.orchestrator.calls,
        )
        self.assertEqual([], self.socket.frames)

    def test_invalid_frame_gets_recoverable_error(self) -> None:
        self._dispatch("{not json", {"type": "shout"})
        self.assertEqual(["INVALID_MESSAGE", "INVALID_MESSAGE"], [f["code"] for f in self.socket.frames])
        self.assertTrue(all(f["recoverable"] for f in self.socket.frames))
        self.assertEqual([], self.orchestrator.calls)

    def test_length_limits(self) -> None:
        self._dispatch(
            {"type": "message", "content": "x" * 21},
            {"type": "aside:start", "threadId": "t-1", "content": "y" * 11},
            {"type": "message", "content": "x" * 20},
        )
        self.assertEqual(["MESSAGE_TOO_LONG", "MESSAGE_TOO_LONG"], [f["code"] for f in self.socket.frames])
        self.assertEqual([("message", "x" * 20)], self.orchestrator.calls)

    def test_blank_content_is_ignored(self) -> None:
        self._dispatch({"type": "message", "content": "   "}, {"type": "aside:start", "threadId": "t", "content": ""})
        self.assertEqual([], self.orchestrator.calls)
        self.assertEqual([], self.socket.frames)

    def test_handler_failure_becomes_internal_error(self) -> None:
        async def explode(content):
            raise RuntimeError("boom")

        self.orchestrator.handle_user_message = explode
        self._dispatch({"type": "message", "content": "Hi"})
        self.assertEqual("INTERNAL_ERROR", self.socket.frames[0]["code"])


class ConversationServerTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.hub = ObserverHub()
        self.provider = ScriptedProvider()
        self.app = AppConfig(idle_timeout_seconds=5.0)

    def _server(self) -> ConversationServer:
        runner = StreamRunner(
            ProviderRegistry(providers={"anthropic": self.provider}),
            fallback_model="anthropic:fallback-model",
            sleep=no_sleep,
        )
        return ConversationServer(self._store, self.hub, runner, self.app, telemetry=self._telemetry)

    def _connect(self, connection: FakeConnection) -> FakeConnection:
        async def scenario():
            await asyncio.wait_for(self._server().handle_connection(connection), timeout=5)

        self.run_async(scenario())
        return connection

    def _assert_rejected(self, connection: FakeConnection, code: str) -> None:
        [frame] = connection.frames
        self.assertEqual("error", frame["type"])
        self.assertEqual(code, frame["code"])
        self.assertFalse(frame["recoverable"])
        self.assertEqual(1008, connection.close_code)

    def test_missing_token_is_rejected(self) -> None:
        session_id = self.run_async(self.seed_session())
        self._assert_rejected(self._connect(FakeConnection(f"/ws/conversation/{session_id}")), "AUTH_FAILED")

    def test_unknown_token_is_rejected(self) -> None:
        session_id = self.run_async(self.seed_session())
        connection = self._connect(FakeConnection(f"/ws/conversation/{session_id}?token=bogus"))
        self._assert_rejected(connection, "AUTH_FAILED")

    def test_unknown_or_malformed_session_is_rejected(self) -> None:
        self.run_async(self.seed_session())
        for path in ("/ws/conversation/999", "/ws/conversation/abc", "/ws/elsewhere/1"):
            with self.subTest(path=path):
                connection = self._connect(FakeConnection(f"{path}?token={self.user.api_token}"))
                self._assert_rejected(connection, "SESSION_NOT_FOUND")

    def test_other_users_session_is_rejected(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            intruder = await self._store.create_user()
            return session_id, intruder

        session_id, intruder = self.run_async(scenario())
        connection = self._connect(FakeConnection(f"/ws/conversation/{session_id}?token={intruder.api_token}"))
        self._assert_rejected(connection, "AUTH_FAILED")

    def test_session_without_scenario_is_rejected(self) -> None:
        async def scenario():
            user = await self._store.create_user()
            return user, await self._store.create_session(user_id=user.id)

        user, session_id = self.run_async(scenario())
        connection = self._connect(FakeConnection(f"/ws/conversation/{session_id}?token={user.api_token}"))
        self._assert_rejected(connection, "NO_SCENARIO")

    def test_participant_turn_end_to_end(self) -> None:
        self.provider.add(text_stream("Hello"), text_stream("Advice"))
        session_id = self.run_async(self.seed_session())

        connection = self._connect(
            FakeConnection(
                f"/ws/conversation/{session_id}?token={self.user.api_token}",
                {"type": "ping"},
                {"type": "message", "content": "Hi"},
                None,
            )
        )

        self.assertEqual(
            ["connected", "history", "history", "partner:delta", "partner:done", "coach:delta", "coach:done"],
            connection.types(),
        )
        self.assertIsNone(connection.close_code)

    def test_idle_connection_is_closed(self) -> None:
        self.app = AppConfig(idle_timeout_seconds=0.05)
        session_id = self.run_async(self.seed_session())

        connection = self._connect(
            FakeConnection(f"/ws/conversation/{session_id}?token={self.user.api_token}", {"type": "ping"})
        )

        self.assertEqual(["connected", "history"], connection.types())
        self.assertEqual(1001, connection.close_code)

    def test_any_inbound_frame_resets_idle_window(self) -> None:
        self.app = AppConfig(idle_timeout_seconds=0.2)
        session_id = self.run_async(self.seed_session())

        connection = self._connect(
            FakeConnection(
                f"/ws/conversation/{session_id}?token={self.user.api_token}",
                0.15,
                {"type": "ping"},
                0.15,
                {"type": "ping"},
                None,
            )
        )

        self.assertIsNone(connection.close_code)

    def test_user_role_cannot_observe(self) -> None:
        session_id = self.run_async(self.seed_session())
        connection = self._connect(FakeConnection(f"/ws/observe/{session_id}?token={self.user.api_token}"))
        self._assert_rejected(connection, "AUTH_FAILED")

    def test_staff_observer_receives_broadcasts_until_disconnect(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            staff = await self._store.create_user(role="STAFF")
            leave = asyncio.Event()
            connection = FakeConnection(f"/ws/observe/{session_id}?token={staff.api_token}")

            async def recv():
                await leave.wait()
                raise ConnectionClosed(None, None)

            connection.recv = recv
            handler = asyncio.create_task(self._server().handle_connection(connection))
            while "history" not in connection.types():
                await asyncio.sleep(0.01)
            await self.hub.broadcast(session_id, {"type": "partner:delta", "content": "Hi"})
            leave.set()
            await asyncio.wait_for(handler, timeout=5)
            return session_id, connection

        session_id, connection = self.run_async(scenario())

        self.assertEqual(["connected", "history", "partner:delta"], connection.types())
        self.assertEqual(0, self.hub.observer_count(session_id))
