import sqlite3

from practice_coach.models import STREAM_COACH, STREAM_PARTNER, Quota, TokenUsage, UsageRecord
from tests.storage.base import StoreTestCase


class SessionStoreTests(StoreTestCase):
    def test_load_session_includes_scenario_invitation_and_ordered_messages(self) -> None:
        async def scenario():
            session_id = await self.seed_session(quota=Quota(tokens=5000, label="Quick chat"))
            await self._store.create_message(session_id, "user", "Hi")
            await self._store.create_message(session_id, "partner", "Hello")
            return await self._store.load_session(session_id)

        session = self.run_async(scenario())

        self.assertIsNotNone(session)
        self.assertEqual(self.user.id, session.user_id)
        self.assertEqual("Salary negotiation", session.scenario.name)
        self.assertEqual(5000, session.invitation.quota.tokens)
        self.assertEqual("Quick chat", session.invitation.quota.label)
        self.assertEqual(["Hi", "Hello"], [m.content for m in session.messages])
        self.assertLess(session.messages[0].id, session.messages[1].id)

    def test_load_session_returns_none_for_unknown_id(self) -> None:
        self.assertIsNone(self.run_async(self._store.load_session(999)))

    def test_get_user_by_token(self) -> None:
        async def scenario():
            user = await self._store.create_user(role="STAFF", api_token="tok-1")
            return user, await self._store.get_user_by_token("tok-1"), await self._store.get_user_by_token("nope")

        user, found, missing = self.run_async(scenario())
        self.assertEqual(user, found)
        self.assertTrue(found.can_observe)
        self.assertIsNone(missing)

    def test_aside_messages_require_thread_id(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            with self.assertRaises(ValueError):
                await self._store.create_message(session_id, "user", "q", thread="aside")
            with self.assertRaises(ValueError):
                await self._store.create_message(session_id, "user", "q", thread_id="t-1")
            return await self._store.create_message(session_id, "user", "q", thread="aside", thread_id="t-1")

        message = self.run_async(scenario())
        self.assertEqual("aside", message.thread)
        self.assertEqual("t-1", message.thread_id)
        self.assertFalse(message.is_main)

    def test_metadata_round_trips_and_marks_incomplete(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            await self._store.create_message(session_id, "partner", "Hal", metadata={"complete": False})
            return await self._store.load_messages(session_id)

        [message] = self.run_async(scenario())
        self.assertEqual({"complete": False}, message.metadata)
        self.assertFalse(message.is_complete)

    def test_load_messages_after_id(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            first = await self._store.create_message(session_id, "user", "one")
            await self._store.create_message(session_id, "partner", "two")
            await self._store.create_message(session_id, "coach", "three")
            return await self._store.load_messages(session_id, first.id)

        messages = self.run_async(scenario())
        self.assertEqual(["two", "three"], [m.content for m in messages])

    def test_usage_sum_is_per_invitation(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            other = await self._store.create_invitation(quota=Quota(tokens=10))
            await self._store.create_usage_logs(
                [
                    UsageRecord(session_id, self.user.id, self.invitation.id, "m", STREAM_PARTNER, TokenUsage(10, 5)),
                    UsageRecord(session_id, self.user.id, self.invitation.id, "m", STREAM_COACH, TokenUsage(20, 8)),
                    UsageRecord(session_id, self.user.id, other.id, "m", STREAM_COACH, TokenUsage(100, 100)),
                ]
            )
            return await self._store.sum_usage_for_invitation(self.invitation.id)

        self.assertEqual(43, self.run_async(scenario()))

    def test_usage_sum_is_zero_without_logs(self) -> None:
        async def scenario():
            await self.seed_session()
            return await self._store.sum_usage_for_invitation(self.invitation.id)

        self.assertEqual(0, self.run_async(scenario()))

    def test_increment_message_count(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            await self._store.increment_message_count(session_id, 3)
            await self._store.increment_message_count(session_id, 3)
            return await self._store.load_session(session_id)

        self.assertEqual(6, self.run_async(scenario()).total_messages)

    def test_schema_rejects_unknown_role(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            await self._store.create_message(session_id, "narrator", "x")

        with self.assertRaises(sqlite3.IntegrityError):
            self.run_async(scenario())

    def test_telemetry_is_recorded(self) -> None:
        async def scenario():
            session_id = await self.seed_session()
            await self._telemetry.track("message_sent", {"length": 2}, user_id=self.user.id, session_id=session_id)

        self.run_async(scenario())
        row = self._db.execute("SELECT name, properties_json FROM telemetry_events").fetchone()
        self.assertEqual("message_sent", row["name"])
        self.assertEqual('{"length": 2}', row["properties_json"])

    def test_telemetry_failure_is_swallowed(self) -> None:
        self._db.execute("DROP TABLE telemetry_events")
        # Must not raise
        self.run_async(self._telemetry.track("message_sent", {}))
