from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger
from websockets.exceptions import ConnectionClosed

from practice_coach.broadcast import FrameSocket, ObserverHub
from practice_coach.context import build_aside_context, build_coach_context, build_partner_context
from practice_coach.models import (
    ROLE_COACH,
    ROLE_PARTNER,
    ROLE_USER,
    STREAM_ASIDE,
    STREAM_COACH,
    STREAM_PARTNER,
    THREAD_ASIDE,
    THREAD_MAIN,
    ConversationSession,
    Message,
    TokenUsage,
    UsageRecord,
)
from practice_coach.protocol import (
    ErrorCode,
    aside_delta_frame,
    aside_done_frame,
    aside_error_frame,
    connected_frame,
    delta_frame,
    done_frame,
    encode_server_message,
    error_frame,
    history_frame,
    quota_exhausted_frame,
    quota_warning_frame,
)
from practice_coach.provider import supports_web_search
from practice_coach.quota import get_invitation_quota_status, is_low
from practice_coach.storage import SessionStore, TelemetryTracker
from practice_coach.storage import telemetry as events
from practice_coach.stream_runner import (
    StreamAccumulator,
    StreamCancelledError,
    StreamFailedError,
    StreamOutcome,
    StreamRunner,
)
from practice_coach.system_prompt import build_aside_system_prompt


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class MainProcessing:
    pass


@dataclass(eq=False)
class AsideProcessing:
    thread_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    abort_handle: asyncio.TimerHandle | None = None
    finished: bool = False


OrchestratorState = Idle | MainProcessing | AsideProcessing

IDLE = Idle()
MAIN_PROCESSING = MainProcessing()


@dataclass
class OrchestratorSettings:
    default_model: str = "anthropic:claude-sonnet-4-20250514"
    quota_warning_ratio: float = 0.2
    aside_cancel_grace_seconds: float = 5.0
    aside_timeout_seconds: float = 120.0


class ConversationOrchestrator:
    """Drives one participant connection through the partner/coach turn cycle.

    The connection is in exactly one of three states. ``Idle`` accepts a main
    turn or an aside. ``MainProcessing`` runs user -> partner -> coach.
    ``AsideProcessing`` runs a single coach-only answer for one thread id.
    Anything arriving while not idle is rejected immediately, never queued.
    """

    def __init__(
        self,
        socket: FrameSocket,
        store: SessionStore,
        session: ConversationSession,
        *,
        hub: ObserverHub,
        stream_runner: StreamRunner,
        settings: OrchestratorSettings | None = None,
        telemetry: TelemetryTracker | None = None,
    ):
        self._socket = socket
        self._store = store
        self._session = session
        self._hub = hub
        self._runner = stream_runner
        self._settings = settings or OrchestratorSettings()
        self._telemetry = telemetry
        self._state: OrchestratorState = IDLE
        self._log = logger.bind(session_id=session.id)

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def session(self) -> ConversationSession:
        return self._session

    async def initialize(self) -> None:
        """Send ``connected`` and the full message history."""
        scenario_info = self._session.scenario_info()
        await self._send(connected_frame(self._session.id, scenario_info))
        await self._send(history_frame(self._session.messages))
        await self._track(events.CONVERSATION_STARTED, {"scenarioId": scenario_info["id"]})

    # -- main thread ----------------------------------------------------------

    async def handle_user_message(self, content: str) -> None:
        if not isinstance(self._state, Idle):
            await self._send_error(
                ErrorCode.RATE_LIMITED,
                "Please wait for the current response to complete",
                recoverable=True,
            )
            return

        # Claimed before the first await so a double submit cannot slip in
        self._state = MAIN_PROCESSING
        try:
            await self._run_main_turn(content)
        except Exception:
            self._log.exception("Error handling user message")
            await self._send_error(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred", recoverable=True)
        finally:
            if isinstance(self._state, MainProcessing):
                self._state = IDLE

    async def _run_main_turn(self, content: str) -> None:
        if not await self._quota_allows():
            await self._send(quota_exhausted_frame())
            await self._track(events.QUOTA_EXHAUSTED, {"stage": "before_turn"})
            return

        user_message = await self._persist(ROLE_USER, content)
        await self._emit(history_frame([user_message]))
        await self._track(events.MESSAGE_SENT, {"length": len(content)})

        partner = await self._stream_role(ROLE_PARTNER)
        if partner is None:
            return

        coach = await self._stream_role(ROLE_COACH)
        if coach is None:
            await self._log_usage([(STREAM_PARTNER, partner)])
            await self._check_quota_after_turn()
            return

        await self._log_usage([(STREAM_PARTNER, partner), (STREAM_COACH, coach)])
        await self._check_quota_after_turn()
        await self._store.increment_message_count(self._session.id, 3)

    async def _stream_role(self, role: str) -> StreamOutcome | None:
        model, system_prompt = self._session.role_config(role, self._settings.default_model)
        if role == ROLE_PARTNER:
            context = build_partner_context(self._session.messages)
        else:
            context = build_coach_context(self._session.messages)

        async def on_delta(text: str) -> None:
            await self._emit(delta_frame(role, text))

        try:
            outcome = await self._runner.run(
                model=model,
                system_prompt=system_prompt,
                messages=context,
                on_delta=on_delta,
                use_web_search=role == ROLE_PARTNER and supports_web_search(model),
                accumulator=StreamAccumulator(),
            )
        except StreamFailedError as ex:
            await self._handle_stream_failure(role, ex)
            return None

        message = await self._persist(role, outcome.content)
        await self._emit(done_frame(role, message.id, outcome.content, outcome.usage))
        await self._track(
            events.STREAM_COMPLETED,
            {
                "role": role,
                "model": outcome.model,
                "fellBack": outcome.fell_back,
                "inputTokens": outcome.usage.input_tokens,
                "outputTokens": outcome.usage.output_tokens,
            },
        )
        return outcome

    async def _handle_stream_failure(self, role: str, ex: StreamFailedError) -> None:
        self._log.error(f"{role} stream failed after retries: {ex.code} {ex.message}")
        if ex.partial_content:
            await self._persist(
                role,
                ex.partial_content,
                metadata={"complete": False, "error": ErrorCode.PROVIDER_ERROR.value, "providerCode": ex.code},
            )
        await self._send_error(ErrorCode.PROVIDER_ERROR, "AI service temporarily unavailable", recoverable=True)
        await self._track(events.STREAM_ERROR, {"role": role, "model": ex.model, "code": ex.code})

    # -- resume ---------------------------------------------------------------

    async def handle_resume(self, after_message_id: int | None = None) -> None:
        """Replay persisted messages after ``after_message_id`` (all when None)."""
        messages = await self._store.load_messages(self._session.id, after_message_id)
        await self._send(history_frame(messages))
        await self._track(events.RECONNECTION, {"afterMessageId": after_message_id, "replayed": len(messages)})

    # -- aside thread ---------------------------------------------------------

    async def handle_aside_start(self, thread_id: str, content: str) -> None:
        if not isinstance(self._state, Idle):
            await self._send(aside_error_frame(thread_id, "Please wait for the current response to complete"))
            return

        state = AsideProcessing(thread_id=thread_id)
        self._state = state
        loop = asyncio.get_running_loop()
        state.task = asyncio.create_task(self._run_aside(state, content), name=f"aside-{thread_id}")
        state.abort_handle = loop.call_later(
            self._settings.aside_timeout_seconds,
            self._force_abort,
            state,
            "deadline exceeded",
        )
        await self._track(events.ASIDE_STARTED, {"threadId": thread_id, "length": len(content)})
        try:
            await asyncio.wait([state.task])
        except asyncio.CancelledError:
            state.task.cancel()
            raise
        finally:
            if state.abort_handle is not None:
                state.abort_handle.cancel()
            self._release(state)

    async def handle_aside_cancel(self, thread_id: str) -> None:
        state = self._state
        if not isinstance(state, AsideProcessing) or state.thread_id != thread_id:
            self._log.debug(f"Ignoring cancel for inactive aside thread {thread_id}")
            return

        state.cancel_event.set()
        self._release(state)
        if state.abort_handle is not None:
            state.abort_handle.cancel()
        state.abort_handle = asyncio.get_running_loop().call_later(
            self._settings.aside_cancel_grace_seconds,
            self._force_abort,
            state,
            "cancel not honoured within grace period",
        )
        await self._track(events.ASIDE_CANCELLED, {"threadId": thread_id})

    async def _run_aside(self, state: AsideProcessing, question: str) -> None:
        thread_id = state.thread_id
        acc = StreamAccumulator()
        try:
            if not await self._quota_allows():
                await self._send(aside_error_frame(thread_id, "Token quota exhausted"))
                await self._send(quota_exhausted_frame())
                return

            question_message = await self._persist(ROLE_USER, question, thread=THREAD_ASIDE, thread_id=thread_id)
            await self._emit(history_frame([question_message]))

            model, coach_prompt = self._session.role_config(ROLE_COACH, self._settings.default_model)

            async def on_delta(text: str) -> None:
                await self._emit(aside_delta_frame(thread_id, text))

            try:
                outcome = await self._runner.run(
                    model=model,
                    system_prompt=build_aside_system_prompt(coach_prompt),
                    messages=build_aside_context(self._session.messages, question),
                    on_delta=on_delta,
                    cancel_event=state.cancel_event,
                    accumulator=acc,
                )
            except StreamCancelledError as ex:
                await self._finish_cancelled_aside(state, ex.partial_content)
                return
            except StreamFailedError as ex:
                state.finished = True
                self._log.error(f"Aside {thread_id} failed after retries: {ex.code} {ex.message}")
                if ex.partial_content:
                    await self._persist(
                        ROLE_COACH,
                        ex.partial_content,
                        thread=THREAD_ASIDE,
                        thread_id=thread_id,
                        metadata={"complete": False, "error": ErrorCode.PROVIDER_ERROR.value, "providerCode": ex.code},
                    )
                await self._send(aside_error_frame(thread_id, "AI service temporarily unavailable"))
                await self._track(events.STREAM_ERROR, {"role": STREAM_ASIDE, "model": ex.model, "code": ex.code})
                return

            state.finished = True
            answer = await self._persist(ROLE_COACH, outcome.content, thread=THREAD_ASIDE, thread_id=thread_id)
            await self._emit(aside_done_frame(thread_id, answer.id, outcome.content, outcome.usage))
            await self._log_usage([(STREAM_ASIDE, outcome)])
            await self._check_quota_after_turn()
        except asyncio.CancelledError:
            self._log.warning(f"Aside {thread_id} aborted")
            await self._finish_cancelled_aside(state, acc.text)
            raise
        except Exception:
            self._log.exception(f"Error handling aside {thread_id}")
            await self._send(aside_error_frame(thread_id, "An unexpected error occurred"))

    async def _finish_cancelled_aside(self, state: AsideProcessing, partial_content: str) -> None:
        """Persist the partial answer and send ``aside:done`` once per aside.

        Runs shielded: a hard abort landing mid-persist must not interrupt it
        or start a second finish.
        """
        if state.finished:
            return
        state.finished = True
        await asyncio.shield(self._store_cancelled_aside(state.thread_id, partial_content))

    async def _store_cancelled_aside(self, thread_id: str, partial_content: str) -> None:
        message_id: int | None = None
        if partial_content:
            message = await self._persist(
                ROLE_COACH,
                partial_content,
                thread=THREAD_ASIDE,
                thread_id=thread_id,
                metadata={"complete": False, "cancelled": True},
            )
            message_id = message.id
        await self._emit(aside_done_frame(thread_id, message_id, partial_content, TokenUsage(), cancelled=True))

    def _force_abort(self, state: AsideProcessing, reason: str) -> None:
        self._release(state)
        if state.task is not None and not state.task.done():
            self._log.warning(f"Hard-aborting aside {state.thread_id}: {reason}")
            state.cancel_event.set()
            state.task.cancel()

    def _release(self, state: AsideProcessing) -> None:
        if self._state is state:
            self._state = IDLE

    def close(self) -> None:
        """Called when the connection goes away.

        An in-flight aside is asked to stop; its deadline still bounds it. A
        main turn runs on so its output is persisted for the next resume.
        """
        state = self._state
        if isinstance(state, AsideProcessing):
            state.cancel_event.set()

    # -- quota & usage --------------------------------------------------------

    async def _quota_allows(self) -> bool:
        invitation = self._session.invitation
        if invitation is None:
            return True
        status = await get_invitation_quota_status(self._store, invitation.id, invitation.quota)
        return status.allowed

    async def _check_quota_after_turn(self) -> None:
        invitation = self._session.invitation
        if invitation is None or invitation.quota.tokens is None:
            return
        status = await get_invitation_quota_status(self._store, invitation.id, invitation.quota)
        if not status.allowed:
            await self._send(quota_exhausted_frame())
            await self._track(events.QUOTA_EXHAUSTED, {"stage": "after_turn"})
        elif is_low(status, self._settings.quota_warning_ratio):
            await self._send(quota_warning_frame(status.remaining, status.total))
            await self._track(events.QUOTA_WARNING, {"remaining": status.remaining, "total": status.total})

    async def _log_usage(self, streams: list[tuple[str, StreamOutcome]]) -> None:
        invitation_id = self._session.invitation.id if self._session.invitation else None
        await self._store.create_usage_logs(
            [
                UsageRecord(
                    session_id=self._session.id,
                    user_id=self._session.user_id,
                    invitation_id=invitation_id,
                    model=outcome.model,
                    stream_type=stream_type,
                    usage=outcome.usage,
                )
                for stream_type, outcome in streams
            ]
        )

    # -- plumbing -------------------------------------------------------------

    async def _persist(
        self,
        role: str,
        content: str,
        *,
        thread: str = THREAD_MAIN,
        thread_id: str | None = None,
        metadata: dict | None = None,
    ) -> Message:
        message = await self._store.create_message(
            self._session.id,
            role,
            content,
            thread=thread,
            thread_id=thread_id,
            metadata=metadata,
        )
        self._session.messages.append(message)
        return message

    async def _send(self, frame: dict) -> None:
        try:
            await self._socket.send(encode_server_message(frame))
        except ConnectionClosed:
            # The database stays the source of truth; the client can resume
            self._log.debug(f"Dropped {frame['type']} frame for closed participant socket")

    async def _emit(self, frame: dict) -> None:
        """Send to the participant and mirror to observers."""
        await self._send(frame)
        await self._hub.broadcast(self._session.id, frame)

    async def _send_error(self, code: ErrorCode, message: str, *, recoverable: bool) -> None:
        await self._send(error_frame(code, message, recoverable=recoverable))

    async def _track(self, name: str, properties: dict) -> None:
        if self._telemetry is None:
            return
        await self._telemetry.track(
            name,
            properties,
            user_id=self._session.user_id,
            session_id=self._session.id,
        )
