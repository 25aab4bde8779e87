"""Wire vocabulary for the conversation websocket.

Connection URLs:
    /ws/conversation/<sessionId>?token=<api token>   participant
    /ws/observe/<sessionId>?token=<api token>        read-only observer

Every frame is a JSON object with a ``type`` discriminator. Server frames are
built with the ``*_frame`` helpers below and serialised once with
``encode_server_message``. Client frames are decoded into small frozen
dataclasses; anything unrecognised decodes to ``None``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

from practice_coach.models import Message, TokenUsage


class ErrorCode(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    NO_SCENARIO = "NO_SCENARIO"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Client -> server


@dataclass(frozen=True)
class UserMessage:
    content: str


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Resume:
    after_message_id: int | None = None


@dataclass(frozen=True)
class AsideStart:
    thread_id: str
    content: str


@dataclass(frozen=True)
class AsideCancel:
    thread_id: str


ClientMessage = UserMessage | Ping | Resume | AsideStart | AsideCancel


def _decode_message(payload: dict) -> ClientMessage | None:
    content = payload.get("content")
    if not isinstance(content, str):
        return None
    return UserMessage(content=content)


def _decode_resume(payload: dict) -> ClientMessage | None:
    after = payload.get("afterMessageId")
    if after is None:
        return Resume()
    # bool is an int subclass; reject it explicitly
    if isinstance(after, bool) or not isinstance(after, int):
        return None
    return Resume(after_message_id=after)


def _decode_aside_start(payload: dict) -> ClientMessage | None:
    thread_id = payload.get("threadId")
    content = payload.get("content")
    if not isinstance(thread_id, str) or not thread_id or not isinstance(content, str):
        return None
    return AsideStart(thread_id=thread_id, content=content)


def _decode_aside_cancel(payload: dict) -> ClientMessage | None:
    thread_id = payload.get("threadId")
    if not isinstance(thread_id, str) or not thread_id:
        return None
    return AsideCancel(thread_id=thread_id)


_DECODERS = {
    "message": _decode_message,
    "ping": lambda payload: Ping(),
    "resume": _decode_resume,
    "aside:start": _decode_aside_start,
    "aside:cancel": _decode_aside_cancel,
}


def decode_client_message(raw: str | bytes) -> ClientMessage | None:
    """Parse an inbound frame.

    Returns None when the data is not JSON, is not an object, carries no
    recognised ``type``, or a required field has the wrong type. Never raises.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return None
    if not isinstance(payload, dict):
        return None
    message_type = payload.get("type")
    if not isinstance(message_type, str):
        return None
    decoder = _DECODERS.get(message_type)
    if decoder is None:
        return None
    return decoder(payload)


# Server -> client


def encode_server_message(frame: dict) -> str:
    return json.dumps(frame, ensure_ascii=False)


def connected_frame(session_id: int, scenario: dict) -> dict:
    return {"type": "connected", "sessionId": session_id, "scenario": scenario}


def history_frame(messages: list[Message]) -> dict:
    return {"type": "history", "messages": [m.to_wire() for m in messages]}


def delta_frame(role: str, content: str) -> dict:
    return {"type": f"{role}:delta", "content": content}


def done_frame(role: str, message_id: int, content: str, usage: TokenUsage) -> dict:
    return {
        "type": f"{role}:done",
        "messageId": message_id,
        "content": content,
        "usage": usage.to_wire(),
    }


def aside_delta_frame(thread_id: str, content: str) -> dict:
    return {"type": "aside:delta", "threadId": thread_id, "content": content}


def aside_done_frame(
    thread_id: str,
    message_id: int | None,
    content: str,
    usage: TokenUsage,
    *,
    cancelled: bool = False,
) -> dict:
    return {
        "type": "aside:done",
        "threadId": thread_id,
        "messageId": message_id,
        "content": content,
        "usage": usage.to_wire(),
        "cancelled": cancelled,
    }


def aside_error_frame(thread_id: str, message: str) -> dict:
    return {"type": "aside:error", "threadId": thread_id, "message": message}


def error_frame(code: ErrorCode, message: str, *, recoverable: bool) -> dict:
    return {"type": "error", "code": code.value, "message": message, "recoverable": recoverable}


def quota_warning_frame(remaining: int, total: int) -> dict:
    return {"type": "quota:warning", "remaining": remaining, "total": total}


def quota_exhausted_frame() -> dict:
    return {"type": "quota:exhausted"}
