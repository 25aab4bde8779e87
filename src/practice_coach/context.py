"""Provider context construction for the partner, coach and aside streams.

Only complete main-thread messages ever reach a provider. The partner sees
the user/partner exchange and nothing the coach said. The coach sees the
whole main thread, with partner turns and its own earlier turns labelled so
the two assistant voices stay distinguishable.
"""

from __future__ import annotations

from collections.abc import Iterable

from practice_coach.models import ROLE_COACH, ROLE_PARTNER, ROLE_USER, Message
from practice_coach.system_prompt import ASIDE_QUESTION_MARKER

PARTNER_LABEL = "[Partner]"
PREVIOUS_ADVICE_LABEL = "[Your previous advice]"


def _main_thread(messages: Iterable[Message]) -> list[Message]:
    return [m for m in messages if m.is_main and m.is_complete]


def build_partner_context(messages: Iterable[Message]) -> list[dict]:
    return [
        {"role": "user" if m.role == ROLE_USER else "assistant", "content": m.content}
        for m in _main_thread(messages)
        if m.role in (ROLE_USER, ROLE_PARTNER)
    ]


def build_coach_context(messages: Iterable[Message]) -> list[dict]:
    context: list[dict] = []
    for m in _main_thread(messages):
        if m.role == ROLE_USER:
            context.append({"role": "user", "content": m.content})
        elif m.role == ROLE_PARTNER:
            context.append({"role": "assistant", "content": f"{PARTNER_LABEL} {m.content}"})
        elif m.role == ROLE_COACH:
            context.append({"role": "assistant", "content": f"{PREVIOUS_ADVICE_LABEL} {m.content}"})
    return context


def build_aside_context(messages: Iterable[Message], question: str) -> list[dict]:
    context = build_coach_context(messages)
    context.append({"role": "user", "content": f"{ASIDE_QUESTION_MARKER} {question}"})
    return context
