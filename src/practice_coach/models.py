from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ROLE_USER = "user"
ROLE_PARTNER = "partner"
ROLE_COACH = "coach"

THREAD_MAIN = "main"
THREAD_ASIDE = "aside"

STREAM_PARTNER = "partner"
STREAM_COACH = "coach"
STREAM_ASIDE = "aside"


class SessionConfigError(Exception):
    """Raised when a session has neither a scenario nor custom prompts."""


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_wire(self) -> dict:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass(frozen=True)
class Quota:
    tokens: int | None = None
    label: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> Quota:
        data = data or {}
        tokens = data.get("tokens")
        return cls(
            tokens=int(tokens) if tokens is not None else None,
            label=data.get("label"),
        )


@dataclass(frozen=True)
class Invitation:
    id: str
    token: str
    quota: Quota


@dataclass(frozen=True)
class Scenario:
    id: int
    name: str
    description: str
    partner_persona: str
    partner_model: str
    coach_model: str
    partner_system_prompt: str
    coach_system_prompt: str


@dataclass(frozen=True)
class User:
    id: str
    role: str
    api_token: str

    @property
    def can_observe(self) -> bool:
        return self.role in ("ADMIN", "STAFF")


@dataclass(frozen=True)
class Message:
    id: int
    session_id: int
    role: str
    content: str
    created_at: str
    thread: str = THREAD_MAIN
    thread_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_main(self) -> bool:
        return self.thread == THREAD_MAIN

    @property
    def is_complete(self) -> bool:
        return self.metadata.get("complete", True) is not False

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.created_at,
            "thread": self.thread,
            "threadId": self.thread_id,
        }


@dataclass
class ConversationSession:
    id: int
    user_id: str
    scenario: Scenario | None = None
    invitation: Invitation | None = None
    custom_scenario_name: str | None = None
    custom_description: str | None = None
    custom_partner_persona: str | None = None
    custom_partner_prompt: str | None = None
    custom_coach_prompt: str | None = None
    total_messages: int = 0
    messages: list[Message] = field(default_factory=list)

    @property
    def is_custom(self) -> bool:
        return self.scenario is None and bool(self.custom_partner_prompt and self.custom_coach_prompt)

    def has_prompt_config(self) -> bool:
        return self.scenario is not None or self.is_custom

    def scenario_info(self) -> dict:
        if self.scenario is not None:
            return {
                "id": self.scenario.id,
                "name": self.scenario.name,
                "description": self.scenario.description,
                "partnerPersona": self.scenario.partner_persona,
                "isCustom": False,
            }
        if self.custom_partner_persona or self.is_custom:
            return {
                "id": 0,
                "name": self.custom_scenario_name or "Custom Scenario",
                "description": self.custom_description or "User-defined conversation partner",
                "partnerPersona": self.custom_partner_persona or "Custom partner",
                "isCustom": True,
            }
        raise SessionConfigError(f"Session {self.id} has neither scenario nor custom prompts")

    def role_config(self, role: str, default_model: str) -> tuple[str, str]:
        """Return (model, system_prompt) for the partner or coach role."""
        if self.scenario is not None:
            if role == ROLE_PARTNER:
                return self.scenario.partner_model, self.scenario.partner_system_prompt
            return self.scenario.coach_model, self.scenario.coach_system_prompt
        if self.is_custom:
            prompt = self.custom_partner_prompt if role == ROLE_PARTNER else self.custom_coach_prompt
            return default_model, prompt or ""
        raise SessionConfigError(f"Session {self.id} has neither scenario nor custom prompts")


@dataclass(frozen=True)
class UsageRecord:
    session_id: int
    user_id: str
    invitation_id: str | None
    model: str
    stream_type: str
    usage: TokenUsage
