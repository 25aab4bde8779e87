ASIDE_QUESTION_MARKER = "[ASIDE QUESTION]"

_ASIDE_FRAMING = f"""\
The user has paused the role-play to ask you a private question. Their \
question is marked {ASIDE_QUESTION_MARKER}. The conversation partner cannot \
see this exchange.

Answer the question directly and briefly, as their coach. Refer to specific \
moments in the conversation above when that helps. Do not continue the \
role-play and do not speak as the partner."""


def build_aside_system_prompt(coach_system_prompt: str) -> str:
    if not coach_system_prompt:
        return _ASIDE_FRAMING
    return f"{coach_system_prompt}\n\n{_ASIDE_FRAMING}"
