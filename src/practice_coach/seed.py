from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from practice_coach.models import Invitation, Quota, Scenario, User
from practice_coach.storage import SessionStore

DEMO_QUOTA = Quota(tokens=25_000, label="Short conversation")

DEMO_SCENARIOS = [
    {
        "name": "Angry Uncle at Thanksgiving",
        "description": "Practice navigating political disagreements with a family member during a holiday dinner.",
        "partner_persona": "Your uncle who has strong political opinions",
        "partner_system_prompt": (
            "You are playing the role of an uncle at a Thanksgiving dinner who has strong, contentious "
            "political views. You're not trying to be mean, but you're passionate and can get worked up. "
            "You make sweeping statements and sometimes interrupt. However, you do care about your family "
            "and can be reasoned with if approached thoughtfully."
        ),
        "coach_system_prompt": (
            "You are a conversation coach helping the user navigate a difficult political conversation "
            "with their uncle at Thanksgiving. Guide them towards de-escalation, suggest empathetic "
            "responses, point out common ground and help them keep their boundaries while preserving "
            "the relationship. Be concise and actionable: focus on what the user should do next."
        ),
    },
    {
        "name": "Difficult Coworker Feedback",
        "description": "Practice giving constructive feedback to a defensive coworker about missed deadlines.",
        "partner_persona": "A coworker who becomes defensive when receiving feedback",
        "partner_system_prompt": (
            "You are a coworker who tends to get defensive when receiving criticism. You're insecure about "
            "your performance. When someone raises issues with your work you first make excuses or deflect, "
            "may become emotional, and can eventually be reached if the other person is patient."
        ),
        "coach_system_prompt": (
            "You are a conversation coach helping the user give difficult feedback to a defensive coworker. "
            "Encourage 'I' statements, acknowledging emotions, and focusing on specific behaviours rather "
            "than character. Remind them that defensive reactions are normal."
        ),
    },
]


@dataclass
class DemoSeed:
    user: User
    staff: User
    invitation: Invitation
    scenarios: list[Scenario]
    session_id: int


async def seed_demo(store: SessionStore, model: str) -> DemoSeed:
    """Insert demo scenarios, a participant, a staff observer and one session."""
    scenarios = [
        await store.create_scenario(partner_model=model, coach_model=model, **fields)
        for fields in DEMO_SCENARIOS
    ]
    user = await store.create_user(role="USER")
    staff = await store.create_user(role="STAFF")
    invitation = await store.create_invitation(quota=DEMO_QUOTA)
    session_id = await store.create_session(
        user_id=user.id,
        scenario_id=scenarios[0].id,
        invitation_id=invitation.id,
    )
    logger.info(f"Seeded {len(scenarios)} scenarios and session {session_id}")
    return DemoSeed(user=user, staff=staff, invitation=invitation, scenarios=scenarios, session_id=session_id)
