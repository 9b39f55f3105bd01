#!/usr/bin/env python
import asyncio
import random
from datetime import timedelta

from faker import Faker

from replyflow.db import (
    Agent,
    AgentSettings,
    AgentStyle,
    Lead,
    Message,
    Property,
    ResponseTemplate,
    get_session,
    init_db,
    utcnow,
)
from replyflow.prompts import seed_default_prompts

FAKE_AGENT_ID = "demo"

TEMPLATE_CATEGORIES = {
    "property_specific_answer": "Antwort zu einem konkreten Objekt",
    "property_search_suggestions": "Passende Objekte vorschlagen",
    "status_followup": "Stand der Anfrage",
    "general_qna": "Allgemeine Fragen",
    "faq": "Häufige Fragen",
}


async def seed_agent(fake: Faker) -> None:
    async with get_session() as session:
        if await session.get(Agent, FAKE_AGENT_ID):
            return
        session.add(Agent(id=FAKE_AGENT_ID, email=fake.company_email(), name=fake.name()))
        session.add(AgentSettings(agent_id=FAKE_AGENT_ID, autosend_enabled=False))
        session.add(
            AgentStyle(
                agent_id=FAKE_AGENT_ID,
                brand_name=fake.company(),
                language="de",
                tone="freundlich",
                formality="Sie",
                length_pref="kurz",
                emoji_level="keine",
                sign_off="Viele Grüße",
            )
        )
        for category, title in TEMPLATE_CATEGORIES.items():
            session.add(
                ResponseTemplate(
                    agent_id=FAKE_AGENT_ID,
                    title=title,
                    content=fake.paragraph(nb_sentences=3),
                    category=category,
                )
            )
        await session.commit()


async def seed_properties(fake: Faker, total: int) -> None:
    async with get_session() as session:
        for _ in range(total):
            session.add(
                Property(
                    agent_id=FAKE_AGENT_ID,
                    title=f"{random.randint(1, 5)}-Zimmer-Wohnung in {fake.city()}",
                    city=fake.city(),
                    street_address=fake.street_address(),
                    type=random.choice(["Mieten", "Kaufen"]),
                    price=round(random.uniform(700, 3500), 2),
                    rooms=float(random.randint(1, 5)),
                    size_sqm=float(random.randint(30, 140)),
                    furnished=random.choice([True, False]),
                    pets_allowed=random.choice([True, False]),
                    listing_summary=fake.paragraph(nb_sentences=2),
                    url=fake.url(),
                )
            )
        await session.commit()


async def seed_lead(fake: Faker) -> None:
    received = utcnow() - timedelta(hours=random.randint(1, 72))
    async with get_session() as session:
        lead = Lead(
            agent_id=FAKE_AGENT_ID,
            name=fake.name(),
            email=fake.email(),
            subject="Anfrage zu Ihrem Inserat",
            type=random.choice(["Mieten", "Kaufen"]),
            followup_status="planned",
            followup_next_at=received + timedelta(hours=24),
            last_user_message_at=received,
            last_message_at=received,
        )
        session.add(lead)
        await session.flush()
        session.add(
            Message(
                agent_id=FAKE_AGENT_ID,
                lead_id=lead.id,
                sender="user",
                text=fake.paragraph(nb_sentences=3),
                subject=lead.subject,
                status="pending",
                classification="auto_reply",
                email_type="LEAD",
                timestamp=received,
            )
        )
        await session.commit()


async def main(total: int = 20) -> None:
    await init_db()
    fake = Faker("de_DE")
    async with get_session() as session:
        prompts = await seed_default_prompts(session)
    await seed_agent(fake)
    await seed_properties(fake, 10)
    for _ in range(total):
        await seed_lead(fake)
    print(f"Seeded {prompts} prompts and {total} demo leads for agent '{FAKE_AGENT_ID}'.")


if __name__ == "__main__":
    asyncio.run(main())
