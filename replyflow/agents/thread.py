"""Thread lookups shared by the drafting, QA and follow-up stages."""

from typing import List, Optional, Sequence

from sqlmodel import select

from replyflow.db import AgentSettings, Lead, Message, MessageDraft

SENDER_LABELS = {"user": "Interessent", "agent": "Makler"}


async def recent_messages(session, lead_id: int, *, limit: int = 10, exclude_id: Optional[int] = None) -> List[Message]:
    """Newest-first slice of a lead's thread."""
    statement = select(Message).where(Message.lead_id == lead_id)
    if exclude_id is not None:
        statement = statement.where(Message.id != exclude_id)
    statement = statement.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit)
    return list((await session.exec(statement)).all())


def format_thread(messages: Sequence[Message], *, oldest_first: bool = True, per_message: int = 400) -> str:
    ordered = list(messages)
    if oldest_first:
        ordered.sort(key=lambda m: (m.timestamp, m.id or 0))
    lines = []
    for message in ordered:
        text = (message.text or "").strip().replace("\n", " ")
        if len(text) > per_message:
            text = text[:per_message] + "..."
        if not text:
            continue
        lines.append(f"{SENDER_LABELS.get(message.sender, message.sender)}: {text}")
    return "\n".join(lines) or "(kein Verlauf)"


async def latest_user_message(session, lead_id: int) -> Optional[Message]:
    return (
        await session.exec(
            select(Message)
            .where(Message.lead_id == lead_id, Message.sender == "user")
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(1)
        )
    ).first()


async def resolve_anchor(session, draft: Message) -> Optional[Message]:
    """Inbound message a draft answers.

    Reply drafts are linked through their MessageDraft row; follow-up drafts
    answer the lead's latest user message. Anything that does not belong to
    the draft's lead and agent is treated as missing.
    """
    if draft.was_followup:
        anchor = await latest_user_message(session, draft.lead_id)
    else:
        lock = (
            await session.exec(select(MessageDraft).where(MessageDraft.draft_message_id == draft.id))
        ).first()
        if not lock:
            return None
        anchor = await session.get(Message, lock.inbound_message_id)
    if not anchor or anchor.lead_id != draft.lead_id or anchor.agent_id != draft.agent_id:
        return None
    return anchor


async def owning_lead(session, message: Message) -> Optional[Lead]:
    lead = await session.get(Lead, message.lead_id)
    if not lead or lead.agent_id != message.agent_id:
        return None
    return lead


async def autosend_enabled(session, agent_id: str) -> bool:
    settings = await session.get(AgentSettings, agent_id)
    return bool(settings and settings.autosend_enabled)
