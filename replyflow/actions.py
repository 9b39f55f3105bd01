"""Human review actions on generated drafts."""

import logging
from typing import Optional

from replyflow.db import Message, get_session, utcnow
from replyflow.errors import InvalidTransition, MessageNotFound
from replyflow.locks import release_send

logger = logging.getLogger("replyflow.actions")

REVIEWABLE_STATUSES = ("needs_approval", "needs_human", "ready_to_send")


async def _reviewable_draft(session, message_id: int, agent_id: str) -> Message:
    message = await session.get(Message, message_id)
    if not message or message.agent_id != agent_id or message.sender != "agent":
        raise MessageNotFound(f"Message {message_id} not found")
    if message.status not in REVIEWABLE_STATUSES or message.send_status in ("sending", "sent"):
        raise InvalidTransition(f"Message {message_id} is {message.status}")
    return message


def _summary(message: Message) -> dict:
    return {
        "ok": True,
        "id": message.id,
        "status": message.status,
        "approval_required": message.approval_required,
        "send_status": message.send_status,
    }


async def approve(message_id: int, agent_id: str, *, text: Optional[str] = None) -> dict:
    """Release a draft to the send runner, optionally replacing its text first."""
    async with get_session() as session:
        message = await _reviewable_draft(session, message_id, agent_id)
        if text is not None:
            cleaned = text.strip()
            if not cleaned:
                raise InvalidTransition("Edited text is empty")
            message.text = cleaned
        message.status = "ready_to_send"
        message.approval_required = False
        message.approved_at = utcnow()
        message.send_attempts = 0
        if message.send_status != "failed":
            message.send_status = "pending"
        session.add(message)
        await session.commit()
        await session.refresh(message)
        logger.info("draft approved", extra={"review": {"id": message.id, "edited": text is not None}})
        return _summary(message)


async def edit_and_approve(message_id: int, agent_id: str, text: str) -> dict:
    return await approve(message_id, agent_id, text=text)


async def reject(message_id: int, agent_id: str) -> dict:
    async with get_session() as session:
        message = await _reviewable_draft(session, message_id, agent_id)
        message.status = "rejected"
        message.approval_required = True
        session.add(message)
        await session.commit()
        await session.refresh(message)
        logger.info("draft rejected", extra={"review": {"id": message.id}})
        return _summary(message)


async def unlock_send(message_id: int) -> dict:
    """Release a draft left in ``sending`` by a run that died between claim and send."""
    async with get_session() as session:
        message = await session.get(Message, message_id)
        if not message or message.sender != "agent":
            raise MessageNotFound(f"Message {message_id} not found")
        if not await release_send(session, message_id=message_id):
            raise InvalidTransition(f"Message {message_id} is not sending")
        await session.refresh(message)
        logger.warning("send lock released", extra={"review": {"id": message.id}})
        return _summary(message)
