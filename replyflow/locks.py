"""Store-backed mutexes for side-effecting pipeline steps."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from replyflow.db import Lead, Message, MessageDraft

FOLLOWUP_LOCKABLE_STATUSES = ("planned", "due", "failed")


class LockResult(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_LOCKED = "already_locked"
    ALREADY_COMPLETED = "already_completed"


def _existing_result(row: MessageDraft) -> LockResult:
    return LockResult.ALREADY_COMPLETED if row.draft_message_id else LockResult.ALREADY_LOCKED


async def acquire_draft_lock(
    session,
    *,
    agent_id: str,
    lead_id: int,
    inbound_message_id: int,
    route: Optional[str] = None,
    prompt_key: Optional[str] = None,
    prompt_version: Optional[str] = None,
) -> LockResult:
    """Insert the one-per-inbound MessageDraft row.

    The unique index on ``inbound_message_id`` is the mutex: a concurrent
    insert fails with an IntegrityError and is reported as already locked or
    already completed, never as a fresh acquisition.
    """
    existing = (
        await session.exec(select(MessageDraft).where(MessageDraft.inbound_message_id == inbound_message_id))
    ).first()
    if existing:
        return _existing_result(existing)

    session.add(
        MessageDraft(
            agent_id=agent_id,
            lead_id=lead_id,
            inbound_message_id=inbound_message_id,
            route=route,
            prompt_key=prompt_key,
            prompt_version=prompt_version,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = (
            await session.exec(select(MessageDraft).where(MessageDraft.inbound_message_id == inbound_message_id))
        ).first()
        return _existing_result(existing) if existing else LockResult.ALREADY_LOCKED
    return LockResult.ACQUIRED


async def claim_followup(session, *, lead_id: int, agent_id: str, now: datetime) -> bool:
    """Flip a due lead to ``sending``; False when another run got there first."""
    result = await session.execute(
        update(Lead)
        .where(
            Lead.id == lead_id,
            Lead.agent_id == agent_id,
            Lead.followup_status.in_(FOLLOWUP_LOCKABLE_STATUSES),
            Lead.followup_next_at <= now,
        )
        .values(followup_status="sending")
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def claim_send(session, *, message_id: int, now: datetime) -> bool:
    """Flip a send-ready draft's send_status to ``sending`` exactly once."""
    result = await session.execute(
        update(Message)
        .where(
            Message.id == message_id,
            Message.status == "ready_to_send",
            Message.approval_required == False,  # noqa: E712
            (Message.send_status.is_(None)) | (Message.send_status.in_(("pending", "failed"))),
        )
        .values(send_status="sending", send_locked_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def release_send(session, *, message_id: int, reason: str = "manual_unlock") -> bool:
    """Return a draft stuck in ``sending`` to ``failed`` so the send runner retries it."""
    result = await session.execute(
        update(Message)
        .where(Message.id == message_id, Message.send_status == "sending")
        .values(send_status="failed", send_error=reason, send_locked_at=None)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) == 1
