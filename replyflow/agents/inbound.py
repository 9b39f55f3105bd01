"""Recording of inbound lead mail behind the safety classifier."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from replyflow.agents.classifier import (
    Classification,
    EmailClassifier,
    EmailMetadata,
    is_no_reply_address,
    parse_primary_email,
)
from replyflow.db import Lead, Message, get_session, utcnow
from replyflow.errors import ModelOutputError, UpstreamError
from replyflow.policy import delay_for_stage, load_policy
from replyflow.prompts import truncate

logger = logging.getLogger("replyflow.inbound")


@dataclass
class IngestResult:
    message_id: Optional[int]
    lead_id: Optional[int]
    status: str
    classification: Dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "message_id": self.message_id,
            "lead_id": self.lead_id,
            "status": self.status,
            "classification": self.classification,
            "duplicate": self.duplicate,
        }


def contact_address(meta: EmailMetadata) -> Optional[str]:
    """Address replies should go to: a usable reply-to wins over From."""
    reply_to = parse_primary_email(meta.reply_to)
    if reply_to and not is_no_reply_address(reply_to):
        return reply_to
    return parse_primary_email(meta.from_address)


def message_status(result: Classification) -> str:
    return "ignored" if result.decision == "ignore" else "pending"


async def reset_followups(session, lead: Lead, now: datetime) -> None:
    """Restart the follow-up plan at stage 0 after the lead wrote in."""
    policy = await load_policy(session, lead)
    lead.followup_stage = 0
    lead.followup_failures = 0
    if not policy.enabled:
        lead.followup_status = "idle"
        lead.followup_stop_reason = "disabled_by_policy"
        lead.followup_next_at = None
        return
    lead.followup_status = "planned"
    lead.followup_stop_reason = None
    if lead.followup_paused_until and lead.followup_paused_until > now:
        lead.followup_next_at = lead.followup_paused_until
    else:
        lead.followup_next_at = now + timedelta(hours=delay_for_stage(policy, 0))


async def classify_safely(classifier: EmailClassifier, meta: EmailMetadata) -> Classification:
    try:
        return await classifier.classify(meta)
    except (UpstreamError, ModelOutputError) as exc:
        logger.warning("classifier unavailable, holding for approval", extra={"inbound": {"error": str(exc)}})
        return Classification(
            decision="needs_approval",
            email_type="UNKNOWN",
            confidence=0.0,
            reason=f"classifier_failed:{type(exc).__name__}"[:120],
        )


async def ingest_inbound(
    classifier: EmailClassifier,
    *,
    agent_id: str,
    meta: EmailMetadata,
    text: str,
    name: Optional[str] = None,
    lead_type: Optional[str] = None,
    property_id: Optional[int] = None,
    provider_message_id: Optional[str] = None,
    provider_thread_id: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> IngestResult:
    """Classify and store one inbound email for ``agent_id``.

    Args:
        classifier: Safety classifier; configuration errors propagate.
        agent_id: Owning agent.
        meta: Header metadata of the email.
        text: Plain-text body.
        provider_message_id: Mailbox id used to drop redeliveries.

    Returns:
        IngestResult: Stored message and the gate decision.
    """
    if provider_message_id:
        async with get_session() as session:
            existing = (
                await session.exec(
                    select(Message).where(
                        Message.agent_id == agent_id,
                        Message.provider_message_id == provider_message_id,
                    )
                )
            ).first()
            if existing:
                return IngestResult(existing.id, existing.lead_id, existing.status, duplicate=True)

    email = contact_address(meta)
    if not email:
        return IngestResult(None, None, "rejected", {"reason": "missing_sender_address"})

    result = await classify_safely(classifier, meta)
    now = received_at or utcnow()
    status = message_status(result)

    async with get_session() as session:
        lead = (
            await session.exec(select(Lead).where(Lead.agent_id == agent_id, Lead.email == email))
        ).first()
        if lead is None:
            lead = Lead(
                agent_id=agent_id,
                email=email,
                name=name,
                subject=meta.subject or None,
                type=lead_type,
                property_id=property_id,
                provider_thread_id=provider_thread_id,
            )
            session.add(lead)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                lead = (
                    await session.exec(select(Lead).where(Lead.agent_id == agent_id, Lead.email == email))
                ).one()
        else:
            lead.name = lead.name or name
            lead.type = lead.type or lead_type
            lead.property_id = lead.property_id or property_id
            lead.provider_thread_id = provider_thread_id or lead.provider_thread_id

        message = Message(
            agent_id=agent_id,
            lead_id=lead.id,
            sender="user",
            text=text or "",
            subject=meta.subject or None,
            snippet=truncate(meta.snippet or text, 600) or None,
            status=status,
            approval_required=result.decision == "needs_approval",
            classification=result.decision,
            email_type=result.email_type,
            provider_message_id=provider_message_id,
            timestamp=now,
        )
        session.add(message)

        if status != "ignored":
            lead.last_message = truncate(text, 500)
            lead.last_message_at = now
            lead.last_user_message_at = now
            await reset_followups(session, lead, now)
        session.add(lead)
        await session.commit()
        message_id, lead_id = message.id, lead.id

    logger.info(
        "inbound recorded",
        extra={"inbound": {"message_id": message_id, "lead_id": lead_id, "decision": result.decision}},
    )
    return IngestResult(message_id, lead_id, status, result.to_dict())
