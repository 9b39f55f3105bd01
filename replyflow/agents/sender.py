"""Hands send-ready drafts to the outbound mail provider and records the result."""

from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
from sqlmodel import col, or_, select

from replyflow import monitoring
from replyflow.agents.thread import autosend_enabled, owning_lead
from replyflow.config import Settings
from replyflow.db import Lead, Message, get_session, utcnow
from replyflow.errors import ConfigurationError, MailSendError
from replyflow.locks import claim_send
from replyflow.orchestrator import ItemResult, Stage
from replyflow.policy import delay_for_stage, load_policy
from replyflow.prompts import truncate

MAX_SEND_ATTEMPTS = 5


class MailProvider:
    """Posts outbound mail to the configured send endpoint."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._transport = transport

    def endpoint(self) -> str:
        if not self.settings.send_endpoint:
            raise ConfigurationError("MAIL_SEND_ENDPOINT not configured")
        return self.settings.send_endpoint

    async def send(
        self,
        *,
        agent_id: str,
        to: str,
        subject: str,
        body: str,
        thread_id: Optional[str] = None,
        message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        endpoint = self.endpoint()
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self.settings.send_api_key:
            headers["Authorization"] = f"Bearer {self.settings.send_api_key}"
        payload = {
            "agent_id": agent_id,
            "to": to,
            "subject": subject,
            "body": body,
            "thread_id": thread_id,
            "message_id": message_id,
        }
        async with httpx.AsyncClient(timeout=self.settings.send_timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(endpoint, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise MailSendError(f"Mail send failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def reply_subject(lead: Lead) -> str:
    base = (lead.subject or lead.type or "Anfrage").strip()
    if base.lower().startswith("re:"):
        return base[:180]
    return f"Re: {base}"[:180]


async def confirm_sent(session, lead: Lead, draft: Message, now) -> None:
    """Advance the lead's follow-up schedule once a send is confirmed."""
    lead.last_agent_message_at = now
    lead.last_message = truncate(draft.text, 500)
    lead.last_message_at = now
    policy = await load_policy(session, lead)
    if draft.was_followup:
        lead.followup_stage = min(lead.followup_stage + 1, 2)
        lead.followup_last_sent_at = now
    if not policy.enabled:
        lead.followup_status = "idle"
        lead.followup_stop_reason = "disabled_by_policy"
        lead.followup_next_at = None
    elif lead.followup_stage >= policy.max_stage:
        lead.followup_status = "idle"
        lead.followup_stop_reason = "max_stage_reached"
        lead.followup_next_at = None
    else:
        lead.followup_status = "planned"
        lead.followup_stop_reason = None
        lead.followup_next_at = now + timedelta(hours=delay_for_stage(policy, lead.followup_stage))
    session.add(lead)


async def record_send_failure(session, draft: Message, lead: Optional[Lead], error: str) -> str:
    """Mark a failed send for retry, or hand the draft to a human once attempts run out."""
    draft.send_status = "failed"
    draft.send_error = error[:2000]
    draft.send_locked_at = None
    draft.send_attempts = (draft.send_attempts or 0) + 1
    outcome = "send_failed"
    if draft.send_attempts >= MAX_SEND_ATTEMPTS:
        outcome = "retry_limit_reached"
        draft.status = "needs_human"
        draft.approval_required = True
        if draft.was_followup and lead is not None:
            lead.followup_status = "idle"
            lead.followup_stop_reason = "retry_limit_reached"
            lead.followup_next_at = None
            session.add(lead)
    session.add(draft)
    await session.commit()
    return outcome


class SendStage(Stage):
    name = "send"

    def __init__(self, settings: Settings, llm=None, *, mailer: Optional[MailProvider] = None, **kwargs):
        super().__init__(settings, llm, **kwargs)
        self.mailer = mailer or MailProvider(settings)

    async def preflight(self) -> None:
        self.mailer.endpoint()

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(
                        Message.sender == "agent",
                        Message.status == "ready_to_send",
                        Message.approval_required == False,  # noqa: E712
                        or_(col(Message.send_status).is_(None), col(Message.send_status).in_(("pending", "failed"))),
                    )
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        async with get_session() as session:
            draft = await session.get(Message, item_id)
            if not draft or draft.status != "ready_to_send" or draft.approval_required:
                return ItemResult(item_id, "skipped")
            lead = await owning_lead(session, draft)
            if not lead:
                draft.status = "needs_human"
                draft.approval_required = True
                session.add(draft)
                await session.commit()
                return ItemResult(item_id, "needs_human", {"reason": "lead_mismatch"})
            if draft.approved_at is None and not await autosend_enabled(session, draft.agent_id):
                draft.status = "needs_approval"
                draft.approval_required = True
                session.add(draft)
                await session.commit()
                return ItemResult(item_id, "needs_approval", {"reason": "autosend_disabled"})
            if not lead.email or not (draft.text or "").strip():
                draft.status = "needs_human"
                draft.approval_required = True
                session.add(draft)
                await session.commit()
                return ItemResult(item_id, "needs_human", {"reason": "missing_recipient_or_text"})

            now = utcnow()
            if not await claim_send(session, message_id=draft.id, now=now):
                return ItemResult(item_id, "not_lockable")
            await session.refresh(draft)

            try:
                receipt = await self.mailer.send(
                    agent_id=draft.agent_id,
                    to=lead.email,
                    subject=reply_subject(lead),
                    body=draft.text,
                    thread_id=lead.provider_thread_id,
                    message_id=draft.id,
                )
            except MailSendError as exc:
                monitoring.capture_exception(exc)
                outcome = await record_send_failure(session, draft, lead, str(exc))
                return ItemResult(item_id, outcome, {"error": str(exc), "attempts": draft.send_attempts})

            now = utcnow()
            draft.status = "sent"
            draft.send_status = "sent"
            draft.send_error = None
            draft.send_locked_at = None
            draft.sent_at = now
            draft.provider_message_id = str(receipt.get("id")) if receipt.get("id") else None
            session.add(draft)
            await confirm_sent(session, lead, draft, now)
            await session.commit()
        return ItemResult(item_id, "sent")

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            draft = await session.get(Message, item_id)
            if draft and draft.send_status == "sending":
                lead = await session.get(Lead, draft.lead_id)
                await record_send_failure(session, draft, lead, str(exc))
