"""Follow-up scheduler for leads that went quiet.

Each due lead passes the deterministic hard stops, is claimed with a
conditional update, gets a stage-specific follow-up draft from the model and
is pushed through the same QA evaluation as regular replies. Scheduling of
the next stage happens only once a send is confirmed (see ``sender``).
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmodel import col, or_, select

from replyflow.agents.qa import QAStage
from replyflow.agents.sender import SendStage, reply_subject
from replyflow.agents.thread import format_thread, recent_messages
from replyflow.db import Lead, Message, get_session, utcnow
from replyflow.errors import ModelOutputError, UpstreamError
from replyflow.llm.schemas import FollowupOutput, decode
from replyflow.locks import FOLLOWUP_LOCKABLE_STATUSES, claim_followup
from replyflow.orchestrator import ItemResult, Stage
from replyflow.policy import FollowupPolicy, load_policy
from replyflow.prompts import load_prompt, render, truncate

STAGE_PROMPTS = {
    0: "followup_stage_1",  # gentle reminder
    1: "followup_stage_2",  # reactivation
    2: "followup_stage_3",  # closing nudge
}
CONFIDENCE_FLOOR = 0.7
FAILURE_BACKOFF = timedelta(minutes=30)
MISSING_PROMPT_BACKOFF = timedelta(minutes=60)
MAX_CONSECUTIVE_FAILURES = 5


def hard_stop(lead: Lead, policy: FollowupPolicy, now: datetime) -> Optional[str]:
    """First deterministic reason not to follow up, or None."""
    if not policy.enabled:
        return "disabled_by_policy"
    if not (lead.email or "").strip():
        return "missing_lead_email"
    if lead.followup_paused_until and lead.followup_paused_until > now:
        return "paused"
    if lead.followup_stage >= policy.max_stage:
        return "max_stage_reached"
    if (
        lead.last_user_message_at
        and lead.last_agent_message_at
        and lead.last_user_message_at > lead.last_agent_message_at
    ):
        return "user_replied_last"
    return None


class FollowupStage(Stage):
    name = "followups"
    llm_stage = "followup"
    default_limit = 20
    max_limit = 50

    def __init__(
        self,
        settings,
        llm=None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        qa: Optional[QAStage] = None,
        sender: Optional[SendStage] = None,
        **kwargs,
    ):
        super().__init__(settings, llm, **kwargs)
        self.clock = clock or utcnow
        self.qa = qa or QAStage(settings, llm)
        self.sender = sender

    async def preflight(self) -> None:
        self.settings.llm_for(self.llm_stage)
        await self.qa.preflight()
        if self.sender is not None:
            await self.sender.preflight()

    async def select_batch(self, limit: int):
        now = self.clock()
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Lead.id)
                    .where(
                        col(Lead.followup_next_at).is_not(None),
                        col(Lead.followup_next_at) <= now,
                        col(Lead.followup_status).in_(FOLLOWUP_LOCKABLE_STATUSES),
                        or_(col(Lead.followups_enabled).is_(None), col(Lead.followups_enabled) == True),  # noqa: E712
                    )
                    .order_by(col(Lead.followup_next_at).asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        now = self.clock()
        async with get_session() as session:
            lead = await session.get(Lead, item_id)
            if (
                not lead
                or lead.followup_status not in FOLLOWUP_LOCKABLE_STATUSES
                or lead.followup_next_at is None
                or lead.followup_next_at > now
            ):
                return ItemResult(item_id, "skipped")
            agent_id = lead.agent_id

            policy = await load_policy(session, lead)
            reason = hard_stop(lead, policy, now)
            if reason:
                await self._stop(session, lead, reason)
                return ItemResult(item_id, "stopped", {"reason": reason, "agent_id": agent_id})

            if not await claim_followup(session, lead_id=lead.id, agent_id=agent_id, now=now):
                return ItemResult(item_id, "not_lockable", {"agent_id": agent_id})
            await session.refresh(lead)
            stage = lead.followup_stage

            prompt = await load_prompt(
                session, STAGE_PROMPTS.get(stage, STAGE_PROMPTS[2]), temperature=0.3, max_tokens=300
            )
            if not prompt:
                await self._fail(session, lead, now, MISSING_PROMPT_BACKOFF, "missing_prompt")
                return ItemResult(item_id, "failed", {"reason": "missing_prompt", "agent_id": agent_id})

            thread = await recent_messages(session, lead.id, limit=10)
            values = {
                "CLIENT_NAME": lead.name or "Interessent",
                "SUBJECT": lead.subject or lead.type or "Anfrage",
                "THREAD_CONTEXT": format_thread(thread),
                "STAGE": str(stage + 1),
            }
            try:
                raw = await self.llm.complete(
                    self.llm_stage,
                    system=render(prompt.system, values),
                    user=render(prompt.user, values),
                    temperature=prompt.temperature,
                    max_tokens=prompt.max_tokens,
                    json_mode=True,
                )
                output = decode(FollowupOutput, raw)
            except (UpstreamError, ModelOutputError) as exc:
                await self._fail(session, lead, now, FAILURE_BACKOFF, "model_failed")
                return ItemResult(item_id, "failed", {"reason": "model_failed", "error": str(exc), "agent_id": agent_id})

            if not output.should_send or output.confidence < CONFIDENCE_FLOOR or not output.text:
                await self._stop(session, lead, "ai_says_no")
                return ItemResult(
                    item_id, "stopped", {"reason": "ai_says_no", "confidence": output.confidence, "agent_id": agent_id}
                )

            draft = Message(
                agent_id=agent_id,
                lead_id=lead.id,
                sender="agent",
                text=truncate(output.text, 4000),
                subject=reply_subject(lead),
                status="qa_pending",
                approval_required=True,
                send_status="pending",
                was_followup=True,
                timestamp=now,
            )
            session.add(draft)
            await session.commit()
            draft_id = draft.id

        try:
            qa_result = await self.qa.evaluate(draft_id)
        except Exception:
            await self._close_draft(draft_id)
            raise

        async with get_session() as session:
            lead = await session.get(Lead, item_id)
            draft = await session.get(Message, draft_id)
            if draft is None or draft.status != "ready_to_send":
                # an unreviewed follow-up blocks further ones for this lead
                await self._stop(session, lead, "needs_approval")
                return ItemResult(
                    item_id,
                    "needs_approval",
                    {"draft_id": draft_id, "qa": qa_result.outcome, "stage": stage, "agent_id": agent_id},
                )
            lead.followup_status = "planned"
            lead.followup_next_at = None
            lead.followup_stop_reason = None
            lead.followup_failures = 0
            session.add(lead)
            await session.commit()

        detail = {"draft_id": draft_id, "qa": qa_result.outcome, "stage": stage, "agent_id": agent_id}
        if self.sender is not None:
            sent = await self.sender.run_item(draft_id)
            detail["send"] = sent.outcome
        return ItemResult(item_id, "queued", detail)

    async def _close_draft(self, draft_id: int) -> None:
        # an unevaluated follow-up must never reach the send runner
        async with get_session() as session:
            draft = await session.get(Message, draft_id)
            if draft and draft.status == "qa_pending":
                draft.status = "needs_human"
                draft.approval_required = True
                draft.send_status = "failed"
                session.add(draft)
                await session.commit()

    async def _stop(self, session, lead: Lead, reason: str) -> None:
        lead.followup_status = "idle"
        lead.followup_stop_reason = reason
        lead.followup_next_at = None
        session.add(lead)
        await session.commit()

    async def _fail(self, session, lead: Lead, now: datetime, backoff: timedelta, reason: str) -> None:
        lead.followup_failures = (lead.followup_failures or 0) + 1
        if lead.followup_failures >= MAX_CONSECUTIVE_FAILURES:
            await self._stop(session, lead, "retry_limit_reached")
            return
        lead.followup_status = "failed"
        lead.followup_stop_reason = reason
        lead.followup_next_at = now + backoff
        session.add(lead)
        await session.commit()

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            lead = await session.get(Lead, item_id)
            if lead and lead.followup_status == "sending":
                await self._fail(session, lead, self.clock(), FAILURE_BACKOFF, "pipeline_error")
