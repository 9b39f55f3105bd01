"""QA evaluation of drafts, plus the single recheck after a rewrite."""

from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from replyflow.agents.thread import autosend_enabled, format_thread, owning_lead, recent_messages, resolve_anchor
from replyflow.db import Message, MessageQA, get_session
from replyflow.errors import ConfigurationError, ModelOutputError, UpstreamError
from replyflow.llm.schemas import QAOutput, decode
from replyflow.orchestrator import ItemResult, Stage
from replyflow.prompts import Prompt, load_prompt, render, truncate


class QAStage(Stage):
    """Scores ``qa_pending`` drafts pass/warn/fail and routes them.

    pass  -> ready_to_send (agent autosend on) or needs_approval
    warn  -> rewrite_pending
    fail  -> needs_human, together with the inbound message it answers
    """

    name = "qa"
    llm_stage = "qa"
    source_status = "qa_pending"
    warn_status = "rewrite_pending"
    reply_prompt_key = "qa_reply_v1"
    followup_prompt_key: Optional[str] = "followup_qa_v1"
    draft_placeholder = "DRAFT_MESSAGE"
    prompt_defaults = {"temperature": 0.0, "max_tokens": 220}

    async def preflight(self) -> None:
        self.settings.llm_for(self.llm_stage)
        self.prompts: Dict[str, Prompt] = {}
        keys = [self.reply_prompt_key]
        if self.followup_prompt_key:
            keys.append(self.followup_prompt_key)
        async with get_session() as session:
            for key in keys:
                prompt = await load_prompt(session, key, **self.prompt_defaults)
                if not prompt:
                    raise ConfigurationError(f"No active prompt '{key}'")
                self.prompts[key] = prompt

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(Message.sender == "agent", Message.status == self.source_status)
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        return await self.evaluate(item_id)

    def prompt_for(self, draft: Message) -> Prompt:
        if draft.was_followup and self.followup_prompt_key:
            return self.prompts[self.followup_prompt_key]
        return self.prompts[self.reply_prompt_key]

    async def evaluate(self, draft_id: int) -> ItemResult:
        """Evaluate one draft; safe to call repeatedly for the same draft."""
        async with get_session() as session:
            draft = await session.get(Message, draft_id)
            if not draft or draft.sender != "agent" or draft.status != self.source_status:
                return ItemResult(draft_id, "skipped")

            lead = await owning_lead(session, draft)
            if not lead:
                await self._route(session, draft, None, "needs_human")
                return ItemResult(draft_id, "needs_human", {"reason": "lead_mismatch"})
            anchor = await resolve_anchor(session, draft)
            if not anchor:
                await self._route(session, draft, None, "needs_human")
                return ItemResult(draft_id, "needs_human", {"reason": "missing_inbound_link"})

            prompt = self.prompt_for(draft)
            existing = (
                await session.exec(
                    select(MessageQA).where(
                        MessageQA.draft_message_id == draft.id,
                        MessageQA.prompt_key == prompt.key,
                        MessageQA.prompt_version == prompt.version,
                    )
                )
            ).first()
            if existing:
                status = await self._apply(session, draft, anchor, existing.verdict)
                return ItemResult(draft_id, "already_evaluated", {"verdict": existing.verdict, "status": status})

            thread = await recent_messages(session, lead.id, limit=10, exclude_id=draft.id)
            values = {
                "THREAD_CONTEXT": format_thread(thread),
                "INBOUND_MESSAGE": truncate(anchor.text, 2000),
                self.draft_placeholder: truncate(draft.text, 2200),
            }
            output, model = await self._judge(prompt, values)

            session.add(
                MessageQA(
                    agent_id=draft.agent_id,
                    lead_id=draft.lead_id,
                    inbound_message_id=anchor.id,
                    draft_message_id=draft.id,
                    verdict=output.verdict,
                    score=output.score,
                    reason=output.reason or None,
                    reason_long=output.reason_long,
                    action=output.action,
                    risk_flags=output.risk_flags or None,
                    model=model,
                    prompt_key=prompt.key,
                    prompt_version=prompt.version,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                return ItemResult(draft_id, "already_evaluated")
            status = await self._apply(session, draft, anchor, output.verdict)
        return ItemResult(
            draft_id,
            output.verdict,
            {"status": status, "score": output.score, "reason": output.reason},
        )

    async def _judge(self, prompt: Prompt, values: Dict[str, str]):
        model = self.llm.deployment(self.llm_stage)
        try:
            raw = await self.llm.complete(
                self.llm_stage,
                system=render(prompt.system, values),
                user=render(prompt.user, values),
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                json_mode=True,
            )
        except UpstreamError as exc:
            self.logger.warning("qa call failed", extra={"pipeline": {"stage": self.name, "reason": exc.reason}})
            return QAOutput(verdict="fail", reason=f"qa_call_failed:{exc.reason}"), model
        try:
            return decode(QAOutput, raw), model
        except ModelOutputError:
            return QAOutput(verdict="fail", reason="unparseable_output"), model

    async def _apply(self, session, draft: Message, anchor: Optional[Message], verdict: str) -> str:
        if verdict == "pass":
            allowed = await autosend_enabled(session, draft.agent_id)
            if anchor is not None and anchor.approval_required:
                allowed = False
            status = "ready_to_send" if allowed else "needs_approval"
        elif verdict == "warn":
            status = self.warn_status
        else:
            status = "needs_human"
        await self._route(session, draft, anchor, status)
        return status

    async def _route(self, session, draft: Message, anchor: Optional[Message], status: str) -> None:
        draft.status = status
        draft.approval_required = status != "ready_to_send"
        session.add(draft)
        if status == "needs_human" and anchor is not None and not draft.was_followup:
            anchor.status = "needs_human"
            session.add(anchor)
        await session.commit()

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            draft = await session.get(Message, item_id)
            if draft and draft.status == self.source_status:
                await self._route(session, draft, None, "needs_human")


class QARecheckStage(QAStage):
    """Re-evaluates a rewritten draft; a second warn goes to a human, never to another rewrite."""

    name = "qa_recheck"
    llm_stage = "qa_recheck"
    source_status = "qa_recheck_pending"
    warn_status = "needs_approval"
    reply_prompt_key = "qa_recheck_v1"
    followup_prompt_key = None
    draft_placeholder = "REWRITTEN_REPLY"
    prompt_defaults = {"temperature": 0.0, "max_tokens": 120}

    async def _route(self, session, draft: Message, anchor: Optional[Message], status: str) -> None:
        draft.status = status
        draft.approval_required = status != "ready_to_send"
        session.add(draft)
        await session.commit()
