"""Single-pass rewrite of drafts that QA flagged with a warning."""

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from replyflow.agents.drafts import strip_quotes
from replyflow.agents.thread import format_thread, owning_lead, recent_messages, resolve_anchor
from replyflow.db import Message, MessageQA, get_session
from replyflow.errors import ConfigurationError, ModelOutputError, UpstreamError
from replyflow.orchestrator import ItemResult, Stage
from replyflow.prompts import Prompt, load_prompt, render, truncate


class RewriteStage(Stage):
    name = "rewrite"
    llm_stage = "rewrite"
    prompt_key = "rewrite_reply_v1"

    async def preflight(self) -> None:
        self.settings.llm_for(self.llm_stage)
        async with get_session() as session:
            prompt = await load_prompt(session, self.prompt_key, temperature=0.2, max_tokens=450)
        if not prompt:
            raise ConfigurationError(f"No active prompt '{self.prompt_key}'")
        self.prompt: Prompt = prompt

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(Message.sender == "agent", Message.status == "rewrite_pending")
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        async with get_session() as session:
            draft = await session.get(Message, item_id)
            if not draft or draft.sender != "agent" or draft.status != "rewrite_pending":
                return ItemResult(item_id, "skipped")

            done = (
                await session.exec(
                    select(MessageQA).where(
                        MessageQA.draft_message_id == draft.id,
                        MessageQA.prompt_key == self.prompt.key,
                        MessageQA.prompt_version == self.prompt.version,
                    )
                )
            ).first()
            if done:
                # one rewrite per draft; anything left over goes to a human
                await self._to_human(session, draft)
                return ItemResult(item_id, "needs_human", {"reason": "already_rewritten"})

            lead = await owning_lead(session, draft)
            anchor = await resolve_anchor(session, draft) if lead else None
            if not lead or not anchor:
                await self._to_human(session, draft)
                return ItemResult(item_id, "needs_human", {"reason": "no_inbound_anchor"})

            thread = await recent_messages(session, lead.id, limit=10, exclude_id=draft.id)
            values = {
                "INBOUND_MESSAGE": truncate(anchor.text, 2000),
                "ORIGINAL_DRAFT": truncate(draft.text, 2200),
                "THREAD_CONTEXT": format_thread(thread, oldest_first=True),
                "LEAD_PRIORITY": str(lead.priority if lead.priority is not None else 2),
            }
            try:
                raw = await self.llm.complete(
                    self.llm_stage,
                    system=render(self.prompt.system, values),
                    user=render(self.prompt.user, values),
                    temperature=self.prompt.temperature,
                    max_tokens=self.prompt.max_tokens,
                )
            except (UpstreamError, ModelOutputError) as exc:
                self._record(session, draft, anchor, "rewrite_failed", str(exc)[:200])
                await self._to_human(session, draft)
                return ItemResult(item_id, "needs_human", {"reason": "rewrite_failed", "error": str(exc)})

            text = strip_quotes(raw)
            if not text:
                self._record(session, draft, anchor, "rewrite_failed", "empty_rewrite")
                await self._to_human(session, draft)
                return ItemResult(item_id, "needs_human", {"reason": "empty_rewrite"})

            self._record(session, draft, anchor, "rewritten", None)
            draft.text = text
            draft.status = "qa_recheck_pending"
            draft.approval_required = True
            session.add(draft)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return ItemResult(item_id, "already_rewritten")
        return ItemResult(item_id, "rewritten", {"status": "qa_recheck_pending"})

    def _record(self, session, draft: Message, anchor: Message, verdict: str, reason) -> None:
        session.add(
            MessageQA(
                agent_id=draft.agent_id,
                lead_id=draft.lead_id,
                inbound_message_id=anchor.id,
                draft_message_id=draft.id,
                verdict=verdict,
                reason=reason,
                model=self.llm.deployment(self.llm_stage),
                prompt_key=self.prompt.key,
                prompt_version=self.prompt.version,
            )
        )

    async def _to_human(self, session, draft: Message) -> None:
        draft.status = "needs_human"
        draft.approval_required = True
        session.add(draft)
        await session.commit()

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            draft = await session.get(Message, item_id)
            if draft and draft.status == "rewrite_pending":
                await self._to_human(session, draft)
