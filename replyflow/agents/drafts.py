"""Reply draft generation for routed inbound messages."""

from typing import Dict, List, Optional, Sequence

from sqlmodel import col, select

from replyflow.agents.thread import format_thread, recent_messages
from replyflow.db import (
    AgentStyle,
    Lead,
    LeadPropertyState,
    Message,
    MessageDraft,
    MessageRoute,
    Property,
    ResponseTemplate,
    get_session,
    utcnow,
)
from replyflow.errors import ConfigurationError, ModelOutputError, UpstreamError
from replyflow.locks import LockResult, acquire_draft_lock
from replyflow.orchestrator import ItemResult, Stage
from replyflow.prompts import Prompt, load_prompt, render, truncate

ESCALATE_SENTINEL = "{escalate}"
MAX_TEMPLATES = 8

ROUTE_TEMPLATE_CATEGORIES = {
    "PROPERTY_SPECIFIC": "property_specific_answer",
    "VIEWING_REQUEST": "property_specific_answer",
    "PROPERTY_SEARCH": "property_search_suggestions",
    "FOLLOWUP_STATUS": "status_followup",
    "QNA": "general_qna",
    "OTHER": "general_qna",
}


def strip_quotes(text: str) -> str:
    value = (text or "").strip()
    for left, right in (('"', '"'), ("'", "'"), ("“", "”"), ("„", "“")):
        if len(value) >= 2 and value.startswith(left) and value.endswith(right):
            return value[1:-1].strip()
    return value


def format_style(style: Optional[AgentStyle]) -> str:
    if not style:
        return "freundlich, professionell, klar"
    parts = [
        ("Ton", style.tone),
        ("Formalität", style.formality),
        ("Länge", style.length_pref),
        ("Emojis", style.emoji_level),
        ("Grußformel", style.sign_off),
        ("Immer", style.do_rules),
        ("Niemals", style.dont_rules),
        ("Beispielphrasen", style.example_phrases),
    ]
    return "; ".join(f"{label}: {value.strip()}" for label, value in parts if value and value.strip()) or "freundlich, professionell, klar"


def format_templates(templates: Sequence[ResponseTemplate]) -> str:
    if not templates:
        return "(keine Vorlagen)"
    return "\n\n".join(f"### {t.title}\n{truncate(t.content, 600)}" for t in templates)


def format_property(prop: Optional[Property]) -> str:
    if not prop:
        return "(kein Objekt)"
    fields = [
        ("Titel", prop.title),
        ("Adresse", prop.street_address),
        ("Stadt", prop.city),
        ("Viertel", prop.neighbourhood),
        ("Typ", prop.type),
        ("Preis", prop.price),
        ("Zimmer", prop.rooms),
        ("Fläche (qm)", prop.size_sqm),
        ("Möbliert", prop.furnished),
        ("Haustiere", prop.pets_allowed),
        ("Verfügbar ab", prop.available_from),
        ("Beschreibung", truncate(prop.listing_summary, 500) if prop.listing_summary else None),
        ("Link", prop.url),
    ]
    return "\n".join(f"{label}: {value}" for label, value in fields if value not in (None, ""))


def format_properties(props: Sequence[Property]) -> str:
    if not props:
        return "(keine)"
    return "\n---\n".join(format_property(p) for p in props)


class DraftStage(Stage):
    """Writes at most one reply draft per routed inbound message."""

    name = "draft"
    llm_stage = "writer"
    prompt_key = "reply_writer_v1"

    async def preflight(self) -> None:
        self.settings.llm_for(self.llm_stage)
        async with get_session() as session:
            prompt = await load_prompt(session, self.prompt_key, temperature=0.2, max_tokens=420)
        if not prompt:
            raise ConfigurationError(f"No active prompt '{self.prompt_key}'")
        self.prompt: Prompt = prompt

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(Message.sender == "user", Message.status == "route_resolved")
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        async with get_session() as session:
            inbound = await session.get(Message, item_id)
            if not inbound or inbound.sender != "user" or inbound.status != "route_resolved":
                return ItemResult(item_id, "skipped")
            lead = await session.get(Lead, inbound.lead_id)
            if not lead or lead.agent_id != inbound.agent_id:
                await self._escalate(session, inbound, "lead_mismatch")
                return ItemResult(item_id, "needs_human", {"reason": "lead_mismatch"})

            route_row = (
                await session.exec(
                    select(MessageRoute)
                    .where(MessageRoute.message_id == item_id)
                    .order_by(MessageRoute.created_at.desc())
                    .limit(1)
                )
            ).first()
            route = route_row.route if route_row else "OTHER"

            lock = await acquire_draft_lock(
                session,
                agent_id=inbound.agent_id,
                lead_id=inbound.lead_id,
                inbound_message_id=inbound.id,
                route=route,
                prompt_key=self.prompt.key,
                prompt_version=self.prompt.version,
            )
            if lock is not LockResult.ACQUIRED:
                return ItemResult(item_id, lock.value)

            values = await self._prompt_values(session, inbound, lead, route, route_row)
            try:
                raw = await self.llm.complete(
                    self.llm_stage,
                    system=render(self.prompt.system, values),
                    user=render(self.prompt.user, values),
                    temperature=self.prompt.temperature,
                    max_tokens=self.prompt.max_tokens,
                )
            except (UpstreamError, ModelOutputError) as exc:
                await self._escalate(session, inbound, "writer_failed")
                return ItemResult(item_id, "needs_human", {"reason": "writer_failed", "error": str(exc)})

            text = strip_quotes(raw)
            if not text or ESCALATE_SENTINEL in text.lower():
                await self._escalate(session, inbound, "escalate")
                return ItemResult(item_id, "needs_human", {"reason": "escalate"})

            now = utcnow()
            draft = Message(
                agent_id=inbound.agent_id,
                lead_id=inbound.lead_id,
                sender="agent",
                text=text,
                subject=inbound.subject,
                status="qa_pending",
                approval_required=True,
                send_status="pending",
                timestamp=now,
            )
            session.add(draft)
            await session.flush()

            lock_row = (
                await session.exec(select(MessageDraft).where(MessageDraft.inbound_message_id == inbound.id))
            ).one()
            lock_row.draft_message_id = draft.id
            inbound.status = "draft_created"
            lead.last_message = truncate(text, 500)
            lead.last_message_at = now
            session.add(lock_row)
            session.add(inbound)
            session.add(lead)
            await session.commit()
            draft_id = draft.id
        return ItemResult(item_id, "draft_created", {"draft_id": draft_id, "route": route})

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            inbound = await session.get(Message, item_id)
            if inbound and inbound.status == "route_resolved":
                await self._escalate(session, inbound, "draft_error")

    async def _escalate(self, session, inbound: Message, reason: str) -> None:
        inbound.status = "needs_human"
        session.add(inbound)
        await session.commit()
        self.logger.info("draft escalated", extra={"pipeline": {"id": inbound.id, "reason": reason}})

    async def _prompt_values(
        self,
        session,
        inbound: Message,
        lead: Lead,
        route: str,
        route_row: Optional[MessageRoute],
    ) -> Dict[str, str]:
        style = await session.get(AgentStyle, inbound.agent_id)
        category = ROUTE_TEMPLATE_CATEGORIES.get(route, "general_qna")
        templates = (
            await session.exec(
                select(ResponseTemplate)
                .where(ResponseTemplate.agent_id == inbound.agent_id, ResponseTemplate.category == category)
                .order_by(ResponseTemplate.updated_at.desc())
                .limit(MAX_TEMPLATES)
            )
        ).all()
        faq = (
            await session.exec(
                select(ResponseTemplate)
                .where(ResponseTemplate.agent_id == inbound.agent_id, ResponseTemplate.category == "faq")
                .order_by(ResponseTemplate.updated_at.desc())
                .limit(MAX_TEMPLATES)
            )
        ).all()

        payload = (route_row.payload if route_row else None) or {}
        state = await session.get(LeadPropertyState, lead.id)
        active_id = payload.get("active_property_id") or (state.active_property_id if state else None) or lead.property_id
        active = await session.get(Property, active_id) if active_id else None
        if active and active.agent_id != inbound.agent_id:
            active = None
        suggested_ids: List[int] = payload.get("suggested_property_ids") or []
        suggested: List[Property] = []
        if suggested_ids:
            suggested = list(
                (
                    await session.exec(
                        select(Property).where(Property.agent_id == inbound.agent_id, col(Property.id).in_(suggested_ids))
                    )
                ).all()
            )

        thread = await recent_messages(session, lead.id, limit=10, exclude_id=inbound.id)
        language = (style.language if style and style.language else "de").strip()
        return {
            "ROUTE": route,
            "AGENT_BRAND": (style.brand_name if style and style.brand_name else "Ihr Makler"),
            "AGENT_STYLE": format_style(style),
            "RESPONSE_TEMPLATES": format_templates(templates),
            "CLIENT_NAME": lead.name or "Interessent",
            "CLIENT_EMAIL": lead.email or "",
            "INBOUND_MESSAGE": truncate(inbound.text, 2000),
            "THREAD_CONTEXT": format_thread(thread),
            "ACTIVE_PROPERTY": format_property(active),
            "SUGGESTED_PROPERTIES": format_properties(suggested),
            "FAQ_CONTEXT": format_templates(faq),
            "LANGUAGE_HINT": "Deutsch" if language.lower().startswith("de") else language,
        }
