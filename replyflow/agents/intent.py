"""Intent classification for inbound lead messages."""

import re
from typing import Dict, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from replyflow.db import Message, MessageIntent, get_session
from replyflow.agents.thread import format_thread, recent_messages
from replyflow.errors import ConfigurationError
from replyflow.llm.schemas import IntentOutput, decode
from replyflow.orchestrator import ItemResult, Stage
from replyflow.prompts import Prompt, load_prompt, render, truncate

INTENTS = (
    "PROPERTY_SEARCH",
    "PROPERTY_SPECIFIC",
    "VIEWING_REQUEST",
    "APPLICATION_PROCESS",
    "QNA_GENERAL",
    "STATUS_FOLLOWUP",
    "SPAM_OR_IRRELEVANT",
    "OTHER",
)

INTENT_ALIASES: Dict[str, str] = {
    "PROPERTY_MATCH": "PROPERTY_SEARCH",
    "FAQ": "QNA_GENERAL",
    "VIEWING_SCHEDULING": "VIEWING_REQUEST",
    "AVAILABILITY": "PROPERTY_SPECIFIC",
    "DOCUMENTS": "APPLICATION_PROCESS",
    "GENERAL_QUESTION": "OTHER",
    "PRICE_NEGOTIATION": "QNA_GENERAL",
}

SYSTEM_MARKERS = (
    "mailer-daemon",
    "postmaster",
    "delivery status notification",
    "undeliverable",
    "zustellfehler",
    "list-unsubscribe",
    "automatisch generiert",
    "dies ist eine automatisch erstellte",
    "systemnachricht",
    "kontobenachrichtigung",
    "sicherheitswarnung",
    "produktupdate",
    "release notes",
)

PROPERTY_SIGNALS = (
    "wohnung",
    "apartment",
    "immobilie",
    "objekt",
    "miete",
    "kaltmiete",
    "warmmiete",
    "zimmer",
    "qm",
    "besichtigung",
    "termin",
    "adresse",
    "verfügbar",
    "available",
)

_SPAM_RE = re.compile(r"\b(gewinnspiel|jetzt\s+anmelden|newsletter)\b", re.IGNORECASE)
_VIEWING_RE = re.compile(r"(besichtigung|termin|uhrzeit|verf[üu]gbarkeit|viewing|appointment|besichtigen)", re.IGNORECASE)
_ALTERNATIVES = ("andere", "alternativ", "weitere", "stattdessen", "another", "other", "more options", "mehr angebote")


def normalize_intent(raw: Optional[str]) -> str:
    value = str(raw or "OTHER").strip().upper()
    value = INTENT_ALIASES.get(value, value)
    return value if value in INTENTS else "OTHER"


def _looks_like_system_mail(text: str) -> bool:
    lowered = text.lower()
    if any(marker in lowered for marker in SYSTEM_MARKERS):
        return True
    if any(signal in lowered for signal in PROPERTY_SIGNALS):
        return False
    return bool(_SPAM_RE.search(text))


def hard_classify(text: str, context: Sequence[Message] = ()) -> Optional[IntentOutput]:
    """Deterministic fast paths; None when the model has to decide."""
    trimmed = (text or "").strip()
    if not trimmed:
        return IntentOutput(intent="OTHER", confidence=0.0, reason="empty_text")
    if _looks_like_system_mail(trimmed):
        return IntentOutput(intent="SPAM_OR_IRRELEVANT", confidence=0.995, reason="obvious_spam_or_system")
    if _VIEWING_RE.search(trimmed):
        lowered = trimmed.lower()
        return IntentOutput(
            intent="VIEWING_REQUEST",
            confidence=0.92,
            entities={
                "wants_alternatives": any(k in lowered for k in _ALTERNATIVES),
                "has_context": bool(context),
            },
            reason="viewing_keywords",
        )
    return None


class IntentStage(Stage):
    name = "intent"
    llm_stage = "intent"
    prompt_key = "intent_classify_v1"

    async def preflight(self) -> None:
        self.settings.llm_for(self.llm_stage)
        async with get_session() as session:
            prompt = await load_prompt(session, self.prompt_key, temperature=0.0, max_tokens=300)
        if not prompt:
            raise ConfigurationError(f"No active prompt '{self.prompt_key}'")
        self.prompt: Prompt = prompt

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(Message.sender == "user", Message.status == "pending")
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        async with get_session() as session:
            message = await session.get(Message, item_id)
            if not message or message.status != "pending":
                return ItemResult(item_id, "skipped")

            existing = (
                await session.exec(
                    select(MessageIntent).where(
                        MessageIntent.message_id == item_id,
                        MessageIntent.prompt_version == self.prompt.version,
                    )
                )
            ).first()
            if existing:
                message.status = "intent_done"
                session.add(message)
                await session.commit()
                return ItemResult(item_id, "already_classified", {"intent": existing.intent})

            context = await recent_messages(session, message.lead_id, limit=10, exclude_id=message.id)
            result = hard_classify(message.text, context)
            model = "deterministic"
            if result is None:
                values = {
                    "INBOUND_MESSAGE": truncate(message.text, 2000),
                    "THREAD_CONTEXT": format_thread(context),
                }
                raw = await self.llm.complete(
                    self.llm_stage,
                    system=render(self.prompt.system, values),
                    user=render(self.prompt.user, values),
                    temperature=self.prompt.temperature,
                    max_tokens=self.prompt.max_tokens,
                    json_mode=True,
                )
                result = decode(IntentOutput, raw)
                model = self.llm.deployment(self.llm_stage)

            intent = normalize_intent(result.intent)
            session.add(
                MessageIntent(
                    message_id=message.id,
                    agent_id=message.agent_id,
                    lead_id=message.lead_id,
                    intent=intent,
                    confidence=result.confidence,
                    entities=result.entities,
                    reason=result.reason[:200],
                    model=model,
                    prompt_version=self.prompt.version,
                )
            )
            message.status = "intent_done"
            session.add(message)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return ItemResult(item_id, "already_classified")
        return ItemResult(item_id, "classified", {"intent": intent, "confidence": result.confidence})

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            message = await session.get(Message, item_id)
            if message and message.status == "pending":
                message.status = "needs_human"
                session.add(message)
                await session.commit()
