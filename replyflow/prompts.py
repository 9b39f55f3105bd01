"""Versioned prompt registry backed by the AIPrompt table."""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from sqlmodel import select

from replyflow.db import AIPrompt, utcnow
from replyflow.errors import PromptNotFound


@dataclass(frozen=True)
class Prompt:
    key: str
    version: str
    system: str
    user: str
    temperature: float
    max_tokens: int


async def load_prompt(session, key: str, *, temperature: float, max_tokens: int) -> Optional[Prompt]:
    """Return the newest active prompt for ``key`` with stage defaults applied."""
    row = (
        await session.exec(
            select(AIPrompt)
            .where(AIPrompt.key == key, AIPrompt.is_active == True)  # noqa: E712
            .order_by(AIPrompt.updated_at.desc(), AIPrompt.id.desc())
            .limit(1)
        )
    ).first()
    if not row:
        return None
    return Prompt(
        key=row.key,
        version=row.version or "v1",
        system=row.system_prompt or "",
        user=row.user_prompt or "",
        temperature=row.temperature if row.temperature is not None else temperature,
        max_tokens=row.max_tokens if row.max_tokens is not None else max_tokens,
    )


def render(template: str, values: Mapping[str, str]) -> str:
    out = template
    for name, value in values.items():
        out = out.replace("{{" + name + "}}", value or "")
    return out


def truncate(text: Optional[str], limit: int) -> str:
    value = (text or "").strip()
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


DEFAULT_PROMPTS: Dict[str, Dict[str, object]] = {
    "intent_classify_v1": {
        "temperature": 0.0,
        "max_tokens": 300,
        "system": (
            "Du klassifizierst Nachrichten von Interessenten an einen Immobilienmakler. "
            "Antworte ausschließlich mit JSON: "
            '{"intent": "PROPERTY_SEARCH|PROPERTY_SPECIFIC|VIEWING_REQUEST|APPLICATION_PROCESS|'
            'QNA_GENERAL|STATUS_FOLLOWUP|OTHER|SPAM_OR_IRRELEVANT", "confidence": 0..1, '
            '"entities": {"city": "", "neighbourhood": "", "budget_max": null, "rooms_min": null, '
            '"size_min_sqm": null, "furnished": null, "pets": null, "property_url": "", "address": ""}, '
            '"reason": "kurz"}. Im Zweifel OTHER mit niedriger confidence.'
        ),
        "user": "Verlauf (neueste zuletzt):\n{{THREAD_CONTEXT}}\n\nNeue Nachricht:\n{{INBOUND_MESSAGE}}",
    },
    "reply_writer_v1": {
        "temperature": 0.2,
        "max_tokens": 420,
        "system": (
            "Du schreibst E-Mail-Antworten im Namen eines Immobilienmaklers ({{AGENT_BRAND}}). "
            "Stil: {{AGENT_STYLE}}. Nutze nur Fakten aus dem Kontext, erfinde keine Preise, "
            "Termine oder Zusagen. Wenn die Anfrage rechtlich heikel ist, eine Beschwerde enthält "
            "oder du sie nicht sicher beantworten kannst, antworte exakt mit {escalate}. "
            "Sprache: {{LANGUAGE_HINT}}."
        ),
        "user": (
            "Route: {{ROUTE}}\n"
            "Interessent: {{CLIENT_NAME}} <{{CLIENT_EMAIL}}>\n\n"
            "Antwortvorlagen:\n{{RESPONSE_TEMPLATES}}\n\n"
            "Aktives Objekt:\n{{ACTIVE_PROPERTY}}\n\n"
            "Vorgeschlagene Objekte:\n{{SUGGESTED_PROPERTIES}}\n\n"
            "FAQ:\n{{FAQ_CONTEXT}}\n\n"
            "Verlauf:\n{{THREAD_CONTEXT}}\n\n"
            "Zu beantwortende Nachricht:\n{{INBOUND_MESSAGE}}\n\n"
            "Schreibe nur den Antworttext."
        ),
    },
    "qa_reply_v1": {
        "temperature": 0.0,
        "max_tokens": 220,
        "system": (
            "Du prüfst einen Antwortentwurf eines Immobilienmaklers. Antworte nur mit JSON: "
            '{"verdict": "pass|warn|fail", "score": 0..1, "reason": "kurz", "reason_long": "", '
            '"action": "", "risk_flags": []}. '
            "pass: korrekt, vollständig, sicher. warn: kleine Mängel, die eine Überarbeitung behebt. "
            "fail: erfundene Fakten, falsche Zusagen, unpassender Inhalt."
        ),
        "user": "Verlauf:\n{{THREAD_CONTEXT}}\n\nNachricht des Interessenten:\n{{INBOUND_MESSAGE}}\n\nEntwurf:\n{{DRAFT_MESSAGE}}",
    },
    "followup_qa_v1": {
        "temperature": 0.0,
        "max_tokens": 220,
        "system": (
            "Du prüfst eine Follow-up-Nachricht an einen Interessenten, der nicht geantwortet hat. "
            "Sie muss höflich, kurz und nicht aufdringlich sein und darf keine neuen Fakten erfinden. "
            'Antworte nur mit JSON: {"verdict": "pass|warn|fail", "score": 0..1, "reason": "kurz", '
            '"risk_flags": []}.'
        ),
        "user": "Verlauf:\n{{THREAD_CONTEXT}}\n\nLetzte Nachricht des Interessenten:\n{{INBOUND_MESSAGE}}\n\nFollow-up:\n{{DRAFT_MESSAGE}}",
    },
    "rewrite_reply_v1": {
        "temperature": 0.2,
        "max_tokens": 450,
        "system": (
            "Überarbeite den Antwortentwurf eines Immobilienmaklers. Behebe Unklarheiten und "
            "Tonprobleme, füge keine neuen Fakten hinzu. Priorität des Leads: {{LEAD_PRIORITY}}. "
            "Gib nur den überarbeiteten Text zurück."
        ),
        "user": "Verlauf (älteste zuerst):\n{{THREAD_CONTEXT}}\n\nNachricht:\n{{INBOUND_MESSAGE}}\n\nEntwurf:\n{{ORIGINAL_DRAFT}}",
    },
    "qa_recheck_v1": {
        "temperature": 0.0,
        "max_tokens": 120,
        "system": (
            "Du prüfst eine überarbeitete Antwort erneut. Antworte nur mit JSON: "
            '{"verdict": "pass|warn|fail", "score": 0..1, "reason": "kurz"}.'
        ),
        "user": "Verlauf:\n{{THREAD_CONTEXT}}\n\nNachricht:\n{{INBOUND_MESSAGE}}\n\nÜberarbeitete Antwort:\n{{REWRITTEN_REPLY}}",
    },
    "followup_stage_1": {
        "temperature": 0.3,
        "max_tokens": 300,
        "system": (
            "Schreibe eine sanfte Erinnerung an einen Interessenten, der seit einiger Zeit nicht "
            "geantwortet hat. Kurz, freundlich, ohne Druck. Antworte nur mit JSON: "
            '{"should_send": true|false, "confidence": 0..1, "text": "..."}. '
            "should_send=false, wenn ein Follow-up unpassend wäre."
        ),
        "user": "Interessent: {{CLIENT_NAME}}\nBetreff: {{SUBJECT}}\nVerlauf:\n{{THREAD_CONTEXT}}",
    },
    "followup_stage_2": {
        "temperature": 0.3,
        "max_tokens": 300,
        "system": (
            "Schreibe eine Reaktivierungsnachricht an einen Interessenten, der auf eine Erinnerung "
            "nicht reagiert hat. Biete konkrete Hilfe an. Antworte nur mit JSON: "
            '{"should_send": true|false, "confidence": 0..1, "text": "..."}.'
        ),
        "user": "Interessent: {{CLIENT_NAME}}\nBetreff: {{SUBJECT}}\nVerlauf:\n{{THREAD_CONTEXT}}",
    },
    "followup_stage_3": {
        "temperature": 0.3,
        "max_tokens": 300,
        "system": (
            "Schreibe eine abschließende, respektvolle Nachricht, die das Gespräch offen beendet. "
            'Antworte nur mit JSON: {"should_send": true|false, "confidence": 0..1, "text": "..."}.'
        ),
        "user": "Interessent: {{CLIENT_NAME}}\nBetreff: {{SUBJECT}}\nVerlauf:\n{{THREAD_CONTEXT}}",
    },
}


async def seed_default_prompts(session) -> int:
    """Insert any default prompt that has no row yet. Returns the number inserted."""
    inserted = 0
    for key, default in DEFAULT_PROMPTS.items():
        existing = (await session.exec(select(AIPrompt).where(AIPrompt.key == key))).first()
        if existing:
            continue
        session.add(
            AIPrompt(
                key=key,
                version="v1",
                is_active=True,
                system_prompt=str(default["system"]),
                user_prompt=str(default["user"]),
                temperature=float(default["temperature"]),
                max_tokens=int(default["max_tokens"]),
            )
        )
        inserted += 1
    await session.commit()
    return inserted


def _version_number(version: Optional[str]) -> int:
    digits = (version or "").lstrip("vV")
    return int(digits) if digits.isdigit() else 0


async def _deactivate(session, key: str) -> None:
    active = (
        await session.exec(select(AIPrompt).where(AIPrompt.key == key, AIPrompt.is_active == True))  # noqa: E712
    ).all()
    for row in active:
        row.is_active = False
        session.add(row)


async def upsert_prompt(
    session,
    key: str,
    *,
    system_prompt: str,
    user_prompt: str,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    version: Optional[str] = None,
    make_active: bool = False,
) -> AIPrompt:
    """Store a prompt version.

    Without ``version`` the next ``vN`` after the highest stored one is
    created. With ``make_active`` every other version of ``key`` is
    deactivated in the same transaction; otherwise the new row is stored
    inactive and the live prompt is unchanged.
    """
    rows = (await session.exec(select(AIPrompt).where(AIPrompt.key == key))).all()
    if version is None:
        version = f"v{max((_version_number(row.version) for row in rows), default=0) + 1}"
    row = next((existing for existing in rows if existing.version == version), None)
    if make_active:
        await _deactivate(session, key)
    if row is None:
        row = AIPrompt(key=key, version=version)
    row.system_prompt = system_prompt
    row.user_prompt = user_prompt
    row.temperature = temperature
    row.max_tokens = max_tokens
    if make_active:
        row.is_active = True
    elif row.id is None:
        row.is_active = False
    row.updated_at = utcnow()
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def activate_prompt(session, key: str, version: str) -> AIPrompt:
    """Make ``version`` the only active prompt for ``key``."""
    row = (await session.exec(select(AIPrompt).where(AIPrompt.key == key, AIPrompt.version == version))).first()
    if not row:
        raise PromptNotFound(f"Prompt '{key}' {version} not found")
    await _deactivate(session, key)
    row.is_active = True
    row.updated_at = utcnow()
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row
