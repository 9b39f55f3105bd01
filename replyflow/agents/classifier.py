"""Safety gate deciding whether an inbound email may be auto-replied to."""

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

from replyflow.config import Settings
from replyflow.llm.schemas import ClassifierOutput, decode

logger = logging.getLogger("replyflow.classifier")

AUTO_REPLY_MIN_CONFIDENCE = 0.97
AUTO_REPLY_TYPES = frozenset({"LEAD", "PORTAL"})

NO_REPLY_PATTERNS = ("no-reply", "noreply", "do-not-reply", "donotreply")

PORTAL_NEEDLES = (
    "immobilienscout24",
    "immoscout24",
    "immowelt",
    "immonet",
    "funda",
    "pararius",
    "idealista",
    "rightmove",
    "zoopla",
    "scout24",
)

PORTAL_SENDER_DOMAINS = (
    "immobilienscout24.de",
    "immoscout24.de",
    "scout24.com",
    "immowelt.de",
    "immonet.de",
    "funda.nl",
    "pararius.com",
    "idealista.com",
    "rightmove.co.uk",
    "zoopla.co.uk",
)

PORTAL_REPLY_RELAY_DOMAINS = (
    "reply.immobilienscout24.de",
    "reply.immoscout24.de",
    "reply.scout24.com",
    "reply.immowelt.de",
    "reply.immonet.de",
)

INQUIRY_KEYWORDS = (
    "anfrage",
    "kontaktanfrage",
    "interesse",
    "ich interessiere mich",
    "besichtigung",
    "viewing",
    "exposé",
    "expose",
    "immobilie",
    "wohnung",
    "haus",
    "rückfrage",
    "availability",
    "verfügbar",
    "available",
    "termin",
)

PORTAL_INQUIRY_KEYWORDS = (
    "kontaktanfrage",
    "neue anfrage",
    "neue kontaktanfrage",
    "interessent",
    "nachricht von",
    "kontaktformular",
    "exposé angefordert",
    "expose angefordert",
    "besichtigung anfragen",
    "besichtigungstermin",
    "anfrage zur immobilie",
)

BULK_KEYWORDS = ("newsletter", "unsubscribe", "abbestellen", "abmelden", "promo", "promotion", "angebot", "sale")

BILLING_KEYWORDS = (
    "rechnung",
    "invoice",
    "payment",
    "zahlung",
    "mahnung",
    "overdue",
    "due",
    "kontoauszug",
    "iban",
    "sepa",
    "billing",
    "order confirmation",
    "bestellbestätigung",
    "subscription",
    "abo",
)

SYSTEM_SENDER_PATTERNS = ("mailer-daemon", "postmaster")
SYSTEM_SUBJECT_PATTERNS = ("delivery status notification", "undelivered", "mail delivery")

SYSTEM_PROMPT = """
You are an email safety classifier for a real-estate agent assistant.
Your #1 priority: NEVER allow an auto-reply to non-lead emails.
Fail closed: if uncertain, choose "needs_approval".

Return ONLY valid JSON with keys:
decision: "auto_reply" | "needs_approval" | "ignore"
email_type: one of ["LEAD","PORTAL","BUSINESS_CONTACT","LEGAL","VENDOR","NEWSLETTER","BILLING","SYSTEM","SPAM","UNKNOWN"]
confidence: number 0..1
reason: short string (max 120 chars)

Rules:
- "auto_reply" ONLY if it is clearly a property inquiry lead OR a portal inquiry AND replying will reach the requester.
- If the sender is no-reply but Reply-To is a portal relay address, treat it as potentially safe portal routing.
- Legal, vendor, business, unknown, system, newsletter, billing or spam mail is never auto_reply.
- If ambiguous: needs_approval.
""".strip()

_EMAIL_RE = re.compile(r"[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,}", re.IGNORECASE)


def _clip(value: Optional[str], limit: int) -> str:
    return str(value or "").strip()[:limit]


@dataclass(frozen=True)
class EmailMetadata:
    subject: str = ""
    from_address: str = ""
    to_address: str = ""
    reply_to: str = ""
    snippet: str = ""
    has_list_unsubscribe: bool = False
    is_bulk: bool = False
    is_no_reply: bool = False

    @classmethod
    def build(
        cls,
        *,
        subject: Optional[str] = None,
        from_address: Optional[str] = None,
        to_address: Optional[str] = None,
        reply_to: Optional[str] = None,
        snippet: Optional[str] = None,
        has_list_unsubscribe: bool = False,
        is_bulk: bool = False,
        is_no_reply: bool = False,
    ) -> "EmailMetadata":
        return cls(
            subject=_clip(subject, 200),
            from_address=_clip(from_address, 300),
            to_address=_clip(to_address, 300),
            reply_to=_clip(reply_to, 300),
            snippet=_clip(snippet, 600),
            has_list_unsubscribe=bool(has_list_unsubscribe),
            is_bulk=bool(is_bulk),
            is_no_reply=bool(is_no_reply),
        )


@dataclass(frozen=True)
class Classification:
    decision: str
    email_type: str
    confidence: float
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Signals:
    portal_like: bool
    inquiry_like: bool
    no_reply: bool
    relay_allowed: bool

    @property
    def portal_relay_ok(self) -> bool:
        return self.portal_like and self.inquiry_like and self.relay_allowed


class _DeferToModel:
    def __repr__(self) -> str:
        return "DEFER_TO_MODEL"


DEFER_TO_MODEL = _DeferToModel()

RuleOutcome = Union[Classification, _DeferToModel, None]
Rule = Callable[[EmailMetadata, Signals], RuleOutcome]


def parse_primary_email(value: str) -> Optional[str]:
    match = _EMAIL_RE.search(value or "")
    return match.group(0).lower() if match else None


def email_domain(address: Optional[str]) -> str:
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].lower()


def domain_is_one_of(domain: str, allowed: Sequence[str]) -> bool:
    d = (domain or "").lower()
    if not d:
        return False
    return any(d == a or d.endswith("." + a) for a in allowed)


def _contains_any(text: str, needles: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(needle in lowered for needle in needles)


def is_no_reply_address(value: str) -> bool:
    return _contains_any(value or "", NO_REPLY_PATTERNS)


def looks_like_portal_sender(meta: EmailMetadata) -> bool:
    haystack = " ".join(part for part in (meta.from_address, meta.reply_to, meta.to_address) if part)
    haystack = re.sub(r"[<>]", " ", haystack)
    return _contains_any(haystack, PORTAL_NEEDLES)


def looks_like_inquiry(meta: EmailMetadata) -> bool:
    text = f"{meta.subject}\n{meta.snippet}"
    return _contains_any(text, INQUIRY_KEYWORDS) or _contains_any(text, PORTAL_INQUIRY_KEYWORDS)


def _is_same_portal_relay(reply_domain: str, from_domain: str) -> bool:
    if not reply_domain.startswith("reply."):
        return False
    parent = reply_domain[len("reply."):]
    if domain_is_one_of(parent, PORTAL_SENDER_DOMAINS):
        return True
    return bool(from_domain) and domain_is_one_of(parent, (from_domain,))


def is_portal_relay_allowed(meta: EmailMetadata, portal_like: bool) -> bool:
    """True when Reply-To is a relay address that reaches the portal requester."""
    if not portal_like:
        return False
    reply = parse_primary_email(meta.reply_to)
    if not reply or is_no_reply_address(reply):
        return False
    sender = parse_primary_email(meta.from_address)
    if sender and sender == reply:
        return False
    reply_domain = email_domain(reply)
    if domain_is_one_of(reply_domain, PORTAL_REPLY_RELAY_DOMAINS):
        return True
    return _is_same_portal_relay(reply_domain, email_domain(sender))


def compute_signals(meta: EmailMetadata) -> Signals:
    portal_like = looks_like_portal_sender(meta)
    no_reply = meta.is_no_reply or is_no_reply_address(meta.from_address) or is_no_reply_address(meta.reply_to)
    return Signals(
        portal_like=portal_like,
        inquiry_like=looks_like_inquiry(meta),
        no_reply=no_reply,
        relay_allowed=is_portal_relay_allowed(meta, portal_like),
    )


def rule_system_sender(meta: EmailMetadata, signals: Signals) -> RuleOutcome:
    if _contains_any(meta.from_address, SYSTEM_SENDER_PATTERNS) or _contains_any(meta.subject, SYSTEM_SUBJECT_PATTERNS):
        return Classification("ignore", "SYSTEM", 1.0, "system_or_bounce")
    return None


def rule_portal_relay(meta: EmailMetadata, signals: Signals) -> RuleOutcome:
    if signals.portal_relay_ok:
        return Classification("auto_reply", "PORTAL", 1.0, "portal_inquiry_replyto_relay_allowed")
    return None


def rule_no_reply(meta: EmailMetadata, signals: Signals) -> RuleOutcome:
    if not signals.no_reply:
        return None
    if signals.relay_allowed and signals.inquiry_like:
        return DEFER_TO_MODEL
    return Classification("needs_approval", "PORTAL" if signals.portal_like else "UNKNOWN", 1.0, "no_reply_address")


def rule_bulk(meta: EmailMetadata, signals: Signals) -> RuleOutcome:
    bulk = (
        meta.has_list_unsubscribe
        or meta.is_bulk
        or _contains_any(f"{meta.subject}\n{meta.snippet}", BULK_KEYWORDS)
    )
    if not bulk:
        return None
    if signals.portal_like or signals.inquiry_like:
        return DEFER_TO_MODEL
    return Classification("ignore", "NEWSLETTER", 1.0, "bulk_or_newsletter_signal")


def rule_billing(meta: EmailMetadata, signals: Signals) -> RuleOutcome:
    if _contains_any(f"{meta.subject}\n{meta.snippet}", BILLING_KEYWORDS):
        return Classification("needs_approval", "BILLING", 1.0, "billing_signal")
    return None


RULES: Tuple[Rule, ...] = (
    rule_system_sender,
    rule_portal_relay,
    rule_no_reply,
    rule_bulk,
    rule_billing,
)


def apply_rules(meta: EmailMetadata, signals: Signals, rules: Sequence[Rule] = RULES) -> Optional[Classification]:
    """Evaluate rules in order; None means the model has to decide."""
    for rule in rules:
        outcome = rule(meta, signals)
        if outcome is DEFER_TO_MODEL:
            return None
        if isinstance(outcome, Classification):
            return outcome
    return None


def apply_fail_closed(output: ClassifierOutput) -> Classification:
    if (
        output.decision == "auto_reply"
        and output.email_type in AUTO_REPLY_TYPES
        and output.confidence >= AUTO_REPLY_MIN_CONFIDENCE
    ):
        decision = "auto_reply"
    elif output.decision == "ignore":
        decision = "ignore"
    else:
        decision = "needs_approval"
    return Classification(decision, output.email_type, output.confidence, output.reason or "n/a")


def no_reply_guard(result: Classification, signals: Signals) -> Classification:
    """Never auto-reply to a no-reply sender unless the portal relay path holds."""
    if result.decision != "auto_reply" or not signals.no_reply:
        return result
    if not (signals.portal_like and signals.inquiry_like):
        return Classification("needs_approval", result.email_type, result.confidence, "no_reply_guard")
    if not signals.relay_allowed:
        return Classification(
            "needs_approval", result.email_type, result.confidence, "no_reply_missing_or_untrusted_replyto_guard"
        )
    return result


class EmailClassifier:
    stage = "classifier"

    def __init__(self, settings: Settings, llm) -> None:
        self.settings = settings
        self.llm = llm

    async def classify(self, meta: EmailMetadata) -> Classification:
        """Classify ``meta``; deterministic rules first, the model only when they defer.

        Raises:
            ConfigurationError: classifier deployment not configured.
            UpstreamError: the model call failed.
            ModelOutputError: the model answered outside the schema.
        """
        self.settings.llm_for(self.stage)
        signals = compute_signals(meta)
        decided = apply_rules(meta, signals)
        if decided is not None:
            logger.info("classified by rule", extra={"classifier": {"reason": decided.reason}})
            return no_reply_guard(decided, signals)

        user = json.dumps(
            {
                "subject": meta.subject,
                "from": meta.from_address,
                "to": meta.to_address,
                "replyTo": meta.reply_to,
                "snippet": meta.snippet,
                "hasListUnsubscribe": meta.has_list_unsubscribe,
                "isBulk": meta.is_bulk,
                "isNoReply": meta.is_no_reply,
            },
            ensure_ascii=False,
        )
        raw = await self.llm.complete(
            self.stage,
            system=SYSTEM_PROMPT,
            user=user,
            temperature=0.0,
            max_tokens=150,
            json_mode=True,
        )
        output = decode(ClassifierOutput, raw)
        result = no_reply_guard(apply_fail_closed(output), signals)
        logger.info(
            "classified by model",
            extra={"classifier": {"decision": result.decision, "email_type": result.email_type}},
        )
        return result
