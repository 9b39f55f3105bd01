import itertools
import random

import pytest

from replyflow.agents.classifier import (
    AUTO_REPLY_TYPES,
    EmailClassifier,
    EmailMetadata,
    Signals,
    apply_fail_closed,
    apply_rules,
    compute_signals,
    is_portal_relay_allowed,
    no_reply_guard,
)
from replyflow.config import Settings
from replyflow.errors import ConfigurationError, ModelOutputError, UpstreamError
from replyflow.llm.schemas import ClassifierOutput

DECISIONS = ("auto_reply", "needs_approval", "ignore")
EMAIL_TYPES = (
    "LEAD",
    "PORTAL",
    "BUSINESS_CONTACT",
    "LEGAL",
    "VENDOR",
    "NEWSLETTER",
    "BILLING",
    "SYSTEM",
    "SPAM",
    "UNKNOWN",
)


def meta(**kwargs) -> EmailMetadata:
    return EmailMetadata.build(**kwargs)


async def test_bounce_is_ignored_without_model_call(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Mail Delivery Subsystem", from_address="MAILER-DAEMON@mx.host.example", snippet="x")
    )

    assert (result.decision, result.email_type, result.confidence) == ("ignore", "SYSTEM", 1.0)
    assert llm.calls == []


async def test_portal_relay_inquiry_auto_replies_without_model_call(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(
            subject="Neue Kontaktanfrage zu Ihrer Wohnung",
            from_address="ImmobilienScout24 <noreply@immobilienscout24.de>",
            reply_to="anfrage-8812@reply.immobilienscout24.de",
            snippet="Ein Interessent hat eine Nachricht geschickt.",
        )
    )

    assert (result.decision, result.email_type) == ("auto_reply", "PORTAL")
    assert llm.calls == []


async def test_unrecognized_relay_needs_approval_without_model_call(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(
            subject="Kontaktanfrage",
            from_address="noreply@immobilienscout24.de",
            reply_to="kontakt@relay-mail.example.com",
            snippet="Neue Anfrage",
        )
    )

    assert (result.decision, result.email_type, result.confidence) == ("needs_approval", "PORTAL", 1.0)
    assert llm.calls == []


async def test_plain_no_reply_needs_approval_unknown(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Ihre Bestellung", from_address="no-reply@shop.example", snippet="Danke")
    )

    assert (result.decision, result.email_type) == ("needs_approval", "UNKNOWN")


async def test_newsletter_without_inquiry_is_ignored(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Unser Newsletter im Mai", from_address="news@brand.example", has_list_unsubscribe=True)
    )

    assert (result.decision, result.email_type) == ("ignore", "NEWSLETTER")


async def test_bulk_inquiry_defers_to_model(settings, llm):
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99, "reason": "lead"})

    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Anfrage Wohnung", from_address="max@example.org", is_bulk=True, snippet="Ich habe Interesse")
    )

    assert result.decision == "auto_reply"
    assert len(llm.calls_for("classifier")) == 1
    assert llm.calls[0]["json_mode"] is True


async def test_billing_mail_needs_approval(settings, llm):
    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Rechnung 2024-118", from_address="buchhaltung@firma.example")
    )

    assert (result.decision, result.email_type) == ("needs_approval", "BILLING")


async def test_model_low_confidence_is_held_for_approval(settings, llm):
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.9, "reason": "maybe"})

    result = await EmailClassifier(settings, llm).classify(
        meta(subject="Frage zur Wohnung", from_address="anna@example.org", snippet="Ist sie noch frei?")
    )

    assert result.decision == "needs_approval"
    assert result.confidence == pytest.approx(0.9)


async def test_model_confidence_is_clamped(settings, llm):
    llm.queue("classifier", {"decision": "ignore", "email_type": "SPAM", "confidence": 7, "reason": "spam"})

    result = await EmailClassifier(settings, llm).classify(meta(subject="hello", from_address="x@spam.example"))

    assert result.decision == "ignore"
    assert result.confidence == 1.0


async def test_out_of_enum_type_is_rejected(settings, llm):
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "FRIEND", "confidence": 1, "reason": ""})

    with pytest.raises(ModelOutputError):
        await EmailClassifier(settings, llm).classify(meta(subject="Hallo", from_address="a@b.example"))


async def test_non_json_output_is_rejected(settings, llm):
    llm.queue("classifier", "sure, this is a lead")

    with pytest.raises(ModelOutputError):
        await EmailClassifier(settings, llm).classify(meta(subject="Hallo", from_address="a@b.example"))


async def test_upstream_failure_propagates(settings, llm):
    llm.queue("classifier", UpstreamError("http_503", status_code=503))

    with pytest.raises(UpstreamError):
        await EmailClassifier(settings, llm).classify(meta(subject="Hallo", from_address="a@b.example"))


async def test_missing_deployment_fails_before_rules(llm):
    with pytest.raises(ConfigurationError):
        await EmailClassifier(Settings(), llm).classify(meta(from_address="mailer-daemon@host"))


def test_metadata_is_truncated():
    built = meta(subject="s" * 500, from_address="f" * 500, snippet="x" * 1000)

    assert len(built.subject) == 200
    assert len(built.from_address) == 300
    assert len(built.snippet) == 600


def test_relay_must_differ_from_sender():
    same = meta(
        from_address="anfrage@reply.immobilienscout24.de",
        reply_to="anfrage@reply.immobilienscout24.de",
    )

    assert is_portal_relay_allowed(same, portal_like=True) is False


def test_same_portal_reply_subdomain_is_allowed():
    relay = meta(from_address="noreply@immowelt.de", reply_to="abc@reply.immowelt.de")

    assert is_portal_relay_allowed(relay, portal_like=True) is True


def test_rules_return_none_when_model_must_decide():
    plain = meta(subject="Frage", from_address="person@example.org", snippet="Wann ist die Besichtigung?")

    assert apply_rules(plain, compute_signals(plain)) is None


def _satisfies_fail_closed(result, signals: Signals) -> bool:
    if result.decision != "auto_reply":
        return True
    if result.email_type not in AUTO_REPLY_TYPES:
        return False
    if result.confidence < 0.97:
        return False
    if signals.no_reply and not signals.relay_allowed:
        return False
    return True


def test_fail_closed_over_all_model_outputs_and_signals():
    confidences = (0.0, 0.5, 0.96, 0.969, 0.97, 0.99, 1.0)
    flags = (False, True)
    for decision, email_type, confidence, portal, inquiry, no_reply, relay in itertools.product(
        DECISIONS, EMAIL_TYPES, confidences, flags, flags, flags, flags
    ):
        output = ClassifierOutput(decision=decision, email_type=email_type, confidence=confidence, reason="r")
        signals = Signals(portal_like=portal, inquiry_like=inquiry, no_reply=no_reply, relay_allowed=relay)
        result = no_reply_guard(apply_fail_closed(output), signals)

        assert _satisfies_fail_closed(result, signals), (output, signals, result)


async def test_fail_closed_fuzz_through_classifier(settings, llm):
    rng = random.Random(1234)
    senders = (
        ("person@example.org", ""),
        ("noreply@immobilienscout24.de", "lead@reply.immobilienscout24.de"),
        ("noreply@immobilienscout24.de", "lead@elsewhere.example"),
        ("no-reply@portal.example", ""),
    )
    subjects = ("Frage zur Wohnung", "Kontaktanfrage", "Hallo", "Termin")
    for _ in range(200):
        sender, reply_to = rng.choice(senders)
        email = meta(subject=rng.choice(subjects), from_address=sender, reply_to=reply_to, snippet="Interesse")
        llm.answers.pop("classifier", None)
        llm.queue(
            "classifier",
            {
                "decision": rng.choice(DECISIONS),
                "email_type": rng.choice(EMAIL_TYPES),
                "confidence": rng.random() * 1.2,
                "reason": "fuzz",
            },
        )

        result = await EmailClassifier(settings, llm).classify(email)

        assert _satisfies_fail_closed(result, compute_signals(email)), (email, result)
