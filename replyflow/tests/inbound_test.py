from datetime import timedelta

import pytest
from sqlmodel import select

from replyflow.agents.classifier import EmailClassifier, EmailMetadata
from replyflow.agents.inbound import contact_address, ingest_inbound
from replyflow.db import AgentSettings, Lead, Message, get_session, utcnow
from replyflow.errors import ConfigurationError, UpstreamError

AGENT_ID = "agent-1"
RECEIVED = utcnow().replace(microsecond=0)

PORTAL_MAIL = dict(
    subject="Neue Kontaktanfrage zu Ihrer Wohnung",
    from_address="ImmobilienScout24 <noreply@immobilienscout24.de>",
    reply_to="anfrage-8812@reply.immobilienscout24.de",
    snippet="Ein Interessent hat eine Nachricht geschickt.",
)
DIRECT_MAIL = dict(
    subject="Wohnung in der Hauptstraße",
    from_address="Lea Berger <lea.berger@example.org>",
    snippet="Ist die Wohnung noch verfügbar?",
)


async def ingest(settings, llm, text="Ist die Wohnung noch verfügbar?", **kwargs):
    mail = kwargs.pop("mail", DIRECT_MAIL)
    kwargs.setdefault("received_at", RECEIVED)
    return await ingest_inbound(
        EmailClassifier(settings, llm),
        agent_id=AGENT_ID,
        meta=EmailMetadata.build(**mail),
        text=text,
        **kwargs,
    )


async def messages_for(lead_id):
    async with get_session() as session:
        return (await session.exec(select(Message).where(Message.lead_id == lead_id))).all()


def test_contact_address_prefers_usable_reply_to():
    assert contact_address(EmailMetadata.build(**PORTAL_MAIL)) == "anfrage-8812@reply.immobilienscout24.de"
    assert (
        contact_address(EmailMetadata.build(from_address="Lea <LEA@example.org>", reply_to="noreply@example.org"))
        == "lea@example.org"
    )
    assert contact_address(EmailMetadata.build()) is None


async def test_portal_relay_inquiry_is_recorded_and_plans_followup(settings, llm, database, fetch):
    result = await ingest(settings, llm, mail=PORTAL_MAIL, name="Lea", lead_type="Mieten", provider_thread_id="t-1")

    assert (result.status, result.classification["decision"]) == ("pending", "auto_reply")
    lead = await fetch(Lead, result.lead_id)
    assert lead.email == "anfrage-8812@reply.immobilienscout24.de"
    assert (lead.name, lead.type, lead.provider_thread_id) == ("Lea", "Mieten", "t-1")
    assert lead.last_user_message_at == RECEIVED
    assert (lead.followup_status, lead.followup_stage) == ("planned", 0)
    assert lead.followup_next_at == RECEIVED + timedelta(hours=24)
    message = await fetch(Message, result.message_id)
    assert (message.sender, message.status, message.approval_required) == ("user", "pending", False)
    assert (message.classification, message.email_type) == ("auto_reply", "PORTAL")
    assert llm.calls == []


async def test_model_decides_direct_inquiry(settings, llm, database, fetch):
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99, "reason": "lead"})

    result = await ingest(settings, llm)

    message = await fetch(Message, result.message_id)
    assert (message.status, message.approval_required, message.email_type) == ("pending", False, "LEAD")
    assert llm.calls_for("classifier")[0]["json_mode"] is True


async def test_bounce_is_stored_as_ignored_without_planning(settings, llm, database, fetch):
    result = await ingest(
        settings,
        llm,
        mail=dict(subject="Undelivered Mail Returned to Sender", from_address="MAILER-DAEMON@mx.example.net"),
        text="Delivery failed",
    )

    assert result.status == "ignored"
    lead = await fetch(Lead, result.lead_id)
    assert (lead.followup_status, lead.followup_next_at, lead.last_user_message_at) == ("idle", None, None)


async def test_no_reply_sender_is_held_for_approval(settings, llm, database, fetch):
    result = await ingest(
        settings, llm, mail=dict(subject="Ihre Frage", from_address="no-reply@shop.example", snippet="Danke")
    )

    message = await fetch(Message, result.message_id)
    assert (message.status, message.approval_required, message.classification) == (
        "pending",
        True,
        "needs_approval",
    )


async def test_classifier_outage_holds_for_approval(settings, llm, database, fetch):
    llm.queue("classifier", UpstreamError("timeout"))

    result = await ingest(settings, llm)

    assert result.classification["reason"] == "classifier_failed:UpstreamError"
    message = await fetch(Message, result.message_id)
    assert (message.classification, message.approval_required) == ("needs_approval", True)


async def test_classifier_configuration_error_propagates(settings, llm, database):
    settings.deployments["classifier"] = None

    with pytest.raises(ConfigurationError):
        await ingest(settings, llm)


async def test_redelivery_is_dropped(settings, llm, database):
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99})

    first = await ingest(settings, llm, provider_message_id="gmail-123")
    second = await ingest(settings, llm, provider_message_id="gmail-123")

    assert second.duplicate is True
    assert (second.message_id, second.lead_id) == (first.message_id, first.lead_id)
    assert len(await messages_for(first.lead_id)) == 1
    assert len(llm.calls_for("classifier")) == 1


async def test_missing_sender_address_is_rejected(settings, llm, database):
    result = await ingest(settings, llm, mail=dict(subject="Hallo"))

    assert (result.status, result.message_id, result.classification) == (
        "rejected",
        None,
        {"reason": "missing_sender_address"},
    )
    assert llm.calls == []


async def test_reply_restarts_followups_for_existing_lead(settings, llm, add, fetch):
    lead = await add(
        Lead(
            agent_id=AGENT_ID,
            email="lea.berger@example.org",
            name="Lea Berger",
            followup_stage=1,
            followup_status="idle",
            followup_stop_reason="retry_limit_reached",
            followup_failures=5,
        )
    )
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99})

    result = await ingest(settings, llm, name="Someone Else")

    assert result.lead_id == lead.id
    stored = await fetch(Lead, lead.id)
    assert stored.name == "Lea Berger"
    assert (stored.followup_stage, stored.followup_failures, stored.followup_status) == (0, 0, "planned")
    assert stored.followup_stop_reason is None


async def test_pause_and_disabled_policy_shape_the_plan(settings, llm, add, fetch):
    paused_until = RECEIVED + timedelta(days=7)
    await add(
        Lead(agent_id=AGENT_ID, email="lea.berger@example.org", followup_paused_until=paused_until),
        AgentSettings(agent_id=AGENT_ID, followups_enabled_default=False),
    )
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99})
    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99})

    other = await ingest(
        settings, llm, mail=dict(DIRECT_MAIL, from_address="tom@example.org"), text="Noch frei?"
    )
    assert (await fetch(Lead, other.lead_id)).followup_stop_reason == "disabled_by_policy"

    async with get_session() as session:
        agent = await session.get(AgentSettings, AGENT_ID)
        agent.followups_enabled_default = True
        session.add(agent)
        await session.commit()
    paused = await ingest(settings, llm)
    assert (await fetch(Lead, paused.lead_id)).followup_next_at == paused_until
