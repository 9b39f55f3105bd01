import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlmodel import select

from replyflow.db import Lead, Message, MessageQA, RunHistory

AGENT_ID = "agent-1"
INTERNAL_SECRET = "internal-test-secret"
JWT_SECRET = "jwt-test-secret"

pytestmark = pytest.mark.asyncio


class DummyScheduler:
    def __init__(self):
        self.running = False
        self.jobs = {}

    def start(self):
        self.running = True

    def add_job(self, func, trigger, **kwargs):
        self.jobs[kwargs["id"]] = (trigger, kwargs)

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def shutdown(self, wait=False):
        self.running = False


@pytest_asyncio.fixture
async def app_context(monkeypatch, database, settings, llm):
    from replyflow import main

    monkeypatch.setattr(main.app.state, "settings", settings)
    monkeypatch.setattr(main.app.state, "llm", llm)
    monkeypatch.setattr(main, "scheduler", DummyScheduler())

    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield {"main": main, "client": client, "db": database}


def bearer(agent_id=AGENT_ID, secret=JWT_SECRET):
    return {"Authorization": f"Bearer {jwt.encode({'sub': agent_id}, secret, algorithm='HS256')}"}


INTERNAL = {"x-internal-secret": INTERNAL_SECRET}


async def test_open_endpoints(app_context, llm):
    client = app_context["client"]

    health = await client.get("/healthz")
    assert health.json() == {"status": "ok"}

    classified = await client.post(
        "/ai/email-classify",
        json={
            "subject": "Neue Kontaktanfrage zu Ihrer Wohnung",
            "from": "ImmobilienScout24 <noreply@immobilienscout24.de>",
            "replyTo": "anfrage-1@reply.immobilienscout24.de",
            "snippet": "Ein Interessent hat eine Nachricht geschickt.",
        },
    )
    assert classified.status_code == 200
    assert classified.json()["decision"] == "auto_reply"
    assert llm.calls == []


async def test_classifier_upstream_failure_is_bad_gateway(app_context, llm):
    llm.queue("classifier", "not json")

    response = await app_context["client"].post(
        "/ai/email-classify", json={"subject": "Wohnung", "from": "lea@example.org", "snippet": "Noch frei?"}
    )

    assert response.status_code == 502


async def test_pipeline_requires_internal_secret(app_context, settings):
    client = app_context["client"]

    assert (await client.post("/pipeline/intent")).status_code == 401
    assert (await client.post("/pipeline/intent", headers={"x-internal-secret": "wrong"})).status_code == 401

    settings.internal_secret = None
    assert (await client.post("/pipeline/intent", headers=INTERNAL)).status_code == 500


async def test_review_requires_valid_token(app_context):
    client = app_context["client"]

    assert (await client.post("/messages/1/approve")).status_code == 401
    forged = bearer(secret="another-secret")
    assert (await client.post("/messages/1/approve", headers=forged)).status_code == 401


async def test_unconfigured_stage_is_a_server_error(app_context, settings):
    settings.deployments["intent"] = None
    settings.send_endpoint = None
    client = app_context["client"]

    intent = await client.post("/pipeline/intent", headers=INTERNAL)
    send = await client.post("/pipeline/send", headers=INTERNAL)

    assert intent.status_code == 500
    assert "AZURE_OPENAI_DEPLOYMENT_INTENT" in intent.json()["detail"]
    assert send.status_code == 500


async def test_inbound_to_reviewed_draft(app_context, llm):
    client = app_context["client"]
    db = app_context["db"]
    text = "Wann kann ich die Wohnung besichtigen?"

    llm.queue("classifier", {"decision": "auto_reply", "email_type": "LEAD", "confidence": 0.99, "reason": "lead"})
    inbound = await client.post(
        "/pipeline/inbound",
        headers=INTERNAL,
        json={
            "agent_id": AGENT_ID,
            "subject": "Wohnung in der Hauptstraße",
            "from": "Lea Berger <lea@example.org>",
            "snippet": text,
            "text": text,
            "leadType": "Mieten",
            "providerMessageId": "gmail-1",
        },
    )
    assert inbound.status_code == 200
    body = inbound.json()
    assert (body["status"], body["duplicate"]) == ("pending", False)
    lead_id = body["lead_id"]

    intent = await client.post("/pipeline/intent", headers=INTERNAL)
    assert intent.json()["results"][0]["intent"] == "VIEWING_REQUEST"

    route = await client.post("/pipeline/route-resolve", headers=INTERNAL)
    assert route.json()["processed"] == 1

    llm.queue("writer", "Guten Tag Frau Berger, gerne zeige ich Ihnen die Wohnung. Wann passt es Ihnen?")
    draft = await client.post("/pipeline/draft", headers=INTERNAL)
    draft_id = draft.json()["results"][0]["draft_id"]

    llm.queue("qa", {"verdict": "pass", "score": 0.91, "reason": "ok"})
    qa = await client.post("/pipeline/qa", headers=INTERNAL)
    assert qa.json()["results"][0]["status"] == "needs_approval"

    followups = await client.post("/pipeline/followups", headers=INTERNAL, json={"limit": 5})
    assert followups.json() == {"ok": True, "processed": 0, "results": []}

    foreign = await client.post(f"/messages/{draft_id}/approve", headers=bearer("agent-2"))
    assert foreign.status_code == 404

    empty = await client.post(f"/messages/{draft_id}/edit-approve", headers=bearer(), json={"text": ""})
    assert empty.status_code == 422

    edited = await client.post(
        f"/messages/{draft_id}/edit-approve", headers=bearer(), json={"text": "  Gerne am Montag um 10 Uhr.  "}
    )
    assert edited.status_code == 200
    assert edited.json() == {
        "ok": True,
        "id": draft_id,
        "status": "ready_to_send",
        "approval_required": False,
        "send_status": "pending",
    }

    rejected = await client.post(f"/messages/{draft_id}/reject", headers=bearer())
    assert rejected.json()["status"] == "rejected"
    again = await client.post(f"/messages/{draft_id}/approve", headers=bearer())
    assert again.status_code == 409

    async with db.get_session() as session:
        stored = await session.get(Message, draft_id)
        assert stored.text == "Gerne am Montag um 10 Uhr."
        assert stored.approved_at is not None
        lead = await session.get(Lead, lead_id)
        assert lead.followup_status == "planned"
        verdicts = (await session.exec(select(MessageQA.verdict))).all()
        assert verdicts == ["pass"]
        stages = set((await session.exec(select(RunHistory.stage))).all())
    assert {"intent", "route_resolve", "draft", "qa"}.issubset(stages)


async def test_outbox_unlock_endpoint(app_context, add):
    client = app_context["client"]
    lead = await add(Lead(agent_id=AGENT_ID, email="lea@example.org"))
    stuck = await add(
        Message(
            agent_id=AGENT_ID,
            lead_id=lead.id,
            sender="agent",
            text="Gerne.",
            status="ready_to_send",
            send_status="sending",
        )
    )

    assert (await client.post("/pipeline/outbox/unlock", json={"messageId": stuck.id})).status_code == 401
    unlocked = await client.post("/pipeline/outbox/unlock", headers=INTERNAL, json={"messageId": stuck.id})
    assert unlocked.json()["send_status"] == "failed"

    again = await client.post("/pipeline/outbox/unlock", headers=INTERNAL, json={"messageId": stuck.id})
    missing = await client.post("/pipeline/outbox/unlock", headers=INTERNAL, json={"messageId": 999})
    assert (again.status_code, missing.status_code) == (409, 404)


async def test_prompt_version_endpoints(app_context):
    client = app_context["client"]
    body = {"system_prompt": "Prüfe streng.", "user_prompt": "{{DRAFT_MESSAGE}}", "make_active": True}

    empty = await client.post("/pipeline/prompts/qa_reply_v1", headers=INTERNAL, json={**body, "system_prompt": " "})
    assert empty.status_code == 422

    stored = await client.post("/pipeline/prompts/qa_reply_v1", headers=INTERNAL, json=body)
    assert (stored.json()["version"], stored.json()["is_active"]) == ("v2", True)

    restored = await client.post("/pipeline/prompts/qa_reply_v1/v1/activate", headers=INTERNAL)
    assert (restored.json()["version"], restored.json()["is_active"]) == ("v1", True)

    unknown = await client.post("/pipeline/prompts/qa_reply_v1/v7/activate", headers=INTERNAL)
    assert unknown.status_code == 404


async def test_startup_registers_scheduled_jobs(app_context, settings):
    main = app_context["main"]
    settings.scheduler_enabled = True

    await main.on_startup()

    assert main.scheduler.running is True
    assert set(main.scheduler.jobs) == {"reply-pipeline", "followups", "send"}
    trigger, kwargs = main.scheduler.jobs["send"]
    assert (trigger, kwargs["minutes"]) == ("interval", settings.scheduler_interval_minutes)

    await main.on_shutdown()
    assert main.scheduler.running is False
