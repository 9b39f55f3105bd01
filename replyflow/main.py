"""FastAPI application: pipeline triggers, the email classifier and review actions."""

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from replyflow import actions, jobs, monitoring
from replyflow.agents.classifier import EmailClassifier, EmailMetadata
from replyflow.agents.drafts import DraftStage
from replyflow.agents.inbound import ingest_inbound
from replyflow.agents.intent import IntentStage
from replyflow.agents.qa import QARecheckStage, QAStage
from replyflow.agents.rewrite import RewriteStage
from replyflow.agents.routing import RouteResolveStage
from replyflow.agents.sender import SendStage
from replyflow.auth import PipelineAuthMiddleware
from replyflow.config import get_settings
from replyflow.db import get_session, init_db
from replyflow.errors import (
    ConfigurationError,
    InvalidTransition,
    MessageNotFound,
    ModelOutputError,
    PromptNotFound,
    UpstreamError,
)
from replyflow.llm.client import CompletionClient
from replyflow.orchestrator import Stage
from replyflow.prompts import activate_prompt, seed_default_prompts, upsert_prompt
from replyflow.schemas import (
    ClassifyIn,
    ClassifyOut,
    EditApproveIn,
    InboundIn,
    InboundOut,
    PromptOut,
    PromptUpsertIn,
    ReviewOut,
    StageRunIn,
    StageRunOut,
    UnlockIn,
)

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()

app = FastAPI(title="replyflow")
app.state.settings = get_settings()
app.state.llm = CompletionClient(app.state.settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    PipelineAuthMiddleware,
    internal_prefixes={"/pipeline"},
    exempt_paths={"/healthz", "/ai/email-classify"},
    exempt_prefixes={"/docs", "/openapi", "/redoc"},
)

SCHEDULED_JOBS = ("reply-pipeline", "followups", "send")


@app.on_event("startup")
async def on_startup():
    settings = app.state.settings
    await init_db()
    if settings.seed_default_prompts:
        async with get_session() as session:
            await seed_default_prompts(session)
    if not settings.scheduler_enabled:
        return
    if not scheduler.running:
        scheduler.start()
    for job in SCHEDULED_JOBS:
        if not scheduler.get_job(job):
            scheduler.add_job(
                lambda job=job: asyncio.create_task(jobs.scheduled(job, app.state.settings, app.state.llm)),
                "interval",
                minutes=settings.scheduler_interval_minutes,
                id=job,
            )


@app.on_event("shutdown")
async def on_shutdown():
    if scheduler.running:
        scheduler.shutdown(wait=False)


@app.get("/healthz")
async def health_check():
    return {"status": "ok"}


@app.post("/ai/email-classify", response_model=ClassifyOut)
async def email_classify(payload: ClassifyIn):
    """Decide whether an inbound email may be auto-replied to.

    Args:
        payload: Header metadata and a body snippet of the email.

    Returns:
        ClassifyOut: Decision, email type, confidence and a short reason.
    """
    classifier = EmailClassifier(app.state.settings, app.state.llm)
    meta = EmailMetadata.build(**payload.model_dump())
    try:
        result = await classifier.classify(meta)
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except (UpstreamError, ModelOutputError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ClassifyOut(**result.to_dict())


@app.post("/pipeline/inbound", response_model=InboundOut)
async def pipeline_inbound(payload: InboundIn):
    """Record an inbound email behind the safety classifier.

    Args:
        payload: Email metadata, body and the owning agent.

    Returns:
        InboundOut: Stored message id, lead id and the gate decision.
    """
    classifier = EmailClassifier(app.state.settings, app.state.llm)
    meta = EmailMetadata.build(**payload.model_dump(include=set(ClassifyIn.model_fields)))
    try:
        result = await ingest_inbound(
            classifier,
            agent_id=payload.agent_id,
            meta=meta,
            text=payload.text,
            name=payload.name,
            lead_type=payload.lead_type,
            property_id=payload.property_id,
            provider_message_id=payload.provider_message_id,
            provider_thread_id=payload.provider_thread_id,
            received_at=payload.received_at,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return InboundOut(**result.to_dict())


async def _run(stage: Stage, limit: Optional[int] = None) -> StageRunOut:
    try:
        report = await stage.run(limit)
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return StageRunOut(**report.to_dict())


@app.post("/pipeline/intent", response_model=StageRunOut)
async def pipeline_intent():
    return await _run(IntentStage(app.state.settings, app.state.llm))


@app.post("/pipeline/route-resolve", response_model=StageRunOut)
async def pipeline_route_resolve():
    return await _run(RouteResolveStage(app.state.settings, app.state.llm))


@app.post("/pipeline/draft", response_model=StageRunOut)
async def pipeline_draft():
    return await _run(DraftStage(app.state.settings, app.state.llm))


@app.post("/pipeline/qa", response_model=StageRunOut)
async def pipeline_qa():
    return await _run(QAStage(app.state.settings, app.state.llm))


@app.post("/pipeline/rewrite", response_model=StageRunOut)
async def pipeline_rewrite():
    return await _run(RewriteStage(app.state.settings, app.state.llm))


@app.post("/pipeline/qa-recheck", response_model=StageRunOut)
async def pipeline_qa_recheck():
    return await _run(QARecheckStage(app.state.settings, app.state.llm))


@app.post("/pipeline/send", response_model=StageRunOut)
async def pipeline_send():
    return await _run(SendStage(app.state.settings))


@app.post("/pipeline/followups", response_model=StageRunOut)
async def pipeline_followups(payload: Optional[StageRunIn] = Body(default=None)):
    """Run the follow-up scheduler over due leads.

    Args:
        payload: Optional ``{"limit": n}``; defaults to 20, clamped to 1..50.

    Returns:
        StageRunOut: One result per lead considered.
    """
    stage = jobs.followup_stage(app.state.settings, app.state.llm)
    return await _run(stage, payload.limit if payload else None)


async def _review(action, *args, **kwargs) -> ReviewOut:
    try:
        return ReviewOut(**(await action(*args, **kwargs)))
    except MessageNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/messages/{message_id}/approve", response_model=ReviewOut)
async def approve_message(message_id: int, request: Request):
    """Approve a draft and hand it to the send runner.

    Args:
        message_id: Draft to approve.
        request: Carries the authenticated agent id.

    Returns:
        ReviewOut: Updated draft status.
    """
    return await _review(actions.approve, message_id, request.state.agent_id)


@app.post("/messages/{message_id}/reject", response_model=ReviewOut)
async def reject_message(message_id: int, request: Request):
    return await _review(actions.reject, message_id, request.state.agent_id)


@app.post("/messages/{message_id}/edit-approve", response_model=ReviewOut)
async def edit_and_approve_message(message_id: int, payload: EditApproveIn, request: Request):
    return await _review(actions.edit_and_approve, message_id, request.state.agent_id, payload.text)


@app.post("/pipeline/outbox/unlock", response_model=ReviewOut)
async def outbox_unlock(payload: UnlockIn):
    """Return a draft stuck in ``sending`` to ``failed`` so the next send run retries it."""
    return await _review(actions.unlock_send, payload.message_id)


def _prompt_out(row) -> PromptOut:
    return PromptOut(
        key=row.key,
        version=row.version,
        is_active=row.is_active,
        temperature=row.temperature,
        max_tokens=row.max_tokens,
    )


@app.post("/pipeline/prompts/{key}", response_model=PromptOut)
async def prompt_upsert(key: str, payload: PromptUpsertIn):
    """Store a prompt version, optionally making it the live one.

    Args:
        key: Prompt key, e.g. ``qa_reply_v1``.
        payload: Prompt texts and sampling settings; ``version`` defaults to the next free one.

    Returns:
        PromptOut: The stored version and whether it is active.
    """
    async with get_session() as session:
        row = await upsert_prompt(session, key, **payload.model_dump())
        return _prompt_out(row)


@app.post("/pipeline/prompts/{key}/{version}/activate", response_model=PromptOut)
async def prompt_activate(key: str, version: str):
    async with get_session() as session:
        try:
            row = await activate_prompt(session, key, version)
        except PromptNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _prompt_out(row)
