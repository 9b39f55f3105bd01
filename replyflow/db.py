from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from replyflow.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, future=True, pool_pre_ping=True)


engine: AsyncEngine = _make_engine(get_settings().database_url)

async_session_factory = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
)


def configure_engine(url: str) -> AsyncEngine:
    """Rebind the module engine and session factory to another database URL."""
    global engine, async_session_factory
    engine = _make_engine(url)
    async_session_factory = sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
    )
    return engine


class Agent(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: Optional[str] = None
    company: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class AgentSettings(SQLModel, table=True):
    agent_id: str = Field(primary_key=True)
    autosend_enabled: bool = False
    followups_enabled_default: Optional[bool] = None
    followups_max_stage_rent: Optional[int] = None
    followups_max_stage_buy: Optional[int] = None
    followups_delay_hours_stage1: Optional[int] = None
    followups_delay_hours_stage2: Optional[int] = None
    updated_at: datetime = Field(default_factory=utcnow)


class AgentStyle(SQLModel, table=True):
    agent_id: str = Field(primary_key=True)
    brand_name: Optional[str] = None
    language: Optional[str] = None
    tone: Optional[str] = None
    formality: Optional[str] = None
    length_pref: Optional[str] = None
    emoji_level: Optional[str] = None
    sign_off: Optional[str] = None
    do_rules: Optional[str] = None
    dont_rules: Optional[str] = None
    example_phrases: Optional[str] = None


class ResponseTemplate(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    title: str
    content: str
    category: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Property(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    title: Optional[str] = None
    city: Optional[str] = None
    neighbourhood: Optional[str] = None
    street_address: Optional[str] = None
    type: Optional[str] = None
    price: Optional[float] = None
    rooms: Optional[float] = None
    size_sqm: Optional[float] = None
    furnished: Optional[bool] = None
    pets_allowed: Optional[bool] = None
    available_from: Optional[str] = None
    listing_summary: Optional[str] = None
    url: Optional[str] = None


class PropertyFollowupPolicy(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str
    property_id: int
    enabled: Optional[bool] = None
    max_stage_rent: Optional[int] = None
    max_stage_buy: Optional[int] = None
    stage1_delay_hours: Optional[int] = None
    stage2_delay_hours: Optional[int] = None

    __table_args__ = (UniqueConstraint("agent_id", "property_id", name="uq_property_followup_policy"),)


class Lead(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    type: Optional[str] = None  # Mieten, Kaufen, FAQ
    property_id: Optional[int] = None
    provider_thread_id: Optional[str] = None
    last_message: Optional[str] = None
    priority: int = 2

    followups_enabled: Optional[bool] = None
    followups_max_stage_override: Optional[int] = None
    followup_stage: int = 0
    followup_status: str = "idle"  # planned, due, failed, sending, idle
    followup_next_at: Optional[datetime] = None
    followup_stop_reason: Optional[str] = None
    followup_paused_until: Optional[datetime] = None
    followup_last_sent_at: Optional[datetime] = None
    followup_failures: int = 0

    last_message_at: Optional[datetime] = None
    last_user_message_at: Optional[datetime] = None
    last_agent_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("agent_id", "email", name="uq_lead_agent_email"),)


class LeadPropertyState(SQLModel, table=True):
    lead_id: int = Field(primary_key=True)
    agent_id: str
    active_property_id: Optional[int] = None
    last_recommended_property_ids: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)


class Message(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    lead_id: int = Field(index=True)
    sender: str  # user, agent
    text: str = ""
    subject: Optional[str] = None
    snippet: Optional[str] = None
    status: str = Field(default="pending", index=True)
    approval_required: bool = False
    send_status: Optional[str] = None  # pending, sending, sent, failed
    send_error: Optional[str] = None
    send_attempts: int = 0
    send_locked_at: Optional[datetime] = None
    was_followup: bool = False
    classification: Optional[str] = None
    email_type: Optional[str] = None
    provider_message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


class MessageIntent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: int
    agent_id: str
    lead_id: int
    intent: str
    confidence: float = 0.0
    entities: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    reason: Optional[str] = None
    model: Optional[str] = None
    prompt_version: str = "v1"
    created_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("message_id", "prompt_version", name="uq_message_intent"),)


class MessageRoute(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: int
    agent_id: str
    lead_id: int
    route: str
    confidence: float = 0.0
    reason: Optional[str] = None
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    model: Optional[str] = None
    prompt_version: str = "v1"
    created_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("message_id", "prompt_version", name="uq_message_route"),)


class MessageDraft(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str
    lead_id: int
    inbound_message_id: int = Field(unique=True, index=True)
    draft_message_id: Optional[int] = None
    route: Optional[str] = None
    prompt_key: Optional[str] = None
    prompt_version: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class MessageQA(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    agent_id: str
    lead_id: int
    inbound_message_id: Optional[int] = None
    draft_message_id: int = Field(index=True)
    verdict: str
    score: Optional[float] = None
    reason: Optional[str] = None
    reason_long: Optional[str] = None
    action: Optional[str] = None
    risk_flags: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    model: Optional[str] = None
    prompt_key: str
    prompt_version: str
    created_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (
        UniqueConstraint("draft_message_id", "prompt_key", "prompt_version", name="uq_message_qa"),
    )


class AIPrompt(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(index=True)
    version: str = "v1"
    is_active: bool = True
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    updated_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (UniqueConstraint("key", "version", name="uq_ai_prompt"),)


class RunHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    stage: str
    agent_id: Optional[str] = None
    item_id: Optional[int] = None
    outcome: Optional[str] = None
    success: bool = True
    error_text: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
