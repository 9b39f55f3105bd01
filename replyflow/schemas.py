from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClassifyIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    reply_to: Optional[str] = Field(default=None, alias="replyTo")
    snippet: Optional[str] = None
    has_list_unsubscribe: bool = Field(default=False, alias="hasListUnsubscribe")
    is_bulk: bool = Field(default=False, alias="isBulk")
    is_no_reply: bool = Field(default=False, alias="isNoReply")


class ClassifyOut(BaseModel):
    decision: str
    email_type: str
    confidence: float
    reason: str


class InboundIn(ClassifyIn):
    agent_id: str
    text: str = ""
    name: Optional[str] = None
    lead_type: Optional[str] = Field(default=None, alias="leadType")
    property_id: Optional[int] = Field(default=None, alias="propertyId")
    provider_message_id: Optional[str] = Field(default=None, alias="providerMessageId")
    provider_thread_id: Optional[str] = Field(default=None, alias="providerThreadId")
    received_at: Optional[datetime] = Field(default=None, alias="receivedAt")


class InboundOut(BaseModel):
    ok: bool = True
    message_id: Optional[int]
    lead_id: Optional[int]
    status: str
    classification: Dict[str, Any] = {}
    duplicate: bool = False


class StageRunIn(BaseModel):
    limit: Optional[int] = None


class StageRunOut(BaseModel):
    ok: bool = True
    processed: int
    results: List[Dict[str, Any]]


class EditApproveIn(BaseModel):
    text: str = Field(min_length=1)


class ReviewOut(BaseModel):
    ok: bool = True
    id: int
    status: str
    approval_required: bool
    send_status: Optional[str] = None


class UnlockIn(BaseModel):
    message_id: int = Field(alias="messageId")

    model_config = ConfigDict(populate_by_name=True)


class PromptUpsertIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    system_prompt: str = Field(min_length=1)
    user_prompt: str = Field(min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    version: Optional[str] = None
    make_active: bool = False


class PromptOut(BaseModel):
    ok: bool = True
    key: str
    version: str
    is_active: bool
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
