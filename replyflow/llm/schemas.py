"""Typed decoding of model JSON output."""

import json
import math
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from replyflow.errors import ModelOutputError

M = TypeVar("M", bound=BaseModel)

Decision = Literal["auto_reply", "needs_approval", "ignore"]
EmailType = Literal[
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
]
Verdict = Literal["pass", "warn", "fail"]


def clamp01(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


class ClassifierOutput(BaseModel):
    decision: Decision
    email_type: EmailType
    confidence: float
    reason: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return clamp01(value)

    @field_validator("reason", mode="before")
    @classmethod
    def _short_reason(cls, value: Any) -> str:
        return str(value or "").strip()[:120]


class QAOutput(BaseModel):
    verdict: Verdict = "fail"
    score: Optional[float] = None
    reason: str = ""
    reason_long: Optional[str] = None
    action: Optional[str] = None
    risk_flags: List[str] = Field(default_factory=list)

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, value: Any) -> str:
        verdict = str(value or "").strip().lower()
        return verdict if verdict in ("pass", "warn") else "fail"

    @field_validator("score", mode="before")
    @classmethod
    def _scale_score(cls, value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            score = float(value)
        except (TypeError, ValueError):
            return None
        if 1 < score <= 100:
            score = score / 100
        return clamp01(score)

    @field_validator("reason", mode="before")
    @classmethod
    def _short_reason(cls, value: Any) -> str:
        return str(value or "").strip()[:200]

    @field_validator("risk_flags", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [str(flag) for flag in value if str(flag).strip()][:20]


class FollowupOutput(BaseModel):
    should_send: bool
    confidence: float
    text: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return clamp01(value)

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> str:
        return str(value or "").strip()


class IntentOutput(BaseModel):
    intent: str = "OTHER"
    confidence: float = 0.0
    entities: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return clamp01(value)

    @field_validator("entities", mode="before")
    @classmethod
    def _entities(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


def decode(model: Type[M], raw: str) -> M:
    """Decode ``raw`` into ``model`` or raise ``ModelOutputError``."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ModelOutputError(f"model output is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ModelOutputError("model output is not a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ModelOutputError(f"model output failed validation: {exc.error_count()} error(s)") from exc
