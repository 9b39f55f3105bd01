"""Follow-up policy resolution: lead override > property override > agent default."""

from dataclasses import dataclass
from typing import Optional

from sqlmodel import select

from replyflow.db import AgentSettings, Lead, PropertyFollowupPolicy

DEFAULT_ENABLED = True
DEFAULT_MAX_STAGE = 2
DEFAULT_STAGE1_DELAY_HOURS = 24
DEFAULT_STAGE2_DELAY_HOURS = 72

MAX_STAGE_CEILING = 2
MIN_DELAY_HOURS = 1
MAX_DELAY_HOURS = 24 * 14


@dataclass(frozen=True)
class FollowupPolicy:
    enabled: bool
    max_stage: int
    stage1_delay_hours: int
    stage2_delay_hours: int
    intent: str  # rent | buy


def clamp_stage(value: int) -> int:
    return max(0, min(MAX_STAGE_CEILING, int(value)))


def clamp_delay(value: int) -> int:
    return max(MIN_DELAY_HOURS, min(MAX_DELAY_HOURS, int(value)))


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def infer_intent(lead_type: Optional[str]) -> str:
    value = (lead_type or "").strip().lower()
    if "miet" in value or "rent" in value:
        return "rent"
    if "kauf" in value or "buy" in value or "sale" in value or "verkauf" in value:
        return "buy"
    return "rent"


def resolve_policy(
    lead: Lead,
    agent_settings: Optional[AgentSettings],
    property_policy: Optional[PropertyFollowupPolicy] = None,
) -> FollowupPolicy:
    """Compute the effective follow-up policy for ``lead``.

    Args:
        lead: Lead carrying optional per-lead overrides.
        agent_settings: Agent defaults; missing values fall back to built-in defaults.
        property_policy: Optional override for the lead's property.

    Returns:
        FollowupPolicy: Clamped, immutable policy.
    """
    intent = infer_intent(lead.type)
    agent = agent_settings or AgentSettings(agent_id=lead.agent_id)
    prop = property_policy

    agent_enabled = _first(agent.followups_enabled_default, DEFAULT_ENABLED)
    enabled = _first(lead.followups_enabled, prop.enabled if prop else None, agent_enabled)

    if intent == "buy":
        agent_max = _first(agent.followups_max_stage_buy, DEFAULT_MAX_STAGE)
        prop_max = prop.max_stage_buy if prop else None
    else:
        agent_max = _first(agent.followups_max_stage_rent, DEFAULT_MAX_STAGE)
        prop_max = prop.max_stage_rent if prop else None
    max_stage = _first(lead.followups_max_stage_override, prop_max, agent_max)

    stage1 = _first(
        prop.stage1_delay_hours if prop else None,
        agent.followups_delay_hours_stage1,
        DEFAULT_STAGE1_DELAY_HOURS,
    )
    stage2 = _first(
        prop.stage2_delay_hours if prop else None,
        agent.followups_delay_hours_stage2,
        DEFAULT_STAGE2_DELAY_HOURS,
    )

    return FollowupPolicy(
        enabled=bool(enabled),
        max_stage=clamp_stage(max_stage),
        stage1_delay_hours=clamp_delay(stage1),
        stage2_delay_hours=clamp_delay(stage2),
        intent=intent,
    )


def delay_for_stage(policy: FollowupPolicy, stage: int) -> int:
    """Hours to wait before sending follow-up number ``stage`` (0-based)."""
    return policy.stage1_delay_hours if stage <= 0 else policy.stage2_delay_hours


async def load_policy(session, lead: Lead) -> FollowupPolicy:
    agent_settings = await session.get(AgentSettings, lead.agent_id)
    property_policy = None
    if lead.property_id is not None:
        property_policy = (
            await session.exec(
                select(PropertyFollowupPolicy).where(
                    PropertyFollowupPolicy.agent_id == lead.agent_id,
                    PropertyFollowupPolicy.property_id == lead.property_id,
                )
            )
        ).first()
    return resolve_policy(lead, agent_settings, property_policy)
