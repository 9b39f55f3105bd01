from replyflow.db import AgentSettings, Lead, PropertyFollowupPolicy
from replyflow.policy import delay_for_stage, infer_intent, resolve_policy


def lead(**kwargs) -> Lead:
    return Lead(agent_id="agent-1", email="lead@example.org", **kwargs)


def test_lead_override_wins_over_property_and_agent():
    policy = resolve_policy(
        lead(type="Mieten", followups_max_stage_override=1),
        AgentSettings(agent_id="agent-1", followups_max_stage_rent=0),
        PropertyFollowupPolicy(agent_id="agent-1", property_id=7, max_stage_rent=2),
    )

    assert policy.max_stage == 1


def test_property_override_wins_over_agent_default():
    policy = resolve_policy(
        lead(type="Mieten"),
        AgentSettings(agent_id="agent-1", followups_max_stage_rent=0),
        PropertyFollowupPolicy(agent_id="agent-1", property_id=7, max_stage_rent=2),
    )

    assert policy.max_stage == 2


def test_property_override_is_intent_specific():
    prop = PropertyFollowupPolicy(agent_id="agent-1", property_id=7, max_stage_rent=2)
    agent = AgentSettings(agent_id="agent-1", followups_max_stage_buy=1)

    assert resolve_policy(lead(type="Kaufen"), agent, prop).max_stage == 1


def test_defaults_apply_without_any_settings():
    policy = resolve_policy(lead(), None)

    assert policy.enabled is True
    assert policy.max_stage == 2
    assert (policy.stage1_delay_hours, policy.stage2_delay_hours) == (24, 72)
    assert policy.intent == "rent"


def test_delays_prefer_property_then_agent():
    agent = AgentSettings(agent_id="agent-1", followups_delay_hours_stage1=12, followups_delay_hours_stage2=48)
    prop = PropertyFollowupPolicy(agent_id="agent-1", property_id=7, stage2_delay_hours=96)

    policy = resolve_policy(lead(), agent, prop)

    assert policy.stage1_delay_hours == 12
    assert policy.stage2_delay_hours == 96
    assert delay_for_stage(policy, 0) == 12
    assert delay_for_stage(policy, 1) == 96


def test_values_are_clamped():
    agent = AgentSettings(
        agent_id="agent-1",
        followups_max_stage_rent=9,
        followups_delay_hours_stage1=0,
        followups_delay_hours_stage2=10_000,
    )

    policy = resolve_policy(lead(followups_max_stage_override=-3), agent)

    assert policy.max_stage == 0
    assert policy.stage1_delay_hours == 1
    assert policy.stage2_delay_hours == 336


def test_enabled_flag_precedence():
    agent_off = AgentSettings(agent_id="agent-1", followups_enabled_default=False)
    prop_on = PropertyFollowupPolicy(agent_id="agent-1", property_id=7, enabled=True)

    assert resolve_policy(lead(), agent_off).enabled is False
    assert resolve_policy(lead(), agent_off, prop_on).enabled is True
    assert resolve_policy(lead(followups_enabled=False), agent_off, prop_on).enabled is False


def test_infer_intent():
    assert infer_intent("Mieten") == "rent"
    assert infer_intent("Kaufen") == "buy"
    assert infer_intent("for sale") == "buy"
    assert infer_intent(None) == "rent"
