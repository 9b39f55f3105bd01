"""Deterministic routing from an intent artifact to a reply strategy."""

from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from replyflow.agents.intent import normalize_intent
from replyflow.db import LeadPropertyState, Message, MessageIntent, MessageRoute, Property, get_session, utcnow
from replyflow.orchestrator import ItemResult, Stage

ROUTE_VERSION = "v1"
MAX_SUGGESTIONS = 5

NON_PROPERTY_ROUTES = {
    "VIEWING_REQUEST": "VIEWING_REQUEST",
    "STATUS_FOLLOWUP": "FOLLOWUP_STATUS",
    "QNA_GENERAL": "QNA",
    "APPLICATION_PROCESS": "QNA",
}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number == number else None


def _flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "ja", "1"):
            return True
        if lowered in ("false", "no", "nein", "0"):
            return False
    return None


async def find_referenced_property(session, agent_id: str, entities: Dict[str, Any]) -> Optional[int]:
    url = _text(entities.get("property_url"))
    if url:
        match = (
            await session.exec(select(Property).where(Property.agent_id == agent_id, Property.url == url))
        ).first()
        if match:
            return match.id
    address = _text(entities.get("address"))
    if address:
        match = (
            await session.exec(
                select(Property)
                .where(Property.agent_id == agent_id, col(Property.street_address).ilike(f"%{address}%"))
                .limit(1)
            )
        ).first()
        if match:
            return match.id
    return None


async def search_properties(session, agent_id: str, entities: Dict[str, Any]) -> List[int]:
    statement = select(Property).where(Property.agent_id == agent_id)
    city = _text(entities.get("city"))
    if city:
        statement = statement.where(col(Property.city).ilike(f"%{city}%"))
    neighbourhood = _text(entities.get("neighbourhood"))
    if neighbourhood:
        statement = statement.where(col(Property.neighbourhood).ilike(f"%{neighbourhood}%"))
    max_price = _number(entities.get("budget_max", entities.get("max_price")))
    if max_price is not None:
        statement = statement.where(col(Property.price) <= max_price)
    min_rooms = _number(entities.get("rooms_min", entities.get("min_rooms")))
    if min_rooms is not None:
        statement = statement.where(col(Property.rooms) >= min_rooms)
    min_size = _number(entities.get("size_min_sqm", entities.get("min_size_sqm")))
    if min_size is not None:
        statement = statement.where(col(Property.size_sqm) >= min_size)
    furnished = _flag(entities.get("furnished"))
    if furnished is not None:
        statement = statement.where(Property.furnished == furnished)
    pets = _flag(entities.get("pets"))
    if pets is not None:
        statement = statement.where(Property.pets_allowed == pets)
    statement = statement.order_by(col(Property.price).asc()).limit(MAX_SUGGESTIONS)
    return [p.id for p in (await session.exec(statement)).all()]


class RouteResolveStage(Stage):
    name = "route_resolve"

    async def select_batch(self, limit: int):
        async with get_session() as session:
            rows = (
                await session.exec(
                    select(Message.id)
                    .where(Message.sender == "user", Message.status == "intent_done")
                    .order_by(Message.timestamp.asc())
                    .limit(limit)
                )
            ).all()
        return list(rows)

    async def process(self, item_id: int) -> ItemResult:
        async with get_session() as session:
            message = await session.get(Message, item_id)
            if not message or message.status != "intent_done":
                return ItemResult(item_id, "skipped")

            routed = (
                await session.exec(
                    select(MessageRoute).where(
                        MessageRoute.message_id == item_id, MessageRoute.prompt_version == ROUTE_VERSION
                    )
                )
            ).first()
            if routed:
                message.status = "route_resolved"
                session.add(message)
                await session.commit()
                return ItemResult(item_id, "already_routed", {"route": routed.route})

            intent_row = (
                await session.exec(
                    select(MessageIntent)
                    .where(MessageIntent.message_id == item_id)
                    .order_by(MessageIntent.created_at.desc())
                    .limit(1)
                )
            ).first()
            if not intent_row:
                message.status = "needs_human"
                session.add(message)
                await session.commit()
                return ItemResult(item_id, "needs_human", {"reason": "missing_intent"})

            intent = normalize_intent(intent_row.intent)
            entities = intent_row.entities or {}
            if intent == "SPAM_OR_IRRELEVANT":
                message.status = "ignored"
                session.add(message)
                await session.commit()
                return ItemResult(item_id, "ignored", {"reason": "spam"})

            state = await session.get(LeadPropertyState, message.lead_id)
            current_active = state.active_property_id if state else None

            route = "OTHER"
            reason = "default"
            active_property_id = current_active
            suggested: List[int] = []

            if intent == "PROPERTY_SPECIFIC":
                active_property_id = await find_referenced_property(session, message.agent_id, entities) or current_active
                if active_property_id:
                    route = "PROPERTY_SPECIFIC"
                    reason = "resolved_specific"
                else:
                    intent = "PROPERTY_SEARCH"
                    reason = "no_anchor_degrade_to_search"

            if intent == "PROPERTY_SEARCH":
                route = "PROPERTY_SEARCH"
                suggested = await search_properties(session, message.agent_id, entities)
                if suggested:
                    single = suggested[0] if len(suggested) == 1 else None
                    active_property_id = single or current_active
                    if state is None:
                        state = LeadPropertyState(lead_id=message.lead_id, agent_id=message.agent_id)
                    state.active_property_id = active_property_id
                    state.last_recommended_property_ids = suggested
                    state.updated_at = utcnow()
                    session.add(state)
                    reason = "matched_properties"
                elif reason == "default":
                    reason = "no_property_match"

            if intent in NON_PROPERTY_ROUTES:
                route = NON_PROPERTY_ROUTES[intent]
                reason = "non_property_flow"

            session.add(
                MessageRoute(
                    message_id=message.id,
                    agent_id=message.agent_id,
                    lead_id=message.lead_id,
                    route=route,
                    confidence=intent_row.confidence,
                    reason=reason,
                    payload={
                        "intent": intent_row.intent,
                        "intent_normalized": intent,
                        "entities": entities,
                        "active_property_id": active_property_id,
                        "suggested_property_ids": suggested,
                    },
                    model="deterministic",
                    prompt_version=ROUTE_VERSION,
                )
            )
            message.status = "route_resolved"
            session.add(message)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return ItemResult(item_id, "already_routed")
        return ItemResult(
            item_id,
            "routed",
            {"route": route, "reason": reason, "active_property_id": active_property_id, "suggested_property_ids": suggested},
        )

    async def on_error(self, item_id: int, exc: Exception) -> None:
        async with get_session() as session:
            message = await session.get(Message, item_id)
            if message and message.status == "intent_done":
                message.status = "needs_human"
                session.add(message)
                await session.commit()
