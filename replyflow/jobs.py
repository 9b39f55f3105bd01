import logging
from typing import Dict, Optional, Sequence, Type

from replyflow import monitoring
from replyflow.agents.drafts import DraftStage
from replyflow.agents.followups import FollowupStage
from replyflow.agents.intent import IntentStage
from replyflow.agents.qa import QARecheckStage, QAStage
from replyflow.agents.rewrite import RewriteStage
from replyflow.agents.routing import RouteResolveStage
from replyflow.agents.sender import SendStage
from replyflow.config import Settings, get_settings
from replyflow.errors import ConfigurationError
from replyflow.llm.client import CompletionClient
from replyflow.orchestrator import Stage, StageReport

logger = logging.getLogger(__name__)

REPLY_STAGES: Sequence[Type[Stage]] = (
    IntentStage,
    RouteResolveStage,
    DraftStage,
    QAStage,
    RewriteStage,
    QARecheckStage,
)


def followup_stage(settings: Settings, llm) -> FollowupStage:
    sender = SendStage(settings, llm) if settings.send_endpoint else None
    return FollowupStage(settings, llm, sender=sender)


async def run_reply_pipeline(
    settings: Optional[Settings] = None,
    llm=None,
    limit: Optional[int] = None,
) -> Dict[str, dict]:
    """Run every reply stage once, in pipeline order.

    A stage that is not configured is skipped and reported; the remaining
    stages still run on whatever is already waiting for them.
    """
    settings = settings or get_settings()
    llm = llm or CompletionClient(settings)
    summary: Dict[str, dict] = {}
    for stage_cls in REPLY_STAGES:
        stage = stage_cls(settings, llm)
        try:
            report = await stage.run(limit or settings.batch_size)
        except ConfigurationError as exc:
            logger.warning("Skipping stage %s: %s", stage.name, exc)
            summary[stage.name] = {"ok": False, "error": str(exc)}
            continue
        except Exception as exc:  # pragma: no cover - store unavailable
            monitoring.capture_exception(exc)
            summary[stage.name] = {"ok": False, "error": str(exc)}
            continue
        summary[stage.name] = {"ok": True, "processed": report.processed}
    return summary


async def run_followups(settings: Optional[Settings] = None, llm=None, limit: Optional[int] = None) -> StageReport:
    settings = settings or get_settings()
    llm = llm or CompletionClient(settings)
    return await followup_stage(settings, llm).run(limit)


async def run_send(settings: Optional[Settings] = None, limit: Optional[int] = None) -> StageReport:
    settings = settings or get_settings()
    return await SendStage(settings).run(limit or settings.batch_size)


async def scheduled(job: str, settings: Optional[Settings] = None, llm=None) -> None:
    """Entry point for periodic triggers; never raises."""
    try:
        if job == "reply-pipeline":
            await run_reply_pipeline(settings, llm)
        elif job == "followups":
            await run_followups(settings, llm)
        elif job == "send":
            await run_send(settings)
        else:
            raise ValueError(f"Unknown job '{job}'")
    except ConfigurationError as exc:
        logger.warning("Job %s not configured: %s", job, exc)
    except Exception as exc:
        monitoring.capture_exception(exc)
