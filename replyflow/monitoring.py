import logging
import os
import traceback
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from replyflow.db import RunHistory, get_session

_logger = logging.getLogger("replyflow")
_initialized = False


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_logging = LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
        sentry_sdk.init(
            dsn=dsn,
            integrations=[sentry_logging],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


async def record_run(
    *,
    stage: str,
    item_id: Optional[int],
    agent_id: Optional[str],
    outcome: Optional[str],
    success: bool,
    duration_ms: float,
    error_text: Optional[str] = None,
) -> None:
    entry = RunHistory(
        stage=stage,
        item_id=item_id,
        agent_id=agent_id,
        outcome=outcome,
        success=success,
        error_text=error_text[:1024] if error_text else None,
        duration_ms=duration_ms,
    )
    async with get_session() as session:
        session.add(entry)
        await session.commit()


def capture_exception(exc: BaseException) -> None:
    _logger.error("Exception captured", exc_info=exc)
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc)


def format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
