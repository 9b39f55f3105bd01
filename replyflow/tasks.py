import asyncio
import os
from typing import Optional

from celery import Celery

from replyflow.jobs import run_followups, run_reply_pipeline, run_send


def _get_broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL", "redis://localhost:6379/0")


celery_app = Celery(
    "replyflow",
    broker=_get_broker_url(),
    backend=os.getenv("CELERY_RESULT_BACKEND", _get_broker_url()),
)


@celery_app.task
def reply_pipeline_task(limit: Optional[int] = None) -> dict:
    return asyncio.run(run_reply_pipeline(limit=limit))


@celery_app.task
def followups_task(limit: Optional[int] = None) -> dict:
    return asyncio.run(run_followups(limit=limit)).to_dict()


@celery_app.task
def send_task(limit: Optional[int] = None) -> dict:
    return asyncio.run(run_send(limit=limit)).to_dict()
