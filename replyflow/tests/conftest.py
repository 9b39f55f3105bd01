import json
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from replyflow import db
from replyflow.config import STAGES, Settings
from replyflow.prompts import seed_default_prompts

INTERNAL_SECRET = "internal-test-secret"
JWT_SECRET = "jwt-test-secret"
AGENT_ID = "agent-1"


class FakeLLM:
    """Scripted stand-in for CompletionClient, one queue of answers per stage."""

    def __init__(self) -> None:
        self.answers: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def queue(self, stage: str, *answers: Any) -> "FakeLLM":
        for answer in answers:
            if isinstance(answer, dict):
                answer = json.dumps(answer)
            self.answers.setdefault(stage, []).append(answer)
        return self

    def deployment(self, stage: str) -> str:
        return f"{stage}-deployment"

    def calls_for(self, stage: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["stage"] == stage]

    async def complete(self, stage, *, system, user, temperature, max_tokens, json_mode=False):
        self.calls.append(
            {"stage": stage, "system": system, "user": user, "temperature": temperature, "json_mode": json_mode}
        )
        pending = self.answers.get(stage)
        if not pending:
            raise AssertionError(f"unexpected {stage} completion")
        answer = pending.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        internal_secret=INTERNAL_SECRET,
        jwt_secret=JWT_SECRET,
        llm_endpoint="https://example.openai.azure.com",
        llm_api_key="test-key",
        deployments={stage: f"{stage}-deployment" for stage in STAGES},
        llm_backoff_seconds=0.0,
        send_endpoint="https://mail.example.test/send",
        send_api_key="mail-key",
        scheduler_enabled=False,
    )


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    monkeypatch.setenv("SENTRY_DSN", "")
    engine = db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'replyflow_test.db'}")
    await db.init_db()
    async with db.get_session() as session:
        await seed_default_prompts(session)
    try:
        yield db
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def add(database):
    """Persist rows and return them with primary keys populated."""

    async def _add(*rows):
        async with db.get_session() as session:
            for row in rows:
                session.add(row)
            await session.commit()
            for row in rows:
                await session.refresh(row)
        return rows[0] if len(rows) == 1 else rows

    return _add


@pytest_asyncio.fixture
async def fetch(database):
    async def _fetch(model, key):
        async with db.get_session() as session:
            return await session.get(model, key)

    return _fetch
