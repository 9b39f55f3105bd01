import json

import httpx
import pytest

from replyflow.errors import ConfigurationError, UpstreamError
from replyflow.llm.client import CompletionClient


def completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }


class Upstream:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0)
        return httpx.Response(status, json=body)


def client_for(settings, upstream) -> CompletionClient:
    return CompletionClient(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))


async def complete(client, stage="qa", json_mode=False):
    return await client.complete(
        stage, system="Du bist hilfreich.", user="Hallo", temperature=0.0, max_tokens=50, json_mode=json_mode
    )


async def test_completion_targets_stage_deployment(settings):
    upstream = Upstream((200, completion('  {"verdict": "pass"}  ')))

    content = await complete(client_for(settings, upstream), json_mode=True)

    assert content == '{"verdict": "pass"}'
    request = upstream.requests[0]
    assert "/openai/deployments/qa-deployment/chat/completions" in request.url.path
    body = json.loads(request.content)
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][0] == {"role": "system", "content": "Du bist hilfreich."}
    assert body["max_tokens"] == 50


async def test_rate_limit_is_retried(settings):
    upstream = Upstream((429, {"error": {"message": "slow down"}}), (200, completion("Hallo zurück")))

    content = await complete(client_for(settings, upstream))

    assert content == "Hallo zurück"
    assert len(upstream.requests) == 2


async def test_client_error_is_not_retried(settings):
    upstream = Upstream((400, {"error": {"message": "bad request"}}))

    with pytest.raises(UpstreamError) as excinfo:
        await complete(client_for(settings, upstream))

    assert (excinfo.value.reason, excinfo.value.status_code) == ("http_400", 400)
    assert len(upstream.requests) == 1


async def test_server_errors_exhaust_retries(settings):
    settings.llm_max_retries = 1
    upstream = Upstream((503, {"error": {}}), (503, {"error": {}}))

    with pytest.raises(UpstreamError, match="http_503"):
        await complete(client_for(settings, upstream))
    assert len(upstream.requests) == 2


async def test_empty_content_is_an_upstream_error(settings):
    upstream = Upstream((200, completion("   ")))

    with pytest.raises(UpstreamError, match="no_output"):
        await complete(client_for(settings, upstream))


async def test_unconfigured_stage_fails_before_any_request(settings):
    settings.deployments["rewrite"] = None
    upstream = Upstream()

    with pytest.raises(ConfigurationError, match="AZURE_OPENAI_DEPLOYMENT_REWRITE"):
        await complete(client_for(settings, upstream), stage="rewrite")
    assert upstream.requests == []
