import asyncio
import logging
from typing import Dict, Optional, Tuple

import httpx
import openai
from openai import AsyncAzureOpenAI

from replyflow.config import Settings
from replyflow.errors import UpstreamError
from replyflow.retry import is_retryable_status, retry_async


logger = logging.getLogger("replyflow.llm")


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return is_retryable_status(exc.status_code)
    return False


class CompletionClient:
    """Chat completions against per-stage Azure OpenAI deployments."""

    def __init__(self, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._http_client = http_client
        self._clients: Dict[Tuple[str, str], AsyncAzureOpenAI] = {}

    def deployment(self, stage: str) -> str:
        return self.settings.llm_for(stage).deployment

    def _client(self, endpoint: str, api_key: str, api_version: str) -> AsyncAzureOpenAI:
        key = (endpoint, api_version)
        client = self._clients.get(key)
        if client is None:
            client = AsyncAzureOpenAI(
                azure_endpoint=endpoint,
                api_key=api_key,
                api_version=api_version,
                timeout=self.settings.llm_timeout_seconds,
                max_retries=0,
                http_client=self._http_client,
            )
            self._clients[key] = client
        return client

    async def complete(
        self,
        stage: str,
        *,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        """Run one completion for ``stage`` and return the message content.

        Raises:
            ConfigurationError: when the stage is not fully configured.
            UpstreamError: when the service fails after bounded retries or
                returns no content.
        """
        config = self.settings.llm_for(stage)
        client = self._client(config.endpoint, config.api_key, config.api_version)
        kwargs = {
            "model": config.deployment,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        async def _call():
            return await client.chat.completions.create(**kwargs)

        try:
            response = await retry_async(
                _call,
                retries=self.settings.llm_max_retries,
                timeout=self.settings.llm_timeout_seconds,
                should_retry=_should_retry,
                backoff_seconds=self.settings.llm_backoff_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamError("timeout") from exc
        except openai.APITimeoutError as exc:
            raise UpstreamError("timeout") from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError("network_error") from exc
        except openai.APIStatusError as exc:
            logger.warning("completion failed", extra={"llm": {"stage": stage, "status": exc.status_code}})
            raise UpstreamError(f"http_{exc.status_code}", status_code=exc.status_code) from exc

        content = ""
        if response.choices:
            content = (response.choices[0].message.content or "").strip()
        if not content:
            raise UpstreamError("no_output")
        return content
