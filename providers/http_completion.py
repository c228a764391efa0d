"""HTTP chat-completion provider (OpenRouter and compatible APIs).

Sends the agent's full trimmed history as one request and appends the
assistant reply to the conversation store on success. An empty reply is
an error, never a blank chat message.
"""

from __future__ import annotations

import asyncio
import json
import logging

import httpx

from config import ConfigurationError
from conversation import ConversationStore, Turn

from . import InvokeRequest, ProviderError

log = logging.getLogger(__name__)

# Upper bound on response body kept in error details
_DETAIL_LIMIT = 4000


class HttpCompletionProvider:
    kind = "http"

    def __init__(
        self,
        store: ConversationStore,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 120.0,
        retries: int = 2,
        retry_base_delay: float = 2.0,
        referer: str = "",
        title: str = "",
    ):
        self.store = store
        self.api_key = api_key
        self.url = base_url.rstrip("/") + "/chat/completions"
        self.timeout = timeout
        self.retries = max(0, retries)
        self.retry_base_delay = retry_base_delay
        self.referer = referer
        self.title = title
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    async def invoke(self, request: InvokeRequest) -> str:
        if not self.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY environment variable is not set")

        agent_id = request.agent_id
        async with self.store.lock(agent_id):
            if request.reset:
                self.store.reset(agent_id)
            self.store.append(agent_id, Turn("user", request.message))
            messages = [t.to_message() for t in self.store.get(agent_id)]

            log.info("OpenRouter request: model=%s, messages=%d", request.model, len(messages))
            text = await self._complete(request.model, messages)

            self.store.append(agent_id, Turn("assistant", text))
            return text

    async def _complete(self, model: str, messages: list[dict]) -> str:
        """POST with retries on transient failures."""
        for attempt in range(1 + self.retries):
            try:
                return await self._request(model, messages)
            except ProviderError as e:
                if not e.transient or attempt >= self.retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                log.warning("Transient provider error (%s), retry %d/%d in %.1fs",
                            e, attempt + 1, self.retries, delay)
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    async def _request(self, model: str, messages: list[dict]) -> str:
        client = await self._get_client()
        try:
            resp = await client.post(
                self.url,
                json={"model": model, "messages": messages},
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"OpenRouter request timed out: {e}",
                                code="timeout", transient=True) from e
        except httpx.TransportError as e:
            raise ProviderError(f"OpenRouter request failed: {e}",
                                code="transport", transient=True) from e

        status = resp.status_code
        if not 200 <= status < 300:
            body = resp.text[:_DETAIL_LIMIT]
            raise ProviderError(
                f"OpenRouter API error ({status}): {body}",
                status=status,
                detail=body,
                transient=status == 429 or status >= 500,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError("OpenRouter returned non-JSON response", status=status,
                                detail=resp.text[:_DETAIL_LIMIT]) from e
        if not isinstance(data, dict):
            raise ProviderError("OpenRouter returned unexpected payload", status=status,
                                detail=json.dumps(data)[:_DETAIL_LIMIT])

        error = data.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ProviderError(f"OpenRouter error: {message}", status=status, code=code,
                                detail=json.dumps(error)[:_DETAIL_LIMIT])

        text = _assistant_text(data)
        if not text:
            raise ProviderError("OpenRouter returned empty response", status=status,
                                code="empty_response",
                                detail=json.dumps(data)[:_DETAIL_LIMIT])
        return text


def _assistant_text(data: dict) -> str:
    """choices[0].message.content, or "" if absent or blank."""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        return ""
    return content
