"""Server side of the orchestration endpoint.

Prepends the supervisor prompt to the caller's history, forwards the
request to an upstream chat-completions gateway with ``stream: true``,
and relays the upstream event stream byte for byte.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from .models import ChatTurn

logger = logging.getLogger(__name__)

VOX_SYSTEM_PROMPT = """You are Vox, the supervisor of a small team of agents \
(Atlas the researcher, Nova the coder, Echo the copywriter, Sentinel the reviewer) \
working for a solo founder.

Break every request into 2-7 discrete, actionable tasks and ALWAYS include
exactly one JSON task list in your reply, on a single line:

{"tasks": [{"title": "Research competitor pricing", "description": "Analyze 3-5 similar products", "assignee": "vox"}, {"title": "Confirm target price point", "description": "Pick the pricing tier", "assignee": "human"}]}

Assignment rules:
- "vox": research, writing, coding, searching, analysis, drafting.
- "human": decisions, approvals, confirmations, purchases, account signups, any external action.

Order tasks by dependency, keep titles to short action phrases, and give each
task a one-line description. Human tasks block the automated work, so list
them as soon as they are needed."""


class GatewayError(RuntimeError):
    def __init__(self, message: str, *, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class OrchestratorGateway:
    def __init__(
        self,
        *,
        url: str,
        api_key: str,
        model: str,
        timeout_s: float = 60.0,
        client: httpx.AsyncClient | None = None,
        system_prompt: str = VOX_SYSTEM_PROMPT,
    ) -> None:
        self.url = url
        self.model = model
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._client = client
        self.system_prompt = system_prompt

    def request_body(self, messages: list[ChatTurn]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                *(turn.model_dump() for turn in messages),
            ],
            "stream": True,
        }

    async def open_stream(self, messages: list[ChatTurn]) -> AsyncIterator[bytes]:
        """Start the upstream stream; raise GatewayError before any byte is relayed."""
        if not self._api_key:
            raise GatewayError("VOX_GATEWAY_API_KEY is not configured")

        owned = self._client is None
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s))
        request = client.build_request(
            "POST",
            self.url,
            json=self.request_body(messages),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            if owned:
                await client.aclose()
            logger.error("gateway event=upstream_unreachable url=%s error=%s", self.url, exc)
            raise GatewayError("AI gateway unreachable") from exc

        if not response.is_success:
            raw = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            if owned:
                await client.aclose()
            raise _gateway_error(response.status_code, raw)

        logger.info("gateway event=stream_open model=%s turns=%d", self.model, len(messages))
        return self._relay(response, client if owned else None)

    @staticmethod
    async def _relay(
        response: httpx.Response, owned_client: httpx.AsyncClient | None
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_raw():
                yield chunk
        finally:
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()


def _gateway_error(status_code: int, raw: str) -> GatewayError:
    if status_code == 429:
        return GatewayError("Rate limits exceeded, please try again later.", status_code=429)
    if status_code == 402:
        return GatewayError(
            "Payment required, please add funds to your workspace.", status_code=402
        )
    logger.error("gateway event=upstream_error status=%d body=%s", status_code, raw[:400])
    return GatewayError("AI gateway error", status_code=500)
