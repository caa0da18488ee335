# backends.py
# Model backend adapters. The runner loop is written once against the
# ConversationBackend protocol; each backend only translates requests and
# replies.

import logging
from typing import Any, Protocol

import httpx
from openai import AsyncOpenAI, OpenAIError

from fixloop.errors import BackendError
from fixloop.models import BackendReply, ToolCallRequest, UsageEvent

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ConversationBackend(Protocol):
    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> BackendReply:
        """Send the conversation and tool declarations, return the next assistant message."""
        ...


class OpenAIBackend:
    """
    Chat-completions backend. Works with any OpenAI-compatible endpoint;
    defaults to OpenRouter.

    Example:
        backend = OpenAIBackend(api_key=os.getenv("OPENROUTER_API_KEY"))
        runner = AgentRunner(backend)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is not None:
            self._client = client
            return
        try:
            self._client = AsyncOpenAI(
                base_url=base_url,
                api_key=api_key,
                timeout=httpx.Timeout(timeout, connect=10.0),
                # Retries belong to the caller, not the transport.
                max_retries=0,
            )
        except OpenAIError as exc:
            raise BackendError(f"Could not create model client: {exc}") from exc

    async def complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> BackendReply:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                tools=tools,
            )
        except OpenAIError as exc:
            raise BackendError(f"Model call to '{model}' failed: {exc}") from exc

        if not response.choices:
            raise BackendError(f"Model '{model}' returned no choices")

        message = response.choices[0].message
        calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
        ]

        usage = None
        if response.usage is not None:
            usage = UsageEvent(
                model=response.model or model,
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )

        logger.debug("Model %s replied with %d tool call(s)", model, len(calls))
        return BackendReply(content=message.content, tool_calls=calls, usage=usage)
