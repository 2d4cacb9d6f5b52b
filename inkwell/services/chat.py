"""Chat client built on pydantic_ai against an OpenAI-compatible endpoint."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx
import openai
from pydantic_ai import Agent, NativeOutput, StructuredDict
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.messages import (
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from inkwell.constants import DEFAULT_CHAT_MODEL, DEFAULT_OPENAI_BASE_URL
from inkwell.errors import (
    InferenceConnectionError,
    InferenceServiceError,
    InferenceTimeoutError,
    MalformedResponseError,
    ModelUnavailableError,
)
from inkwell.services.base import ChatBackend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from pydantic_ai.models import Model

    from inkwell.models import Message

LOGGER = logging.getLogger(__name__)


def convert_messages(
    messages: list[Message],
) -> tuple[list[ModelRequest | ModelResponse], str]:
    """Split messages into pydantic_ai history and the final user prompt."""
    history: list[ModelRequest | ModelResponse] = []
    if not messages:
        return history, ""

    for m in messages[:-1]:
        if m.role == "system":
            history.append(ModelRequest(parts=[SystemPromptPart(content=m.content)]))
        elif m.role == "user":
            history.append(ModelRequest(parts=[UserPromptPart(content=m.content)]))
        elif m.role == "assistant":
            history.append(ModelResponse(parts=[TextPart(content=m.content)]))

    return history, messages[-1].content


class OpenAIChatService(ChatBackend):
    """Chat completions through pydantic_ai's OpenAI model."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        model: str = DEFAULT_CHAT_MODEL,
        api_key: str | None = None,
        chat_model: Model | None = None,
    ) -> None:
        """Initialize the service; ``chat_model`` overrides the OpenAI model."""
        super().__init__(model=model)
        if chat_model is None:
            provider = OpenAIProvider(base_url=base_url, api_key=api_key or "dummy")
            chat_model = OpenAIChatModel(model_name=model, provider=provider)
        self._chat_model = chat_model

    async def complete(
        self,
        messages: list[Message],
        *,
        json_schema: dict[str, Any] | None = None,
    ) -> str:
        """Run one completion; with ``json_schema`` the reply is a JSON document."""
        history, prompt = convert_messages(messages)
        if json_schema is None:
            agent: Agent[None, Any] = Agent(model=self._chat_model)
        else:
            agent = Agent(
                model=self._chat_model,
                output_type=NativeOutput(StructuredDict(json_schema, name="retrieval_decision")),
            )
        try:
            result = await agent.run(prompt, message_history=history)
        except Exception as exc:
            translated = self._translate(exc)
            if translated is exc:
                raise
            raise translated from exc
        if json_schema is None:
            return str(result.output)
        return json.dumps(result.output)

    async def complete_stream(self, messages: list[Message]) -> AsyncIterator[str]:
        """Stream the reply as text deltas."""
        history, prompt = convert_messages(messages)
        agent: Agent[None, str] = Agent(model=self._chat_model)
        try:
            async with agent.run_stream(prompt, message_history=history) as result:
                async for delta in result.stream_text(delta=True):
                    yield delta
        except Exception as exc:
            translated = self._translate(exc)
            if translated is exc:
                raise
            raise translated from exc

    def _translate(self, exc: Exception) -> Exception:
        """Map transport and pydantic_ai failures onto inkwell errors."""
        if isinstance(exc, ModelHTTPError):
            if exc.status_code == httpx.codes.NOT_FOUND:
                return ModelUnavailableError(self.model)
            return InferenceServiceError(f"Chat backend returned HTTP {exc.status_code}")
        if isinstance(exc, UnexpectedModelBehavior):
            return MalformedResponseError(f"Chat backend returned unusable output: {exc.message}")
        if isinstance(exc, openai.APITimeoutError | httpx.TimeoutException):
            return InferenceTimeoutError("Chat request timed out")
        if isinstance(exc, openai.APIConnectionError | httpx.ConnectError):
            return InferenceConnectionError("Cannot reach chat backend")
        if isinstance(exc, httpx.HTTPError):
            return InferenceServiceError(f"Chat request failed: {exc}")
        return exc
