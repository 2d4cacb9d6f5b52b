"""Abstract base classes for inference services."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from inkwell.models import Message


class EmbeddingBackend(ABC):
    """Turns text into a fixed-dimension vector."""

    def __init__(self, *, model: str) -> None:
        """Initialize the embedding service."""
        self.model = model

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one piece of text."""
        ...


class ChatBackend(ABC):
    """Chat completion, either whole or streamed."""

    def __init__(self, *, model: str) -> None:
        """Initialize the chat service."""
        self.model = model

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        json_schema: dict[str, Any] | None = None,
    ) -> str:
        """Return the full reply, constrained to ``json_schema`` when given."""
        ...

    @abstractmethod
    def complete_stream(self, messages: list[Message]) -> AsyncIterator[str]:
        """Yield the reply as text increments."""
        ...
