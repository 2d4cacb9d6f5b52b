"""Inference backends: embeddings and chat."""

from __future__ import annotations

from inkwell.services.base import ChatBackend, EmbeddingBackend
from inkwell.services.chat import OpenAIChatService
from inkwell.services.embedding import OpenAIEmbeddingService

__all__ = ["ChatBackend", "EmbeddingBackend", "OpenAIChatService", "OpenAIEmbeddingService"]
