"""Embedding client for OpenAI-compatible ``/embeddings`` endpoints (Ollama included)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from inkwell.constants import (
    DEFAULT_EMBED_MODEL,
    DEFAULT_EMBED_RETRIES,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_REQUEST_TIMEOUT,
)
from inkwell.errors import (
    InferenceConnectionError,
    InferenceServiceError,
    InferenceTimeoutError,
    MalformedResponseError,
    ModelUnavailableError,
)
from inkwell.services.base import EmbeddingBackend

LOGGER = logging.getLogger(__name__)


class OpenAIEmbeddingService(EmbeddingBackend):
    """Embeds text through an OpenAI-compatible HTTP API.

    Connection failures are retried up to ``retries`` times; timeouts and
    HTTP errors are not retried.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        model: str = DEFAULT_EMBED_MODEL,
        api_key: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retries: int = DEFAULT_EMBED_RETRIES,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the service; pass ``client`` to share or mock the transport."""
        super().__init__(model=model)
        self.url = f"{base_url.rstrip('/')}/embeddings"
        self.retries = retries
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def embed(self, text: str) -> list[float]:
        """Embed ``text`` and return its vector."""
        response = await self._post({"model": self.model, "input": text})
        return _parse_embedding(response)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._client.post(self.url, json=payload)
            except httpx.ConnectError as exc:
                if attempt < self.retries:
                    attempt += 1
                    LOGGER.warning(
                        "Embedding service unreachable, retrying (%d/%d)",
                        attempt,
                        self.retries,
                    )
                    continue
                msg = f"Cannot reach embedding service at {self.url}"
                raise InferenceConnectionError(msg) from exc
            except httpx.TimeoutException as exc:
                msg = f"Embedding request to {self.url} timed out"
                raise InferenceTimeoutError(msg) from exc
            except httpx.HTTPError as exc:
                msg = f"Embedding request failed: {exc}"
                raise InferenceServiceError(msg) from exc
            break

        if response.status_code == httpx.codes.NOT_FOUND:
            raise ModelUnavailableError(self.model)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"Embedding service returned HTTP {response.status_code}"
            raise InferenceServiceError(msg) from exc
        return response


def _parse_embedding(response: httpx.Response) -> list[float]:
    try:
        data = response.json()
        vector = data["data"][0]["embedding"]
        result = [float(x) for x in vector]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        msg = "Embedding response did not contain a vector"
        raise MalformedResponseError(msg) from exc
    if not result:
        msg = "Embedding response contained an empty vector"
        raise MalformedResponseError(msg)
    return result
