"""Shared test fixtures and configuration."""

from __future__ import annotations

import contextlib
import hashlib
import io
import re
from typing import TYPE_CHECKING, Any

import pytest
from rich.console import Console

from inkwell.crypto import KdfParams
from inkwell.embeddings import EmbeddingIndex
from inkwell.errors import InferenceConnectionError
from inkwell.services.base import ChatBackend, EmbeddingBackend
from inkwell.store import Vault

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from inkwell.models import Message
    from inkwell.session import Session

PASSPHRASE = "correct horse battery staple"
EMBED_DIM = 32


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Set default timeout for all tests."""
    for item in items:
        with contextlib.suppress(AttributeError):
            item.add_marker(pytest.mark.timeout(3))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbedder(EmbeddingBackend):
    """Deterministic bag-of-words embeddings; texts containing a fail word raise."""

    def __init__(self) -> None:
        super().__init__(model="fake-embed")
        self.calls: list[str] = []
        self.fail_words: set[str] = set()

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        words = re.findall(r"\w+", text.lower())
        if self.fail_words.intersection(words):
            msg = "embedding backend unreachable"
            raise InferenceConnectionError(msg)
        vector = [0.0] * EMBED_DIM
        for word in words:
            slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % EMBED_DIM  # noqa: S324
            vector[slot] += 1.0
        return vector


class FakeChat(ChatBackend):
    """Scripted chat backend recording every call."""

    def __init__(self) -> None:
        super().__init__(model="fake-chat")
        self.decisions: list[str | Exception] = []
        self.replies: list[list[str]] = []
        self.complete_calls: list[tuple[list[Message], dict[str, Any] | None]] = []
        self.stream_calls: list[list[Message]] = []

    async def complete(
        self,
        messages: list[Message],
        *,
        json_schema: dict[str, Any] | None = None,
    ) -> str:
        self.complete_calls.append((messages, json_schema))
        decision = self.decisions.pop(0)
        if isinstance(decision, Exception):
            raise decision
        return decision

    async def complete_stream(self, messages: list[Message]) -> AsyncIterator[str]:
        self.stream_calls.append(messages)
        for delta in self.replies.pop(0) if self.replies else ["ok"]:
            yield delta


@pytest.fixture
def mock_console() -> Console:
    """Provide a console that writes to a StringIO for testing."""
    return Console(file=io.StringIO(), width=80, force_terminal=True)


@pytest.fixture
def fast_kdf() -> KdfParams:
    """Cheap scrypt parameters so unlocks stay fast in tests."""
    return KdfParams.generate(n=2**10, r=8, p=1)


@pytest.fixture
def clock() -> FakeClock:
    """Injectable session clock."""
    return FakeClock()


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    """Location of a fresh vault."""
    return tmp_path / "vault"


@pytest.fixture
def passphrase() -> str:
    """Passphrase used by the ``session`` fixture."""
    return PASSPHRASE


@pytest.fixture
def vault(vault_dir: Path, fast_kdf: KdfParams, clock: FakeClock) -> Vault:
    """An empty vault with a 30 minute session timeout."""
    return Vault(vault_dir, session_timeout=1800, clock=clock, kdf_params=fast_kdf)


@pytest.fixture
def session(vault: Vault) -> Session:
    """An unlocked session on ``vault``."""
    return vault.unlock(PASSPHRASE)


@pytest.fixture
def embedder() -> FakeEmbedder:
    """Deterministic embedding backend."""
    return FakeEmbedder()


@pytest.fixture
def chat() -> FakeChat:
    """Scripted chat backend."""
    return FakeChat()


@pytest.fixture
def embeddings(vault: Vault, embedder: FakeEmbedder) -> EmbeddingIndex:
    """Embedding index with small chunks so short texts split."""
    return EmbeddingIndex(vault, embedder, chunk_size=5, chunk_overlap=1)
