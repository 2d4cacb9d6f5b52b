"""Reflect -> search -> respond conversation loop over the journal."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from contextlib import aclosing
from enum import StrEnum
from typing import TYPE_CHECKING

from inkwell.chunking import chunk_text
from inkwell.constants import DEFAULT_MAX_HISTORY_TURNS, DEFAULT_TOP_K, MAX_CONTEXT_CHARS
from inkwell.errors import DecisionParseError, EmbeddingMismatchError, InferenceServiceError
from inkwell.models import ContextChunk, ConversationTurn, Message, SearchDecision, TurnInfo
from inkwell.prompts import CONTEXT_TEMPLATE, ENTRY_REFLECTION_PROMPT, NO_CONTEXT_NOTE, SYSTEM_PROMPT
from inkwell.reflection import RetrievalReflector
from inkwell.search import search

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from rich.console import Console

    from inkwell.embeddings import EmbeddingIndex
    from inkwell.models import RespondDirectly, SearchHit
    from inkwell.search import VectorIndex
    from inkwell.services.base import ChatBackend
    from inkwell.session import Session
    from inkwell.store import Vault

LOGGER = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


class ConversationState(StrEnum):
    """Where a conversation is within a turn."""

    AWAITING_INPUT = "awaiting_input"
    REFLECTING = "reflecting"
    SEARCHING = "searching"
    ASSEMBLING_CONTEXT = "assembling_context"
    RESPONDING_DIRECTLY = "responding_directly"
    STREAMING = "streaming"
    CLOSED = "closed"


def truncate_context(context: str, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Truncate context to fit within the budget while keeping complete chunks.

    Args:
        context: Context string with chunks separated by ``CONTEXT_SEPARATOR``.
        max_chars: Maximum characters to keep.

    Returns:
        Truncated context with complete chunks only.

    """
    if len(context) <= max_chars:
        return context

    chunks = context.split(CONTEXT_SEPARATOR)
    result = []
    total = 0

    for chunk in chunks:
        chunk_len = len(chunk) + len(CONTEXT_SEPARATOR)
        if total + chunk_len > max_chars:
            break
        result.append(chunk)
        total += chunk_len

    return CONTEXT_SEPARATOR.join(result)


def format_context(chunks: list[ContextChunk], max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Render chunks with date citations, best first, within ``max_chars``."""
    blocks = [f"[Entry: {chunk.date.isoformat()}]\n{chunk.text}" for chunk in chunks]
    return truncate_context(CONTEXT_SEPARATOR.join(blocks), max_chars)


class Conversation:
    """A bounded, in-memory conversation with journal retrieval.

    Each call to :meth:`respond` runs one turn: the reflector decides whether
    to search, matching entries are decrypted only on the search path, and
    the answer is streamed back. History is updated only when the stream
    completes.
    """

    def __init__(
        self,
        vault: Vault,
        embeddings: EmbeddingIndex,
        chat: ChatBackend,
        session: Session,
        *,
        reflector: RetrievalReflector | None = None,
        top_k: int = DEFAULT_TOP_K,
        max_turns: int = DEFAULT_MAX_HISTORY_TURNS,
        max_context_chars: int = MAX_CONTEXT_CHARS,
        today: Callable[[], dt.date] = dt.date.today,
        vector_index: VectorIndex | None = None,
    ) -> None:
        """Wire the collaborators for one conversation."""
        self.vault = vault
        self.embeddings = embeddings
        self.chat = chat
        self.session = session
        self.reflector = reflector or RetrievalReflector(chat)
        self.top_k = top_k
        self.max_turns = max_turns
        self.max_context_chars = max_context_chars
        self._today = today
        self._vector_index = vector_index
        self.history: list[ConversationTurn] = []
        self.state = ConversationState.AWAITING_INPUT
        self.last_turn: TurnInfo | None = None

    async def respond(self, message: str) -> AsyncIterator[str]:
        """Run one turn and yield the answer as it streams.

        Raises:
            DecisionParseError: The reflector output was unusable; history is unchanged.
            InferenceServiceError: The chat backend failed; history is unchanged.
            EmbeddingMismatchError: The stored embeddings do not match the query model.

        """
        if self.state is ConversationState.CLOSED:
            msg = "Conversation is closed"
            raise RuntimeError(msg)
        today = self._today()
        try:
            self.state = ConversationState.REFLECTING
            decision = await self.reflector.reflect(message, self.history, today=today)

            context: list[ContextChunk] = []
            searched = isinstance(decision, SearchDecision)
            if isinstance(decision, SearchDecision):
                self.state = ConversationState.SEARCHING
                hits = await self._search(message, decision, today)
                self.state = ConversationState.ASSEMBLING_CONTEXT
                context = self._assemble(hits)
            else:
                self.state = ConversationState.RESPONDING_DIRECTLY
            self.last_turn = TurnInfo(decision=decision, context=context)

            messages = self._build_messages(message, context, searched=searched)
            self.state = ConversationState.STREAMING
            parts: list[str] = []
            async with aclosing(self.chat.complete_stream(messages)) as stream:
                async for delta in stream:
                    parts.append(delta)
                    yield delta
            self._append(message, "".join(parts))
        finally:
            if self.state is not ConversationState.CLOSED:
                self.state = ConversationState.AWAITING_INPUT

    def close(self) -> None:
        """End the conversation and drop its history."""
        self.history.clear()
        self.state = ConversationState.CLOSED

    async def _search(
        self,
        message: str,
        decision: SearchDecision,
        today: dt.date,
    ) -> list[SearchHit]:
        try:
            query = await self.embeddings.embed_query(message)
        except InferenceServiceError as exc:
            LOGGER.warning("Could not embed the question; answering without journal context: %s", exc)
            return []
        hits = search(
            self.session,
            self.vault.index,
            query,
            self.top_k,
            decision.temporal_constraint,
            today,
            vector_index=self._vector_index,
        )
        LOGGER.info("Search returned %d chunk(s)", len(hits))
        return hits

    def _assemble(self, hits: list[SearchHit]) -> list[ContextChunk]:
        """Decrypt each owning entry once and re-slice the ranked chunks."""
        chunks_by_date: dict[dt.date, list[str]] = {}
        for date in dict.fromkeys(hit.date for hit in hits):
            entry = self.vault.read_entry(self.session, date)
            if entry is None:
                LOGGER.debug("Entry %s vanished before context assembly", date)
                continue
            chunks_by_date[date] = chunk_text(
                entry.content,
                self.embeddings.chunk_size,
                self.embeddings.chunk_overlap,
            )

        context = []
        for hit in hits:
            chunks = chunks_by_date.get(hit.date, [])
            if hit.chunk_index >= len(chunks):
                continue
            context.append(
                ContextChunk(
                    date=hit.date,
                    chunk_index=hit.chunk_index,
                    similarity=hit.similarity,
                    text=chunks[hit.chunk_index],
                ),
            )
        return context

    def _build_messages(
        self,
        message: str,
        context: list[ContextChunk],
        *,
        searched: bool,
    ) -> list[Message]:
        system = SYSTEM_PROMPT
        if context:
            system += CONTEXT_TEMPLATE.format(
                context=format_context(context, self.max_context_chars),
            )
        elif searched:
            system += NO_CONTEXT_NOTE
        return [
            Message(role="system", content=system),
            *(turn.to_message() for turn in self.history),
            Message(role="user", content=message),
        ]

    def _append(self, message: str, answer: str) -> None:
        self.history.append(ConversationTurn(role="user", content=message))
        self.history.append(ConversationTurn(role="assistant", content=answer))
        if len(self.history) > self.max_turns:
            del self.history[: len(self.history) - self.max_turns]


async def ask_once(
    vault: Vault,
    embeddings: EmbeddingIndex,
    chat: ChatBackend,
    session: Session,
    question: str,
    *,
    reflector: RetrievalReflector | None = None,
    top_k: int = DEFAULT_TOP_K,
    today: Callable[[], dt.date] = dt.date.today,
) -> AsyncIterator[str]:
    """Answer a single question without keeping any history."""
    conversation = Conversation(
        vault,
        embeddings,
        chat,
        session,
        reflector=reflector,
        top_k=top_k,
        today=today,
    )
    try:
        async with aclosing(conversation.respond(question)) as stream:
            async for delta in stream:
                yield delta
    finally:
        conversation.close()


async def reflect_on_entry(
    vault: Vault,
    chat: ChatBackend,
    session: Session,
    date: dt.date,
) -> str | None:
    """Ask the chat backend for a short reflection on one entry."""
    entry = vault.read_entry(session, date)
    if entry is None:
        return None
    LOGGER.info("Generating reflection for %s", date)
    return await chat.complete(
        [
            Message(role="system", content=SYSTEM_PROMPT),
            Message(
                role="user",
                content=ENTRY_REFLECTION_PROMPT.format(date=date.isoformat(), content=entry.content),
            ),
        ],
    )


async def run_chat(
    conversation: Conversation,
    console: Console,
    *,
    read_input: Callable[[], str] | None = None,
) -> None:
    """Interactive loop; ends on ``quit``, ``exit``, empty input or EOF."""
    read = read_input or (lambda: console.input("[bold cyan]you>[/bold cyan] "))
    try:
        while True:
            try:
                text = (await asyncio.to_thread(read)).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not text or text.lower() in {"quit", "exit"}:
                break
            console.print("[bold magenta]inkwell>[/bold magenta] ", end="")
            try:
                async for delta in conversation.respond(text):
                    console.print(delta, end="", markup=False, highlight=False)
            except DecisionParseError as exc:
                console.print(f"\n[yellow]Could not decide how to answer ({exc}). Please rephrase.[/yellow]")
                continue
            except InferenceServiceError as exc:
                console.print(f"\n[red]Inference backend error: {exc}[/red]")
                continue
            except EmbeddingMismatchError as exc:
                console.print(f"\n[red]{exc}[/red]")
                continue
            console.print()
            if conversation.last_turn is not None:
                turn = conversation.last_turn
                console.print(
                    f"[dim]({describe_decision(turn.decision)}, {len(turn.context)} excerpt(s))[/dim]",
                )
    finally:
        conversation.close()


def describe_decision(decision: SearchDecision | RespondDirectly) -> str:
    """One-line summary of a retrieval decision for display."""
    if isinstance(decision, SearchDecision):
        return f"search ({decision.temporal_constraint.type})"
    return "respond directly"
