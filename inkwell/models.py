"""Pydantic models for entries, retrieval decisions and results."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class Message(BaseModel):
    """Chat message for the inference backend."""

    role: Literal["system", "user", "assistant"]
    content: str


class ConversationTurn(BaseModel):
    """One user or assistant turn held in conversation history."""

    role: Literal["user", "assistant"]
    content: str

    def to_message(self) -> Message:
        """Convert to a backend message."""
        return Message(role=self.role, content=self.content)


# --- Temporal constraints ---


class NoConstraint(BaseModel):
    """Search the whole journal."""

    type: Literal["none"] = "none"

    def to_date_range(self, today: dt.date) -> tuple[dt.date, dt.date] | None:  # noqa: ARG002
        """No range: all dates match."""
        return None


class RelativeConstraint(BaseModel):
    """The last ``days_ago`` days, up to and including today."""

    type: Literal["relative"] = "relative"
    days_ago: int = Field(ge=0)

    def to_date_range(self, today: dt.date) -> tuple[dt.date, dt.date]:
        """Inclusive ``(today - days_ago, today)``."""
        return today - dt.timedelta(days=self.days_ago), today


class AbsoluteConstraint(BaseModel):
    """An explicit inclusive date range."""

    type: Literal["absolute"] = "absolute"
    start_date: dt.date
    end_date: dt.date

    @model_validator(mode="after")
    def _ordered(self) -> AbsoluteConstraint:
        if self.start_date > self.end_date:
            msg = f"start_date {self.start_date} is after end_date {self.end_date}"
            raise ValueError(msg)
        return self

    def to_date_range(self, today: dt.date) -> tuple[dt.date, dt.date]:  # noqa: ARG002
        """The stored range, independent of ``today``."""
        return self.start_date, self.end_date


TemporalConstraint = Annotated[
    NoConstraint | RelativeConstraint | AbsoluteConstraint,
    Field(discriminator="type"),
]


# --- Retrieval decisions ---


class SearchDecision(BaseModel):
    """Reflector verdict: search the journal before answering."""

    action: Literal["search"] = "search"
    temporal_constraint: TemporalConstraint = Field(default_factory=NoConstraint)
    reasoning: str = ""


class RespondDirectly(BaseModel):
    """Reflector verdict: answer without touching the journal."""

    action: Literal["respond"] = "respond"
    reasoning: str = ""


RetrievalDecision = Annotated[SearchDecision | RespondDirectly, Field(discriminator="action")]
DECISION_ADAPTER: TypeAdapter[SearchDecision | RespondDirectly] = TypeAdapter(RetrievalDecision)


def decision_json_schema() -> dict:
    """JSON schema handed to the chat backend for constrained output."""
    return DECISION_ADAPTER.json_schema()


# --- Storage results ---


class PlaintextEntry(BaseModel):
    """A decrypted journal entry."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    content: str
    checksum: str
    word_count: int
    updated_at: dt.datetime


class EntryRecord(BaseModel):
    """Metadata index row for one entry."""

    date: dt.date
    path: str
    checksum: str
    word_count: int
    updated_at: dt.datetime
    embedded_at: dt.datetime | None = None
    embedded_checksum: str | None = None

    @property
    def needs_embedding(self) -> bool:
        """Whether the chunk set is missing or derived from older content."""
        return self.embedded_at is None or self.embedded_checksum != self.checksum


class WriteResult(BaseModel):
    """Outcome of :meth:`inkwell.store.Vault.write_entry`."""

    date: dt.date
    checksum: str
    word_count: int
    changed: bool
    conflict: bool = False
    previous_checksum: str | None = None


class RefreshStatus(StrEnum):
    """What :meth:`EmbeddingIndex.refresh_embeddings` did."""

    EMBEDDED = "embedded"
    UNCHANGED = "unchanged"
    MISSING = "missing"


class RefreshResult(BaseModel):
    """Outcome of refreshing one entry's embeddings."""

    date: dt.date
    status: RefreshStatus
    chunks: int = 0


class ReindexReport(BaseModel):
    """Summary of a full reindex run."""

    total: int = 0
    embedded: int = 0
    failed: int = 0
    errors: dict[dt.date, str] = Field(default_factory=dict)
    duration: float = 0.0


# --- Search results ---


class SearchHit(BaseModel):
    """A ranked chunk reference."""

    date: dt.date
    chunk_index: int
    similarity: float


class ContextChunk(BaseModel):
    """A decrypted chunk selected as answer context."""

    date: dt.date
    chunk_index: int
    similarity: float
    text: str


class TurnInfo(BaseModel):
    """What the most recent conversation turn did."""

    decision: SearchDecision | RespondDirectly
    context: list[ContextChunk] = Field(default_factory=list)


# --- Summaries and patterns ---


class SummaryLevel(StrEnum):
    """Granularity of a generated summary."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def period(self, date: dt.date) -> tuple[dt.date, dt.date]:
        """Inclusive date range covered by the summary for ``date``.

        Weekly summaries cover the seven days ending on ``date``; monthly
        summaries cover the calendar month containing it.
        """
        if self is SummaryLevel.DAILY:
            return date, date
        if self is SummaryLevel.WEEKLY:
            return date - dt.timedelta(days=6), date
        first = date.replace(day=1)
        next_month = (first + dt.timedelta(days=32)).replace(day=1)
        return first, next_month - dt.timedelta(days=1)

    def period_key(self, date: dt.date) -> dt.date:
        """Date a summary is stored under: the day, the week's end, or the month's first day."""
        if self is SummaryLevel.MONTHLY:
            return date.replace(day=1)
        return date

    def describe(self, date: dt.date) -> str:
        """Human-readable period label."""
        if self is SummaryLevel.MONTHLY:
            return date.strftime("%B %Y")
        if self is SummaryLevel.WEEKLY:
            return f"Week ending {date.strftime('%b %d, %Y')}"
        return date.strftime("%b %d, %Y")


class Summary(BaseModel):
    """A decrypted summary of one period."""

    level: SummaryLevel
    period: dt.date
    content: str
    word_count: int
    source_checksum: str
    created_at: dt.datetime


class WritingPatterns(BaseModel):
    """When and how often the journal is written."""

    total_entries: int = 0
    first_date: dt.date | None = None
    last_date: dt.date | None = None
    day_distribution: dict[str, int] = Field(default_factory=dict)
    avg_gap_days: float = 0.0
    longest_gap_days: int = 0
    avg_words: float = 0.0
    observations: list[str] = Field(default_factory=list)
