"""Daily, weekly and monthly summaries of journal entries."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING

from inkwell.constants import MAX_CONTEXT_CHARS
from inkwell.conversation import CONTEXT_SEPARATOR, truncate_context
from inkwell.crypto import sha256_hex
from inkwell.models import Message, Summary, SummaryLevel
from inkwell.prompts import DAILY_SUMMARY_PROMPT, PERIOD_SUMMARY_PROMPT, SYSTEM_PROMPT
from inkwell.store import count_words

if TYPE_CHECKING:
    from inkwell.models import EntryRecord
    from inkwell.services.base import ChatBackend
    from inkwell.session import Session
    from inkwell.store import Vault

LOGGER = logging.getLogger(__name__)


def source_checksum(records: list[EntryRecord]) -> str:
    """Fingerprint of the entries a summary was generated from."""
    joined = "\n".join(f"{record.date.isoformat()}:{record.checksum}" for record in records)
    return sha256_hex(joined.encode("utf-8"))


async def summarize(
    vault: Vault,
    chat: ChatBackend,
    session: Session,
    level: SummaryLevel,
    date: dt.date,
    *,
    force: bool = False,
) -> Summary | None:
    """Summarize the entries in the period around ``date`` and store the result.

    A stored summary is returned unchanged when the entries it was generated
    from have not changed since, unless ``force`` is set.

    Args:
        vault: The unlocked journal.
        chat: Backend generating the summary text.
        session: Session holding the vault key.
        level: Daily, weekly (seven days ending on ``date``) or monthly.
        date: Any day inside the period.
        force: Regenerate even when the entries are unchanged.

    Returns:
        The summary, or ``None`` when the period has no entries.

    """
    start, end = level.period(date)
    period = level.period_key(date)
    records = vault.list_entries(session, (start, end))
    if not records:
        LOGGER.info("No entries between %s and %s; nothing to summarize", start, end)
        return None

    checksum = source_checksum(records)
    if not force:
        stored = vault.get_summary(session, level, period)
        if stored is not None and stored.source_checksum == checksum:
            LOGGER.debug("Reusing %s summary for %s", level, period)
            return stored

    blocks = []
    for record in records:
        entry = vault.read_entry(session, record.date)
        if entry is not None:
            blocks.append(f"[Entry: {entry.date.isoformat()}]\n{entry.content}")
    entries = truncate_context(CONTEXT_SEPARATOR.join(blocks), MAX_CONTEXT_CHARS)
    template = DAILY_SUMMARY_PROMPT if level is SummaryLevel.DAILY else PERIOD_SUMMARY_PROMPT

    LOGGER.info("Generating %s summary for %s from %d entries", level, period, len(records))
    content = await chat.complete(
        [
            Message(role="system", content=SYSTEM_PROMPT),
            Message(role="user", content=template.format(period=level.describe(period), entries=entries)),
        ],
    )
    content = content.strip()
    summary = Summary(
        level=level,
        period=period,
        content=content,
        word_count=count_words(content),
        source_checksum=checksum,
        created_at=dt.datetime.now(dt.UTC),
    )
    vault.save_summary(session, summary)
    return summary
