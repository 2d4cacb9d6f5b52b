"""Temporal writing patterns: which days, how often, longest breaks."""

from __future__ import annotations

import calendar
import logging
from typing import TYPE_CHECKING

from inkwell.models import WritingPatterns

if TYPE_CHECKING:
    import datetime as dt

    from inkwell.models import EntryRecord
    from inkwell.session import Session
    from inkwell.store import Vault

LOGGER = logging.getLogger(__name__)

PREFERRED_DAY_SHARE = 0.3
FREQUENT_GAP_DAYS = 2
SPORADIC_GAP_DAYS = 7
LONG_BREAK_DAYS = 30


def analyze_patterns(records: list[EntryRecord]) -> WritingPatterns:
    """Compute writing patterns from index rows, without decrypting any entry."""
    if not records:
        return WritingPatterns(observations=["No entries found"])

    dates = sorted(record.date for record in records)
    total = len(dates)
    distribution = dict.fromkeys(calendar.day_name, 0)
    for date in dates:
        distribution[calendar.day_name[date.weekday()]] += 1

    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:], strict=False)]
    avg_gap = sum(gaps) / len(gaps) if gaps else 0.0
    longest_gap = max(gaps, default=0)

    observations = []
    day, count = max(distribution.items(), key=lambda item: item[1])
    if count / total > PREFERRED_DAY_SHARE:
        observations.append(f"You write most often on {day}s ({count / total * 100:.0f}% of entries)")

    if gaps:
        if avg_gap < FREQUENT_GAP_DAYS:
            observations.append(f"You write frequently - average {avg_gap:.1f} days between entries")
        elif avg_gap > SPORADIC_GAP_DAYS:
            observations.append(f"You write sporadically - average {avg_gap:.1f} days between entries")
        else:
            observations.append(f"You write regularly - average {avg_gap:.1f} days between entries")

    if longest_gap > LONG_BREAK_DAYS:
        observations.append(f"Longest break from journaling: {longest_gap} days")

    weekend = distribution["Saturday"] + distribution["Sunday"]
    weekday = total - weekend
    if weekend > weekday:
        observations.append(f"Weekend writer - {weekend / total * 100:.0f}% of entries on weekends")
    elif weekday > 2 * weekend:
        observations.append(f"Weekday writer - {weekday / total * 100:.0f}% of entries on weekdays")

    return WritingPatterns(
        total_entries=total,
        first_date=dates[0],
        last_date=dates[-1],
        day_distribution=distribution,
        avg_gap_days=avg_gap,
        longest_gap_days=longest_gap,
        avg_words=sum(record.word_count for record in records) / total,
        observations=observations,
    )


def detect_patterns(
    vault: Vault,
    session: Session,
    date_range: tuple[dt.date, dt.date] | None = None,
) -> WritingPatterns:
    """Writing patterns for the entries in ``date_range`` (all entries by default)."""
    records = vault.list_entries(session, date_range)
    LOGGER.info("Analyzing writing patterns over %d entries", len(records))
    return analyze_patterns(records)
