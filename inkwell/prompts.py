"""Prompt templates for the journal assistant."""

from __future__ import annotations

SYSTEM_PROMPT = """You are a thoughtful journal assistant. You help the user reflect on their own journal entries, notice connections and patterns across them, and recall what they wrote.

Guidelines:
- Be warm and non-judgmental; these are private thoughts
- Ground statements about the past in the provided entries and cite them as [Entry: YYYY-MM-DD]
- If the entries do not contain the answer, say so instead of guessing
- Tailor your answer to the user's actual experiences, not generic advice"""

CONTEXT_TEMPLATE = """

## Journal Excerpts
The following excerpts were retrieved from the user's journal for this question:

{context}"""

NO_CONTEXT_NOTE = """

The journal was searched for this question but no matching excerpts were found. Say so if the answer depends on them."""

REFLECTION_PROMPT = """Decide whether answering the user's latest message requires searching their journal.

Today is {today}.

Choose "search" when the message asks about something the user did, felt, wrote or experienced in the past, or asks for patterns across their entries.
Choose "respond" for greetings, follow-ups answerable from the conversation so far, general questions, or requests about your previous reply.

When searching, extract a temporal constraint:
- "last week" -> {{"type": "relative", "days_ago": 7}}
- "past couple weeks", "recently" -> {{"type": "relative", "days_ago": 14}}
- "past month", "lately" -> {{"type": "relative", "days_ago": 30}}
- "yesterday" -> {{"type": "relative", "days_ago": 1}}
- "in March 2024" -> {{"type": "absolute", "start_date": "2024-03-01", "end_date": "2024-03-31"}}
- no time mentioned -> {{"type": "none"}}

Recent conversation:
{history}

Latest message:
{message}

Respond with ONLY a JSON object:
{{"action": "search", "temporal_constraint": {{...}}, "reasoning": "..."}}
or
{{"action": "respond", "reasoning": "..."}}"""

ENTRY_REFLECTION_PROMPT = """Please reflect on this journal entry from {date}.

Entry:
---
{content}
---

Focus on:
1. Main themes and emotions expressed
2. Patterns or connections to broader life contexts
3. Questions for deeper reflection
4. Positive developments or growth areas

Keep your reflection concise (2-3 paragraphs)."""

DAILY_SUMMARY_PROMPT = """Summarize this journal entry from {period}.

Entry:
---
{entries}
---

Write 2-3 sentences covering what happened, how the writer felt, and anything they resolved to do. Write in the second person ("You ...")."""

PERIOD_SUMMARY_PROMPT = """Summarize these journal entries from {period}.

{entries}

Write one short paragraph on the main themes, notable events and shifts in mood across the period. Cite specific days as [Entry: YYYY-MM-DD]. Write in the second person ("You ...")."""
