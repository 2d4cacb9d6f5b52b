"""Classify a conversational turn: search the journal or answer directly."""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from inkwell.constants import DEFAULT_REFLECTION_WINDOW
from inkwell.errors import DecisionParseError, MalformedResponseError
from inkwell.models import DECISION_ADAPTER, Message, decision_json_schema
from inkwell.prompts import REFLECTION_PROMPT

if TYPE_CHECKING:
    from inkwell.models import ConversationTurn, RespondDirectly, SearchDecision
    from inkwell.services.base import ChatBackend

LOGGER = logging.getLogger(__name__)


def parse_decision(raw: str) -> SearchDecision | RespondDirectly:
    """Parse backend output into a retrieval decision.

    Raises:
        DecisionParseError: ``raw`` is not JSON or does not match the schema.

    """
    try:
        return DECISION_ADAPTER.validate_json(raw.strip())
    except ValidationError as exc:
        msg = f"Invalid retrieval decision: {exc.error_count()} validation error(s)"
        raise DecisionParseError(msg, raw=raw) from exc


def _format_history(turns: list[ConversationTurn]) -> str:
    if not turns:
        return "(none)"
    return "\n".join(f"{turn.role}: {turn.content}" for turn in turns)


class RetrievalReflector:
    """Asks the chat backend whether a turn needs journal context."""

    def __init__(
        self,
        chat: ChatBackend,
        *,
        window: int = DEFAULT_REFLECTION_WINDOW,
    ) -> None:
        """``window`` is the number of prior turns shown to the model."""
        self.chat = chat
        self.window = window
        self._schema = decision_json_schema()

    async def reflect(
        self,
        message: str,
        history: list[ConversationTurn],
        *,
        today: dt.date | None = None,
    ) -> SearchDecision | RespondDirectly:
        """Classify ``message`` given the recent ``history``.

        Raises:
            DecisionParseError: The backend output is not a valid decision.
            InferenceServiceError: The backend could not be reached.

        """
        recent = history[-self.window :] if self.window > 0 else []
        prompt = REFLECTION_PROMPT.format(
            today=(today or dt.date.today()).isoformat(),
            history=_format_history(recent),
            message=message,
        )
        try:
            raw = await self.chat.complete(
                [Message(role="user", content=prompt)],
                json_schema=self._schema,
            )
        except MalformedResponseError as exc:
            msg = f"Reflection output was malformed: {exc}"
            raise DecisionParseError(msg) from exc
        decision = parse_decision(raw)
        LOGGER.info("Reflection decided to %s: %s", decision.action, decision.reasoning)
        return decision
