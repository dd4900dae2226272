"""Bounded, in-process conversation history keyed by conversation id."""

import logging
from collections import deque
from typing import (
    Any,
    Deque,
    Dict,
    List,
)

from toolbridge.config import settings
from toolbridge.core.errors import NotFoundError
from toolbridge.core.schema import ConversationTurn

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Keep the newest ``max_turns`` turns of every conversation, oldest first.

    Appends never await, so a turn is recorded atomically with respect to other coroutines.
    """

    def __init__(self, max_turns: int | None = None) -> None:
        self.max_turns = max_turns if max_turns is not None else settings.MAX_CONTEXT_TURNS
        self._turns: Dict[str, Deque[ConversationTurn]] = {}

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._turns

    def append(self, conversation_id: str, turn: ConversationTurn) -> None:
        """Record *turn*; the oldest turn is evicted once the bound is reached."""
        history = self._turns.get(conversation_id)
        if history is None:
            history = self._turns[conversation_id] = deque(maxlen=self.max_turns)
        history.append(turn)

    def recent(self, conversation_id: str, count: int) -> List[ConversationTurn]:
        """Last *count* turns (empty for an unknown conversation)."""
        history = self._turns.get(conversation_id)
        if not history or count <= 0:
            return []
        return list(history)[-count:]

    def history(self, conversation_id: str) -> List[ConversationTurn]:
        """
        Full stored history.

        Raises
        ------
        NotFoundError
            If nothing was ever recorded for *conversation_id*.
        """
        if conversation_id not in self._turns:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return list(self._turns[conversation_id])

    def clear(self, conversation_id: str) -> bool:
        """Forget a conversation; returns whether it existed."""
        existed = self._turns.pop(conversation_id, None) is not None
        if existed:
            logger.info("Cleared conversation %s", conversation_id)
        return existed

    def summaries(self) -> List[Dict[str, Any]]:
        """One line per conversation: id, turn count and the last exchange."""
        out: List[Dict[str, Any]] = []
        for conversation_id, history in self._turns.items():
            last = history[-1] if history else None
            out.append(
                {
                    "conversationId": conversation_id,
                    "turns": len(history),
                    "lastMessage": last.user_message if last else None,
                    "lastActivity": last.timestamp.isoformat() if last else None,
                }
            )
        return out
