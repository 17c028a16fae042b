"""Conversation memory -- ordered turns under a token budget.

Each turn costs len(content) // 4 + 10 estimated tokens (role overhead
included). When the running estimate exceeds the budget, turns are pruned
in pairs from position 1 so the seed turn survives and tool-call /
observation pairs stay aligned. Pruning never goes below 4 turns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

MIN_TURNS = 4


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class Turn:
    """Atomic memory unit. Immutable once created."""

    role: Role
    content: str

    @property
    def cost(self) -> int:
        return turn_cost(self.content)


def turn_cost(content: str) -> int:
    return len(content) // 4 + 10


class ConversationMemory:
    """Size-bounded turn sequence with deterministic pruning."""

    def __init__(self, max_tokens: int = 28000) -> None:
        self.max_tokens = max_tokens
        self._turns: list[Turn] = []
        self._estimate = 0

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def estimate(self) -> int:
        return self._estimate

    def add(self, turn: Turn) -> None:
        self._turns.append(turn)
        self._estimate += turn.cost
        self.prune()

    def add_user(self, content: str) -> None:
        self.add(Turn(Role.USER, content))

    def add_model(self, content: str) -> None:
        self.add(Turn(Role.MODEL, content))

    def prune(self) -> int:
        """Drop turn pairs at positions 1-2 until under budget. Returns turns removed."""
        removed = 0
        while self._estimate > self.max_tokens and len(self._turns) - 2 >= MIN_TURNS:
            pair = self._turns[1:3]
            del self._turns[1:3]
            self._estimate -= sum(t.cost for t in pair)
            removed += len(pair)
        if removed:
            logger.debug(
                "Pruned %d turns (estimate=%d, budget=%d, remaining=%d)",
                removed, self._estimate, self.max_tokens, len(self._turns),
            )
        return removed

    def recent(self, n: int) -> list[Turn]:
        if n <= 0:
            return []
        return list(self._turns[-n:])

    def all(self) -> list[Turn]:
        return list(self._turns)

    def clear(self) -> None:
        self._turns.clear()
        self._estimate = 0

    def load(self, turns: list[Turn]) -> None:
        """Replace contents with a restored turn sequence, then prune."""
        self.clear()
        for turn in turns:
            self._turns.append(turn)
            self._estimate += turn.cost
        self.prune()

    def recompute_estimate(self) -> int:
        return sum(t.cost for t in self._turns)

    def last_user_content(self) -> str | None:
        for turn in reversed(self._turns):
            if turn.role == Role.USER:
                return turn.content
        return None
