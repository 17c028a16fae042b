"""Persisted conversations: one pretty-printed JSON document per id.

The Conversation record is written verbatim; listing reads every document
but returns metadata only, newest first.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, ValidationError

from zox.agent.memory import Role, Turn

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_CHARS = 50

Mode = Literal["chat", "turbo"]


def _now() -> datetime:
    return datetime.now(UTC)


class StoredTurn(BaseModel):
    role: Role
    content: str


class ConversationMeta(BaseModel):
    id: str
    title: str
    mode: Mode
    created_at: datetime
    updated_at: datetime
    turn_count: int


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str = DEFAULT_TITLE
    mode: Mode = "turbo"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    turns: list[StoredTurn] = Field(default_factory=list)

    def add_turn(self, role: Role, content: str) -> None:
        # Only the opening prompt names the conversation
        first_prompt = role == Role.USER and not any(t.role == Role.USER for t in self.turns)
        self.turns.append(StoredTurn(role=role, content=content))
        self.updated_at = _now()
        if first_prompt and self.title == DEFAULT_TITLE:
            self.title = derive_title(content)

    def to_turns(self) -> list[Turn]:
        return [Turn(t.role, t.content) for t in self.turns]

    def meta(self) -> ConversationMeta:
        return ConversationMeta(
            id=self.id,
            title=self.title,
            mode=self.mode,
            created_at=self.created_at,
            updated_at=self.updated_at,
            turn_count=len(self.turns),
        )


def derive_title(content: str) -> str:
    text = " ".join(content.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) > TITLE_CHARS:
        return text[:TITLE_CHARS] + "..."
    return text


class HistoryStore:
    """Conversation documents under a directory, keyed by id."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, conversation_id: str) -> Path:
        try:
            UUID(conversation_id)
        except (ValueError, TypeError):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}") from None
        return self.directory / f"{conversation_id}.json"

    async def save(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        data = conversation.model_dump_json(indent=2)

        def _write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(data, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def load(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)

        def _read() -> str | None:
            if not path.is_file():
                return None
            return path.read_text(encoding="utf-8")

        raw = await asyncio.to_thread(_read)
        if raw is None:
            return None
        return Conversation.model_validate_json(raw)

    async def list(self) -> list[ConversationMeta]:
        def _read_all() -> list[ConversationMeta]:
            if not self.directory.is_dir():
                return []
            metas = []
            for path in self.directory.glob("*.json"):
                try:
                    conversation = Conversation.model_validate_json(path.read_text(encoding="utf-8"))
                except (OSError, ValidationError) as e:
                    logger.warning("Skipping unreadable conversation %s: %s", path.name, e)
                    continue
                metas.append(conversation.meta())
            metas.sort(key=lambda m: m.updated_at, reverse=True)
            return metas

        return await asyncio.to_thread(_read_all)

    async def delete(self, conversation_id: str) -> bool:
        path = self._path(conversation_id)

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_unlink)
