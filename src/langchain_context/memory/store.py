"""
Conversation store: durable summary + recent messages per conversation.

Saves are atomic (write to a temp file in the same directory, then
``os.replace``). Loads fail open: a missing or unreadable state is reported
as "no prior state" so the conversation can continue, and the unreadable case
is logged because it means the previous state is gone.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .state import ConversationState

logger = logging.getLogger(__name__)


def conversation_dir(storage_dir: Path, conversation_id: str) -> Path:
    """Directory holding all files for one conversation."""
    if (
        not conversation_id
        or conversation_id in (".", "..")
        or "/" in conversation_id
        or "\\" in conversation_id
        or "\x00" in conversation_id
    ):
        raise ValueError(f"Invalid conversation id: {conversation_id!r}")
    return storage_dir / "conversations" / conversation_id


class ConversationStore:
    """Interface for conversation state persistence."""

    async def load(self, conversation_id: str) -> Optional[ConversationState]:
        raise NotImplementedError

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        raise NotImplementedError


class InMemoryConversationStore(ConversationStore):
    """Process-local store. Nothing survives a restart."""

    def __init__(self):
        self._states: dict[str, dict] = {}

    async def load(self, conversation_id: str) -> Optional[ConversationState]:
        data = self._states.get(conversation_id)
        if data is None:
            return None
        return ConversationState.from_dict(data)

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        # Snapshot so later mutation of ``state`` cannot leak into the store
        self._states[conversation_id] = state.to_dict()


class JsonFileConversationStore(ConversationStore):
    """
    One ``state.json`` per conversation under ``<storage_dir>/conversations``.
    """

    FILE_NAME = "state.json"

    def __init__(self, storage_dir: str | Path):
        self.storage_dir = Path(storage_dir)

    def _path(self, conversation_id: str) -> Path:
        return conversation_dir(self.storage_dir, conversation_id) / self.FILE_NAME

    async def load(self, conversation_id: str) -> Optional[ConversationState]:
        path = self._path(conversation_id)
        return await asyncio.to_thread(self._read, conversation_id, path)

    def _read(self, conversation_id: str, path: Path) -> Optional[ConversationState]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ConversationState.from_dict(data)
        except Exception as e:
            logger.warning(
                "Discarding unreadable state for conversation %s (%s): %s",
                conversation_id,
                path,
                e,
            )
            return None

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        path = self._path(conversation_id)
        payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write_atomic, path, payload)
        logger.debug(
            "Saved state for conversation %s (%d recent messages)",
            conversation_id,
            len(state.recent_messages),
        )

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
