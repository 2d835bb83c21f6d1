"""
Append-only history archive.

Every message that leaves the live working set (folded into a summary,
evicted from the recent tail, or an oversized user turn) is written here
verbatim before it is dropped. The archive is only ever searched; it is never
replayed into the context automatically.
"""

import asyncio
import json
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Sequence

from langchain_core.messages import BaseMessage

from .state import ArchiveReason, HistoryArchiveEntry
from .store import conversation_dir
from .token_budget import TokenCounter, estimate_tokens

logger = logging.getLogger(__name__)


def matches(entry: HistoryArchiveEntry, query: str) -> bool:
    return query.lower() in entry.content.lower()


class HistoryArchive:
    """Interface for the per-conversation append-only log."""

    def __init__(self, token_counter: TokenCounter = estimate_tokens):
        self.token_counter = token_counter
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def make_entries(
        self, messages: Sequence[BaseMessage], reason: ArchiveReason
    ) -> list[HistoryArchiveEntry]:
        return [
            HistoryArchiveEntry.from_message(m, reason, self.token_counter)
            for m in messages
        ]

    async def append(
        self,
        conversation_id: str,
        messages: Sequence[BaseMessage],
        reason: ArchiveReason = ArchiveReason.FOLDED,
    ) -> list[HistoryArchiveEntry]:
        """Append messages in order. Returns the written entries."""
        if not messages:
            return []
        entries = self.make_entries(messages, reason)
        async with self._locks[conversation_id]:
            await self._write(conversation_id, entries)
        logger.info(
            "Archived %d message(s) for conversation %s (%s)",
            len(entries),
            conversation_id,
            reason.value,
        )
        return entries

    async def search(
        self, conversation_id: str, query: str
    ) -> list[HistoryArchiveEntry]:
        """Case-insensitive substring search, oldest first."""
        if not query or not query.strip():
            return []
        return await self._search(conversation_id, query)

    async def _write(
        self, conversation_id: str, entries: list[HistoryArchiveEntry]
    ) -> None:
        raise NotImplementedError

    async def _search(
        self, conversation_id: str, query: str
    ) -> list[HistoryArchiveEntry]:
        raise NotImplementedError


class InMemoryHistoryArchive(HistoryArchive):
    def __init__(self, token_counter: TokenCounter = estimate_tokens):
        super().__init__(token_counter)
        self._entries: defaultdict[str, list[HistoryArchiveEntry]] = defaultdict(list)

    async def _write(self, conversation_id, entries):
        self._entries[conversation_id].extend(entries)

    async def _search(self, conversation_id, query):
        return [e for e in self._entries.get(conversation_id, []) if matches(e, query)]


class JsonlHistoryArchive(HistoryArchive):
    """
    ``history.jsonl`` next to the conversation's state file, one entry per
    line. Lines are only ever appended; a line that cannot be parsed (for
    example a torn write after a crash) is skipped on read, and the next
    append starts on a fresh line so the torn tail never swallows it.
    """

    FILE_NAME = "history.jsonl"

    def __init__(
        self, storage_dir: str | Path, token_counter: TokenCounter = estimate_tokens
    ):
        super().__init__(token_counter)
        self.storage_dir = Path(storage_dir)

    def _path(self, conversation_id: str) -> Path:
        return conversation_dir(self.storage_dir, conversation_id) / self.FILE_NAME

    async def _write(self, conversation_id, entries):
        path = self._path(conversation_id)
        lines = "".join(
            json.dumps(e.to_dict(), ensure_ascii=False) + "\n" for e in entries
        ).encode("utf-8")
        await asyncio.to_thread(self._append_lines, path, lines)

    @staticmethod
    def _append_lines(path: Path, lines: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a+b") as f:
            if f.seek(0, os.SEEK_END) > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    lines = b"\n" + lines
            f.write(lines)
            f.flush()
            os.fsync(f.fileno())

    async def _search(self, conversation_id, query):
        path = self._path(conversation_id)
        entries = await asyncio.to_thread(self._read_entries, path)
        return [e for e in entries if matches(e, query)]

    @staticmethod
    def _read_entries(path: Path) -> list[HistoryArchiveEntry]:
        if not path.exists():
            return []
        entries = []
        with open(path, "rb") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line.decode("utf-8"))
                    entries.append(HistoryArchiveEntry.from_dict(record))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Skipping unreadable archive line %s:%d: %s", path, lineno, e)
        return entries
