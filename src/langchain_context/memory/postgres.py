"""
PostgreSQL backends for the conversation store and history archive.

Both take an already-open psycopg connection (autocommit, ``dict_row`` or
tuple rows both work). Blocking calls are pushed to a worker thread so the
event loop is never stalled by the database.
"""

import asyncio
import json
import logging
from typing import Optional

from .archive import HistoryArchive
from .state import ConversationState, HistoryArchiveEntry
from .store import ConversationStore
from .token_budget import TokenCounter, estimate_tokens

logger = logging.getLogger(__name__)


def _first(row, key: str):
    return row[key] if isinstance(row, dict) else row[0]


def _escape_like(query: str) -> str:
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresConversationStore(ConversationStore):
    """Conversation state in ``context_states`` (one row per conversation)."""

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._setup_table()

    def _setup_table(self):
        with self._pg_conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS context_states (
                    conversation_id TEXT PRIMARY KEY,
                    state JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)

    async def load(self, conversation_id: str) -> Optional[ConversationState]:
        return await asyncio.to_thread(self._load, conversation_id)

    def _load(self, conversation_id: str) -> Optional[ConversationState]:
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute(
                    "SELECT state FROM context_states WHERE conversation_id = %s",
                    (conversation_id,),
                )
                row = cur.fetchone()
            if not row:
                return None
            data = _first(row, "state")
            if isinstance(data, str):
                data = json.loads(data)
            return ConversationState.from_dict(data)
        except Exception as e:
            logger.warning(
                "Failed to load state for conversation %s: %s", conversation_id, e
            )
            return None

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        payload = json.dumps(state.to_dict(), ensure_ascii=False)
        await asyncio.to_thread(self._save, conversation_id, payload)

    def _save(self, conversation_id: str, payload: str) -> None:
        # A single upsert is atomic on its own
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO context_states (conversation_id, state, updated_at)
                VALUES (%s, %s::jsonb, now())
                ON CONFLICT (conversation_id) DO UPDATE SET
                    state = EXCLUDED.state,
                    updated_at = now()
                """,
                (conversation_id, payload),
            )


class PostgresHistoryArchive(HistoryArchive):
    """Archive entries in ``context_history``, ordered by a serial column."""

    def __init__(self, pg_conn, token_counter: TokenCounter = estimate_tokens):
        super().__init__(token_counter)
        self._pg_conn = pg_conn
        self._setup_table()

    def _setup_table(self):
        with self._pg_conn.cursor() as cur:
            cur.execute("""
                CREATE TABLE IF NOT EXISTS context_history (
                    seq BIGSERIAL PRIMARY KEY,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    tokens INT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    reason TEXT NOT NULL,
                    name TEXT,
                    tool_call_id TEXT
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_context_history_conversation
                ON context_history (conversation_id, seq)
            """)

    async def _write(self, conversation_id, entries):
        await asyncio.to_thread(self._insert, conversation_id, entries)

    def _insert(self, conversation_id: str, entries: list[HistoryArchiveEntry]):
        with self._pg_conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO context_history
                    (id, conversation_id, role, content, tokens, created_at,
                     reason, name, tool_call_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (
                        e.id,
                        conversation_id,
                        e.role,
                        e.content,
                        e.tokens,
                        e.created_at,
                        e.reason.value,
                        e.name,
                        e.tool_call_id,
                    )
                    for e in entries
                ],
            )

    async def _search(self, conversation_id, query):
        return await asyncio.to_thread(self._select, conversation_id, query)

    def _select(self, conversation_id: str, query: str) -> list[HistoryArchiveEntry]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, role, content, tokens, created_at, reason, name, tool_call_id
                FROM context_history
                WHERE conversation_id = %s AND content ILIKE %s ESCAPE '\\'
                ORDER BY seq
                """,
                (conversation_id, f"%{_escape_like(query)}%"),
            )
            rows = cur.fetchall()
        return [self._row_to_entry(r) for r in rows]

    @staticmethod
    def _row_to_entry(row) -> HistoryArchiveEntry:
        if not isinstance(row, dict):
            keys = ("id", "role", "content", "tokens", "created_at", "reason",
                    "name", "tool_call_id")
            row = dict(zip(keys, row))
        created_at = row["created_at"]
        if hasattr(created_at, "isoformat"):
            created_at = created_at.isoformat()
        return HistoryArchiveEntry.from_dict({**row, "created_at": created_at})
