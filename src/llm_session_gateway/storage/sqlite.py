from __future__ import annotations

import asyncio
import json
import re
import sqlite3
from pathlib import Path
from typing import Any

from loguru import logger

from llm_session_gateway.models import ConversationRecord
from llm_session_gateway.storage.base import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROVISION_TIMEOUT_SECONDS,
    ProvisionedStore,
)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteStore(ProvisionedStore):
    """Relational backend: one row per session, messages kept as a JSON column."""

    def __init__(
        self,
        db_path: str,
        table: str = "chat",
        *,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._table = table
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        super().__init__(
            f"sqlite table {table}",
            provision_timeout=provision_timeout,
            poll_interval=poll_interval,
        )

    def build_table_schema(self) -> str:
        return f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                session_id TEXT PRIMARY KEY,
                created TEXT NOT NULL,
                last_update TEXT NULL,
                total_tokens INTEGER NOT NULL DEFAULT 0 CHECK (total_tokens >= 0),
                messages_json TEXT NOT NULL DEFAULT '[]'
            )
        """

    async def resource_exists(self) -> bool:
        row = await self._run(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (self._table,),
            fetch="one",
        )
        return row is not None

    async def create_resource(self) -> None:
        await self._run(self.build_table_schema(), commit=True)

    async def resource_ready(self) -> bool:
        return await self.resource_exists()

    async def put(self, session_id: str, record: ConversationRecord) -> None:
        await self.ready()
        item = record.to_item()
        await self._run(
            f"""
            INSERT INTO {self._table} (session_id, created, last_update, total_tokens, messages_json)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                last_update = excluded.last_update,
                total_tokens = excluded.total_tokens,
                messages_json = excluded.messages_json
            """,
            (
                session_id,
                item["created"],
                item["last_update"],
                item["total_tokens"],
                json.dumps(item["messages"], ensure_ascii=False),
            ),
            commit=True,
        )
        logger.debug(f"Stored session {session_id} ({len(record.messages)} messages)")

    async def get(self, session_id: str) -> ConversationRecord | None:
        await self.ready()
        row = await self._run(
            f"SELECT * FROM {self._table} WHERE session_id = ? LIMIT 1",
            (session_id,),
            fetch="one",
        )
        if row is None:
            return None
        return ConversationRecord.from_item(
            session_id,
            {
                "created": row["created"],
                "last_update": row["last_update"],
                "total_tokens": row["total_tokens"],
                "messages": json.loads(row["messages_json"]),
            },
        )

    async def delete(self, session_id: str) -> None:
        await self.ready()
        await self._run(
            f"DELETE FROM {self._table} WHERE session_id = ?",
            (session_id,),
            commit=True,
        )

    async def close(self) -> None:
        await super().close()
        self._conn.close()

    async def _run(
        self,
        query: str,
        params: tuple[Any, ...] = (),
        *,
        fetch: str | None = None,
        commit: bool = False,
    ) -> Any:
        async with self._lock:
            return await asyncio.to_thread(self._execute, query, params, fetch, commit)

    def _execute(self, query: str, params: tuple[Any, ...], fetch: str | None, commit: bool) -> Any:
        try:
            cursor = self._conn.execute(query, params)
            result = cursor.fetchone() if fetch == "one" else None
            if commit:
                self._conn.commit()
            return result
        except Exception:
            self._conn.rollback()
            raise
