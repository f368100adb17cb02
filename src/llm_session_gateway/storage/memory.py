from __future__ import annotations

from llm_session_gateway.models import ConversationRecord
from llm_session_gateway.storage.base import KeyedStore


class InMemoryStore(KeyedStore):
    """Process-local store. Records are copied in and out so callers never share state with it."""

    def __init__(self) -> None:
        self._items: dict[str, dict] = {}

    async def put(self, session_id: str, record: ConversationRecord) -> None:
        self._items[session_id] = record.to_item()

    async def get(self, session_id: str) -> ConversationRecord | None:
        item = self._items.get(session_id)
        if item is None:
            return None
        return ConversationRecord.from_item(session_id, item)

    async def delete(self, session_id: str) -> None:
        self._items.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._items)
