from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime

ROLES = ("user", "assistant", "system")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass
class ChatMessage:
    role: str
    content: str
    token: int | None = None
    created: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_request(self) -> dict:
        return {"role": self.role, "content": self.content}

    def serialize(self) -> str:
        """Serialized form used for token accounting."""
        return json.dumps(self.to_request(), ensure_ascii=False)

    def to_dict(self) -> dict:
        data: dict = {"role": self.role, "content": self.content}
        if self.token is not None:
            data["token"] = self.token
        if self.created is not None:
            data["created"] = self.created
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ChatMessage:
        token = data.get("token")
        return cls(
            role=str(data["role"]),
            content=str(data.get("content") or ""),
            token=int(token) if token is not None else None,
            created=data.get("created"),
        )


@dataclass
class ConversationRecord:
    session_id: str
    created: str = field(default_factory=utc_now)
    last_update: str | None = None
    total_tokens: int = 0
    messages: list[ChatMessage] = field(default_factory=list)

    def to_item(self) -> dict:
        """Persisted form of the record, without the session key."""
        return {
            "created": self.created,
            "last_update": self.last_update,
            "total_tokens": self.total_tokens,
            "messages": [m.to_dict() for m in self.messages],
        }

    def to_dict(self) -> dict:
        return {"session_id": self.session_id, **self.to_item()}

    @classmethod
    def from_item(cls, session_id: str, item: dict) -> ConversationRecord:
        return cls(
            session_id=session_id,
            created=str(item["created"]),
            last_update=item.get("last_update"),
            total_tokens=max(0, int(item.get("total_tokens") or 0)),
            messages=[ChatMessage.from_dict(m) for m in item.get("messages") or []],
        )

    @classmethod
    def from_dict(cls, data: dict) -> ConversationRecord:
        return cls.from_item(str(data["session_id"]), data)

    def copy(self) -> ConversationRecord:
        return ConversationRecord.from_dict(self.to_dict())
