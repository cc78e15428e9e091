"""
Data models for stored sessions and messages.
Rows come back from SQLite as dicts and are wrapped here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Session:
    """A named conversation thread."""
    id: str
    created_at: str

    @classmethod
    def from_row(cls, row: dict) -> "Session":
        return cls(id=row["id"], created_at=row["created_at"])


@dataclass(frozen=True)
class Message:
    """A single immutable message in a session."""
    id: int
    session_id: str
    role: Role
    content: str
    timestamp: str

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            role=Role(row["role"]),
            content=row["content"],
            timestamp=row["timestamp"],
        )

    def to_openai_format(self) -> dict:
        """Prompt entry in OpenAI messages array format."""
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
