"""Data schemas exchanged with the generation backend."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class MessageRole(str, Enum):
    """Author of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True)
class ChatMessage:
    """Conversation message."""

    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, str]:
        """Serialize the message for the chat endpoint."""
        role = self.role.value if isinstance(self.role, MessageRole) else str(self.role)
        return {"role": role, "content": self.content}


@dataclass(slots=True, frozen=True)
class OllamaModel:
    """Model advertised by the backend's tag listing."""

    name: str
    size_bytes: int = 0
    modified_at: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OllamaModel":
        try:
            size = int(payload.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        return cls(
            name=str(payload.get("name") or ""),
            size_bytes=size,
            modified_at=str(payload.get("modified_at") or ""),
        )


@dataclass(slots=True)
class TranscriptEvent:
    """Recognition result delivered by a speech recognizer."""

    text: str
    final: bool = False
    confidence: Optional[float] = None
