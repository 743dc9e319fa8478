# Role: Single chat message schema for the conversation history. Stored on ConversationState and projected
# into request payloads (role + content only). Flags mark turns that must never reach the provider.

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]


def new_message_id(kind: str) -> str:
    return f"msg-{uuid.uuid4().hex[:12]}-{kind}"


class Message(BaseModel):
    role: Role
    content: str
    id: Optional[str] = None

    # Key lines: flagged turns stay in history for display but are filtered out of every request.
    is_greeting: bool = False
    is_error: bool = False
    is_partial: bool = False

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_api(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


ConversationHistory = List[Message]
