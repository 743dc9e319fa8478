# Role: Per-session state container. Holds the routing/technical phase, the specialist picked by the router,
# the one-shot query token, and the conversation history the formatters project into requests.

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings


class Phase(str, Enum):
    ROUTING = "routing"
    TECHNICAL_HANDOFF = "technical_handoff"
    TECHNICAL_RESPONSE = "technical_response"


class ConversationState(BaseModel):
    session_id: str
    phase: Phase = Phase.ROUTING

    identified_technology: Optional[str] = None

    # Key line: the query currently being answered; cleared once a technical call consumes it.
    original_user_query: Optional[str] = None

    # Explanation from the router, appended to the specialist's system prompt.
    routing_context_text: Optional[str] = None

    # Router reply that opened the current consultation; the specialist only sees history from here on.
    handoff_message_id: Optional[str] = None

    routing_prompt: str = ""

    conversation_history: List[Message] = Field(default_factory=list)
    settings: GenerationSettings = Field(default_factory=GenerationSettings)

    # Key line: single-flight guard; a turn must finish before the next one starts.
    is_generating: bool = False
    last_error: Optional[str] = None

    turn_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def reset_flow(self) -> None:
        self.phase = Phase.ROUTING
        self.identified_technology = None
        self.original_user_query = None
        self.routing_context_text = None
        self.handoff_message_id = None
