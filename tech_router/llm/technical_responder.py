# Role: One specialist call. Loads the technology's system prompt fresh for every call, projects the
# sub-conversation after the handoff, and streams the specialist's answer.

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import List, Optional

import tech_router.config as config
from tech_router.llm.errors import FormattingFailure, RequestFailed
from tech_router.llm.message_formatter import format_technical_messages
from tech_router.llm.streaming_client import ChunkCallback, CompletionClient
from tech_router.models.message import Message
from tech_router.models.state import ConversationState
from tech_router.prompts.prompt_loader import PromptLoader


def _consultation_history(state: ConversationState) -> List[Message]:
    # History from the handoff that opened the current consultation; earlier consultations with the
    # same specialist (before a regenerate or an error reset) are not replayed.
    history = state.conversation_history
    if state.handoff_message_id is None:
        return history
    index = next((i for i, m in enumerate(history) if m.id == state.handoff_message_id), None)
    if index is None:
        print(
            f"WARNING: handoff message {state.handoff_message_id} is no longer in history; using full history.",
            file=sys.stderr,
        )
        return history
    return history[index:]


@dataclass(frozen=True)
class TechnicalOutcome:
    text: str
    stopped: bool = False


class TechnicalResponder:
    def __init__(self, client: CompletionClient, prompt_loader: Optional[PromptLoader] = None) -> None:
        self.client = client
        self.prompt_loader = prompt_loader or PromptLoader()

    def respond(
        self,
        state: ConversationState,
        *,
        exclude_message_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> TechnicalOutcome:
        # 1) Load technical prompt (no cache across calls)
        # 2) Format technical messages (None -> hard stop)
        # 3) Stream completion; an empty answer is an error
        technology = state.identified_technology
        if not technology:
            raise FormattingFailure("No technology identified for technical agent.")

        technical_prompt = self.prompt_loader.load_technical_prompt(technology)

        messages = format_technical_messages(
            technical_prompt,
            state.original_user_query,
            state.routing_context_text,
            _consultation_history(state),
            exclude_message_id,
            technology,
        )
        if messages is None:
            raise FormattingFailure("Failed to format messages for technical agent.")

        text = self.client.send(
            messages,
            settings=state.settings,
            cancel_event=cancel_event,
            on_chunk=on_chunk,
        )

        if cancel_event is not None and cancel_event.is_set():
            return TechnicalOutcome(text=text, stopped=True)

        if not text or not text.strip():
            raise RequestFailed("Empty response received from API")

        if config.DEBUG:
            print(f"TECHNICAL RESPONSE ({technology}): {len(text)} chars")

        return TechnicalOutcome(text=text)
