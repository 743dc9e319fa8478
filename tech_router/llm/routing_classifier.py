# Role: One routing call: format the dialog for the routing agent, stream the completion, and parse the
# tagged reply into a RoutingDecision. A cancelled call is reported as stopped and never parsed.

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

import tech_router.config as config
from tech_router.llm.errors import FormattingFailure
from tech_router.llm.message_formatter import format_routing_messages
from tech_router.llm.response_parser import ResponseParser
from tech_router.llm.streaming_client import ChunkCallback, CompletionClient
from tech_router.models.decision import RoutingDecision
from tech_router.models.state import ConversationState


@dataclass(frozen=True)
class RoutingOutcome:
    raw_text: str
    decision: Optional[RoutingDecision]
    stopped: bool = False


class RoutingClassifier:
    def __init__(self, client: CompletionClient, parser: Optional[ResponseParser] = None) -> None:
        self.client = client
        self.parser = parser or ResponseParser()

    def classify(
        self,
        state: ConversationState,
        *,
        exclude_message_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> RoutingOutcome:
        # 1) Format routing messages (None -> hard stop, no request)
        # 2) Stream completion
        # 3) Parse tags unless the user stopped generation
        messages = format_routing_messages(
            state.routing_prompt,
            state.conversation_history,
            exclude_message_id=exclude_message_id,
            fallback_query=state.original_user_query,
        )
        if messages is None:
            raise FormattingFailure("Failed to format messages for routing.")

        raw = self.client.send(
            messages,
            settings=state.settings,
            cancel_event=cancel_event,
            on_chunk=on_chunk,
        )

        if cancel_event is not None and cancel_event.is_set():
            return RoutingOutcome(raw_text=raw, decision=None, stopped=True)

        decision = self.parser.parse(raw)

        if config.DEBUG:
            print("\n--- ROUTING DECISION ---")
            print("RAW LLM OUTPUT:\n", raw)
            print("IDENTIFIED:", decision.identified, decision.technology)
            print("SCOPING QUESTION:", decision.is_scoping_question)
            print("------------------------\n")

        return RoutingOutcome(raw_text=raw, decision=decision)
