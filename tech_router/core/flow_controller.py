# tech_router/core/flow_controller.py
# Role: Orchestrator for one conversation turn. It owns the phase machine
# (routing -> technical_handoff -> technical_response) and glues together:
# state management, routing classification, the specialist call, error recovery, and persistence.

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import tech_router.config as config
from tech_router.core.state_manager import StateManager
from tech_router.llm.errors import ConversationBusy, FormattingFailure
from tech_router.llm.retry import RetryingCompletionClient
from tech_router.llm.routing_classifier import RoutingClassifier
from tech_router.llm.streaming_client import CancelSignal, ChunkCallback, CompletionClient, StreamingCompletionClient
from tech_router.llm.technical_responder import TechnicalResponder
from tech_router.models.message import Message, new_message_id
from tech_router.models.settings import GenerationSettings
from tech_router.models.state import ConversationState, Phase
from tech_router.prompts.prompt_loader import PromptLoader
from tech_router.storage.history_store import JsonHistoryStore

GREETING = "Hello! I'm your IT support assistant. How can I help you today?"

PhaseCallback = Callable[[Phase], None]


@dataclass(frozen=True)
class TurnResponse:
    session_id: str
    assistant_message: str
    phase: Phase
    identified_technology: Optional[str] = None
    phases: Tuple[Phase, ...] = ()
    routing_message: Optional[str] = None
    message_id: Optional[str] = None
    is_error: bool = False
    stopped: bool = False


class _TurnTrace:
    # Role: records phase transitions of one turn and forwards them to the caller's observer.
    def __init__(self, on_phase: Optional[PhaseCallback]) -> None:
        self.phases: List[Phase] = []
        self._on_phase = on_phase

    def enter(self, state: ConversationState, phase: Phase) -> None:
        state.phase = phase
        self.phases.append(phase)
        if config.DEBUG:
            print(f"PHASE [{state.session_id}]: {phase.value}")
        if self._on_phase is not None:
            self._on_phase(phase)


def _default_state_manager() -> StateManager:
    directory = config.history_dir()
    return StateManager(store=JsonHistoryStore(directory) if directory else None)


class FlowController:
    def __init__(
        self,
        state_manager: Optional[StateManager] = None,
        client: Optional[CompletionClient] = None,
        prompt_loader: Optional[PromptLoader] = None,
        routing_classifier: Optional[RoutingClassifier] = None,
        technical_responder: Optional[TechnicalResponder] = None,
    ) -> None:
        # Key line: dependencies are injectable for testing/mocking; the HTTP client is created lazily.
        self.state_manager = state_manager or _default_state_manager()
        self.prompt_loader = prompt_loader or PromptLoader()
        self._client = client
        self._routing_classifier = routing_classifier
        self._technical_responder = technical_responder
        self._routing_prompt: Optional[str] = None
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _get_client(self) -> CompletionClient:
        if self._client is None:
            client = StreamingCompletionClient()
            self._client = RetryingCompletionClient(client) if config.retry_enabled() else client
        return self._client

    @property
    def routing_classifier(self) -> RoutingClassifier:
        if self._routing_classifier is None:
            self._routing_classifier = RoutingClassifier(self._get_client())
        return self._routing_classifier

    @property
    def technical_responder(self) -> TechnicalResponder:
        if self._technical_responder is None:
            self._technical_responder = TechnicalResponder(self._get_client(), self.prompt_loader)
        return self._technical_responder

    @property
    def routing_prompt(self) -> str:
        # Key line: loaded once, constant for the controller's lifetime.
        if self._routing_prompt is None:
            self._routing_prompt = self.prompt_loader.load_routing_prompt()
        return self._routing_prompt

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def handle_turn(
        self,
        state: ConversationState,
        user_message: str,
        *,
        on_chunk: Optional[ChunkCallback] = None,
        on_phase: Optional[PhaseCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TurnResponse:
        # 1) Persist the user message
        # 2) technical_response -> follow-up to the same specialist (no routing call)
        # 3) otherwise -> fresh routing sequence for this query
        text = (user_message or "").strip()
        if not text:
            raise ValueError("user_message must be non-empty.")

        cancel = self._begin_generation(state, cancel_event)
        try:
            self._prepare(state)
            self.state_manager.add_message(state, Message(role="user", content=text, id=new_message_id("user")))
            self.state_manager.increment_turn(state)
            trace = _TurnTrace(on_phase)

            if state.phase == Phase.TECHNICAL_RESPONSE and state.identified_technology:
                # Key line: the follow-up becomes the one-shot query for this specialist call.
                state.original_user_query = text
                return self._execute_technical_phase(state, trace, cancel, on_chunk)

            state.reset_flow()
            state.original_user_query = text
            return self._execute_routing_phase(state, trace, cancel, on_chunk)
        finally:
            self._end_generation(state)

    def regenerate(
        self,
        state: ConversationState,
        message_id: Optional[str] = None,
        *,
        on_chunk: Optional[ChunkCallback] = None,
        on_phase: Optional[PhaseCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[TurnResponse]:
        # 1) Drop the whole assistant turn holding the target (router reply included) and everything after it
        # 2) Re-classify from the most recent remaining user message (always back to routing)
        target = self._find_regenerate_target(state, message_id)

        cancel = self._begin_generation(state, cancel_event)
        try:
            self._prepare(state)
            start = self._turn_start(state, target)
            removed = self.state_manager.truncate_from(state, start.id)
            if config.DEBUG:
                print(f"REGENERATE: removed {len(removed)} message(s) from {start.id}")

            last_user = next((m for m in reversed(state.conversation_history) if m.role == "user"), None)
            if last_user is None:
                print("WARNING: no user message left to regenerate from.", file=sys.stderr)
                state.reset_flow()
                return None

            state.reset_flow()
            state.original_user_query = last_user.content
            return self._execute_routing_phase(state, _TurnTrace(on_phase), cancel, on_chunk)
        finally:
            self._end_generation(state)

    def start_conversation(self, state: ConversationState) -> Message:
        # Role: new conversation with a greeting; the greeting never reaches the provider.
        self._ensure_idle(state)
        self.state_manager.clear_history(state)
        state.reset_flow()
        state.last_error = None
        greeting = Message(role="assistant", content=GREETING, id=new_message_id("greeting"), is_greeting=True)
        return self.state_manager.add_message(state, greeting)

    def clear(self, state: ConversationState) -> None:
        self._ensure_idle(state)
        self.state_manager.clear_history(state)
        state.reset_flow()
        state.last_error = None

    def stop(self, state: ConversationState) -> bool:
        # Role: cancel the in-flight generation for this session (if any).
        with self._lock:
            event = self._cancel_events.get(state.session_id)
            if event is None or not state.is_generating:
                return False
            event.set()
        if config.DEBUG:
            print(f"STOP requested for session {state.session_id}")
        return True

    def update_settings(self, state: ConversationState, settings: GenerationSettings) -> GenerationSettings:
        return self.state_manager.update_settings(state, settings)

    def reset_settings(self, state: ConversationState) -> GenerationSettings:
        return self.state_manager.update_settings(state, GenerationSettings())

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _execute_routing_phase(
        self,
        state: ConversationState,
        trace: _TurnTrace,
        cancel: threading.Event,
        on_chunk: Optional[ChunkCallback],
    ) -> TurnResponse:
        reply_id = new_message_id("router")
        trace.enter(state, Phase.ROUTING)
        state.last_error = None

        try:
            outcome = self.routing_classifier.classify(
                state,
                exclude_message_id=reply_id,
                cancel_event=cancel,
                on_chunk=on_chunk,
            )
        except Exception as e:
            return self._fail(state, trace, reply_id, e)

        if outcome.stopped:
            # Key line: a stopped routing reply is never parsed for a handoff.
            self._store_partial(state, reply_id, outcome.raw_text)
            return self._response(state, trace, outcome.raw_text, reply_id, stopped=True)

        decision = outcome.decision

        # Key line: raw text (with tag) is stored; the technical formatter finds the handoff by it.
        self.state_manager.add_message(
            state, Message(role="assistant", content=outcome.raw_text, id=reply_id)
        )

        if not decision.identified:
            return self._response(state, trace, decision.explanation, reply_id)

        state.identified_technology = decision.technology
        state.routing_context_text = decision.explanation
        state.handoff_message_id = reply_id
        trace.enter(state, Phase.TECHNICAL_HANDOFF)

        return self._execute_technical_phase(
            state, trace, cancel, on_chunk, routing_message=decision.explanation
        )

    def _execute_technical_phase(
        self,
        state: ConversationState,
        trace: _TurnTrace,
        cancel: threading.Event,
        on_chunk: Optional[ChunkCallback],
        routing_message: Optional[str] = None,
    ) -> TurnResponse:
        reply_id = new_message_id("tech")

        try:
            if not state.identified_technology or not state.original_user_query:
                raise FormattingFailure("Missing technology or original query for technical phase.")

            if config.DEBUG:
                print(f"Consulting {state.identified_technology} specialist...")

            outcome = self.technical_responder.respond(
                state,
                exclude_message_id=reply_id,
                cancel_event=cancel,
                on_chunk=on_chunk,
            )
        except Exception as e:
            return self._fail(state, trace, reply_id, e, routing_message=routing_message)
        finally:
            # Key line: one-shot token, consumed by this call whatever the outcome.
            state.original_user_query = None

        if outcome.stopped:
            self._store_partial(state, reply_id, outcome.text)
        else:
            self.state_manager.add_message(
                state, Message(role="assistant", content=outcome.text, id=reply_id)
            )

        # Key line: the specialist stays active for follow-ups until the next full reset.
        trace.enter(state, Phase.TECHNICAL_RESPONSE)
        return self._response(
            state, trace, outcome.text, reply_id, routing_message=routing_message, stopped=outcome.stopped
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        state: ConversationState,
        trace: _TurnTrace,
        reply_id: str,
        error: Exception,
        routing_message: Optional[str] = None,
    ) -> TurnResponse:
        # Role: every fatal outcome -> one flagged error message + full routing reset.
        detail = str(error) or error.__class__.__name__
        if config.DEBUG:
            print("\n!!! TURN ERROR !!!")
            print(repr(error))
            print("!!! END ERROR !!!\n")

        text = f"Error: {detail}"
        self.state_manager.add_message(
            state, Message(role="assistant", content=text, id=reply_id, is_error=True)
        )
        state.last_error = detail
        state.reset_flow()
        if not trace.phases or trace.phases[-1] != Phase.ROUTING:
            trace.phases.append(Phase.ROUTING)
        return self._response(state, trace, text, reply_id, routing_message=routing_message, is_error=True)

    def _store_partial(self, state: ConversationState, reply_id: str, text: str) -> None:
        self.state_manager.add_message(
            state, Message(role="assistant", content=text, id=reply_id, is_partial=True)
        )

    def _response(
        self,
        state: ConversationState,
        trace: _TurnTrace,
        text: str,
        reply_id: str,
        routing_message: Optional[str] = None,
        is_error: bool = False,
        stopped: bool = False,
    ) -> TurnResponse:
        return TurnResponse(
            session_id=state.session_id,
            assistant_message=text,
            phase=state.phase,
            identified_technology=state.identified_technology,
            phases=tuple(trace.phases),
            routing_message=routing_message,
            message_id=reply_id,
            is_error=is_error,
            stopped=stopped,
        )

    def _prepare(self, state: ConversationState) -> None:
        if not state.routing_prompt:
            state.routing_prompt = self.routing_prompt

    def _find_regenerate_target(self, state: ConversationState, message_id: Optional[str]) -> Message:
        if message_id is None:
            target = next(
                (m for m in reversed(state.conversation_history) if m.role == "assistant" and not m.is_greeting),
                None,
            )
            if target is None:
                raise ValueError("No assistant message to regenerate.")
            return target

        target = next((m for m in state.conversation_history if m.id == message_id), None)
        if target is None:
            raise KeyError(message_id)
        if target.role != "assistant" or target.is_greeting:
            raise ValueError("Cannot regenerate non-assistant message.")
        return target

    def _turn_start(self, state: ConversationState, target: Message) -> Message:
        # Consecutive assistant messages belong to one turn (router reply, then specialist answer).
        history = state.conversation_history
        index = next(i for i, m in enumerate(history) if m is target)
        while index > 0:
            previous = history[index - 1]
            if previous.role != "assistant" or previous.is_greeting or previous.id is None:
                break
            index -= 1
        return history[index]

    def _ensure_idle(self, state: ConversationState) -> None:
        if state.is_generating:
            raise ConversationBusy(f"A response is being generated for session {state.session_id}.")

    def _begin_generation(
        self, state: ConversationState, cancel_event: Optional[threading.Event]
    ) -> threading.Event:
        # Key line: single-flight per session; the check-and-set runs under the lock.
        with self._lock:
            if state.is_generating:
                raise ConversationBusy(f"A response is already being generated for session {state.session_id}.")
            state.is_generating = True
            event = cancel_event or CancelSignal()
            self._cancel_events[state.session_id] = event
        return event

    def _end_generation(self, state: ConversationState) -> None:
        with self._lock:
            state.is_generating = False
            self._cancel_events.pop(state.session_id, None)
