# Role: In-memory session store. Owns lifecycle of ConversationState objects:
# create/get by session_id, append and truncate history, enforce bounded history, persist, and clean up.

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import tech_router.config as config
from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings
from tech_router.models.state import ConversationState
from tech_router.storage.history_store import JsonHistoryStore


class StateManager:
    def __init__(
        self,
        max_history_messages: int = config.MAX_HISTORY_MESSAGES,
        session_ttl_minutes: int = 60,
        store: Optional[JsonHistoryStore] = None,
    ) -> None:
        self._states: Dict[str, ConversationState] = {}
        self._max_history_messages = max_history_messages
        self._ttl = timedelta(minutes=session_ttl_minutes)
        self.store = store

    def get_or_create(self, session_id: str) -> ConversationState:
        # Reuse existing state, restore from the store, or initialize a fresh one.
        state = self._states.get(session_id)
        if state is None:
            state = ConversationState(session_id=session_id)
            if self.store is not None:
                state.conversation_history = self.store.load_history(session_id)
                settings = self.store.load_settings(session_id)
                if settings is not None:
                    state.settings = settings
            self._states[session_id] = state
        return state

    def add_message(self, state: ConversationState, message: Message) -> Message:
        # 1) Append message
        # 2) Update last-seen timestamp
        # 3) Trim to last N messages, keeping the handoff of the active consultation
        # 4) Persist
        state.conversation_history.append(message)
        state.updated_at = datetime.now(timezone.utc)

        if len(state.conversation_history) > self._max_history_messages:
            state.conversation_history = self._trimmed(state)

        self._persist_history(state)
        return message

    def truncate_from(self, state: ConversationState, message_id: str) -> List[Message]:
        # Role: remove the message with this id and everything after it; returns what was removed.
        index = next(
            (i for i, m in enumerate(state.conversation_history) if m.id == message_id),
            None,
        )
        if index is None:
            return []

        removed = state.conversation_history[index:]
        state.conversation_history = state.conversation_history[:index]
        state.updated_at = datetime.now(timezone.utc)
        self._persist_history(state)
        return removed

    def clear_history(self, state: ConversationState) -> None:
        state.conversation_history = []
        state.updated_at = datetime.now(timezone.utc)
        self._persist_history(state)

    def update_settings(self, state: ConversationState, settings: GenerationSettings) -> GenerationSettings:
        state.settings = settings
        if self.store is not None:
            self.store.save_settings(state.session_id, settings)
        return settings

    def increment_turn(self, state: ConversationState) -> None:
        state.turn_count += 1
        state.updated_at = datetime.now(timezone.utc)

    def cleanup_expired(self) -> int:
        # Role: drop inactive sessions to avoid unbounded growth; in-flight sessions are kept.
        now = datetime.now(timezone.utc)
        to_delete = [
            sid for sid, st in self._states.items()
            if (now - st.updated_at) > self._ttl and not st.is_generating
        ]
        for sid in to_delete:
            del self._states[sid]
        return len(to_delete)

    def _trimmed(self, state: ConversationState) -> List[Message]:
        history = state.conversation_history
        kept = history[-self._max_history_messages :]
        pinned = state.handoff_message_id
        if pinned is None or self._max_history_messages < 2 or any(m.id == pinned for m in kept):
            return kept

        anchor = next((m for m in history if m.id == pinned), None)
        if anchor is None:
            return kept
        # Key line: the technical view starts from this message; losing it would drop the whole consultation.
        return [anchor] + history[-(self._max_history_messages - 1) :]

    def _persist_history(self, state: ConversationState) -> None:
        if self.store is not None:
            self.store.save_history(state.session_id, state.conversation_history)
