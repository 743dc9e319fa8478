# Role: Projects the mutable conversation history into the exact message list for one request.
# Two views: the routing agent sees the whole (filtered) dialog; the active specialist sees its own
# sub-conversation, starting from a fresh copy of the query and resuming after the handoff message.

from __future__ import annotations

import sys
from typing import List, Optional, Sequence

import tech_router.config as config
from tech_router.llm.response_parser import handoff_marker
from tech_router.models.message import Message, Role

DEFAULT_ROUTING_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_TECHNICAL_SYSTEM_PROMPT = "Provide detailed technical steps."


def _is_filtered(message: Message, exclude_message_id: Optional[str]) -> bool:
    # Placeholder, greeting, error and stopped turns never reach the provider.
    if exclude_message_id is not None and message.id == exclude_message_id:
        return True
    return message.is_greeting or message.is_error or message.is_partial


def format_routing_messages(
    routing_prompt: Optional[str],
    history: Sequence[Message],
    exclude_message_id: Optional[str] = None,
    fallback_query: Optional[str] = None,
) -> Optional[List[Message]]:
    """
    Build the routing request: system prompt + the dialog so far, ending on a user turn.

    Returns None when there is no user content anywhere; callers must not send a request then.
    """
    messages: List[Message] = []

    if routing_prompt:
        messages.append(Message(role="system", content=routing_prompt))
    else:
        print("WARNING: routing prompt not loaded; using default system prompt.", file=sys.stderr)
        messages.append(Message(role="system", content=DEFAULT_ROUTING_SYSTEM_PROMPT))

    user_messages = [
        m for m in history
        if m.role == "user" and (exclude_message_id is None or m.id != exclude_message_id)
    ]

    if not user_messages:
        if not fallback_query:
            print("WARNING: no user messages found for routing request.", file=sys.stderr)
            return None
        # Key line: early return with just system + user.
        messages.append(Message(role="user", content=fallback_query))
        return messages

    for message in history:
        if _is_filtered(message, exclude_message_id):
            continue
        if message.role in ("user", "assistant"):
            messages.append(Message(role=message.role, content=message.content))

    # A fresh routing request must end on the user turn, not request prefix continuation.
    if messages[-1].role == "assistant":
        messages.pop()
        if not any(m.role == "user" for m in messages):
            messages.append(Message(role="user", content=user_messages[-1].content))

    if config.DEBUG:
        print("\n--- ROUTING MESSAGES ---")
        for m in messages:
            print(f"{m.role}: {m.content[:70]}")
        print("------------------------\n")

    return messages


def format_technical_messages(
    technical_prompt: Optional[str],
    original_query: Optional[str],
    routing_context: Optional[str],
    history: Sequence[Message],
    exclude_message_id: Optional[str],
    identified_technology: str,
) -> Optional[List[Message]]:
    """
    Build the specialist request.

    Layout: system (prompt + routing context), user (original query), then every turn after the
    router's handoff message. Same-role neighbours are dropped, not repaired.
    """
    messages: List[Message] = []

    if technical_prompt:
        system_content = technical_prompt
    else:
        print("WARNING: technical prompt is missing; using default.", file=sys.stderr)
        system_content = DEFAULT_TECHNICAL_SYSTEM_PROMPT

    if routing_context:
        system_content += f"\n\nContext from routing agent: {routing_context}"
    messages.append(Message(role="system", content=system_content))

    if not original_query:
        print("WARNING: original user query is missing for technical request.", file=sys.stderr)
        return None

    # Key line: guarantees the first non-system turn is a user turn, whatever precedes it in history.
    messages.append(Message(role="user", content=original_query))

    marker = handoff_marker(identified_technology)
    boundary_found = False
    last_role: Role = "user"

    for message in history:
        if not boundary_found:
            # Skip everything up to and including the router's handoff message.
            if message.role == "assistant" and marker in message.content:
                boundary_found = True
            continue

        if message.role == "system" or _is_filtered(message, exclude_message_id):
            continue

        if message.role == "assistant" and marker in message.content:
            # A repeated handoff to the same specialist is a router turn, not part of the consultation.
            print("WARNING: skipping repeated handoff message after the boundary.", file=sys.stderr)
            continue

        if message.role == last_role:
            print(
                f"WARNING: dropping {message.role} turn with same role as previous: "
                f"{message.content[:50]!r}",
                file=sys.stderr,
            )
            continue

        messages.append(Message(role=message.role, content=message.content))
        last_role = message.role

    # A specialist request always ends on a user turn; a trailing assistant turn would request prefix mode.
    if len(messages) > 2 and messages[-1].role == "assistant":
        dropped = messages.pop()
        print(
            f"WARNING: dropping trailing assistant turn from technical request: {dropped.content[:50]!r}",
            file=sys.stderr,
        )

    if not boundary_found and history:
        print(
            f"WARNING: handoff message for {identified_technology!r} not found in history.",
            file=sys.stderr,
        )

    if config.DEBUG:
        print("\n--- TECHNICAL MESSAGES ---")
        for m in messages:
            suffix = "..." if len(m.content) > 70 else ""
            print(f"{m.role}: {m.content[:70]}{suffix}")
        print("--------------------------\n")

    return messages
