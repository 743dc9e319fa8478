# Role: Wire-protocol gatekeeper. Repairs a message list so the provider accepts it:
# the first non-system turn is from the user and user/assistant turns strictly alternate.
# Repairs only ever insert filler turns; nothing is dropped and the input list is never mutated.

from __future__ import annotations

import sys
from typing import List, Sequence

import tech_router.config as config
from tech_router.models.message import Message, Role

FIRST_TURN_FILLER = "Please assist me with this context."
USER_FILLER = "Please continue."
ASSISTANT_FILLER = "I understand. Let me assist with that."


class MessageSequenceValidator:
    def validate(self, messages: Sequence[Message]) -> List[Message]:
        # 1) Find first non-system message (none -> nothing to enforce)
        # 2) Ensure it is a user turn
        # 3) Insert opposite-role filler between any two same-role non-system turns
        result = list(messages)

        first = next((i for i, m in enumerate(result) if m.role != "system"), None)
        if first is None:
            return result

        repaired = False

        if result[first].role != "user":
            print(
                "WARNING: first non-system message must be from user; inserting filler turn.",
                file=sys.stderr,
            )
            result.insert(first, Message(role="user", content=FIRST_TURN_FILLER))
            repaired = True

        prev_role: Role = result[first].role
        i = first + 1
        while i < len(result):
            role = result[i].role
            if role == "system":
                i += 1
                continue

            if role == prev_role:
                print(
                    f"WARNING: consecutive {role} messages at position {i}; inserting filler turn.",
                    file=sys.stderr,
                )
                result.insert(i, _filler_for(role))
                repaired = True
                # Key line: skip the inserted filler; the current message now follows it.
                i += 1

            prev_role = role
            i += 1

        if repaired and config.DEBUG:
            print("\n--- REPAIRED MESSAGE SEQUENCE ---")
            for idx, m in enumerate(result):
                print(f"[{idx}] {m.role}: {m.content[:30]}...")
            print("---------------------------------\n")

        return result


def _filler_for(duplicated_role: Role) -> Message:
    if duplicated_role == "user":
        return Message(role="assistant", content=ASSISTANT_FILLER)
    return Message(role="user", content=USER_FILLER)
