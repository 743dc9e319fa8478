# Role: Turns the routing agent's raw text into a RoutingDecision using the bracket-tag protocol
# ([TECH_IDENTIFIED: <Name>] / [SCOPING_QUESTION]). The whole tag grammar lives here so the state machine
# never looks at raw text. A missing or garbled tag degrades to a plain conversational reply.

from __future__ import annotations

from typing import Any

import tech_router.config as config
from tech_router.models.decision import RoutingDecision

TECH_TAG_PREFIX = "[TECH_IDENTIFIED:"
TECH_TAG_SUFFIX = "]"
SCOPE_TAG = "[SCOPING_QUESTION]"

EMPTY_RESPONSE_TEXT = "Error: Empty response received."
SCOPING_FALLBACK_TEXT = "Please provide more details."


def handoff_marker(technology: str) -> str:
    # Key line: the exact substring FlowController stores and the technical formatter searches for.
    return f"{TECH_TAG_PREFIX} {technology}{TECH_TAG_SUFFIX}"


class ResponseParser:
    """
    Parser for the routing agent's tagged replies.

    Contract:
    - The router's system prompt asks for one of two tags at the very start of the reply.
    - Matching happens on the trimmed text; when no tag applies, the explanation is the
      original untrimmed text.
    - Never raises.
    """

    def parse(self, text: Any) -> RoutingDecision:
        if not isinstance(text, str) or not text.strip():
            return RoutingDecision(identified=False, explanation=EMPTY_RESPONSE_TEXT)

        trimmed = text.strip()

        if trimmed.startswith(TECH_TAG_PREFIX):
            decision = self._parse_tech_tag(trimmed)
            if decision is not None:
                return decision

            if config.DEBUG:
                print("ROUTING PARSER: malformed TECH_IDENTIFIED tag, treating as plain text")
            return RoutingDecision(identified=False, explanation=text, tag_attempted=True)

        if trimmed.startswith(SCOPE_TAG):
            question = trimmed[len(SCOPE_TAG):].strip()
            return RoutingDecision(
                identified=False,
                explanation=question or SCOPING_FALLBACK_TEXT,
                is_scoping_question=True,
                tag_attempted=True,
            )

        return RoutingDecision(identified=False, explanation=text)

    def _parse_tech_tag(self, trimmed: str) -> RoutingDecision | None:
        # 1) Find ']' after the prefix
        # 2) Name between prefix and ']' must be non-empty after trimming
        # 3) Remainder is the explanation (or a synthesized one)
        start = len(TECH_TAG_PREFIX)
        end = trimmed.find(TECH_TAG_SUFFIX, start)
        if end == -1:
            return None

        name = trimmed[start:end].strip()
        if not name:
            return None

        explanation = trimmed[end + len(TECH_TAG_SUFFIX):].strip()
        return RoutingDecision(
            identified=True,
            technology=name,
            explanation=explanation or f"Identified technology: {name}. Preparing detailed information...",
            tag_attempted=True,
        )
