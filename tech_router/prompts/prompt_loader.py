# Role: Loads system prompts from text files (RoutingAgent.txt, <Technology>.txt). Fails soft:
# a missing or unreadable file yields a fixed fallback prompt, never an exception.

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Optional, Union

import tech_router.config as config

ROUTING_PROMPT_FILE = "RoutingAgent.txt"

DEFAULT_PROMPT = "You are a helpful AI assistant."
DEFAULT_ROUTING_PROMPT = "System: You are a helpful routing assistant. Error loading specific instructions."

# Technology names come from model output; only plain file stems are allowed.
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.\-]*$")


def technical_fallback_prompt(technology: str) -> str:
    return (
        f"System: Error loading specific instructions for {technology}. "
        "Provide general troubleshooting steps based on the technology name only."
    )


class PromptLoader:
    def __init__(self, prompts_dir: Optional[Union[str, Path]] = None) -> None:
        self.prompts_dir = Path(prompts_dir) if prompts_dir else config.prompts_dir()

    def load_prompt(self, path_or_name: Union[str, Path], fallback: str = DEFAULT_PROMPT) -> str:
        # 1) Resolve relative names against prompts_dir
        # 2) Read UTF-8 text
        # 3) Any failure -> fallback
        path = Path(path_or_name)
        if not path.is_absolute():
            path = self.prompts_dir / path

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            print(f"WARNING: could not load prompt {path}: {e}", file=sys.stderr)
            return fallback

        if not text.strip():
            print(f"WARNING: prompt file {path} is empty", file=sys.stderr)
            return fallback

        if config.DEBUG:
            print(f"PROMPT LOADED: {path} ({len(text)} chars)")
        return text

    def load_routing_prompt(self) -> str:
        return self.load_prompt(ROUTING_PROMPT_FILE, fallback=DEFAULT_ROUTING_PROMPT)

    def load_technical_prompt(self, technology: str) -> str:
        fallback = technical_fallback_prompt(technology)
        if not technology or not _SAFE_NAME.match(technology) or ".." in technology:
            print(f"WARNING: refusing to load prompt for technology {technology!r}", file=sys.stderr)
            return fallback
        return self.load_prompt(f"{technology}.txt", fallback=fallback)
