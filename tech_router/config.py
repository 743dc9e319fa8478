# Role: Central configuration module. Loads .env into environment variables and computes runtime flags (DEBUG).
# Importers read tech_router.config.DEBUG to control tracing without threading flags through every call.

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

DEBUG: bool = False

DEFAULT_API_URL = "https://api.deepseek.com/v1/chat/completions"
DEFAULT_MODEL = "deepseek-reasoner"

# UI-facing model id -> model name sent on the wire.
MODEL_ALIASES: Dict[str, str] = {
    "deepseek-reasoner": "deepseek-reasoner",
    "deepseek-chat": "deepseek-chat",
}

DEFAULT_PROMPTS_DIR = Path(__file__).resolve().parent / "agent_techs"

MAX_HISTORY_MESSAGES = 100
STORAGE_PREFIX = "agent01_"


def _truthy(value: str) -> bool:
    return value.lower() in {"1", "true", "yes"}


def load_env() -> None:
    """
    Load .env into os.environ, then recompute DEBUG.
    This makes DEBUG correct even if load_env() is called after import.
    """
    global DEBUG
    load_dotenv()
    DEBUG = _truthy(os.getenv("DEBUG", "0"))


def retry_enabled() -> bool:
    return _truthy(os.getenv("LLM_RETRY_ENABLED", "0"))


def prompts_dir() -> Path:
    raw = os.getenv("PROMPTS_DIR")
    return Path(raw) if raw else DEFAULT_PROMPTS_DIR


def history_dir() -> Path | None:
    raw = os.getenv("HISTORY_DIR")
    return Path(raw) if raw else None
