# Role: FastAPI app bootstrap. Loads environment config early, registers the chat/state routers,
# and exposes discovery + health endpoints (which specialists are installed, is a key configured).

import os

from fastapi import FastAPI

import tech_router.config
tech_router.config.load_env()

from tech_router.api.chat import router as chat_router
from tech_router.api.state import router as state_router
from tech_router.prompts.prompt_loader import ROUTING_PROMPT_FILE

app = FastAPI(title="Tech Router API", version="0.1.0")
app.include_router(chat_router)
app.include_router(state_router)


def _installed_specialists() -> list[str]:
    # Every <Technology>.txt next to the routing prompt is a specialist the router may hand off to.
    directory = tech_router.config.prompts_dir()
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.txt") if p.name != ROUTING_PROMPT_FILE)


@app.get("/")
def root() -> dict:
    return {
        "message": "Tech Router API is running",
        "specialists": _installed_specialists(),
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
def health() -> dict:
    return {
        "status": "ok",
        "api_key_configured": bool(os.getenv("DEEPSEEK_API_KEY")),
    }
