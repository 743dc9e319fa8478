# Role: Process-wide FlowController shared by the HTTP routers. Tests override get_flow_controller
# through FastAPI's dependency_overrides.

from __future__ import annotations

from functools import lru_cache

from tech_router.core.flow_controller import FlowController


@lru_cache(maxsize=1)
def get_flow_controller() -> FlowController:
    return FlowController()
