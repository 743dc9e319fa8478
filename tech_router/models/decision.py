# Role: Small typed contract for routing. RoutingDecision is the output of ResponseParser and drives the
# FlowController: hand off to a specialist, or surface a scoping question / plain reply and wait for the user.

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    identified: bool
    technology: Optional[str] = None
    explanation: str
    is_scoping_question: bool = False
    tag_attempted: bool = False

    @model_validator(mode="after")
    def _check_technology(self):
        # identified requires a technology name
        if self.identified and not self.technology:
            raise ValueError("technology is required when identified=True")

        # Non-handoff decisions must not carry a technology
        if not self.identified and self.technology is not None:
            raise ValueError("technology must be None unless identified=True")

        if self.identified and self.is_scoping_question:
            raise ValueError("a decision cannot be both a handoff and a scoping question")

        return self
