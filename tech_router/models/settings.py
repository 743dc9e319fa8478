# Role: Generation parameters sent with every completion request, plus retry policy data.
# Pydantic bounds reject out-of-range values coming from the API or persisted settings.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet

from pydantic import BaseModel, Field

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000
DEFAULT_TOP_P = 1.0

# Provider per-request maximum.
MAX_TOKENS_PER_REQUEST = 8000


class GenerationSettings(BaseModel):
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1, le=MAX_TOKENS_PER_REQUEST)
    top_p: float = Field(default=DEFAULT_TOP_P, ge=0.0, le=1.0)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    retriable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )
