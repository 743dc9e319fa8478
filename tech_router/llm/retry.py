# Role: Optional retry wrapper around StreamingCompletionClient. Retries only RequestFailed errors whose
# HTTP status is in the policy's retriable set (rate limits, 5xx); never retries a cancelled call.

from __future__ import annotations

import sys
import threading
import time
from typing import Callable, Optional, Sequence

import tech_router.config as config
from tech_router.llm.errors import RequestFailed
from tech_router.llm.streaming_client import ChunkCallback, StreamingCompletionClient
from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings, RetryPolicy


class RetryingCompletionClient:
    def __init__(
        self,
        client: Optional[StreamingCompletionClient] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client or StreamingCompletionClient()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def send(
        self,
        messages: Sequence[Message],
        *,
        settings: Optional[GenerationSettings] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        attempt = 0
        while True:
            try:
                return self.client.send(
                    messages,
                    settings=settings,
                    api_key=api_key,
                    model=model,
                    cancel_event=cancel_event,
                    on_chunk=on_chunk,
                )
            except RequestFailed as e:
                if not self._should_retry(e, attempt, cancel_event):
                    raise
                attempt += 1
                delay = self.policy.retry_delay_seconds * attempt
                print(
                    f"WARNING: request failed with status {e.status_code}; "
                    f"retry {attempt}/{self.policy.max_retries} in {delay:.1f}s",
                    file=sys.stderr,
                )
                self._sleep(delay)

    def _should_retry(
        self,
        error: RequestFailed,
        attempt: int,
        cancel_event: Optional[threading.Event],
    ) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return False
        if attempt >= self.policy.max_retries:
            if config.DEBUG:
                print("RETRY: attempts exhausted:", error)
            return False
        return error.status_code in self.policy.retriable_status_codes
