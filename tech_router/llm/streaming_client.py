# Role: Streaming wrapper around the chat-completion endpoint. Validates the turn order, posts the request,
# decodes the server-sent-event body incrementally, and reports the running text after every delta.
# Cancellation is a normal way to finish: the partial text comes back with a stop marker appended.

from __future__ import annotations

import codecs
import json
import os
import sys
import threading
from typing import Any, Callable, Optional, Protocol, Sequence

import requests

import tech_router.config as config
from tech_router.core.validator import MessageSequenceValidator
from tech_router.llm.errors import ProtocolViolation, RequestFailed
from tech_router.models.message import Message
from tech_router.models.settings import GenerationSettings

STOP_MARKER = "\n*(Generation stopped)*"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

ChunkCallback = Callable[[str], None]


class CancelSignal(threading.Event):
    """
    Cancellation event that also closes the attached in-flight response when set.

    A read blocked on a stalled stream is interrupted at once instead of waiting for the
    next chunk or the request timeout. A plain threading.Event still works as a cancel
    signal; it is only checked between chunks.
    """

    def __init__(self) -> None:
        super().__init__()
        self._response_lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    def attach(self, response: requests.Response) -> None:
        with self._response_lock:
            self._response = response
        if self.is_set():
            response.close()

    def detach(self) -> None:
        with self._response_lock:
            self._response = None

    def set(self) -> None:
        super().set()
        with self._response_lock:
            response = self._response
        if response is not None:
            response.close()


class CompletionClient(Protocol):
    def send(
        self,
        messages: Sequence[Message],
        *,
        settings: Optional[GenerationSettings] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str: ...


class StreamingCompletionClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        validator: Optional[MessageSequenceValidator] = None,
        timeout: float = 180.0,
    ) -> None:
        # Key lines:
        # - Secrets come from env (no secrets in code); a missing key fails the turn, not the import.
        # - session is injectable so tests never touch the network.
        self.api_key = api_key or os.getenv("DEEPSEEK_API_KEY")
        self.model = model or os.getenv("DEEPSEEK_MODEL", config.DEFAULT_MODEL)
        self.api_url = api_url or os.getenv("DEEPSEEK_API_URL", config.DEFAULT_API_URL)
        self.session = session or requests.Session()
        self.validator = validator or MessageSequenceValidator()
        self.timeout = timeout

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
        # 1) Validate/repair turn order, decide prefix mode
        # 2) POST with stream=True; map non-2xx to RequestFailed
        # 3) Decode SSE lines, accumulate deltas, call on_chunk(running_total)
        # 4) On cancellation: stop reading and return partial text + stop marker
        if not messages:
            raise ValueError("No messages to send to API")

        key = api_key or self.api_key
        if not key:
            raise RequestFailed("Missing DEEPSEEK_API_KEY in environment or .env")

        params = settings or GenerationSettings()
        validated = self.validator.validate(messages)

        prefix_mode = validated[-1].role == "assistant"

        first_turn = next((m for m in validated if m.role != "system"), None)
        if first_turn is not None and first_turn.role != "user":
            raise ProtocolViolation("First non-system message must be from user.")

        model_id = model or self.model
        body = {
            "model": config.MODEL_ALIASES.get(model_id, model_id),
            "messages": [m.to_api() for m in validated],
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "top_p": params.top_p,
            "stream": True,
            "prefix_mode": prefix_mode,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {key}",
        }

        if config.DEBUG:
            print("\n--- COMPLETION REQUEST ---")
            print("URL:", self.api_url)
            print("MODEL:", body["model"])
            print("PREFIX MODE:", prefix_mode)
            print("MESSAGES:", len(body["messages"]))
            print("--------------------------\n")

        if _cancelled(cancel_event):
            return STOP_MARKER.lstrip("\n")

        try:
            response = self.session.post(
                self.api_url,
                headers=headers,
                data=json.dumps(body),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            if _cancelled(cancel_event):
                return STOP_MARKER.lstrip("\n")
            raise RequestFailed(f"Request failed: {e}") from e

        if isinstance(cancel_event, CancelSignal):
            cancel_event.attach(response)
        try:
            if not response.ok:
                raise RequestFailed(_error_message(response), status_code=response.status_code)
            return self._read_stream(response, cancel_event, on_chunk)
        finally:
            if isinstance(cancel_event, CancelSignal):
                cancel_event.detach()
            response.close()

    def _read_stream(
        self,
        response: requests.Response,
        cancel_event: Optional[threading.Event],
        on_chunk: Optional[ChunkCallback],
    ) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        full_text = ""

        try:
            for chunk in response.iter_content(chunk_size=None):
                # Key line: cancellation is honoured once per read cycle.
                if _cancelled(cancel_event):
                    return full_text + STOP_MARKER

                buffer += decoder.decode(chunk)
                lines = buffer.split("\n")
                buffer = lines.pop()

                for line in lines:
                    delta = self._parse_event_line(line)
                    if delta:
                        full_text += delta
                        if on_chunk is not None:
                            on_chunk(full_text)

            buffer += decoder.decode(b"", final=True)
            delta = self._parse_event_line(buffer)
            if delta:
                full_text += delta
                if on_chunk is not None:
                    on_chunk(full_text)

        except requests.RequestException as e:
            if _cancelled(cancel_event):
                return full_text + STOP_MARKER
            raise RequestFailed(f"Error reading stream: {e}") from e
        except (OSError, ValueError, AttributeError):
            # Closing the response from another thread interrupts a blocked read.
            if _cancelled(cancel_event):
                return full_text + STOP_MARKER
            raise

        if _cancelled(cancel_event):
            return full_text + STOP_MARKER

        if config.DEBUG:
            print(f"STREAM COMPLETE: {len(full_text)} chars")
        return full_text

    def _parse_event_line(self, line: str) -> str:
        # Role: one SSE line -> content delta ("" for keep-alives, [DONE], and non-content events).
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return ""

        payload = line[len(DATA_PREFIX):]
        if payload.strip() == DONE_SENTINEL:
            return ""

        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            print(f"WARNING: skipping malformed stream event: {payload[:80]!r}", file=sys.stderr)
            return ""

        if not isinstance(event, dict):
            print(f"WARNING: skipping unexpected stream event: {payload[:80]!r}", file=sys.stderr)
            return ""

        choices = event.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""

        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _error_message(response: requests.Response) -> str:
    # Role: best-effort human-readable message from the provider's JSON error envelope.
    status = response.status_code
    try:
        data: Any = response.json()
    except ValueError:
        return f"API error {status}: {response.reason or 'Could not parse error details'}"

    error: Any = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return f"API error: {error.get('message') or json.dumps(error)}"
    if error:
        return f"API error: {error}"
    return f"API error {status}: {json.dumps(data)}"
