# Role: Shared fakes for the test suite. Nothing here touches the network:
# FakeSession stands in for requests.Session, ScriptedClient for the completion client.

from __future__ import annotations

import json
from typing import Any, Callable, List, Optional, Union

import pytest

import tech_router.config as config
from tech_router.core.flow_controller import FlowController
from tech_router.core.state_manager import StateManager
from tech_router.models.message import Message
from tech_router.prompts.prompt_loader import PromptLoader


def sse_event(content: str) -> bytes:
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


class FakeResponse:
    def __init__(
        self,
        chunks: Optional[List[bytes]] = None,
        status_code: int = 200,
        body: Any = None,
        reason: str = "OK",
    ) -> None:
        self.chunks = chunks or []
        self.status_code = status_code
        self.body = body
        self.reason = reason
        self.closed = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size=None):
        for chunk in self.chunks:
            yield chunk

    def json(self):
        if isinstance(self.body, (dict, list)):
            return self.body
        raise ValueError("No JSON body")

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, response: Union[FakeResponse, Exception]) -> None:
        self.response = response
        self.calls: List[dict] = []

    def post(self, url, **kwargs):
        kwargs["url"] = url
        kwargs["json_body"] = json.loads(kwargs["data"])
        self.calls.append(kwargs)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


# A scripted reply is the text to return, an exception to raise, or a callable
# receiving the cancel event (used to simulate a user pressing stop mid-stream).
ScriptedReply = Union[str, Exception, Callable[[Any], str]]


class ScriptedClient:
    def __init__(self, *replies: ScriptedReply) -> None:
        self.replies: List[ScriptedReply] = list(replies)
        self.calls: List[List[Message]] = []
        self.settings_seen: List[Any] = []

    def queue(self, *replies: ScriptedReply) -> None:
        self.replies.extend(replies)

    def send(self, messages, *, settings=None, api_key=None, model=None, cancel_event=None, on_chunk=None) -> str:
        self.calls.append(list(messages))
        self.settings_seen.append(settings)
        if not self.replies:
            raise AssertionError("ScriptedClient received an unexpected request")

        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(cancel_event)
        if on_chunk is not None and reply:
            on_chunk(reply)
        return reply


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def prompt_loader() -> PromptLoader:
    return PromptLoader(config.DEFAULT_PROMPTS_DIR)


@pytest.fixture
def flow(client, prompt_loader) -> FlowController:
    return FlowController(state_manager=StateManager(), client=client, prompt_loader=prompt_loader)


@pytest.fixture
def state(flow):
    return flow.state_manager.get_or_create("test-session")
