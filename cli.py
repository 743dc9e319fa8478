# Role: Local developer CLI to talk to FlowController without the web API.
# Streams replies as they arrive; Ctrl-C while a reply is streaming stops the generation.

from __future__ import annotations

import sys
import threading
import uuid
from typing import Callable, Optional

import tech_router.config
tech_router.config.load_env()

from tech_router.core.flow_controller import FlowController, TurnResponse
from tech_router.models.state import ConversationState, Phase


def _new_session_id() -> str:
    return str(uuid.uuid4())


class _StreamPrinter:
    # Role: prints only the new suffix of each running-total snapshot.
    def __init__(self) -> None:
        self._printed = ""

    def on_chunk(self, text: str) -> None:
        if not text.startswith(self._printed):
            sys.stdout.write("\n")
            self._printed = ""
        sys.stdout.write(text[len(self._printed):])
        sys.stdout.flush()
        self._printed = text

    def on_phase(self, phase: Phase) -> None:
        if phase == Phase.TECHNICAL_HANDOFF:
            sys.stdout.write("\n\n[handing off to specialist]\nAssistant: ")
            self._printed = ""


def _run_streaming(flow: FlowController, state: ConversationState, call: Callable[..., Optional[TurnResponse]]) -> Optional[TurnResponse]:
    # 1) Run the turn on a worker thread
    # 2) Ctrl-C in the main thread -> stop the generation, keep waiting for the worker
    printer = _StreamPrinter()
    outcome: dict = {}

    def worker() -> None:
        try:
            outcome["result"] = call(on_chunk=printer.on_chunk, on_phase=printer.on_phase)
        except Exception as e:
            outcome["error"] = e

    sys.stdout.write("\nAssistant: ")
    thread = threading.Thread(target=worker, daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.1)
        except KeyboardInterrupt:
            flow.stop(state)

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def _print_result(result: Optional[TurnResponse]) -> None:
    if result is None:
        print("\n(nothing to regenerate)")
        return
    if result.is_error:
        print(f"\n{result.assistant_message}")
    else:
        print()
    if tech_router.config.DEBUG:
        print(f"[phase={result.phase.value} technology={result.identified_technology}]")


def main() -> None:
    # 1) Create FlowController
    # 2) Maintain a session across turns
    # 3) Route user input -> FlowController -> stream assistant output
    print("Tech Router CLI")
    print("Commands: /new (new conversation), /clear, /regenerate, /session, /exit")
    print("Ctrl-C while a reply is streaming stops it.")
    print("-" * 50)

    flow = FlowController()
    session_id = _new_session_id()
    state = flow.state_manager.get_or_create(session_id)
    greeting = flow.start_conversation(state)
    print(f"session_id: {session_id}")
    print(f"\nAssistant: {greeting.content}")

    while True:
        try:
            user_message = input("\nYou: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nBye!")
            return

        if not user_message:
            continue

        cmd = user_message.lower()

        if cmd in {"/exit", "exit", "quit", "/quit"}:
            print("Bye!")
            return

        if cmd in {"/new", "new"}:
            session_id = _new_session_id()
            state = flow.state_manager.get_or_create(session_id)
            greeting = flow.start_conversation(state)
            print(f"New session_id: {session_id}")
            print(f"\nAssistant: {greeting.content}")
            continue

        if cmd in {"/clear", "clear"}:
            flow.clear(state)
            print("Conversation cleared.")
            continue

        if cmd in {"/session", "session"}:
            print(f"session_id: {session_id} (phase: {state.phase.value})")
            continue

        if cmd in {"/regenerate", "regenerate"}:
            try:
                result = _run_streaming(flow, state, lambda **kw: flow.regenerate(state, **kw))
            except ValueError as e:
                print(f"\n{e}")
                continue
            _print_result(result)
            continue

        result = _run_streaming(flow, state, lambda **kw: flow.handle_turn(state, user_message, **kw))
        _print_result(result)


if __name__ == "__main__":
    main()
