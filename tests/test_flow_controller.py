"""
End-to-end turns through FlowController with a scripted completion client.
Covers the routing -> handoff -> specialist sequence, follow-ups, scoping, errors,
stop/cancel, regenerate, and the single-flight guard.
"""

import pytest

from conftest import FakeResponse, FakeSession, sse_event
from tech_router.core.flow_controller import GREETING, FlowController
from tech_router.core.state_manager import StateManager
from tech_router.llm.errors import ConversationBusy, RequestFailed
from tech_router.llm.streaming_client import STOP_MARKER, StreamingCompletionClient
from tech_router.models.settings import GenerationSettings
from tech_router.models.state import Phase

ROUTED = "[TECH_IDENTIFIED: ExchangeOnline] Outlook sync problems are handled by Exchange Online."
ANSWER = "1. Check the connection status in Outlook.\n2. Rebuild the OST file."


def test_outlook_scenario_routes_then_answers(flow, state, client):
    client.queue(ROUTED, ANSWER)
    seen_phases = []

    result = flow.handle_turn(state, "My Outlook is not syncing", on_phase=seen_phases.append)

    assert result.phases == (Phase.ROUTING, Phase.TECHNICAL_HANDOFF, Phase.TECHNICAL_RESPONSE)
    assert seen_phases == list(result.phases)
    assert result.assistant_message == ANSWER
    assert result.routing_message == "Outlook sync problems are handled by Exchange Online."
    assert result.identified_technology == "ExchangeOnline"
    assert result.is_error is False

    assert state.phase == Phase.TECHNICAL_RESPONSE
    assert state.identified_technology == "ExchangeOnline"
    assert state.original_user_query is None
    assert [(m.role, m.content) for m in state.conversation_history] == [
        ("user", "My Outlook is not syncing"),
        ("assistant", ROUTED),
        ("assistant", ANSWER),
    ]

    routing_request, technical_request = client.calls
    assert [m.role for m in routing_request] == ["system", "user"]
    assert "[TECH_IDENTIFIED:" in routing_request[0].content
    assert [m.role for m in technical_request] == ["system", "user"]
    assert technical_request[0].content.endswith(
        "\n\nContext from routing agent: Outlook sync problems are handled by Exchange Online."
    )
    assert technical_request[1].content == "My Outlook is not syncing"


def test_follow_up_goes_straight_to_specialist(flow, state, client):
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "My Outlook is not syncing")

    client.queue("Then re-create the Outlook profile.")
    result = flow.handle_turn(state, "Still not syncing after that")

    assert len(client.calls) == 3
    assert result.phases == (Phase.TECHNICAL_RESPONSE,)
    assert result.identified_technology == "ExchangeOnline"
    follow_up_request = client.calls[2]
    assert [(m.role, m.content) for m in follow_up_request[1:]] == [
        ("user", "Still not syncing after that"),
        ("assistant", ANSWER),
        ("user", "Still not syncing after that"),
    ]
    assert state.original_user_query is None


def test_scoping_question_stays_in_routing(flow, state, client):
    client.queue("[SCOPING_QUESTION] Which application shows the problem?")

    result = flow.handle_turn(state, "I have a problem")

    assert result.phases == (Phase.ROUTING,)
    assert result.phase == Phase.ROUTING
    assert result.assistant_message == "Which application shows the problem?"
    assert result.identified_technology is None
    assert len(client.calls) == 1

    # The next turn is routed again with the whole dialog.
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "Outlook")

    second_routing = client.calls[1]
    assert [m.role for m in second_routing] == ["system", "user", "assistant", "user"]
    assert state.phase == Phase.TECHNICAL_RESPONSE


def test_plain_reply_without_tag(flow, state, client):
    client.queue("Hello! What can I help you with?")

    result = flow.handle_turn(state, "hi")

    assert result.phase == Phase.ROUTING
    assert result.assistant_message == "Hello! What can I help you with?"


def test_greeting_never_reaches_provider(flow, state, client):
    greeting = flow.start_conversation(state)
    assert greeting.content == GREETING
    assert greeting.is_greeting is True

    client.queue("[SCOPING_QUESTION] Which app?")
    flow.handle_turn(state, "help")

    assert [m.role for m in client.calls[0]] == ["system", "user"]


def test_routing_error_is_recorded_and_state_reset(flow, state, client):
    client.queue(RequestFailed("API error: Service unavailable", status_code=503))

    result = flow.handle_turn(state, "Teams will not start")

    assert result.is_error is True
    assert result.assistant_message == "Error: API error: Service unavailable"
    assert result.phase == Phase.ROUTING
    assert state.last_error == "API error: Service unavailable"
    assert state.is_generating is False
    error_message = state.conversation_history[-1]
    assert error_message.is_error is True

    # Error turns are not sent on the next request.
    client.queue("[SCOPING_QUESTION] Desktop or web?")
    flow.handle_turn(state, "retry please")
    assert all(not m.content.startswith("Error:") for m in client.calls[1])


def test_technical_error_resets_the_specialist(flow, state, client):
    client.queue(ROUTED, RequestFailed("API error: boom", status_code=500))

    result = flow.handle_turn(state, "My Outlook is not syncing")

    assert result.is_error is True
    assert result.phases == (Phase.ROUTING, Phase.TECHNICAL_HANDOFF, Phase.ROUTING)
    assert state.phase == Phase.ROUTING
    assert state.identified_technology is None
    assert state.original_user_query is None


def test_empty_technical_answer_is_an_error(flow, state, client):
    client.queue(ROUTED, "   ")

    result = flow.handle_turn(state, "My Outlook is not syncing")

    assert result.is_error is True
    assert result.assistant_message == "Error: Empty response received from API"
    assert state.phase == Phase.ROUTING


def test_stopped_routing_call_is_not_parsed(flow, state, client):
    def stopped(cancel_event):
        assert flow.stop(state) is True
        return "[TECH_IDENTIFIED: Teams] Teams" + STOP_MARKER

    client.queue(stopped)

    result = flow.handle_turn(state, "Teams calls drop")

    assert result.stopped is True
    assert result.phase == Phase.ROUTING
    assert state.identified_technology is None
    assert len(client.calls) == 1
    assert state.conversation_history[-1].is_partial is True


def test_stopped_technical_call_keeps_specialist(flow, state, client):
    def stopped(cancel_event):
        cancel_event.set()
        return "1. Check the" + STOP_MARKER

    client.queue(ROUTED, stopped)

    result = flow.handle_turn(state, "My Outlook is not syncing")

    assert result.stopped is True
    assert state.phase == Phase.TECHNICAL_RESPONSE
    assert state.identified_technology == "ExchangeOnline"
    partial = state.conversation_history[-1]
    assert partial.is_partial is True
    assert partial.content.endswith(STOP_MARKER)

    # The partial answer is not replayed to the specialist.
    client.queue("Rebuild the profile.")
    flow.handle_turn(state, "go on")
    assert all(STOP_MARKER not in m.content for m in client.calls[-1])


def test_stop_without_generation_returns_false(flow, state):
    assert flow.stop(state) is False


def test_busy_session_rejects_a_second_turn(flow, state):
    state.is_generating = True

    with pytest.raises(ConversationBusy):
        flow.handle_turn(state, "hello")
    with pytest.raises(ConversationBusy):
        flow.clear(state)


def test_empty_user_message_is_rejected(flow, state):
    with pytest.raises(ValueError):
        flow.handle_turn(state, "   ")


def test_regenerate_reroutes_from_last_user_message(flow, state, client):
    client.queue("[SCOPING_QUESTION] Which app?")
    first = flow.handle_turn(state, "My calls keep dropping")

    client.queue("[TECH_IDENTIFIED: Teams] Call quality is a Teams topic.", "Check your network.")
    result = flow.regenerate(state, first.message_id)

    assert result.phases == (Phase.ROUTING, Phase.TECHNICAL_HANDOFF, Phase.TECHNICAL_RESPONSE)
    assert result.identified_technology == "Teams"
    contents = [m.content for m in state.conversation_history]
    assert "[SCOPING_QUESTION] Which app?" not in contents
    assert [m.role for m in client.calls[1]] == ["system", "user"]
    assert client.calls[1][-1].content == "My calls keep dropping"


def test_regenerate_defaults_to_last_assistant_message(flow, state, client):
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "My Outlook is not syncing")

    client.queue(ROUTED, "A different answer.")
    result = flow.regenerate(state)

    # The whole assistant turn (router reply and specialist answer) was replaced.
    assert result.phases == (Phase.ROUTING, Phase.TECHNICAL_HANDOFF, Phase.TECHNICAL_RESPONSE)
    assert [m.content for m in state.conversation_history] == [
        "My Outlook is not syncing",
        ROUTED,
        "A different answer.",
    ]

    routing_request, technical_request = client.calls[2], client.calls[3]
    assert [m.role for m in routing_request] == ["system", "user"]
    assert [(m.role, m.content) for m in technical_request[1:]] == [("user", "My Outlook is not syncing")]


def test_regenerating_specialist_answer_by_id_removes_router_reply_too(flow, state, client):
    client.queue(ROUTED, ANSWER)
    first = flow.handle_turn(state, "My Outlook is not syncing")

    client.queue(ROUTED, "A different answer.")
    flow.regenerate(state, first.message_id)

    technical_request = client.calls[-1]
    assert technical_request[-1].role == "user"
    assert sum(ROUTED == m.content for m in state.conversation_history) == 1


def test_rerouting_to_same_specialist_after_error_starts_fresh_consultation(flow, state, client):
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "My Outlook is not syncing")

    client.queue(RequestFailed("API error: Service unavailable", status_code=503))
    failed = flow.handle_turn(state, "Still not syncing")
    assert failed.is_error is True

    client.queue(ROUTED, "Re-create the Outlook profile.")
    result = flow.handle_turn(state, "Outlook shows Disconnected")

    assert result.identified_technology == "ExchangeOnline"
    technical_request = client.calls[-1]
    assert [(m.role, m.content) for m in technical_request[1:]] == [("user", "Outlook shows Disconnected")]


def test_follow_up_after_regenerate_ends_on_user_turn(flow, state, client):
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "My Outlook is not syncing")
    client.queue(ROUTED, "A different answer.")
    flow.regenerate(state)

    client.queue("Check the mailbox size.")
    flow.handle_turn(state, "Still broken")

    assert [(m.role, m.content) for m in client.calls[-1][1:]] == [
        ("user", "Still broken"),
        ("assistant", "A different answer."),
        ("user", "Still broken"),
    ]


def test_regenerate_rejects_bad_targets(flow, state, client):
    greeting = flow.start_conversation(state)

    with pytest.raises(ValueError):
        flow.regenerate(state)
    with pytest.raises(ValueError):
        flow.regenerate(state, greeting.id)
    with pytest.raises(KeyError):
        flow.regenerate(state, "msg-unknown")

    client.queue("[SCOPING_QUESTION] Which app?")
    flow.handle_turn(state, "help")
    user_id = state.conversation_history[1].id
    with pytest.raises(ValueError):
        flow.regenerate(state, user_id)


def test_clear_and_settings(flow, state, client):
    client.queue(ROUTED, ANSWER)
    flow.handle_turn(state, "My Outlook is not syncing")

    flow.clear(state)

    assert state.conversation_history == []
    assert state.phase == Phase.ROUTING
    assert state.identified_technology is None

    flow.update_settings(state, GenerationSettings(temperature=0.1, max_tokens=100))
    client.queue("[SCOPING_QUESTION] Which app?")
    flow.handle_turn(state, "help")
    assert client.settings_seen[-1].temperature == 0.1

    assert flow.reset_settings(state) == GenerationSettings()


def test_stop_closes_the_open_stream(prompt_loader):
    response = FakeResponse([sse_event("[SCOPING_QUESTION] Which"), sse_event(" app?")])
    client = StreamingCompletionClient(api_key="test-key", session=FakeSession(response))
    flow = FlowController(state_manager=StateManager(), client=client, prompt_loader=prompt_loader)
    state = flow.state_manager.get_or_create("streaming")
    closed_when_stopped = []

    def stop_now(text):
        flow.stop(state)
        closed_when_stopped.append(response.closed)

    result = flow.handle_turn(state, "help", on_chunk=stop_now)

    assert closed_when_stopped == [True]
    assert result.stopped is True
    assert result.assistant_message == "[SCOPING_QUESTION] Which" + STOP_MARKER
