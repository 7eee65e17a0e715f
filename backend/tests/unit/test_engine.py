# backend/tests/unit/test_engine.py

import pytest

from app.config import strings
from app.models.flow import ButtonConfig
from app.models.simulation import ExecutionLogType, MockApiResponse, SimulationStatus
from app.workflows.engine import FlowSimulator
from app.workflows.routing import Route


def contents(simulator):
    return [message.content for message in simulator.state.messages]


def drive_to_lookup(simulator):
    """welcome -> 'Track order' -> valid order id; leaves the run waiting on the API step."""
    simulator.start()
    simulator.process_user_input("Track order")
    simulator.process_user_input("12345")
    assert simulator.status == SimulationStatus.WAITING_FOR_API_MOCK


@pytest.fixture
def simulator(support_flow):
    return FlowSimulator(support_flow, run_id="test-run", auto_advance=False)


# --- Lifecycle ---

def test_new_run_is_idle(simulator):
    state = simulator.state

    assert state.status == SimulationStatus.IDLE
    assert state.current_step_name is None
    assert state.messages == []
    assert state.can_undo is False


def test_start_posts_initial_message_and_first_step(simulator):
    result = simulator.start()

    assert result["applied"] is True
    state = result["state"]
    assert state.status == SimulationStatus.WAITING_FOR_INPUT
    assert state.current_step_name == "welcome"
    assert contents(simulator) == ["Welcome to Acme support", "How can we help?"]
    assert [m.id for m in state.messages] == ["msg_1", "msg_2"]
    assert [b.id for b in state.messages[1].buttons] == ["track", "agent"]
    assert state.retries_remaining == 3


def test_start_twice_is_rejected_without_changes(simulator):
    simulator.start()
    before = simulator.state

    result = simulator.start()

    assert result["applied"] is False
    assert "already" in result["reason"]
    assert simulator.state == before


def test_full_conversation(simulator):
    simulator.start()
    simulator.process_user_input("Track order")
    assert simulator.state.variables == {"choice": "Track order"}
    assert simulator.state.current_step_name == "ask_order"

    result = simulator.process_user_input("12")
    assert result["applied"] is True
    state = result["state"]
    assert state.status == SimulationStatus.WAITING_FOR_INPUT
    assert state.messages[-1].content == "Order numbers are digits only"
    assert state.messages[-1].is_validation_error is True
    assert state.retry_count == 1
    assert state.retries_remaining == 1

    simulator.process_user_input("12345")
    state = simulator.state
    assert state.status == SimulationStatus.WAITING_FOR_API_MOCK
    assert state.variables["order_id"] == "12345"
    assert state.pending_api_mock.url == "https://api.example.com/orders/12345"
    assert state.pending_api_mock.method == "GET"

    simulator.submit_mock_config({"data": {"status": "shipped"}})
    state = simulator.state
    assert state.status == SimulationStatus.RUNNING
    assert state.current_step_name == "thanks"
    assert state.variables["order_status"] == "shipped"
    assert state.messages[-2].content == "Order 12345 is shipped"
    assert state.messages[-2].is_api_message is True

    result = simulator.step_forward()
    assert result["state"].status == SimulationStatus.COMPLETED
    assert contents(simulator) == [
        "Welcome to Acme support",
        "How can we help?",
        "Track order",
        "Please enter your order number",
        "12",
        "Order numbers are digits only",
        "12345",
        "Order 12345 is shipped",
        "Thanks for waiting!",
        "Goodbye",
    ]
    assert [m.role for m in simulator.state.messages][2] == "user"
    assert simulator.state.messages[-1].id == "msg_10"


def test_reset_returns_to_idle_and_is_idempotent(simulator):
    drive_to_lookup(simulator)

    simulator.reset()
    once = simulator.state
    simulator.reset()

    assert simulator.state == once
    assert once.status == SimulationStatus.IDLE
    assert once.messages == []
    assert once.variables == {}
    assert once.can_undo is False
    assert simulator.execution_log == []


def test_empty_flow_completes_immediately():
    simulator = FlowSimulator({"name": "empty", "completion_message": "Bye"})

    result = simulator.start()

    assert result["state"].status == SimulationStatus.COMPLETED
    assert contents(simulator) == ["Bye"]


def test_flow_dict_is_validated():
    simulator = FlowSimulator({"steps": [{"step_name": "only", "message": "Hello"}]}, auto_advance=True)

    simulator.start()

    assert simulator.status == SimulationStatus.COMPLETED
    assert contents(simulator) == ["Hello"]


def test_unknown_retry_policy_is_refused(support_flow):
    with pytest.raises(ValueError):
        FlowSimulator(support_flow, retry_exhausted_policy="retry-forever")


# --- Input handling ---

def test_input_is_rejected_while_waiting_for_api_mock(simulator):
    drive_to_lookup(simulator)
    before = simulator.state

    result = simulator.process_user_input("hello?")

    assert result["applied"] is False
    assert simulator.state == before


def test_button_can_be_selected_by_id_or_config(simulator):
    simulator.start()

    simulator.process_user_input(ButtonConfig(id="track", title="Track order"))

    assert simulator.state.current_step_name == "ask_order"
    assert simulator.state.variables["choice"] == "Track order"


def test_unknown_button_reprompts_with_buttons(simulator):
    simulator.start()

    simulator.process_user_input("Refund")

    state = simulator.state
    assert state.status == SimulationStatus.WAITING_FOR_INPUT
    assert state.current_step_name == "welcome"
    assert state.messages[-2].content == "Refund"
    assert state.messages[-1].content == strings.INVALID_SELECTION
    assert state.messages[-1].buttons is not None
    assert state.retries_remaining == 2


def test_button_step_rejects_form_input(simulator):
    simulator.start()

    result = simulator.process_user_input({"field": "value"})

    assert result["applied"] is False
    assert simulator.state.history_length == 1


def test_retries_exhausted_fails_the_run(simulator):
    simulator.start()
    simulator.process_user_input("Track order")

    simulator.process_user_input("1")
    result = simulator.process_user_input("2")

    state = result["state"]
    assert state.status == SimulationStatus.FAILED
    assert state.error.code == "RETRIES_EXHAUSTED"
    assert state.error.step_name == "ask_order"
    assert state.messages[-1].content == strings.RETRIES_EXHAUSTED
    assert "order_id" not in state.variables


def test_retries_exhausted_can_advance(support_flow):
    simulator = FlowSimulator(support_flow, retry_exhausted_policy="advance")
    simulator.start()
    simulator.process_user_input("Track order")

    simulator.process_user_input("1")
    simulator.process_user_input("2")

    state = simulator.state
    assert state.status == SimulationStatus.WAITING_FOR_API_MOCK
    assert state.variables["order_id"] == "2"
    assert state.pending_api_mock.url == "https://api.example.com/orders/2"


def test_button_steps_fail_even_with_advance_policy(support_flow):
    simulator = FlowSimulator(support_flow, retry_exhausted_policy="advance", default_max_retries=1)
    simulator.start()

    simulator.process_user_input("nonsense")

    assert simulator.status == SimulationStatus.FAILED
    assert simulator.state.error.code == "RETRIES_EXHAUSTED"


def test_retry_on_invalid_disabled_fails_on_first_error():
    simulator = FlowSimulator({"steps": [
        {"step_name": "email", "message": "Email?", "input_type": "email", "retry_on_invalid": False},
    ]})
    simulator.start()

    simulator.process_user_input("not-an-email")

    assert simulator.status == SimulationStatus.FAILED


def test_whatsapp_flow_form_is_stored():
    simulator = FlowSimulator({"steps": [
        {"step_name": "form", "message_type": "whatsapp_flow", "message": "Fill in the form",
         "store_as": "profile"},
        {"step_name": "done", "message": "Thanks {{profile.name}}"},
    ]}, auto_advance=True)
    simulator.start()

    simulator.process_user_input({"name": "Ann", "city": "Pune"})

    assert simulator.status == SimulationStatus.COMPLETED
    assert simulator.state.variables["profile"] == {"name": "Ann", "city": "Pune"}
    assert contents(simulator)[-2:] == ["name: Ann, city: Pune", "Thanks Ann"]


# --- API mocks ---

def test_failed_mock_posts_fallback_and_continues(simulator):
    drive_to_lookup(simulator)

    simulator.submit_mock_config(None)

    state = simulator.state
    assert state.status == SimulationStatus.RUNNING
    assert state.current_step_name == "thanks"
    assert "order_status" not in state.variables
    assert state.messages[-2].content == "Lookup failed for 12345"


def test_submit_mock_outside_api_step_is_rejected(simulator):
    simulator.start()

    result = simulator.submit_mock_config({"data": {}})

    assert result["applied"] is False


def test_preset_mock_is_applied_automatically(support_flow):
    simulator = FlowSimulator(support_flow, api_mocks=[
        MockApiResponse(step_name="lookup", response_body={"data": {"status": "delivered"}}),
    ])
    simulator.start()
    simulator.process_user_input("track")

    simulator.process_user_input("98765")

    assert simulator.status == SimulationStatus.RUNNING
    assert simulator.state.current_step_name == "thanks"
    assert "Order 98765 is delivered" in contents(simulator)


def test_preset_error_status_uses_fallback(support_flow):
    simulator = FlowSimulator(support_flow)
    simulator.register_mock(MockApiResponse(step_name="lookup", status_code=503))
    simulator.start()
    simulator.process_user_input("track")

    simulator.process_user_input("4444")

    assert "Lookup failed for 4444" in contents(simulator)
    assert "order_status" not in simulator.state.variables


def test_on_mock_request_is_called(support_flow, mocker):
    callback = mocker.Mock()
    simulator = FlowSimulator(support_flow, on_mock_request=callback)

    drive_to_lookup(simulator)

    callback.assert_called_once()
    request = callback.call_args[0][0]
    assert request.step_name == "lookup"
    assert request.url == "https://api.example.com/orders/12345"


# --- Undo ---

def test_undo_everything_returns_to_idle(simulator):
    fresh = simulator.state
    drive_to_lookup(simulator)
    simulator.submit_mock_config({"data": {"status": "shipped"}})
    simulator.step_forward()
    assert simulator.state.history_length == 5

    while simulator.can_undo:
        assert simulator.undo()["applied"] is True

    assert simulator.state == fresh
    assert simulator.undo()["applied"] is False


def test_undo_restores_previous_state_exactly(simulator):
    simulator.start()
    simulator.process_user_input("Track order")
    before = simulator.state

    simulator.process_user_input("12")
    simulator.undo()

    assert simulator.state == before


def test_undo_back_into_api_step_restores_pending_request(simulator):
    drive_to_lookup(simulator)
    simulator.submit_mock_config({"data": {"status": "shipped"}})

    simulator.undo()

    state = simulator.state
    assert state.status == SimulationStatus.WAITING_FOR_API_MOCK
    assert state.pending_api_mock.url == "https://api.example.com/orders/12345"
    assert "order_status" not in state.variables


def test_undo_does_not_rewind_execution_log(simulator):
    simulator.start()
    entries = len(simulator.execution_log)

    simulator.undo()

    assert len(simulator.execution_log) == entries


def test_history_is_capped(support_flow):
    simulator = FlowSimulator(support_flow, max_history_entries=2)

    drive_to_lookup(simulator)

    assert simulator.state.history_length == 2


# --- Pause / resume ---

def test_pause_blocks_operations_until_resumed(simulator):
    simulator.start()

    result = simulator.pause()
    assert result["state"].status == SimulationStatus.PAUSED
    assert result["state"].paused_from == SimulationStatus.WAITING_FOR_INPUT

    assert simulator.process_user_input("track")["applied"] is False
    assert simulator.undo()["applied"] is False
    assert simulator.go_to_step("lookup")["applied"] is False
    assert simulator.pause()["applied"] is False

    result = simulator.resume()
    assert result["state"].status == SimulationStatus.WAITING_FOR_INPUT
    assert result["state"].history_length == 1
    assert simulator.process_user_input("track")["applied"] is True


def test_cannot_pause_idle_or_api_wait(simulator):
    assert simulator.pause()["applied"] is False

    drive_to_lookup(simulator)

    assert simulator.pause()["applied"] is False
    assert simulator.resume()["applied"] is False


# --- Jumping ---

def test_go_to_step_and_undo(simulator):
    simulator.start()

    result = simulator.go_to_step("lookup")
    assert result["state"].status == SimulationStatus.WAITING_FOR_API_MOCK
    assert result["state"].pending_api_mock.url == "https://api.example.com/orders/{{order_id}}"

    simulator.undo()
    assert simulator.state.status == SimulationStatus.WAITING_FOR_INPUT
    assert simulator.state.current_step_name == "welcome"
    assert simulator.state.pending_api_mock is None


def test_go_to_step_rejects_unknown_step_and_idle_run(simulator):
    assert simulator.go_to_step("welcome")["applied"] is False

    simulator.start()

    result = simulator.go_to_step("nowhere")
    assert result["applied"] is False
    assert "nowhere" in result["reason"]


def test_go_to_step_revives_a_completed_run(simulator):
    simulator.start()
    simulator.process_user_input("agent")
    simulator.step_forward()
    assert simulator.status == SimulationStatus.COMPLETED

    simulator.go_to_step("ask_order")

    assert simulator.status == SimulationStatus.WAITING_FOR_INPUT


# --- Transfer, auto-advance and skipping ---

def test_transfer_posts_notice_and_completes_without_completion_message(simulator):
    simulator.start()
    simulator.process_user_input("agent")

    state = simulator.state
    assert state.status == SimulationStatus.RUNNING
    assert state.messages[-2].content == "Connecting you to an agent"
    assert state.messages[-1].role == "system"
    assert state.messages[-1].content == strings.TRANSFER_NOTICE_TEAM.format(team_id="support")

    simulator.step_forward()

    assert simulator.status == SimulationStatus.COMPLETED
    assert "Goodbye" not in contents(simulator)


def test_auto_advance_runs_through_steps_without_input(support_flow):
    simulator = FlowSimulator(support_flow, auto_advance=True)
    simulator.start()

    simulator.process_user_input("agent")

    assert simulator.status == SimulationStatus.COMPLETED


def test_step_forward_requires_running_state(simulator):
    simulator.start()

    assert simulator.step_forward()["applied"] is False


def test_auto_advance_loop_fails_the_run():
    flow = {"steps": [
        {"step_name": "A", "message": "a", "next_step": "B"},
        {"step_name": "B", "message": "b", "next_step": "A"},
    ]}
    simulator = FlowSimulator(flow, auto_advance=True)

    simulator.start()

    assert simulator.status == SimulationStatus.FAILED
    assert simulator.state.error.code == "AUTO_ADVANCE_LOOP"
    assert contents(simulator) == ["a", "b"]


def test_manual_stepping_may_revisit_steps():
    flow = {"steps": [
        {"step_name": "A", "message": "a", "next_step": "B"},
        {"step_name": "B", "message": "b", "next_step": "A"},
    ]}
    simulator = FlowSimulator(flow, auto_advance=False)
    simulator.start()

    simulator.step_forward()
    simulator.step_forward()

    assert simulator.status == SimulationStatus.RUNNING
    assert contents(simulator) == ["a", "b", "a"]


def test_buttons_step_without_buttons_fails():
    simulator = FlowSimulator({"steps": [{"step_name": "menu", "message_type": "buttons", "message": "Pick"}]})

    simulator.start()

    assert simulator.status == SimulationStatus.FAILED
    assert simulator.state.error.code == "NO_BUTTONS"


@pytest.mark.parametrize("tier, expected", [
    ("regular", ["Tier?", "regular", "Bye"]),
    ("vip", ["Tier?", "vip", "VIP perks", "Bye"]),
])
def test_skip_condition(tier, expected):
    simulator = FlowSimulator({"steps": [
        {"step_name": "ask", "message": "Tier?", "input_type": "text", "store_as": "tier"},
        {"step_name": "vip", "message": "VIP perks", "skip_condition": "tier != 'vip'"},
        {"step_name": "bye", "message": "Bye"},
    ]}, auto_advance=True)
    simulator.start()

    simulator.process_user_input(tier)

    assert simulator.status == SimulationStatus.COMPLETED
    assert contents(simulator) == expected
    condition_logs = [e for e in simulator.execution_log if e.type == ExecutionLogType.CONDITION_EVAL]
    assert len(condition_logs) == 1


def test_bad_route_fails_the_run_instead_of_raising(mocker):
    simulator = FlowSimulator({"steps": [{"step_name": "A", "message": "a"}]})
    simulator.start()
    mocker.patch.object(simulator, "_default_route", return_value=Route(99, "sequential"))

    result = simulator.step_forward()

    assert result["applied"] is True
    assert result["state"].status == SimulationStatus.FAILED
    assert result["state"].error.code == "ROUTE_NOT_FOUND"
    assert result["state"].error.step_name == "A"


# --- Observers and logs ---

def test_subscribers_see_applied_operations_only(simulator, mocker):
    callback = mocker.Mock()
    unsubscribe = simulator.subscribe(callback)

    simulator.start()
    simulator.start()
    assert callback.call_count == 1
    assert callback.call_args[0][0].status == SimulationStatus.WAITING_FOR_INPUT

    unsubscribe()
    simulator.process_user_input("track")
    assert callback.call_count == 1


def test_reentrant_calls_are_rejected(simulator):
    inner_results = []
    simulator.subscribe(lambda state: inner_results.append(simulator.reset()))

    simulator.start()

    assert inner_results[0]["applied"] is False
    assert "Re-entrant" in inner_results[0]["reason"]
    assert simulator.status == SimulationStatus.WAITING_FOR_INPUT


def test_execution_log_records_the_run(simulator):
    drive_to_lookup(simulator)
    simulator.submit_mock_config({"data": {"status": "shipped"}})
    simulator.step_forward()

    log = simulator.execution_log
    types = [entry.type for entry in log]
    assert types[0] == ExecutionLogType.FLOW_START
    assert types[-1] == ExecutionLogType.FLOW_COMPLETE
    assert ExecutionLogType.VALIDATION_PASS in types
    assert ExecutionLogType.API_CALL in types
    assert [entry.id for entry in log] == [f"log_{i + 1}" for i in range(len(log))]

    variables = [entry.details["name"] for entry in log if entry.type == ExecutionLogType.VARIABLE_SET]
    assert variables == ["choice", "order_id", "order_status"]


def test_runs_are_deterministic(support_flow):
    runs = []
    for _ in range(2):
        simulator = FlowSimulator(support_flow)
        drive_to_lookup(simulator)
        simulator.submit_mock_config({"data": {"status": "shipped"}})
        runs.append([(m.id, m.role, m.content) for m in simulator.state.messages])

    assert runs[0] == runs[1]


def test_simulator_does_not_mutate_the_flow(support_flow):
    before = support_flow.model_dump()
    simulator = FlowSimulator(support_flow)

    drive_to_lookup(simulator)

    assert support_flow.model_dump() == before


def test_completion_action_is_recorded_in_log():
    simulator = FlowSimulator({
        "on_complete_action": "webhook",
        "completion_config": {"url": "https://hooks.example.com/done"},
        "steps": [{"step_name": "only", "message": "Hello"}],
    }, auto_advance=True)

    simulator.start()

    entry = simulator.execution_log[-1]
    assert entry.type == ExecutionLogType.FLOW_COMPLETE
    assert entry.details["on_complete_action"] == "webhook"
    assert entry.details["completion_config"] == {"url": "https://hooks.example.com/done"}


def test_completion_action_defaults_to_none():
    simulator = FlowSimulator({"steps": [{"step_name": "only", "message": "Hello"}]}, auto_advance=True)

    simulator.start()

    assert simulator.flow.on_complete_action == "none"
    assert "on_complete_action" not in simulator.execution_log[-1].details


def test_finished_run_is_counted_once(simulator, mocker):
    counter = mocker.patch("app.workflows.engine.simulation_runs_counter")
    simulator.start()
    simulator.process_user_input("agent")
    simulator.step_forward()

    simulator.undo()
    simulator.step_forward()
    simulator.go_to_step("handoff")
    simulator.step_forward()

    assert simulator.status == SimulationStatus.COMPLETED
    counter.labels.assert_called_once_with(status="completed")

    simulator.reset()
    simulator.start()
    simulator.process_user_input("agent")
    simulator.step_forward()

    assert counter.labels.call_count == 2
