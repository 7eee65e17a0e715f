# backend/tests/unit/test_routing.py

from app.models.flow import FlowData
from app.workflows.routing import (
    END,
    is_terminus,
    outgoing_edges,
    resolve_button_target,
    sequential_successor,
)


def build(steps):
    return FlowData.model_validate({
        "steps": [dict(step, step_order=i + 1) for i, step in enumerate(steps)]
    })


def test_sequential_successor_defaults_to_next_by_order():
    flow = build([{"step_name": "A"}, {"step_name": "B"}])

    assert sequential_successor(flow, 0).target_index == 1
    assert sequential_successor(flow, 1).target_index == END


def test_next_step_overrides_order():
    flow = build([{"step_name": "A", "next_step": "C"}, {"step_name": "B"}, {"step_name": "C"}])

    route = sequential_successor(flow, 0)
    assert route.target_index == 2
    assert route.via == "next_step"


def test_unknown_next_step_falls_back_to_order():
    flow = build([{"step_name": "A", "next_step": "nowhere"}, {"step_name": "B"}])

    route = sequential_successor(flow, 0)
    assert route.target_index == 1
    assert route.dangling_target == "nowhere"


def test_buttons_without_ids_use_positional_ids():
    flow = build([
        {"step_name": "A", "message_type": "buttons",
         "buttons": [{"title": "One"}, {"title": "Two"}],
         "conditional_next": {"btn_2": "C"}},
        {"step_name": "B"},
        {"step_name": "C"},
    ])

    assert flow.steps[0].button_id(1) == "btn_2"
    assert resolve_button_target(flow, 0, 0).target_index == 1
    route = resolve_button_target(flow, 0, 1)
    assert route.target_index == 2
    assert route.button_id == "btn_2"


def test_find_button_matches_id_or_title_case_insensitively():
    flow = build([{"step_name": "A", "message_type": "buttons",
                   "buttons": [{"id": "yes", "title": "Yes please"}, {"id": "no", "title": "No"}]}])
    step = flow.steps[0]

    assert step.find_button("YES") == 0
    assert step.find_button("  yes please ") == 0
    assert step.find_button("no") == 1
    assert step.find_button("maybe") is None


def test_empty_conditional_targets_are_dropped():
    flow = build([{"step_name": "A", "message_type": "buttons", "buttons": [{"id": "x", "title": "X"}],
                   "conditional_next": {"x": ""}}])

    assert flow.steps[0].conditional_next == {}


def test_transfer_has_no_edges_and_ends_the_flow():
    flow = build([{"step_name": "A", "message_type": "transfer"}, {"step_name": "B"}])

    assert outgoing_edges(flow, 0) == []
    assert is_terminus(flow, 0) is True
    assert is_terminus(flow, 1) is True


def test_button_step_is_terminus_when_a_button_falls_off_the_end():
    flow = build([
        {"step_name": "A"},
        {"step_name": "B", "message_type": "buttons",
         "buttons": [{"id": "back", "title": "Back"}, {"id": "done", "title": "Done"}],
         "conditional_next": {"back": "A"}},
    ])

    assert [route.target_index for route in outgoing_edges(flow, 1)] == [0, END]
    assert is_terminus(flow, 1) is True
    assert is_terminus(flow, 0) is False
