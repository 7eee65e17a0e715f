# /app/workflows/routing.py

"""
The routing rule shared by graph analysis and the simulation engine.

Both consumers must compute identical successors for a step, so every edge in
the flow graph is derived here:

- transfer steps have no successor (END);
- button steps route per button: `conditional_next[button_id]` when it names
  an existing step, otherwise the sequential successor;
- every other step routes to its sequential successor.

The sequential successor is the step named by `next_step` when that name
resolves, else the next step by order, else END.

All functions are pure and operate on indexes into `flow.steps`.
"""

from typing import List, NamedTuple, Optional
from app.models.flow import FlowData, FlowStep, MessageType

# Sentinel target index meaning "the flow ends here"
END = -1


class Route(NamedTuple):
    """A resolved edge out of a step."""
    target_index: int
    via: str  # "button", "next_step", "sequential" or "transfer"
    button_id: Optional[str] = None
    dangling_target: Optional[str] = None


def is_end(target_index: int) -> bool:
    return target_index < 0


def sequential_successor(flow: FlowData, index: int) -> Route:
    """Default successor of the step at `index`."""
    step = flow.steps[index]
    dangling = None
    if step.next_step:
        target = flow.step_index(step.next_step)
        if target >= 0:
            return Route(target, "next_step")
        dangling = step.next_step
    target = index + 1 if index + 1 < len(flow.steps) else END
    return Route(target, "sequential", dangling_target=dangling)


def resolve_button_target(flow: FlowData, index: int, button_index: int) -> Route:
    """Where the button at `button_index` of the step at `index` leads."""
    step = flow.steps[index]
    button_id = step.button_id(button_index)
    target_name = step.conditional_next.get(button_id)
    if target_name:
        target = flow.step_index(target_name)
        if target >= 0:
            return Route(target, "button", button_id=button_id)
        fallback = sequential_successor(flow, index)
        return fallback._replace(button_id=button_id, dangling_target=target_name)
    return sequential_successor(flow, index)._replace(button_id=button_id)


def outgoing_edges(flow: FlowData, index: int) -> List[Route]:
    """Every edge leaving the step at `index`, in button order for button steps."""
    step: FlowStep = flow.steps[index]
    if step.message_type == MessageType.TRANSFER:
        return []
    if step.message_type == MessageType.BUTTONS:
        return [resolve_button_target(flow, index, i) for i in range(len(step.buttons))]
    return [sequential_successor(flow, index)]


def is_terminus(flow: FlowData, index: int) -> bool:
    """True when the step at `index` can end the flow directly."""
    step = flow.steps[index]
    if step.message_type == MessageType.TRANSFER:
        return True
    return any(is_end(route.target_index) for route in outgoing_edges(flow, index))
