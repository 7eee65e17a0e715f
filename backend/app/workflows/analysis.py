# /app/workflows/analysis.py

"""
Static analysis of a flow graph.

Used by the builder on every edit to flag dead and looping branches. All
functions are:
- Pure (no side effects, the snapshot is never mutated)
- Deterministic (same flow = same result)
- Total (authoring defects become warnings, nothing is raised)
"""

import re
from collections import deque
from typing import Dict, Iterator, List, Optional, Set, Tuple
from pydantic import BaseModel, Field

from app.models.flow import FlowData, MessageType
from app.workflows.routing import is_end, is_terminus, outgoing_edges


class FlowWarning(BaseModel):
    code: str
    step_index: Optional[int] = None
    step_name: Optional[str] = None
    message: str


class FlowAnalysis(BaseModel):
    reachable: List[int] = Field(default_factory=list)
    unreachable: List[int] = Field(default_factory=list)
    loop_steps: List[int] = Field(default_factory=list)
    end_reachable: bool = True
    warnings: List[FlowWarning] = Field(default_factory=list)


def _successors(flow: FlowData, index: int) -> List[int]:
    return [route.target_index for route in outgoing_edges(flow, index) if not is_end(route.target_index)]


def reachable_steps(flow: FlowData) -> Set[int]:
    """
    Indexes reachable from the entry step (index 0) by breadth-first search.

    Transfer steps enqueue nothing, button steps enqueue each button's target,
    all other steps enqueue their single successor.
    """
    if not flow.steps:
        return set()

    visited = {0}
    queue = deque([0])
    while queue:
        current = queue.popleft()
        for target in _successors(flow, current):
            if target not in visited:
                visited.add(target)
                queue.append(target)
    return visited


def is_unreachable(flow: FlowData, index: int) -> bool:
    """Step 0 is the entry point and is never reported."""
    return index > 0 and index not in reachable_steps(flow)


def is_end_reachable(flow: FlowData) -> bool:
    """True when at least one reachable step can end the flow. Vacuously true for an empty flow."""
    if not flow.steps:
        return True
    return any(is_terminus(flow, index) for index in reachable_steps(flow))


def steps_in_loop(flow: FlowData) -> Set[int]:
    """
    Reachable steps that lie on a directed cycle.

    This is the set a path-tracking DFS from every reachable start would mark,
    computed with Tarjan's strongly connected components so that dense button
    graphs stay linear. A step belongs to a loop when its component has more
    than one member or it routes to itself. Transfer steps have no edges and
    never qualify.

    The traversal keeps its own stack of frames, so flow length is not bounded
    by the interpreter's recursion limit.
    """
    reachable = reachable_steps(flow)
    index_of: Dict[int, int] = {}
    lowlink: Dict[int, int] = {}
    on_stack: Set[int] = set()
    stack: List[int] = []
    in_loop: Set[int] = set()
    counter = 0

    for start in sorted(reachable):
        if start in index_of:
            continue

        index_of[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)
        successors = _successors(flow, start)
        frames: List[Tuple[int, List[int], Iterator[int]]] = [(start, successors, iter(successors))]

        while frames:
            node, successors, pending = frames[-1]
            descended = False
            for target in pending:
                if target not in index_of:
                    index_of[target] = lowlink[target] = counter
                    counter += 1
                    stack.append(target)
                    on_stack.add(target)
                    target_successors = _successors(flow, target)
                    frames.append((target, target_successors, iter(target_successors)))
                    descended = True
                    break
                if target in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[target])
            if descended:
                continue

            frames.pop()
            if frames:
                parent = frames[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in successors:
                    in_loop.update(component)
    return in_loop


def _steps_reaching_end(flow: FlowData) -> Set[int]:
    """Indexes from which some terminus is reachable (reverse BFS from every terminus)."""
    predecessors: Dict[int, Set[int]] = {i: set() for i in range(len(flow.steps))}
    for index in range(len(flow.steps)):
        for target in _successors(flow, index):
            predecessors[target].add(index)

    seen = {i for i in range(len(flow.steps)) if is_terminus(flow, i)}
    queue = deque(seen)
    while queue:
        current = queue.popleft()
        for prev in predecessors[current]:
            if prev not in seen:
                seen.add(prev)
                queue.append(prev)
    return seen


def find_flow_warnings(flow: FlowData) -> List[FlowWarning]:
    """Authoring defects. The flow stays editable and simulatable regardless."""
    warnings: List[FlowWarning] = []
    names_seen: Set[str] = set()

    for index, step in enumerate(flow.steps):
        name = step.step_name
        if not name.strip():
            warnings.append(FlowWarning(
                code="EMPTY_STEP_NAME", step_index=index, step_name=name,
                message=f"Step {index + 1} has no name and cannot be a branch target"
            ))
        elif name in names_seen:
            warnings.append(FlowWarning(
                code="DUPLICATE_STEP_NAME", step_index=index, step_name=name,
                message=f"Step name '{name}' is used more than once; branches resolve to the first"
            ))
        names_seen.add(name)

        if step.message_type == MessageType.BUTTONS and not step.buttons:
            warnings.append(FlowWarning(
                code="EMPTY_BUTTONS", step_index=index, step_name=name,
                message=f"Step '{name}' is a buttons step without buttons"
            ))

        # Unmapped buttons inherit the step's next_step fallback; that target is reported once below
        for route in outgoing_edges(flow, index):
            if route.button_id and route.dangling_target and \
                    step.conditional_next.get(route.button_id) == route.dangling_target:
                warnings.append(FlowWarning(
                    code="DANGLING_TARGET", step_index=index, step_name=name,
                    message=f"Step '{name}' button '{route.button_id}' points to unknown step "
                            f"'{route.dangling_target}'"
                ))

        if step.next_step and step.message_type != MessageType.TRANSFER and flow.step_index(step.next_step) < 0:
            warnings.append(FlowWarning(
                code="DANGLING_TARGET", step_index=index, step_name=name,
                message=f"Step '{name}' next_step points to unknown step '{step.next_step}'"
            ))

        if step.validation_regex:
            try:
                re.compile(step.validation_regex)
            except re.error as e:
                warnings.append(FlowWarning(
                    code="INVALID_REGEX", step_index=index, step_name=name,
                    message=f"Step '{name}' has an invalid validation regex: {e}"
                ))

        if step.message_type == MessageType.API_FETCH and not (step.api_config and step.api_config.url):
            warnings.append(FlowWarning(
                code="MISSING_API_URL", step_index=index, step_name=name,
                message=f"API step '{name}' has no URL configured"
            ))

        if step.skip_condition and step.message_type in (MessageType.BUTTONS, MessageType.TRANSFER):
            warnings.append(FlowWarning(
                code="SKIP_CONDITION_IGNORED", step_index=index, step_name=name,
                message=f"Skip condition on {step.message_type.value} step '{name}' is ignored"
            ))

    reachable = reachable_steps(flow)
    for index, step in enumerate(flow.steps):
        if index > 0 and index not in reachable:
            warnings.append(FlowWarning(
                code="UNREACHABLE_STEP", step_index=index, step_name=step.step_name,
                message=f"Step '{step.step_name}' can never be reached from the first step"
            ))

    reaching_end = _steps_reaching_end(flow)
    for index in sorted(steps_in_loop(flow)):
        if index in reachable and index not in reaching_end:
            step = flow.steps[index]
            warnings.append(FlowWarning(
                code="LOOP_WITHOUT_EXIT", step_index=index, step_name=step.step_name,
                message=f"Step '{step.step_name}' is part of a loop with no path to the end of the flow"
            ))

    if not is_end_reachable(flow):
        warnings.append(FlowWarning(
            code="NO_REACHABLE_END",
            message="No reachable step ends the flow"
        ))
    return warnings


def analyze_flow(flow: FlowData) -> FlowAnalysis:
    reachable = reachable_steps(flow)
    return FlowAnalysis(
        reachable=sorted(reachable),
        unreachable=[i for i in range(1, len(flow.steps)) if i not in reachable],
        loop_steps=sorted(steps_in_loop(flow)),
        end_reachable=is_end_reachable(flow),
        warnings=find_flow_warnings(flow),
    )
