# /app/workflows/engine.py

"""
Simulation engine for conversation flows.

A FlowSimulator holds one run of one flow snapshot and interprets it step by
step, the way the live backend would, without WhatsApp or network access:
- consumes simulated user input (typed text, button taps, form replies)
- validates free-text input and re-prompts within the retry budget
- pauses on API steps until the operator supplies a mocked response
- routes with the same rule graph analysis uses (app.workflows.routing)
- snapshots the run before every transition so it can be undone

The engine is synchronous and single-threaded. Every public operation either
applies completely or is rejected without touching run state; the outcome is
returned as an EngineResult together with the resulting RunState.
"""

import copy
import functools
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypedDict, Union

import structlog

from app.config import strings
from app.config.settings import settings, RETRY_EXHAUSTED_POLICIES
from app.models.flow import ButtonConfig, FlowData, FlowStep, MessageType
from app.models.simulation import (
    ApiMockRequest,
    ExecutionLogEntry,
    ExecutionLogType,
    MockApiResponse,
    RunError,
    RunState,
    SimulationMessage,
    SimulationSnapshot,
    SimulationStatus,
)
from app.utils.metrics import simulation_operations_counter, simulation_runs_counter
from app.workflows import api_mock
from app.workflows.routing import END, Route, is_end, resolve_button_target, sequential_successor
from app.workflows.template import evaluate_expression, replace_variables
from app.workflows.validator import validate_input

log = structlog.get_logger(__name__)

UserInput = Union[str, ButtonConfig, Dict[str, Any]]
Subscriber = Callable[[RunState], None]

SKIPPABLE_TYPES = (MessageType.TEXT, MessageType.API_FETCH, MessageType.WHATSAPP_FLOW)
PAUSABLE_STATUSES = (SimulationStatus.RUNNING, SimulationStatus.WAITING_FOR_INPUT)


class EngineResult(TypedDict):
    """Result of a simulator operation."""
    applied: bool
    reason: Optional[str]
    state: RunState


class SimulationError(Exception):
    """Base class for simulator errors."""


class RoutingError(SimulationError):
    """A computed successor does not exist in the flow snapshot."""

    def __init__(self, target: Any, step_name: Optional[str] = None):
        self.target = target
        self.step_name = step_name
        super().__init__(strings.ROUTE_NOT_FOUND.format(target=target))


def operation(name: str):
    """
    Guard for public operations: rejects re-entrant calls and turns routing
    errors into a failed run instead of letting them escape.
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self: "FlowSimulator", *args, **kwargs) -> EngineResult:
            if self._busy:
                return self._reject(name, "Re-entrant call while another operation is in progress")
            self._busy = True
            try:
                return method(self, *args, **kwargs)
            except RoutingError as e:
                self._fail("ROUTE_NOT_FOUND", str(e), step_name=e.step_name)
                return self._applied(name)
            finally:
                self._busy = False
        return wrapper
    return decorator


class FlowSimulator:
    """
    One live simulation run.

    Args:
        flow: The flow snapshot (a FlowData or the builder's JSON). It is copied
            and never mutated.
        run_id: Identifier used in logs.
        auto_advance: Continue past steps that need no input without waiting
            for step_forward(). Defaults to settings.simulation_auto_advance.
        retry_exhausted_policy: "fail" ends the run when a free-text step runs
            out of retries, "advance" stores the last value and moves on.
        api_mocks: Preset responses applied on reaching the named API steps.
        on_mock_request: Called when the run starts waiting for a mocked API
            response. It must not call back into the simulator.
    """

    def __init__(
        self,
        flow: Union[FlowData, Dict[str, Any]],
        *,
        run_id: Optional[str] = None,
        auto_advance: Optional[bool] = None,
        retry_exhausted_policy: Optional[str] = None,
        default_max_retries: Optional[int] = None,
        max_history_entries: Optional[int] = None,
        api_mocks: Optional[Iterable[MockApiResponse]] = None,
        on_mock_request: Optional[Callable[[ApiMockRequest], None]] = None,
    ):
        if isinstance(flow, FlowData):
            self.flow = flow.model_copy(deep=True)
        else:
            self.flow = FlowData.model_validate(flow)

        policy = (retry_exhausted_policy or settings.retry_exhausted_policy).lower()
        if policy not in RETRY_EXHAUSTED_POLICIES:
            raise ValueError(f"Unknown retry_exhausted_policy '{policy}'")

        self.run_id = run_id
        self.auto_advance = settings.simulation_auto_advance if auto_advance is None else auto_advance
        self.retry_exhausted_policy = policy
        self.default_max_retries = (
            settings.default_max_retries if default_max_retries is None else default_max_retries
        )
        self.max_history_entries = (
            settings.max_history_entries if max_history_entries is None else max_history_entries
        )
        self.on_mock_request = on_mock_request

        self._api_mocks: Dict[str, MockApiResponse] = {}
        for mock in api_mocks or []:
            self._api_mocks[mock.step_name] = mock

        self._subscribers: List[Subscriber] = []
        self._busy = False
        self._clear()

    # ------------------------------------------------------------------ #
    # Read-only views
    # ------------------------------------------------------------------ #

    @property
    def status(self) -> SimulationStatus:
        return self._status

    @property
    def can_undo(self) -> bool:
        return len(self._history) > 0

    @property
    def current_step(self) -> Optional[FlowStep]:
        if self._step_index is None:
            return None
        return self.flow.steps[self._step_index]

    @property
    def history(self) -> List[SimulationSnapshot]:
        return list(self._history)

    @property
    def execution_log(self) -> List[ExecutionLogEntry]:
        return list(self._execution_log)

    @property
    def api_mocks(self) -> Dict[str, MockApiResponse]:
        return dict(self._api_mocks)

    @property
    def state(self) -> RunState:
        step = self.current_step
        retries_remaining = None
        if step is not None and self._status == SimulationStatus.WAITING_FOR_INPUT:
            retries_remaining = max(0, self._max_retries(step) - self._retry_count)
        return RunState(
            status=self._status,
            paused_from=self._paused_from,
            current_step_index=self._step_index,
            current_step_name=step.step_name if step else None,
            variables=copy.deepcopy(self._variables),
            messages=list(self._messages),
            retry_count=self._retry_count,
            retries_remaining=retries_remaining,
            pending_api_mock=self._pending_mock,
            error=self._error,
            can_undo=self.can_undo,
            history_length=len(self._history),
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for the RunState after every applied operation. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def register_mock(self, mock: MockApiResponse) -> None:
        """Preset the response for an API step. Takes effect the next time the step is entered."""
        self._api_mocks[mock.step_name] = mock

    def clear_mock(self, step_name: str) -> None:
        self._api_mocks.pop(step_name, None)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    @operation("start")
    def start(self) -> EngineResult:
        if self._status != SimulationStatus.IDLE:
            return self._reject("start", f"Run is already {self._status.value}")

        self._push_history()
        self._variables = {}
        self._messages = []
        self._status = SimulationStatus.RUNNING
        self._log(ExecutionLogType.FLOW_START, details={"flow": self.flow.name, "steps": len(self.flow.steps)})

        if self.flow.initial_message:
            self._post("bot", replace_variables(self.flow.initial_message, self._variables))

        self._enter_step(0 if self.flow.steps else END)
        return self._applied("start")

    @operation("process_user_input")
    def process_user_input(self, value: UserInput) -> EngineResult:
        if self._status != SimulationStatus.WAITING_FOR_INPUT:
            return self._reject("process_user_input", f"Run is {self._status.value}, not waiting for input")

        step = self.current_step
        if step.message_type == MessageType.BUTTONS:
            if not isinstance(value, (str, ButtonConfig)):
                return self._reject("process_user_input", f"Step '{step.step_name}' expects a button selection")
            self._push_history()
            self._handle_button_input(step, value)
        elif step.message_type == MessageType.WHATSAPP_FLOW:
            if not isinstance(value, (str, dict)):
                return self._reject("process_user_input", f"Step '{step.step_name}' expects a form response")
            self._push_history()
            self._handle_form_input(step, value)
        else:
            if not isinstance(value, str):
                return self._reject("process_user_input", f"Step '{step.step_name}' expects text input")
            self._push_history()
            self._handle_text_input(step, value)
        return self._applied("process_user_input")

    @operation("step_forward")
    def step_forward(self) -> EngineResult:
        if self._status != SimulationStatus.RUNNING or self.current_step is None:
            return self._reject("step_forward", f"Run is {self._status.value}, nothing to step over")

        self._push_history()
        self._leave_step(self._default_route(self._step_index))
        return self._applied("step_forward")

    @operation("submit_mock_config")
    def submit_mock_config(self, response: Optional[Dict[str, Any]]) -> EngineResult:
        """Resume an API step with a mocked response body, or None to simulate a failed call."""
        if self._status != SimulationStatus.WAITING_FOR_API_MOCK:
            return self._reject("submit_mock_config", f"Run is {self._status.value}, not waiting for an API response")
        if response is not None and not isinstance(response, dict):
            return self._reject("submit_mock_config", "Mock response must be an object or null")

        self._push_history()
        step = self.current_step
        self._resolve_api_step(step, response, preset=False)
        self._leave_step(self._default_route(self._step_index))
        return self._applied("submit_mock_config")

    @operation("undo")
    def undo(self) -> EngineResult:
        if self._status == SimulationStatus.PAUSED:
            return self._reject("undo", "Run is paused")
        if not self._history:
            return self._reject("undo", "Nothing to undo")

        snapshot = self._history.pop()
        self._status = snapshot.status
        self._step_index = snapshot.step_index
        self._variables = copy.deepcopy(snapshot.variables)
        self._messages = list(snapshot.messages)
        self._retry_count = snapshot.retry_count
        self._error = snapshot.error
        self._paused_from = None
        self._pending_mock = None
        if self._status == SimulationStatus.WAITING_FOR_API_MOCK:
            self._pending_mock = api_mock.build_mock_request(self.current_step, self._variables)
        return self._applied("undo")

    @operation("go_to_step")
    def go_to_step(self, step_name: str) -> EngineResult:
        """Debug jump: re-enter `step_name` regardless of routing. Undo reverses it."""
        if self._status in (SimulationStatus.IDLE, SimulationStatus.PAUSED, SimulationStatus.FAILED):
            return self._reject("go_to_step", f"Cannot jump while the run is {self._status.value}")
        index = self.flow.step_index(step_name)
        if index < 0:
            return self._reject("go_to_step", f"Unknown step '{step_name}'")

        self._push_history()
        self._error = None
        self._status = SimulationStatus.RUNNING
        self._log(ExecutionLogType.BRANCH, self._current_name(), {"via": "go_to_step", "target": step_name})
        self._enter_step(index)
        return self._applied("go_to_step")

    @operation("pause")
    def pause(self) -> EngineResult:
        if self._status not in PAUSABLE_STATUSES:
            return self._reject("pause", f"Cannot pause a run that is {self._status.value}")
        self._paused_from = self._status
        self._status = SimulationStatus.PAUSED
        return self._applied("pause")

    @operation("resume")
    def resume(self) -> EngineResult:
        if self._status != SimulationStatus.PAUSED:
            return self._reject("resume", f"Run is {self._status.value}, not paused")
        self._status = self._paused_from
        self._paused_from = None
        return self._applied("resume")

    @operation("reset")
    def reset(self) -> EngineResult:
        self._clear()
        return self._applied("reset")

    # ------------------------------------------------------------------ #
    # Step interpretation
    # ------------------------------------------------------------------ #

    def _enter_step(self, index: int) -> None:
        """
        Enter the step at `index` and keep going through steps that need
        nothing from the caller (skipped steps, preset mocks, auto-advance)
        until the run waits, completes or fails.
        """
        entered = set()
        while True:
            if is_end(index):
                self._complete()
                return
            if index >= len(self.flow.steps):
                raise RoutingError(index, self._current_name())
            if index in entered:
                self._fail("AUTO_ADVANCE_LOOP", f"Step '{self.flow.steps[index].step_name}' was re-entered "
                           "without waiting for input", step_name=self.flow.steps[index].step_name)
                return
            entered.add(index)

            step = self.flow.steps[index]
            self._step_index = index
            self._retry_count = 0
            self._pending_mock = None
            self._status = SimulationStatus.RUNNING

            if self._should_skip(step):
                self._log(ExecutionLogType.STEP_EXIT, step.step_name, {"skipped": True})
                index = self._follow(self._default_route(index))
                continue

            self._log(ExecutionLogType.STEP_ENTER, step.step_name, {"index": index, "type": step.message_type.value})

            if step.message_type == MessageType.BUTTONS:
                if not step.buttons:
                    self._fail("NO_BUTTONS", strings.NO_BUTTONS.format(step_name=step.step_name), step.step_name)
                    return
                self._post("bot", self._render(step.message), step_name=step.step_name,
                           buttons=list(step.buttons), input_type="button")
                self._status = SimulationStatus.WAITING_FOR_INPUT
                return

            if step.message_type == MessageType.API_FETCH:
                self._pending_mock = api_mock.build_mock_request(step, self._variables)
                self._status = SimulationStatus.WAITING_FOR_API_MOCK
                preset = self._api_mocks.get(step.step_name)
                if preset is None:
                    if self.on_mock_request:
                        self.on_mock_request(self._pending_mock)
                    return
                self._resolve_api_step(step, None if preset.is_failure else preset.response_body, preset=True)
                self._status = SimulationStatus.RUNNING
                self._log(ExecutionLogType.STEP_EXIT, step.step_name)
                index = self._follow(self._default_route(index))
                continue

            if step.message_type == MessageType.TRANSFER:
                if step.message:
                    self._post("bot", self._render(step.message), step_name=step.step_name)
                self._post("system", self._transfer_notice(step), step_name=step.step_name)
            elif step.message:
                self._post("bot", self._render(step.message), step_name=step.step_name,
                           input_type=step.input_type.value if step.requires_input else None)

            if step.requires_input:
                self._status = SimulationStatus.WAITING_FOR_INPUT
                return
            if not self.auto_advance:
                return
            self._log(ExecutionLogType.STEP_EXIT, step.step_name)
            index = self._follow(self._default_route(index))

    def _leave_step(self, route: Route) -> None:
        self._log(ExecutionLogType.STEP_EXIT, self._current_name())
        self._enter_step(self._follow(route))

    def _default_route(self, index: int) -> Route:
        step = self.flow.steps[index]
        if step.message_type == MessageType.TRANSFER:
            return Route(END, "transfer")
        return sequential_successor(self.flow, index)

    def _follow(self, route: Route) -> int:
        details = {"via": route.via, "target_index": route.target_index}
        if route.button_id:
            details["button_id"] = route.button_id
        if route.dangling_target:
            details["dangling_target"] = route.dangling_target
        if not is_end(route.target_index) and route.target_index < len(self.flow.steps):
            details["target"] = self.flow.steps[route.target_index].step_name
        self._log(ExecutionLogType.BRANCH, self._current_name(), details)
        return route.target_index

    def _should_skip(self, step: FlowStep) -> bool:
        if not step.skip_condition or step.message_type not in SKIPPABLE_TYPES:
            return False
        result = evaluate_expression(step.skip_condition, self._variables)
        self._log(ExecutionLogType.CONDITION_EVAL, step.step_name,
                  {"expression": step.skip_condition, "result": result})
        return result

    def _handle_button_input(self, step: FlowStep, value: Union[str, ButtonConfig]) -> None:
        if isinstance(value, ButtonConfig):
            button_index = step.find_button(value.id) if value.id else None
            if button_index is None:
                button_index = step.find_button(value.title)
            raw = value.title
        else:
            button_index = step.find_button(value)
            raw = value

        if button_index is None:
            self._post("user", raw, step_name=step.step_name)
            self._handle_invalid(step, raw, "INVALID_SELECTION", step.validation_error or strings.INVALID_SELECTION)
            return

        button = step.buttons[button_index]
        self._post("user", button.title, step_name=step.step_name)
        self._log(ExecutionLogType.VALIDATION_PASS, step.step_name, {"button_id": step.button_id(button_index)})
        if step.store_as:
            self._set_variable(step.store_as, button.title, step.step_name)
        self._leave_step(resolve_button_target(self.flow, self._step_index, button_index))

    def _handle_text_input(self, step: FlowStep, value: str) -> None:
        self._post("user", value, step_name=step.step_name)
        result = validate_input(step, value)
        if not result["is_valid"]:
            self._handle_invalid(step, value, result["error_code"], step.validation_error or strings.VALIDATION_ERROR)
            return

        self._log(ExecutionLogType.VALIDATION_PASS, step.step_name, {"value": value})
        if step.store_as:
            self._set_variable(step.store_as, value.strip(), step.step_name)
        self._leave_step(self._default_route(self._step_index))

    def _handle_form_input(self, step: FlowStep, value: Union[str, Dict[str, Any]]) -> None:
        content = value if isinstance(value, str) else ", ".join(f"{k}: {v}" for k, v in value.items())
        self._post("user", content, step_name=step.step_name)
        if step.store_as:
            self._set_variable(step.store_as, copy.deepcopy(value), step.step_name)
        self._leave_step(self._default_route(self._step_index))

    def _handle_invalid(self, step: FlowStep, raw: str, error_code: Optional[str], error_message: str) -> None:
        self._retry_count += 1
        max_retries = self._max_retries(step)
        self._log(ExecutionLogType.VALIDATION_FAIL, step.step_name, {
            "value": raw,
            "error_code": error_code,
            "retry_count": self._retry_count,
            "max_retries": max_retries,
        })

        if step.retry_on_invalid and self._retry_count < max_retries:
            buttons = list(step.buttons) if step.message_type == MessageType.BUTTONS else None
            self._post("bot", self._render(error_message), step_name=step.step_name,
                       buttons=buttons, is_validation_error=True)
            self._status = SimulationStatus.WAITING_FOR_INPUT
            return

        # Button steps have no edge to follow without a selection, so they always fail here
        if self.retry_exhausted_policy == "advance" and step.message_type != MessageType.BUTTONS:
            if step.store_as:
                self._set_variable(step.store_as, raw, step.step_name)
            self._leave_step(self._default_route(self._step_index))
            return

        self._post("bot", strings.RETRIES_EXHAUSTED, step_name=step.step_name, is_validation_error=True)
        self._fail("RETRIES_EXHAUSTED", f"Step '{step.step_name}' exceeded {max_retries} attempts", step.step_name)

    def _resolve_api_step(self, step: FlowStep, response: Optional[Dict[str, Any]], preset: bool) -> None:
        request = self._pending_mock or api_mock.build_mock_request(step, self._variables)
        self._log(ExecutionLogType.API_CALL, step.step_name, {
            "method": request.method,
            "url": request.url,
            "success": response is not None,
            "preset": preset,
        })
        if response is not None:
            for name, value in api_mock.response_variables(step, response).items():
                self._set_variable(name, value, step.step_name)

        content = api_mock.response_message(step, self._variables, response)
        if content:
            self._post("bot", content, step_name=step.step_name, is_api_message=True)
        self._pending_mock = None

    def _complete(self) -> None:
        step = self.current_step
        transferred = step is not None and step.message_type == MessageType.TRANSFER
        if self.flow.completion_message and not transferred:
            self._post("bot", self._render(self.flow.completion_message))
        self._pending_mock = None
        self._status = SimulationStatus.COMPLETED
        details = {"messages": len(self._messages)}
        if transferred and step.transfer_config:
            details["team_id"] = step.transfer_config.team_id
        if self.flow.on_complete_action != "none":
            details["on_complete_action"] = self.flow.on_complete_action
            details["completion_config"] = copy.deepcopy(self.flow.completion_config)
        self._log(ExecutionLogType.FLOW_COMPLETE, self._current_name(), details)
        self._count_run("completed")
        log.info("simulation.completed", run_id=self.run_id, flow=self.flow.name, transferred=transferred)

    def _fail(self, code: str, message: str, step_name: Optional[str] = None) -> None:
        self._error = RunError(code=code, message=message, step_name=step_name)
        self._pending_mock = None
        self._status = SimulationStatus.FAILED
        self._log(ExecutionLogType.FLOW_ERROR, step_name, {"code": code, "message": message})
        self._count_run("failed")
        log.warning("simulation.failed", run_id=self.run_id, code=code, step_name=step_name, reason=message)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _clear(self) -> None:
        self._status = SimulationStatus.IDLE
        self._paused_from: Optional[SimulationStatus] = None
        self._step_index: Optional[int] = None
        self._variables: Dict[str, Any] = {}
        self._messages: List[SimulationMessage] = []
        self._retry_count = 0
        self._pending_mock: Optional[ApiMockRequest] = None
        self._error: Optional[RunError] = None
        self._history: List[SimulationSnapshot] = []
        self._execution_log: List[ExecutionLogEntry] = []
        self._run_counted = False

    def _count_run(self, status: str) -> None:
        # Once per run; revisiting a terminal status after undo or go_to_step is not a new run
        if not self._run_counted:
            simulation_runs_counter.labels(status=status).inc()
            self._run_counted = True

    def _push_history(self) -> None:
        self._history.append(SimulationSnapshot(
            status=self._status,
            step_index=self._step_index,
            step_name=self._current_name(),
            variables=copy.deepcopy(self._variables),
            messages=list(self._messages),
            retry_count=self._retry_count,
            error=self._error,
        ))
        if self.max_history_entries and len(self._history) > self.max_history_entries:
            del self._history[0]

    def _post(self, role: str, content: str, **fields) -> None:
        self._messages.append(SimulationMessage(
            id=f"msg_{len(self._messages) + 1}",
            role=role,
            content=content,
            **fields,
        ))

    def _log(self, entry_type: ExecutionLogType, step_name: Optional[str] = None,
             details: Optional[Dict[str, Any]] = None) -> None:
        self._execution_log.append(ExecutionLogEntry(
            id=f"log_{len(self._execution_log) + 1}",
            timestamp=datetime.utcnow(),
            type=entry_type,
            step_name=step_name,
            details=details or {},
        ))

    def _set_variable(self, name: str, value: Any, step_name: str) -> None:
        self._variables[name] = value
        self._log(ExecutionLogType.VARIABLE_SET, step_name, {"name": name, "value": value})

    def _render(self, text: str) -> str:
        return replace_variables(text, self._variables)

    def _transfer_notice(self, step: FlowStep) -> str:
        if step.transfer_config and step.transfer_config.team_id:
            return strings.TRANSFER_NOTICE_TEAM.format(team_id=step.transfer_config.team_id)
        return strings.TRANSFER_NOTICE

    def _max_retries(self, step: FlowStep) -> int:
        return step.max_retries if step.max_retries is not None else self.default_max_retries

    def _current_name(self) -> Optional[str]:
        step = self.current_step
        return step.step_name if step else None

    def _applied(self, name: str) -> EngineResult:
        simulation_operations_counter.labels(operation=name, outcome="applied").inc()
        log.debug("simulation.operation", run_id=self.run_id, operation=name, status=self._status.value,
                  step_name=self._current_name())
        state = self.state
        for callback in list(self._subscribers):
            callback(state)
        return {"applied": True, "reason": None, "state": state}

    def _reject(self, name: str, reason: str) -> EngineResult:
        simulation_operations_counter.labels(operation=name, outcome="rejected").inc()
        log.warning("simulation.rejected", run_id=self.run_id, operation=name, status=self._status.value,
                    reason=reason)
        return {"applied": False, "reason": reason, "state": self.state}
