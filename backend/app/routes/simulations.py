# /app/routes/simulations.py

from fastapi import APIRouter, HTTPException, Request, status
import structlog

from app.config.settings import settings
from app.models.api import (
    APIResponse, CreateSimulationRequest, UserInputRequest,
    MockResponseRequest, GoToStepRequest
)
from app.services.simulation_service import simulation_service, RunNotFoundError
from app.utils.logging import bind_run_context
from app.utils.rate_limiter import limiter
from app.workflows.engine import EngineResult, FlowSimulator

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/simulations",
    tags=["Simulations"],
)


def _get_simulator(run_id: str) -> FlowSimulator:
    try:
        simulator = simulation_service.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    bind_run_context(run_id, flow=simulator.flow.name)
    return simulator


def _run_data(run_id: str, simulator: FlowSimulator) -> dict:
    return {"run_id": run_id, "state": simulator.state.model_dump(mode="json")}


def _respond(run_id: str, result: EngineResult, action: str) -> APIResponse:
    """Rejected operations are caller sequencing errors and map to 409."""
    if not result["applied"]:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["reason"])
    return APIResponse(
        success=True,
        message=f"{action} applied; run is {result['state'].status.value}",
        data={"run_id": run_id, "state": result["state"].model_dump(mode="json")},
        version=settings.api_version
    )


@router.post("", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_simulation(request: Request, body: CreateSimulationRequest):
    """Create an idle run from a flow snapshot."""
    run_id, simulator = simulation_service.create_run(
        body.flow,
        auto_advance=body.auto_advance,
        retry_exhausted_policy=body.retry_exhausted_policy,
        api_mocks=body.api_mocks,
    )
    bind_run_context(run_id, flow=body.flow.name)
    log.info("simulation.created", steps=len(body.flow.steps))
    return APIResponse(
        success=True,
        message="Simulation created",
        data=_run_data(run_id, simulator),
        version=settings.api_version
    )


@router.get("/{run_id}", response_model=APIResponse)
async def get_simulation(run_id: str):
    simulator = _get_simulator(run_id)
    return APIResponse(
        success=True,
        message="Simulation state retrieved",
        data=_run_data(run_id, simulator),
        version=settings.api_version
    )


@router.get("/{run_id}/log", response_model=APIResponse)
async def get_execution_log(run_id: str):
    simulator = _get_simulator(run_id)
    entries = [entry.model_dump(mode="json") for entry in simulator.execution_log]
    return APIResponse(
        success=True,
        message=f"Retrieved {len(entries)} log entries",
        data={"run_id": run_id, "entries": entries},
        version=settings.api_version
    )


@router.delete("/{run_id}", response_model=APIResponse)
async def delete_simulation(run_id: str):
    try:
        simulation_service.delete_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return APIResponse(
        success=True,
        message="Simulation deleted",
        data={"run_id": run_id},
        version=settings.api_version
    )


@router.post("/{run_id}/start", response_model=APIResponse)
async def start_simulation(run_id: str):
    return _respond(run_id, _get_simulator(run_id).start(), "start")


@router.post("/{run_id}/input", response_model=APIResponse)
async def send_input(run_id: str, body: UserInputRequest):
    return _respond(run_id, _get_simulator(run_id).process_user_input(body.value), "input")


@router.post("/{run_id}/step", response_model=APIResponse)
async def step_forward(run_id: str):
    return _respond(run_id, _get_simulator(run_id).step_forward(), "step")


@router.post("/{run_id}/mock", response_model=APIResponse)
async def submit_mock(run_id: str, body: MockResponseRequest):
    return _respond(run_id, _get_simulator(run_id).submit_mock_config(body.response), "mock")


@router.post("/{run_id}/undo", response_model=APIResponse)
async def undo(run_id: str):
    return _respond(run_id, _get_simulator(run_id).undo(), "undo")


@router.post("/{run_id}/goto", response_model=APIResponse)
async def go_to_step(run_id: str, body: GoToStepRequest):
    return _respond(run_id, _get_simulator(run_id).go_to_step(body.step_name), "goto")


@router.post("/{run_id}/pause", response_model=APIResponse)
async def pause(run_id: str):
    return _respond(run_id, _get_simulator(run_id).pause(), "pause")


@router.post("/{run_id}/resume", response_model=APIResponse)
async def resume(run_id: str):
    return _respond(run_id, _get_simulator(run_id).resume(), "resume")


@router.post("/{run_id}/reset", response_model=APIResponse)
async def reset(run_id: str):
    return _respond(run_id, _get_simulator(run_id).reset(), "reset")
