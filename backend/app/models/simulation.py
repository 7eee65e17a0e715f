# /app/models/simulation.py

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from app.models.flow import ApiConfig, ButtonConfig


class SimulationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    WAITING_FOR_API_MOCK = "waiting_for_api_mock"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionLogType(str, Enum):
    FLOW_START = "flow_start"
    STEP_ENTER = "step_enter"
    STEP_EXIT = "step_exit"
    VARIABLE_SET = "variable_set"
    CONDITION_EVAL = "condition_eval"
    API_CALL = "api_call"
    VALIDATION_PASS = "validation_pass"
    VALIDATION_FAIL = "validation_fail"
    BRANCH = "branch"
    FLOW_COMPLETE = "flow_complete"
    FLOW_ERROR = "flow_error"


class SimulationMessage(BaseModel):
    """One transcript entry. Frozen so history snapshots can share instances."""
    model_config = ConfigDict(frozen=True)

    id: str
    role: str = Field(..., pattern="^(bot|user|system)$")
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    step_name: Optional[str] = None
    buttons: Optional[List[ButtonConfig]] = None
    input_type: Optional[str] = None
    is_validation_error: bool = False
    is_api_message: bool = False


class RunError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    step_name: Optional[str] = None


class SimulationSnapshot(BaseModel):
    """Run state captured before a transition, restored by undo."""
    model_config = ConfigDict(frozen=True)

    status: SimulationStatus
    step_index: Optional[int] = None
    step_name: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    messages: List[SimulationMessage] = Field(default_factory=list)
    retry_count: int = 0
    error: Optional[RunError] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ExecutionLogEntry(BaseModel):
    id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    type: ExecutionLogType
    step_name: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ApiMockRequest(BaseModel):
    """What the operator sees while the run waits for a mocked API response."""
    step_name: str
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    response_mapping: Dict[str, str] = Field(default_factory=dict)
    fallback_message: str = ""

    @classmethod
    def from_api_config(cls, step_name: str, config: ApiConfig, url: str, body: str) -> "ApiMockRequest":
        return cls(
            step_name=step_name,
            method=config.method.upper(),
            url=url,
            headers=dict(config.headers),
            body=body,
            response_mapping=dict(config.response_mapping),
            fallback_message=config.fallback_message,
        )


class MockApiResponse(BaseModel):
    """A preset response applied automatically when the run reaches `step_name`."""
    step_name: str
    status_code: int = 200
    response_body: Dict[str, Any] = Field(default_factory=dict)
    delay: int = Field(default=0, ge=0, description="Milliseconds; recorded for display only")

    @property
    def is_failure(self) -> bool:
        return self.status_code >= 400


class RunState(BaseModel):
    """Read-only view of a run, returned after every engine operation."""
    status: SimulationStatus
    paused_from: Optional[SimulationStatus] = None
    current_step_index: Optional[int] = None
    current_step_name: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    messages: List[SimulationMessage] = Field(default_factory=list)
    retry_count: int = 0
    retries_remaining: Optional[int] = None
    pending_api_mock: Optional[ApiMockRequest] = None
    error: Optional[RunError] = None
    can_undo: bool = False
    history_length: int = 0

