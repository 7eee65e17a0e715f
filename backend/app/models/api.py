# /app/models/api.py

from pydantic import BaseModel, Field, model_validator
from typing import Any, List, Dict, Optional
from datetime import datetime

from app.models.flow import FlowData
from app.models.simulation import MockApiResponse

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.

class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str

class CreateSimulationRequest(BaseModel):
    flow: FlowData
    auto_advance: Optional[bool] = None
    retry_exhausted_policy: Optional[str] = Field(default=None, pattern="^(fail|advance)$")
    api_mocks: List[MockApiResponse] = Field(default_factory=list)

class UserInputRequest(BaseModel):
    """Exactly one of text, button_id or form."""
    text: Optional[str] = None
    button_id: Optional[str] = None
    form: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def exactly_one_value(self):
        provided = [v for v in (self.text, self.button_id, self.form) if v is not None]
        if len(provided) != 1:
            raise ValueError("Provide exactly one of text, button_id or form")
        return self

    @property
    def value(self):
        if self.form is not None:
            return self.form
        if self.button_id is not None:
            return self.button_id
        return self.text

class MockResponseRequest(BaseModel):
    """A null response simulates a failed API call."""
    response: Optional[Dict[str, Any]] = None

class GoToStepRequest(BaseModel):
    step_name: str = Field(..., min_length=1)
