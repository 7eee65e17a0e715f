# /app/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessageType(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    API_FETCH = "api_fetch"
    WHATSAPP_FLOW = "whatsapp_flow"
    TRANSFER = "transfer"


class InputType(str, Enum):
    NONE = "none"
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    SELECT = "select"
    BUTTON = "button"
    WHATSAPP_FLOW = "whatsapp_flow"


class ButtonConfig(BaseModel):
    """A WhatsApp reply/URL/phone button attached to a `buttons` step."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Button identifier, defaults to btn_<index+1> when empty")
    title: str = Field(..., description="Label shown to the user")
    type: str = Field(default="reply", pattern="^(reply|url|phone)$")
    url: Optional[str] = None
    phone_number: Optional[str] = None


class ApiConfig(BaseModel):
    """External call made by an `api_fetch` step. Only ever mocked."""
    model_config = ConfigDict(frozen=True)

    url: str = ""
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    response_mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Variable name -> path into the response body (dot and [i] notation)"
    )
    fallback_message: str = ""


class TransferConfig(BaseModel):
    """Hand-off target for a `transfer` step."""
    model_config = ConfigDict(frozen=True)

    team_id: str = ""
    notes: str = ""


class FlowStep(BaseModel):
    """
    One node of the conversation flow graph.

    Cross references (`conditional_next`, `next_step`) are step names resolved
    by lookup at traversal time; a step never holds a reference to another step.
    """
    model_config = ConfigDict(frozen=True)

    step_name: str = Field(..., description="Unique name within the flow")
    step_order: int = Field(default=0, description="Author-facing sequence index")
    message_type: MessageType = MessageType.TEXT
    message: str = ""
    buttons: List[ButtonConfig] = Field(default_factory=list)
    conditional_next: Dict[str, str] = Field(default_factory=dict, description="Button id -> step name")
    next_step: str = Field(default="", description="Explicit sequential successor")
    input_type: InputType = InputType.NONE
    input_config: Dict[str, Any] = Field(default_factory=dict)
    validation_regex: str = ""
    validation_error: str = ""
    retry_on_invalid: bool = True
    max_retries: Optional[int] = Field(default=None, ge=0, description="Falls back to the configured default when unset")
    api_config: Optional[ApiConfig] = None
    transfer_config: Optional[TransferConfig] = None
    store_as: str = ""
    skip_condition: str = ""

    @field_validator("conditional_next", mode="before")
    @classmethod
    def drop_empty_targets(cls, v):
        # The builder sends "" for buttons whose branch was cleared
        if isinstance(v, dict):
            return {key: target for key, target in v.items() if target}
        return v if v is not None else {}

    @field_validator("buttons", mode="before")
    @classmethod
    def none_to_empty_list(cls, v):
        return v if v is not None else []

    def button_id(self, index: int) -> str:
        """Effective id of the button at `index`."""
        button = self.buttons[index]
        return button.id or f"btn_{index + 1}"

    def find_button(self, value: str) -> Optional[int]:
        """Index of the button whose id or title matches `value` (case-insensitive)."""
        needle = value.strip().lower()
        for i, button in enumerate(self.buttons):
            if needle in (self.button_id(i).lower(), button.title.strip().lower()):
                return i
        return None

    @property
    def requires_input(self) -> bool:
        if self.message_type in (MessageType.BUTTONS, MessageType.WHATSAPP_FLOW):
            return True
        if self.message_type == MessageType.TEXT:
            return self.input_type != InputType.NONE
        return False


class FlowData(BaseModel):
    """
    Immutable snapshot of a conversation flow as authored in the builder.

    Steps are kept ordered by `step_order` (stable for ties), so list position
    is the authoring position and index 0 is the entry step.
    """
    model_config = ConfigDict(frozen=True)

    name: str = ""
    description: str = ""
    trigger_keywords: str = ""
    initial_message: str = ""
    completion_message: str = ""
    on_complete_action: str = Field(default="none", pattern="^(none|webhook)$")
    completion_config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Action settings, e.g. the webhook url; recorded by the simulator, never called"
    )
    enabled: bool = True
    steps: List[FlowStep] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def sort_steps_by_order(cls, v: List[FlowStep]) -> List[FlowStep]:
        return sorted(v, key=lambda step: step.step_order)

    def step_index(self, name: str) -> int:
        """Index of the first step called `name`, or -1."""
        if not name:
            return -1
        for i, step in enumerate(self.steps):
            if step.step_name == name:
                return i
        return -1

    def get_step(self, name: str) -> Optional[FlowStep]:
        index = self.step_index(name)
        return self.steps[index] if index >= 0 else None
