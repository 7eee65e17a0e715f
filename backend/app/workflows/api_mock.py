# /app/workflows/api_mock.py

"""
API mock facility for `api_fetch` steps.

The simulator never performs a network call. When a run reaches an API step
it exposes an ApiMockRequest describing the call the live backend would make;
the operator answers with a fabricated response body (or None to simulate a
failure) and the engine maps that body into run variables.
"""

from typing import Any, Dict, Optional

from app.config import strings
from app.models.flow import ApiConfig, FlowStep
from app.models.simulation import ApiMockRequest
from app.workflows.template import get_nested_value, replace_variables


def build_mock_request(step: FlowStep, variables: Dict[str, Any]) -> ApiMockRequest:
    """Describe the call `step` would make, with url and body rendered against `variables`."""
    config = step.api_config or ApiConfig()
    return ApiMockRequest.from_api_config(
        step_name=step.step_name,
        config=config,
        url=replace_variables(config.url, variables),
        body=replace_variables(config.body, variables),
    )


def apply_response_mapping(mapping: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract variables from a response body.

    Args:
        mapping: variable name -> path into the payload ("data.items[0].name")
        payload: the mocked response body

    Returns:
        Variables whose path resolved; unresolved paths are left out.
    """
    extracted = {}
    for variable, path in mapping.items():
        value = get_nested_value(payload, path)
        if value is not None:
            extracted[variable] = value
    return extracted


def response_variables(step: FlowStep, payload: Dict[str, Any]) -> Dict[str, Any]:
    """All variables a successful response binds: mapped paths plus `store_as` (whole payload)."""
    config = step.api_config or ApiConfig()
    updates = apply_response_mapping(config.response_mapping, payload)
    if step.store_as:
        updates[step.store_as] = payload
    return updates


def response_message(step: FlowStep, variables: Dict[str, Any], payload: Optional[Dict[str, Any]]) -> str:
    """Bot message shown after the mocked call: the rendered step message, or the fallback on failure."""
    if payload is None:
        config = step.api_config or ApiConfig()
        fallback = config.fallback_message or strings.API_FALLBACK_MESSAGE
        return replace_variables(fallback, variables)
    return replace_variables(step.message, variables)
