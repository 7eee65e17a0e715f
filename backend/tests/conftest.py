# backend/tests/conftest.py

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv

# Load the test environment FIRST, before any app imports, so Settings() sees it.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from app.main import app  # noqa: E402
from app.models.flow import FlowData  # noqa: E402
from app.services.simulation_service import simulation_service  # noqa: E402


@pytest.fixture(autouse=True)
def clear_runs():
    """Every test starts with an empty run registry."""
    simulation_service.clear()
    yield
    simulation_service.clear()


@pytest.fixture(scope="function")
def test_client():
    """
    Provides a TestClient for API integration tests.
    The app's lifespan (startup/shutdown events) is managed by the TestClient.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def support_flow_data():
    """
    welcome (buttons) --track--> ask_order (text, regex) -> lookup (api) -> thanks -> end
                      --agent--> handoff (transfer)
    """
    return {
        "name": "Support",
        "initial_message": "Welcome to Acme support",
        "completion_message": "Goodbye",
        "steps": [
            {
                "step_name": "welcome",
                "step_order": 1,
                "message_type": "buttons",
                "message": "How can we help?",
                "buttons": [
                    {"id": "track", "title": "Track order"},
                    {"id": "agent", "title": "Talk to agent"},
                ],
                "conditional_next": {"track": "ask_order", "agent": "handoff"},
                "store_as": "choice",
            },
            {
                "step_name": "handoff",
                "step_order": 2,
                "message_type": "transfer",
                "message": "Connecting you to an agent",
                "transfer_config": {"team_id": "support", "notes": "from flow"},
            },
            {
                "step_name": "ask_order",
                "step_order": 3,
                "message_type": "text",
                "message": "Please enter your order number",
                "input_type": "text",
                "validation_regex": r"\d{4,}",
                "validation_error": "Order numbers are digits only",
                "store_as": "order_id",
                "max_retries": 2,
            },
            {
                "step_name": "lookup",
                "step_order": 4,
                "message_type": "api_fetch",
                "message": "Order {{order_id}} is {{order_status}}",
                "api_config": {
                    "url": "https://api.example.com/orders/{{order_id}}",
                    "method": "get",
                    "response_mapping": {"order_status": "data.status"},
                    "fallback_message": "Lookup failed for {{order_id}}",
                },
            },
            {
                "step_name": "thanks",
                "step_order": 5,
                "message_type": "text",
                "message": "Thanks for waiting!",
            },
        ],
    }


@pytest.fixture
def support_flow(support_flow_data):
    return FlowData.model_validate(support_flow_data)
