"""Shared pytest fixtures for testing."""

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.models.flow import FlowGraph, parse_flow
from app.models.schemas import Session

SAMPLE_FLOW_PATH = Path(__file__).resolve().parents[1] / "demo" / "flows" / "customer_service.json"
SAMPLE_NUMBER = "+15550002222"


def make_settings(**overrides) -> Settings:
    values = dict(
        ENV="test",
        DB_URL=None,
        REDIS_URL=None,
        WEBHOOK_SECRET=None,
        TWILIO_AUTH_TOKEN=None,
        PUBLIC_BASE_URL=None,
        EVENTS_URL=None,
        SAMPLE_FLOW_PATH=None,
        SAMPLE_FLOW_NUMBER=None,
        LOG_LEVEL="debug",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def session_for(graph: FlowGraph, call_id: str = "CA-test", **fields) -> Session:
    fields.setdefault("current_node", graph.entry_node)
    return Session(call_id=call_id, flow_id=graph.id, flow_version=graph.version, **fields)


# =============================================================================
# Flow Fixtures
# =============================================================================


@pytest.fixture
def sample_flow_payload() -> dict:
    """The customer service flow in the editor's export format."""
    return json.loads(SAMPLE_FLOW_PATH.read_text())


@pytest.fixture
def sample_graph(sample_flow_payload) -> FlowGraph:
    return parse_flow(sample_flow_payload)


@pytest.fixture
def linear_payload() -> dict:
    """say -> collect -> end, in the native format."""
    return {
        "id": "linear",
        "name": "Linear",
        "nodes": [
            {"id": "hello", "type": "say", "message": "Hello", "next": "ask"},
            {"id": "ask", "type": "collect", "prompt": "Your account number?", "variable": "account",
             "retries": 1, "next": "bye"},
            {"id": "bye", "type": "end", "message": "Goodbye"},
        ],
    }


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app():
    """Test FastAPI application with the sample flow deployed and routed."""
    from app.main import create_app

    return create_app(make_settings(
        SAMPLE_FLOW_PATH=str(SAMPLE_FLOW_PATH),
        SAMPLE_FLOW_NUMBER=SAMPLE_NUMBER,
    ))


@pytest.fixture
def client(app):
    """Test HTTP client; runs startup and shutdown hooks."""
    with TestClient(app) as c:
        yield c
