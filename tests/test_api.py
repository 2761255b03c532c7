"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from voice_booking.server import app
from voice_booking.state import ConversationState, Stage


@pytest.fixture
def mock_dispatcher():
    """Create a mock dispatcher and attach it to app state (mirrors the lifespan)."""
    dispatcher = MagicMock()
    dispatcher.dispatch.return_value = {
        "success": True,
        "message": "For your cleaning, I have Tuesday, October 20 at 9:00 AM available.",
        "stage": "AWAITING_SLOT_CONFIRMATION",
        "error_code": None,
        "error_category": None,
    }
    dispatcher.store.archived.return_value = None

    app.state.dispatcher = dispatcher
    yield dispatcher
    app.state.dispatcher = None


@pytest.fixture
def client(mock_dispatcher):
    return TestClient(app)


def _tool_call(**overrides):
    body = {
        "call_id": "call-1",
        "practice_id": "demo-practice",
        "tool_name": "find_appointment_type",
        "arguments": {"patient_request": "I need a cleaning"},
    }
    body.update(overrides)
    return body


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "voice-booking-agent"


class TestToolCallEndpoint:
    def test_returns_outcome(self, client, mock_dispatcher):
        response = client.post("/api/tool-calls", json=_tool_call())
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["stage"] == "AWAITING_SLOT_CONFIRMATION"
        assert data["call_id"] == "call-1"
        assert data["error"] is None
        mock_dispatcher.dispatch.assert_called_once_with(
            "call-1", "demo-practice", "find_appointment_type", {"patient_request": "I need a cleaning"},
        )

    def test_handler_failure_is_a_200_with_error_block(self, client, mock_dispatcher):
        mock_dispatcher.dispatch.return_value = {
            "success": False,
            "message": "I'm so sorry, it looks like that time was just taken.",
            "stage": "AWAITING_SLOT_CONFIRMATION",
            "error_code": "SLOT_UNAVAILABLE",
            "error_category": "conflict",
        }
        response = client.post("/api/tool-calls", json=_tool_call(tool_name="confirm_booking"))
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"] == {"code": "SLOT_UNAVAILABLE", "category": "conflict"}

    def test_arguments_default_to_empty(self, client, mock_dispatcher):
        body = _tool_call(tool_name="check_available_slots")
        del body["arguments"]
        client.post("/api/tool-calls", json=body)
        assert mock_dispatcher.dispatch.call_args[0][3] == {}

    def test_validates_missing_call_id(self, client):
        body = _tool_call()
        del body["call_id"]
        assert client.post("/api/tool-calls", json=body).status_code == 422

    def test_validates_empty_tool_name(self, client):
        assert client.post("/api/tool-calls", json=_tool_call(tool_name="")).status_code == 422

    def test_unexpected_error_is_generic_500(self, client, mock_dispatcher):
        mock_dispatcher.dispatch.side_effect = RuntimeError("checkpointer exploded")
        response = client.post("/api/tool-calls", json=_tool_call())
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert "exploded" not in detail
        assert "internal error" in detail.lower()

    def test_response_includes_request_id_header(self, client):
        response = client.post("/api/tool-calls", json=_tool_call())
        assert "X-Request-ID" in response.headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.post(
            "/api/tool-calls", json=_tool_call(), headers={"X-Request-ID": "turn-42"},
        )
        assert response.headers["X-Request-ID"] == "turn-42"


class TestCallEndpoints:
    def test_get_call_state(self, client, mock_dispatcher):
        mock_dispatcher.get_state.return_value = ConversationState.start("call-1", "demo-practice")
        response = client.get("/api/calls/call-1")
        assert response.status_code == 200
        data = response.json()
        assert data["stage"] == "INITIAL"
        assert data["ended"] is False
        assert data["state"]["call_id"] == "call-1"

    def test_get_unknown_call(self, client, mock_dispatcher):
        mock_dispatcher.get_state.return_value = None
        assert client.get("/api/calls/nope").status_code == 404

    def test_end_call(self, client, mock_dispatcher):
        state = ConversationState.start("call-1", "demo-practice").model_copy(
            update={"current_stage": Stage.BOOKING_CONFIRMED},
        )
        mock_dispatcher.end_call.return_value = state
        mock_dispatcher.store.archived.return_value = state.model_dump(mode="json")
        response = client.post("/api/calls/call-1/end")
        assert response.status_code == 200
        assert response.json()["ended"] is True
        assert response.json()["stage"] == "BOOKING_CONFIRMED"

    def test_end_unknown_call(self, client, mock_dispatcher):
        mock_dispatcher.end_call.return_value = None
        assert client.post("/api/calls/nope/end").status_code == 404


class TestToolsEndpoint:
    def test_lists_every_tool(self, client):
        response = client.get("/api/tools")
        assert response.status_code == 200
        names = {tool["name"] for tool in response.json()}
        assert names == {
            "find_appointment_type",
            "check_available_slots",
            "select_and_confirm_slot",
            "confirm_booking",
            "identify_or_create_patient",
            "insurance_info",
        }


class TestRealDispatcher:
    """The HTTP layer over a dispatcher wired to the fake scheduler."""

    def test_booking_over_http(self, dispatcher, fake_nexhealth):
        app.state.dispatcher = dispatcher
        fake_nexhealth.patients = [
            {"id": 77, "first_name": "Jane", "last_name": "Doe", "bio": {"date_of_birth": "1990-05-01"}},
        ]
        try:
            client = TestClient(app)
            steps = [
                ("identify_or_create_patient", {"firstName": "Jane", "lastName": "Doe", "dateOfBirth": "1990-05-01"}),
                ("find_appointment_type", {"patientRequest": "a cleaning please"}),
                ("select_and_confirm_slot", {"userSelection": "the 3 pm"}),
                ("confirm_booking", {"userResponse": "yes"}),
            ]
            for tool_name, arguments in steps:
                response = client.post(
                    "/api/tool-calls", json=_tool_call(tool_name=tool_name, arguments=arguments),
                )
                assert response.json()["success"] is True, response.json()

            assert response.json()["stage"] == "BOOKING_CONFIRMED"
            assert client.get("/api/calls/call-1").json()["state"]["appointment_booking"][
                "confirmed_appointment_id"
            ] == "appt-555"

            ended = client.post("/api/calls/call-1/end").json()
            assert ended["ended"] is True
            late = client.post("/api/tool-calls", json=_tool_call()).json()
            assert late["error"]["code"] == "CALL_ENDED"
            assert client.get("/api/calls/call-1").json()["ended"] is True
        finally:
            app.state.dispatcher = None


class TestDispatcherNotReady:
    def test_returns_503_when_dispatcher_not_initialised(self):
        app.state.dispatcher = None
        response = TestClient(app).post("/api/tool-calls", json=_tool_call())
        assert response.status_code == 503
        assert "starting up" in response.json()["detail"].lower()


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Voice Booking Agent"
        assert data["tools"] == "/api/tools"
