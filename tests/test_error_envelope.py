"""Tests for the error envelope format and exception mapping.

Error responses conform to the stable API envelope format:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gatekey.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from gatekey.api.schemas import Envelope, ErrorBody
from gatekey.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    SigningError,
    StorageUnavailableError,
)
from gatekey.storage.errors import AlreadyExists, StorageUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_accepts_service_unavailable(self):
        error = ErrorBody(code="service_unavailable", message="storage unavailable")
        assert error.code == "service_unavailable"

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to stable error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_all_codes_are_valid_error_body_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "invalid credentials"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_error_response_with_list_details(self):
        response = _error_response(400, "invalid request", details=[{"loc": ["body"]}])
        data = json.loads(response.body)
        assert data["error"]["details"] == [{"loc": ["body"]}]


@pytest.fixture
def raising_client():
    """A bare app whose routes raise the given exception, with our handlers installed."""

    app = FastAPI()
    register_exception_handlers(app)
    raised = {}

    @app.get("/raise")
    def _raise():
        raise raised["exc"]

    def _call(exc):
        raised["exc"] = exc
        client = TestClient(app, raise_server_exceptions=False)
        return client.get("/raise")

    return _call


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (ConflictError("login already registered"), 409, "conflict"),
            (NotFoundError("profile not found"), 404, "not_found"),
            (InvalidCredentialsError("invalid credentials"), 401, "unauthorized"),
            (InvalidTokenError("invalid token"), 401, "unauthorized"),
            (StorageUnavailableError("storage unavailable"), 503, "service_unavailable"),
            (SigningError("signing secret is not configured"), 500, "server_error"),
        ],
    )
    def test_service_errors_map_to_envelope(self, raising_client, exc, status, code):
        response = raising_client(exc)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"] == exc.message

    def test_unauthorized_carries_bearer_challenge(self, raising_client):
        response = raising_client(InvalidTokenError("invalid token"))
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_custom_status_on_service_error(self, raising_client):
        response = raising_client(ServiceError("gone", status_code=404, error_code="not_found"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_leaked_storage_errors_hide_internal_message(self, raising_client):
        conflict = raising_client(AlreadyExists("duplicate key users_login_key", {"field": "login"}))
        unavailable = raising_client(StorageUnavailable("connection to 10.0.0.5 refused"))

        assert conflict.status_code == 409
        assert "users_login_key" not in conflict.text
        assert unavailable.status_code == 503
        assert "10.0.0.5" not in unavailable.text

    def test_unhandled_exception_is_server_error(self, raising_client):
        response = raising_client(RuntimeError("SELECT * FROM users exploded"))

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "SELECT" not in response.text
