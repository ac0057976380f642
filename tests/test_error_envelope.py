"""Tests for the error envelope format and error handling.

Error responses share one shape:
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

from medtracker.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from medtracker.api.schemas import _VALID_ERROR_CODES, Envelope, ErrorBody
from medtracker.service import errors as service_errors
from medtracker.service.fs import PathTraversalError
from medtracker.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_details_may_be_dict_list_or_null(self):
        assert ErrorBody(code="not_found", message="x").details is None
        assert ErrorBody(code="validation_error", message="x", details=[{"f": 1}]).details == [{"f": 1}]
        assert ErrorBody(code="conflict", message="x", details={"f": 1}).details == {"f": 1}

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_every_service_error_code_is_a_valid_envelope_code(self):
        for name in service_errors.__all__:
            cls = getattr(service_errors, name)
            assert cls.error_code in _VALID_ERROR_CODES, name


class TestEnvelope:
    def test_request_id_is_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_status_is_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (404, "not_found"), (418, "server_error")],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_response_body_shape(self):
        response = _error_response(409, "taken", {"field": "email"}, code="duplicate_email")
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {"code": "duplicate_email", "message": "taken", "details": {"field": "email"}}
        assert body["request_id"]


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/ownership")
    async def ownership():
        raise service_errors.OwnershipError("not yours", detail={"profile_id": "p1"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate", {"field": "name"})

    @app.get("/traversal")
    async def traversal():
        raise PathTraversalError("path traversal detected")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.get("/typed/{value}")
    async def typed(value: int):
        return {"value": value}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error(self, client):
        response = client.get("/ownership")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ownership_violation"
        assert response.json()["error"]["details"] == {"profile_id": "p1"}

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_path_traversal_is_validation_error(self, client):
        response = client.get("/traversal")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_request_validation_is_422_envelope(self, client):
        response = client.get("/typed/abc")
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["path", "value"]

    def test_unknown_route_is_not_found_envelope(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_uncaught_exception_is_server_error(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "kaboom" not in response.text
