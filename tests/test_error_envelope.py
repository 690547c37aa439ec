"""Tests for the error envelope and the exception handlers that produce it.

Every failure renders as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from tenantgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from tenantgate.api.schemas import Envelope, ErrorBody
from tenantgate.service.errors import (
    AuthenticationError,
    BillingError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError as ServiceValidationError,
)
from tenantgate.storage.errors import ConstraintViolation


class TestEnvelopeModels:
    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_is_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_request_id_is_generated(self):
        envelope = Envelope(status="ok", data={"id": "1"})

        assert len(envelope.request_id) == 36
        assert envelope.error is None


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (400, "validation_error"),
        (401, "unauthorized"),
        (403, "forbidden"),
        (404, "not_found"),
        (409, "conflict"),
        (422, "validation_error"),
        (429, "rate_limited"),
        (500, "server_error"),
        (502, "server_error"),
    ],
)
def test_status_to_code(status_code, expected):
    assert _error_code_for_status(status_code) == expected


def test_mapping_uses_only_stable_codes():
    assert set(_STATUS_TO_CODE.values()) == {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }


@pytest.mark.parametrize(
    "exc,status_code,code",
    [
        (ServiceValidationError("bad"), 400, "validation_error"),
        (AuthenticationError("who"), 401, "unauthorized"),
        (ForbiddenError("no"), 403, "forbidden"),
        (NotFoundError("gone"), 404, "not_found"),
        (ConflictError("dup"), 409, "conflict"),
        (RateLimitedError("slow"), 429, "rate_limited"),
        (ServerError("oops"), 500, "server_error"),
        (BillingError("provider down"), 502, "server_error"),
    ],
)
def test_service_errors_carry_status_and_code(exc, status_code, code):
    assert exc.status_code == status_code
    assert exc.error_code == code


class _Payload(BaseModel):
    count: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service-error")
    async def service_error():
        raise NotFoundError("Tenant not found", detail={"tenant_id": "t-1"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"}, field="email")

    @app.post("/validate")
    async def validate(body: _Payload):
        return {"count": body.count}

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret connection string postgres://u:p@db")

    return TestClient(app, raise_server_exceptions=False)


def test_service_error_renders_envelope(error_client):
    response = error_client.get("/service-error")

    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"] == {
        "code": "not_found",
        "message": "Tenant not found",
        "details": {"tenant_id": "t-1"},
    }
    assert body["request_id"]


def test_constraint_violation_is_conflict(error_client):
    response = error_client.get("/constraint")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "conflict"


def test_request_validation_is_422(error_client):
    response = error_client.post("/validate", json={"count": "many"})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert isinstance(error["details"], list)


def test_unhandled_error_hides_internals(error_client):
    response = error_client.get("/crash")

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "server_error"
    assert "postgres" not in error["message"]
