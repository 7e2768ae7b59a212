"""Structured error bodies carry the message, a code and the request id."""
from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from tierpay.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFound,
    PaymentProcessorError,
    ValidationError,
    register_error_handlers,
)
from tierpay.observability import ObservabilityMiddleware


class _Body(BaseModel):
    amount: int


@pytest.fixture
def app_with_errors() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/invalid")
    def invalid():
        raise ValidationError("No items provided", details={"field": "items"})

    @app.get("/missing")
    def missing():
        raise NotFound("Client not found")

    @app.get("/signature")
    def signature():
        raise AuthenticationError()

    @app.get("/misconfigured")
    def misconfigured():
        raise ConfigurationError("Webhook secret not configured")

    @app.get("/processor")
    def processor():
        raise PaymentProcessorError("Failed to create subscription", processor_code="card_declined")

    @app.get("/http-error")
    def http_error():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.post("/body")
    def body(payload: _Body):
        return payload

    @app.get("/crash")
    def crash():
        raise RuntimeError("boom")

    return app


@pytest.fixture
def client(app_with_errors: FastAPI) -> TestClient:
    return TestClient(app_with_errors, raise_server_exceptions=False)


class TestErrorResponses:
    @pytest.mark.parametrize(
        ("path", "status", "code", "error"),
        [
            ("/invalid", 400, "validation_error", "No items provided"),
            ("/missing", 404, "not_found", "Client not found"),
            ("/signature", 400, "invalid_signature", "Invalid signature"),
            ("/misconfigured", 500, "configuration_error", "Webhook secret not configured"),
            ("/processor", 500, "payment_processor_error", "Failed to create subscription"),
        ],
    )
    def test_commerce_errors_map_to_status_and_code(
        self, client: TestClient, path: str, status: int, code: str, error: str
    ) -> None:
        resp = client.get(path)
        assert resp.status_code == status
        body = resp.json()
        assert body["code"] == code
        assert body["error"] == error
        assert body["request_id"]

    def test_details_are_passed_through(self, client: TestClient) -> None:
        assert client.get("/invalid").json()["details"] == {"field": "items"}

    def test_http_error_includes_request_id(self, client: TestClient) -> None:
        resp = client.get("/http-error")
        assert resp.status_code == 403
        body = resp.json()
        assert body["code"] == "http_403"
        assert body["error"] == "Forbidden"
        assert "request_id" in body

    def test_request_validation_is_400(self, client: TestClient) -> None:
        resp = client.post("/body", json={"amount": "lots"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["details"][0]["loc"] == ["body", "amount"]

    def test_unhandled_exception_does_not_leak(self, client: TestClient) -> None:
        resp = client.get("/crash")
        assert resp.status_code == 500
        body = resp.json()
        assert body["code"] == "internal_error"
        assert body["error"] == "Internal server error"
        assert body["details"] is None
        assert "boom" not in resp.text

    def test_request_id_propagated_from_header(self, client: TestClient) -> None:
        resp = client.get("/missing", headers={"X-Request-Id": "req-12345"})
        assert resp.json()["request_id"] == "req-12345"

    def test_success_response_has_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/ok")
        assert resp.status_code == 200
        assert "x-request-id" in resp.headers
