"""Tests for api/errors.py - exception to HTTP status mapping."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from api.errors import AUTH_ERROR_STATUS, auth_error_json, register_error_handlers
from auth.exceptions import (
    AccountLockedError,
    AuthError,
    InvalidCredentialsError,
    RateLimitedError,
    TokenAlreadyUsedError,
    TokenExpiredError,
)
from clients.email_client import EmailGatewayError


def _all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _all_subclasses(sub)


def _body(response):
    return json.loads(response.body)


class TestStatusTable:
    def test_every_auth_error_mapped(self):
        missing = [
            c.__name__
            for c in _all_subclasses(AuthError)
            if c.__module__ == "auth.exceptions" and c not in AUTH_ERROR_STATUS
        ]
        assert missing == []

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError(), 401, "AUTHENTICATION_FAILED"),
            (AccountLockedError(15), 423, "ACCOUNT_LOCKED"),
            (TokenExpiredError(), 400, "MAGIC_LINK_EXPIRED"),
            (TokenAlreadyUsedError(), 410, "MAGIC_LINK_ALREADY_USED"),
        ],
    )
    def test_mapping(self, exc, status, code):
        response = auth_error_json(exc)

        assert response.status_code == status
        assert _body(response)["error"] == code
        assert _body(response)["message"] == str(exc)

    def test_rate_limited_sets_retry_after(self):
        response = auth_error_json(RateLimitedError(42))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"

    def test_unmapped_subclass_is_500(self):
        class NewError(AuthError):
            pass

        response = auth_error_json(NewError("x"))
        assert response.status_code == 500
        assert _body(response)["error"] == "INTERNAL_SERVER_ERROR"


class _Body(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/auth-error")
    async def auth_error():
        raise InvalidCredentialsError()

    @app.get("/email-error")
    async def email_error():
        raise EmailGatewayError("gateway returned 500")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @app.post("/body")
    async def body(payload: _Body):
        return payload

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_auth_error(self, client):
        response = client.get("/auth-error")

        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_FAILED"

    def test_email_error_is_502(self, client):
        response = client.get("/email-error")

        assert response.status_code == 502
        assert response.json()["error"] == "EMAIL_DELIVERY_FAILED"
        assert "gateway returned" not in response.json()["message"]

    def test_validation_error_is_400_with_fields(self, client):
        response = client.post("/body", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"][0]["field"] == "email"

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"
        assert "/nowhere" in response.json()["message"]

    def test_method_not_allowed(self, client):
        response = client.post("/auth-error")

        assert response.status_code == 405
        assert response.json()["error"] == "HTTP_405"

    def test_unhandled_exception_hides_details(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"] == "INTERNAL_SERVER_ERROR"
        assert "hunter2" not in response.text
