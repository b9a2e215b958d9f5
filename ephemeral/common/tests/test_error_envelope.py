"""Tests for the canonical error envelope."""
import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from ephemeral.common.error_envelope import (
    build_error_envelope,
    error_response,
    raise_hub_error,
    register_error_handlers,
)
from ephemeral.common.errors import HubNotFound, StoreUnavailable, TooLarge


def _app() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raw-hub-error")
    def raw_hub_error():
        raise StoreUnavailable()

    @app.get("/routed-hub-error")
    def routed_hub_error():
        try:
            raise TooLarge(10)
        except TooLarge as exc:
            raise_hub_error(exc)

    @app.get("/plain-http")
    def plain_http():
        raise HTTPException(status_code=418, detail="teapot")

    @app.get("/boom")
    def boom():
        raise RuntimeError("secret-host.internal exploded")

    return app


def test_build_error_envelope_defaults():
    env = build_error_envelope(code="x.y", message="nope")
    assert env.model_dump() == {
        "error": {"code": "x.y", "message": "nope", "http_status": 400, "resource_kind": None, "details": {}}
    }


def test_error_response_raises_http_exception():
    with pytest.raises(HTTPException) as exc_info:
        error_response(code="hub.x", message="m", status_code=409, resource_kind="hub")
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["error"]["code"] == "hub.x"


def test_hub_error_rendered_by_app_handler():
    resp = TestClient(_app()).get("/raw-hub-error")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "hub.store_unavailable"


def test_routed_hub_error_keeps_details():
    resp = TestClient(_app()).get("/routed-hub-error")
    assert resp.status_code == 413
    assert resp.json()["error"]["details"] == {"limit_bytes": 10}


def test_plain_http_exception_is_wrapped():
    resp = TestClient(_app()).get("/plain-http")
    assert resp.status_code == 418
    assert resp.json()["error"]["message"] == "teapot"


def test_unhandled_exception_is_generic_500():
    resp = TestClient(_app(), raise_server_exceptions=False).get("/boom")
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "internal.error"
    assert "secret-host" not in resp.text


def test_unknown_route_uses_envelope():
    resp = TestClient(_app()).get("/nowhere")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http.exception"


def test_not_found_messages_never_vary():
    assert HubNotFound().public_message == "Hub not found"
    assert HubNotFound().details == {}
