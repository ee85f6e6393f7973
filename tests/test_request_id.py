"""Tests for request ID middleware."""

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from dashguard.app.middleware.request_id import RequestIdMiddleware, get_request_id


def build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    return app


def test_incoming_request_id_is_kept():
    client = TestClient(build_app())

    response = client.get("/echo", headers={"X-Request-ID": "abc-123"})

    assert response.json() == {"request_id": "abc-123"}
    assert response.headers["X-Request-ID"] == "abc-123"


def test_request_id_is_generated():
    client = TestClient(build_app())

    first = client.get("/echo")
    second = client.get("/echo")

    assert first.headers["X-Request-ID"] == first.json()["request_id"]
    assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]


def test_get_request_id_without_middleware():
    app = FastAPI()

    @app.get("/echo")
    async def echo(request: Request):
        return {"request_id": get_request_id(request)}

    assert TestClient(app).get("/echo").json() == {"request_id": "unknown"}
