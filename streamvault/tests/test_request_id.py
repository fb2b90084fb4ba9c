import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from streamvault.core.logging import get_request_id
from streamvault.core.middleware.request_id import RequestIdMiddleware


def _app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/rid")
    def rid():
        return {"rid": get_request_id()}

    return app


def test_incoming_request_id_is_propagated():
    client = TestClient(_app())

    resp = client.get("/rid", headers={"x-request-id": "abc-123"})

    assert resp.headers["x-request-id"] == "abc-123"
    assert resp.json()["rid"] == "abc-123"


def test_request_id_generated_when_missing():
    client = TestClient(_app())

    resp = client.get("/rid")

    rid = resp.headers["x-request-id"]
    assert rid
    assert resp.json()["rid"] == rid
    # Context is cleared after the request
    assert get_request_id() is None


def test_request_completion_is_logged(caplog):
    client = TestClient(_app())

    with caplog.at_level(logging.INFO, logger="streamvault"):
        client.get("/rid", headers={"x-request-id": "abc-123"})

    records = [r for r in caplog.records if r.getMessage() == "request.complete"]
    assert records
    assert records[-1].request_id == "abc-123"
    assert records[-1].status == 200
