"""Tests for the request logging middleware."""

import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from crunner.middleware import REQUEST_ID_HEADER, HTTPLogMiddleware


def _app(**kwargs) -> FastAPI:
    app = FastAPI()
    app.add_middleware(HTTPLogMiddleware, **kwargs)

    @app.get("/ok")
    async def ok():
        return {"ok": True}

    @app.get("/fail")
    async def fail():
        from fastapi.responses import JSONResponse
        return JSONResponse(status_code=500, content={"error": "internal_error"})

    return app


def test_request_id_generated():
    res = TestClient(_app()).get("/ok")
    assert res.status_code == 200
    assert len(res.headers[REQUEST_ID_HEADER]) == 12


def test_request_id_propagated():
    res = TestClient(_app()).get("/ok", headers={REQUEST_ID_HEADER: "abc-123"})
    assert res.headers[REQUEST_ID_HEADER] == "abc-123"


def test_server_error_logged_at_warning(caplog):
    with caplog.at_level(logging.DEBUG, logger="crunner.http"):
        TestClient(_app()).get("/fail")

    ends = [r for r in caplog.records if "http.request end" in r.getMessage()]
    assert len(ends) == 1
    assert ends[0].levelno == logging.WARNING
    assert "status=500" in ends[0].getMessage()


def test_slow_request_logged_at_info(caplog):
    with caplog.at_level(logging.DEBUG, logger="crunner.http"):
        TestClient(_app(slow_ms=0)).get("/ok")

    ends = [r for r in caplog.records if "http.request end" in r.getMessage()]
    assert ends[0].levelno == logging.INFO
