import json
import os
from datetime import datetime, timedelta

import pytest
import requests
import responses

from sagaflow.errors import FailureError, OngoingError
from sagaflow.webutil import (
    ErrorTrap,
    create_app,
    get_next_time,
    get_sql_dir,
    must_getwd,
    result_to_http,
    wrap_handler,
    wrap_handler2,
)

UPSTREAM_URL = "http://busi.test/resource"


def _sample():
    return 1


def _error():
    raise ValueError("err1")


def _returned_error():
    return ValueError("err1")


def _failure():
    raise FailureError()


def _ongoing():
    raise OngoingError()


def _nothing():
    return None


def _proxy():
    return requests.get(UPSTREAM_URL)


def _plain_dict():
    return {"amount": 30}


def _trap_raising(exc):
    trap = ErrorTrap()
    with trap:
        raise exc
    return trap


@pytest.fixture
def client():
    app = create_app()
    routes2 = {
        "/api/sample": _sample,
        "/api/error": _error,
        "/api/returned_error": _returned_error,
        "/api/failure": _failure,
        "/api/ongoing": _ongoing,
        "/api/nothing": _nothing,
        "/api/proxy": _proxy,
    }
    for rule, fn in routes2.items():
        app.add_url_rule(rule, endpoint=rule, view_func=wrap_handler2(fn))
    routes1 = {
        "/v1/dict": _plain_dict,
        "/v1/failure": _failure,
        "/v1/ongoing": _ongoing,
        "/v1/error": _error,
        "/v1/nothing": _nothing,
    }
    for rule, fn in routes1.items():
        app.add_url_rule(rule, endpoint=rule, view_func=wrap_handler(fn))
    return app.test_client()


def test_ping(client):
    resp = client.get("/api/ping")
    assert resp.status_code == 200
    assert resp.data == b'{"msg":"pong"}'


def test_ping_accepts_post(client):
    resp = client.post("/api/ping", data="{}")
    assert resp.data == b'{"msg":"pong"}'


def test_sample_result(client):
    assert client.get("/api/sample").data == b"1"


def test_raised_error(client):
    resp = client.get("/api/error", data="{}")
    assert resp.status_code == 500
    assert resp.data == b'{"message":"err1"}'


def test_returned_error(client):
    resp = client.get("/api/returned_error")
    assert resp.status_code == 500
    assert resp.data == b'{"message":"err1"}'


def test_failure_gives_conflict(client):
    resp = client.get("/api/failure")
    assert resp.status_code == 409
    assert json.loads(resp.data) == {"dtm_result": "FAILURE", "message": "FAILURE"}


def test_ongoing_gives_too_early(client):
    resp = client.get("/api/ongoing")
    assert resp.status_code == 425
    assert json.loads(resp.data) == {"dtm_result": "ONGOING", "message": "ONGOING"}


def test_none_gives_success(client):
    resp = client.get("/api/nothing")
    assert resp.status_code == 200
    assert json.loads(resp.data) == {"dtm_result": "SUCCESS"}


def test_upstream_response_passes_through(client):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, UPSTREAM_URL, body='{"a":1}', status=409)
        resp = client.get("/api/proxy")
    assert resp.status_code == 409
    assert json.loads(resp.data) == {"a": 1}


def test_upstream_null_body_is_success(client):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, UPSTREAM_URL, body="null", status=200)
        resp = client.get("/api/proxy")
    assert resp.status_code == 200
    assert json.loads(resp.data) == {"dtm_result": "SUCCESS"}


def test_upstream_invalid_body_is_internal_error(client):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, UPSTREAM_URL, body="not json", status=200)
        resp = client.get("/api/proxy")
    assert resp.status_code == 500
    assert "message" in json.loads(resp.data)


def test_wrap_handler_plain_result(client):
    resp = client.get("/v1/dict")
    assert resp.status_code == 200
    assert json.loads(resp.data) == {"amount": 30}


def test_wrap_handler_none_result(client):
    resp = client.get("/v1/nothing")
    assert resp.status_code == 200
    assert json.loads(resp.data) is None


@pytest.mark.parametrize(
    "path,status,message",
    [("/v1/failure", 409, "FAILURE"), ("/v1/ongoing", 425, "ONGOING"), ("/v1/error", 500, "err1")],
)
def test_wrap_handler_errors(client, path, status, message):
    resp = client.get(path)
    assert resp.status_code == status
    assert json.loads(resp.data) == {"error": message}


def test_result_to_http():
    assert result_to_http({"x": 1}) == (200, {"x": 1})
    assert result_to_http(FailureError()) == (409, {"error": "FAILURE"})
    assert result_to_http(OngoingError()) == (425, {"error": "ONGOING"})
    assert result_to_http(RuntimeError("boom")) == (500, {"error": "boom"})


def test_error_trap_captures():
    trap = _trap_raising(ValueError("an error"))
    assert isinstance(trap.error, ValueError)
    assert str(trap.error) == "an error"


def test_error_trap_without_error():
    with ErrorTrap() as trap:
        value = 1
    assert trap.error is None
    assert value == 1


def test_error_trap_lets_system_exit_through():
    with pytest.raises(SystemExit) as info:
        _trap_raising(SystemExit(3))
    assert info.value.code == 3


def test_must_getwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert must_getwd() == os.getcwd()
    assert must_getwd() != ""


def test_get_sql_dir(tmp_path, monkeypatch):
    base = tmp_path.resolve()
    monkeypatch.chdir(base)
    dir1 = get_sql_dir()
    assert dir1.endswith("/sqls")
    assert dir1 == os.getcwd() + "/sqls"


def test_get_sql_dir_from_test_dir(tmp_path, monkeypatch):
    test_dir = tmp_path.resolve() / "test"
    test_dir.mkdir()
    monkeypatch.chdir(test_dir)
    assert get_sql_dir() == os.path.dirname(os.getcwd()) + "/sqls"


def test_get_next_time():
    before = datetime.now()
    nxt = get_next_time(10)
    after = datetime.now()
    assert before + timedelta(seconds=10) <= nxt <= after + timedelta(seconds=10)