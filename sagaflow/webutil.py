"""HTTP helpers: the app factory, handler wrappers and small utilities."""

from __future__ import annotations

import functools
import json
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Tuple

import requests
from flask import Flask, Response, request

from .errors import (
    RESULT_FAILURE,
    RESULT_ONGOING,
    RESULT_SUCCESS,
    FailureError,
    OngoingError,
)

DEFAULT_HTTP_SERVER = "http://localhost:36789/api/dtmsvr"
DEFAULT_JRPC_SERVER = "http://localhost:36789/api/json-rpc"
DEFAULT_GRPC_SERVER = "localhost:36790"

HTTP_OK = 200
HTTP_CONFLICT = 409
HTTP_TOO_EARLY = 425
HTTP_INTERNAL_ERROR = 500

_ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _json_response(status: int, body: Any) -> Response:
    return Response(_dumps(body), status=status, mimetype="application/json")


def _log_request(began: float, status: int, content: str) -> None:
    elapsed = int((time.monotonic() - began) * 1000)
    level = logging.INFO if status in (HTTP_OK, HTTP_TOO_EARLY) else logging.ERROR
    logger.log(
        level,
        "%2dms %d %s %s %s",
        elapsed,
        status,
        request.method,
        request.full_path.rstrip("?"),
        content,
    )


def _error_status(error: BaseException) -> int:
    if isinstance(error, FailureError):
        return HTTP_CONFLICT
    if isinstance(error, OngoingError):
        return HTTP_TOO_EARLY
    return HTTP_INTERNAL_ERROR


class ErrorTrap:
    """Context manager that catches an exception and keeps it in ``error``."""

    def __init__(self) -> None:
        self.error: Optional[Exception] = None

    def __enter__(self) -> "ErrorTrap":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and isinstance(exc, Exception):
            self.error = exc
            return True
        return False


def create_app() -> Flask:
    """Create a Flask app that logs request bodies and answers /api/ping."""
    app = Flask(__name__)

    @app.before_request
    def _log_body() -> None:
        body = request.get_data(cache=True, as_text=True)
        logger.debug("begin %s %s body: %s", request.method, request.url, body)

    @app.route("/api/ping", methods=_ALL_METHODS)
    def ping() -> Response:
        return _json_response(HTTP_OK, {"msg": "pong"})

    return app


def result_to_http(result: Any) -> Tuple[int, Any]:
    """Map a handler result to an HTTP status and a JSON body."""
    if isinstance(result, Exception):
        return _error_status(result), {"error": str(result)}
    return HTTP_OK, result


def wrap_handler(fn: Callable[..., Any]) -> Callable[..., Response]:
    """Wrap a view whose result, or raised error, becomes the JSON response."""

    @functools.wraps(fn)
    def handler(*args: Any, **kwargs: Any) -> Response:
        began = time.monotonic()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:  # the raised error is the handler's result
            result = exc
        status, body = result_to_http(result)
        _log_request(began, status, _dumps(body))
        return _json_response(status, body)

    return handler


def wrap_handler2(fn: Callable[..., Any]) -> Callable[..., Response]:
    """Wrap a view, adding ``dtm_result`` and passing upstream responses through."""

    @functools.wraps(fn)
    def handler(*args: Any, **kwargs: Any) -> Response:
        began = time.monotonic()
        error: Optional[Exception] = None
        result: Any = None
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            error = exc

        status = HTTP_OK
        if isinstance(result, requests.Response):
            status = result.status_code
            text = result.text
            result = None
            try:
                result = json.loads(text)
            except ValueError as exc:
                error = exc

        if isinstance(result, Exception) and error is None:
            error = result

        if error is not None:
            body: dict = {}
            status = _error_status(error)
            if isinstance(error, FailureError):
                body["dtm_result"] = RESULT_FAILURE
            elif isinstance(error, OngoingError):
                body["dtm_result"] = RESULT_ONGOING
            body["message"] = str(error)
            result = body
        elif result is None:
            result = {"dtm_result": RESULT_SUCCESS}

        content = _dumps(result)
        _log_request(began, status, content)
        return Response(content, status=status, mimetype="application/json")

    return handler


def must_getwd() -> str:
    """Return the current working directory."""
    return os.getcwd()


def get_sql_dir() -> str:
    """Return the directory holding the SQL scripts."""
    wd = must_getwd()
    if os.path.basename(wd) == "test":
        wd = os.path.dirname(wd)
    return wd + "/sqls"


def get_next_time(seconds: int) -> datetime:
    """Return the time ``seconds`` seconds from now."""
    return datetime.now() + timedelta(seconds=seconds)