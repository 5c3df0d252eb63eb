"""ASGI adapter for the engine's query and ingestion surface.

A framework-agnostic ASGI application usable with any ASGI server
(uvicorn, hypercorn, daphne) without a web framework dependency.

Endpoints:
    POST /samples         JSON object, JSON array or NDJSON samples (202)
    GET  /alarms          NDJSON alarm states, optional ``state`` filter
    GET  /alarms/{id}     JSON alarm state
    GET  /windows         JSON latest closed window for a key
    GET  /episodes        NDJSON open correlation episodes
    GET  /health          JSON engine health
    GET  /logs            NDJSON diagnostics, ``since`` and ``level`` filters
"""

import dataclasses
import json
import logging
from collections.abc import Callable, Coroutine
from typing import Any
from urllib.parse import parse_qs, unquote

from pydantic import ValidationError

from gcwatch.adapters.config_loader import KeyDocument
from gcwatch.adapters.frameworks.query_params import (
    _parse_dimensions,
    _parse_level_param,
    _parse_period_param,
    _parse_since_param,
    _parse_state_param,
    _parse_statistic_param,
)
from gcwatch.core.encoding.ndjson import decode_ndjson, encode_logs, encode_ndjson
from gcwatch.core.encoding.records import (
    alarm_state_to_dict,
    episode_to_dict,
    sample_from_dict,
    window_to_dict,
)
from gcwatch.core.exceptions import EvaluationTimeout
from gcwatch.core.models import Sample
from gcwatch.runtime.embedded import EmbeddedEngine

logger = logging.getLogger(__name__)

# ASGI type aliases
Scope = dict[str, Any]
Receive = Callable[[], Coroutine[Any, Any, dict[str, Any]]]
Send = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
ASGIApp = Callable[[Scope, Receive, Send], Coroutine[Any, Any, None]]

JSON = "application/json"
NDJSON = "application/x-ndjson"

MAX_BODY_BYTES = 4 * 1024 * 1024


class _HTTPError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _parse_query_params(scope: Scope) -> dict[str, list[str]]:
    """Parse query string from ASGI scope into parameter dictionary.

    Returns an empty dict if query_string is missing or empty.
    """
    query_string = scope.get("query_string", b"").decode(errors="replace")
    return parse_qs(query_string)


async def _send_response(send: Send, status: int, content_type: str, body: str) -> None:
    """Send an HTTP response with headers and body."""
    headers = [(b"content-type", content_type.encode())]
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body.encode()})


async def _send_error(send: Send, status: int, message: str) -> None:
    await _send_response(send, status, JSON, json.dumps({"error": message}))


async def _handle_endpoint(
    send: Send,
    endpoint_func: Callable[[], str],
    content_type: str,
    log_message: str,
    status: int = 200,
) -> None:
    """Run an endpoint function with error handling and send the response.

    ``_HTTPError`` becomes its status; anything else is logged and
    answered with 500.
    """
    try:
        body = endpoint_func()
    except _HTTPError as exc:
        await _send_error(send, exc.status, exc.message)
        return
    except Exception:
        logger.exception(log_message)
        await _send_error(send, 500, "Internal Server Error")
        return
    await _send_response(send, status, content_type, body)


async def _read_body(receive: Receive, limit: int = MAX_BODY_BYTES) -> bytes:
    """Read the full request body, rejecting bodies over ``limit`` bytes."""
    chunks: list[bytes] = []
    size = 0
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            raise _HTTPError(413, "Request body too large")
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


def _decode_samples(body: bytes) -> tuple[list[Sample], list[dict[str, Any]]]:
    try:
        records = decode_ndjson(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _HTTPError(400, f"Malformed body: {exc}") from exc
    samples: list[Sample] = []
    rejected: list[dict[str, Any]] = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            rejected.append({"index": index, "error": "sample must be an object"})
            continue
        try:
            samples.append(sample_from_dict(record))
        except ValueError as exc:
            rejected.append({"index": index, "error": str(exc)})
    return samples, rejected


def create_asgi_app(engine: EmbeddedEngine) -> ASGIApp:
    """Create an ASGI app exposing the engine's query interface.

    Args:
        engine: Engine whose state is served and into which samples are submitted.

    Returns:
        ASGI application callable.
    """

    def list_alarms(params: dict[str, list[str]]) -> str:
        wanted = _parse_state_param(params)
        states = sorted(engine.alarm_states().values(), key=lambda s: s.alarm_id)
        return encode_ndjson(
            alarm_state_to_dict(s) for s in states if wanted is None or s.state is wanted
        )

    def get_alarm(alarm_id: str) -> str:
        state = engine.alarm_state(alarm_id)
        if state is None:
            raise _HTTPError(404, f"Unknown alarm {alarm_id!r}")
        return json.dumps(alarm_state_to_dict(state))

    def get_window(params: dict[str, list[str]]) -> str:
        try:
            key = KeyDocument(
                namespace=(params.get("namespace") or [""])[0],
                metric=(params.get("metric") or [""])[0],
                dimensions=_parse_dimensions(params),
            ).to_selector()
            statistic = _parse_statistic_param(params)
            period = _parse_period_param(params)
        except (ValidationError, ValueError) as exc:
            raise _HTTPError(400, str(exc)) from exc
        try:
            window = engine.latest_window(key, statistic, period)
        except EvaluationTimeout as exc:
            raise _HTTPError(503, str(exc)) from exc
        if window is None:
            raise _HTTPError(404, f"No samples for {key.canonical} in the last closed period")
        return json.dumps(window_to_dict(window))

    def get_health() -> str:
        health = engine.health()
        body = dataclasses.asdict(health)
        body["status"] = health.status
        body["definitions"] = engine.describe()
        return json.dumps(body)

    async def post_samples(receive: Receive, send: Send) -> None:
        try:
            samples, rejected = _decode_samples(await _read_body(receive))
        except _HTTPError as exc:
            await _send_error(send, exc.status, exc.message)
            return
        if rejected and not samples:
            await _send_response(
                send, 400, JSON, json.dumps({"error": "No valid samples", "rejected": rejected})
            )
            return
        queued = engine.submit(*samples)
        await _send_response(
            send, 202, JSON, json.dumps({"queued": queued, "rejected": rejected})
        )

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return

        path = scope["path"]
        method = scope.get("method", "GET")

        if path == "/samples":
            if method != "POST":
                await _send_error(send, 405, "Method Not Allowed")
                return
            await post_samples(receive, send)
            return

        if method != "GET":
            await _send_error(send, 405, "Method Not Allowed")
            return

        params = _parse_query_params(scope)
        if path == "/alarms":
            await _handle_endpoint(
                send, lambda: list_alarms(params), NDJSON, "Error encoding alarms endpoint"
            )
        elif path.startswith("/alarms/") and len(path) > len("/alarms/"):
            alarm_id = unquote(path[len("/alarms/") :])
            await _handle_endpoint(
                send, lambda: get_alarm(alarm_id), JSON, "Error encoding alarm endpoint"
            )
        elif path == "/windows":
            await _handle_endpoint(
                send, lambda: get_window(params), JSON, "Error encoding windows endpoint"
            )
        elif path == "/episodes":
            await _handle_endpoint(
                send,
                lambda: encode_ndjson(episode_to_dict(e) for e in engine.active_episodes()),
                NDJSON,
                "Error encoding episodes endpoint",
            )
        elif path == "/health":
            await _handle_endpoint(send, get_health, JSON, "Error encoding health endpoint")
        elif path == "/logs":
            since = _parse_since_param(params)
            level = _parse_level_param(params)
            await _handle_endpoint(
                send,
                lambda: encode_logs(engine.diagnostics(since=since, level=level)),
                NDJSON,
                "Error encoding logs endpoint",
            )
        else:
            await _send_response(send, 404, "text/plain", "Not Found")

    return app
