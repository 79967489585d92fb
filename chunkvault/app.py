"""HTTP front end that registers upload sessions and starts the services."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from . import config
from .chunk_job import instantiate_pipeline
from .safemap import SafeMap
from .tcp_core import start_tcp_listener
from .upload_session import UploadSession

log = logging.getLogger(__name__)

INIT_ROUTE = "/upload/init"
DEFAULT_ALLOWED_ORIGIN = "http://localhost:3000"
ALLOWED_METHODS = ("GET", "POST", "DELETE", "OPTIONS")
_ALLOWED_HEADERS = frozenset(
    h.lower()
    for h in (
        "Accept",
        "Accept-Language",
        "Content-Language",
        "Origin",
        "Content-Type",
        "X-Chunk-Index",
    )
)
_INVALID_BODY = "Invalid JSON body"

_FIELDS: dict[str, tuple[type, Any]] = {
    "uploadID": (str, ""),
    "filename": (str, ""),
    "final_path": (str, ""),
    "chunk_size": (int, 0),
    "total_chunks": (int, 0),
}


def _field(payload: dict[str, Any], name: str) -> Any:
    kind, default = _FIELDS[name]
    value = payload.get(name)
    if value is None:
        return default
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise ValueError(_INVALID_BODY)
    return value


def handle_init_upload(sessions: SafeMap[UploadSession], body: bytes | str) -> dict[str, str]:
    """Register a new upload session from a JSON request body.

    Raises ValueError if the body is not a valid session request.
    """
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValueError(_INVALID_BODY) from None
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValueError(_INVALID_BODY)
    values = {name: _field(payload, name) for name in _FIELDS}
    session = UploadSession(
        upload_id=values["uploadID"],
        total_chunks=values["total_chunks"],
        chunk_size=values["chunk_size"],
        parent_path=values["final_path"],
        file_name=values["filename"],
    )
    sessions.add(session.upload_id, session)
    return {"message": "Upload Session Created"}


def make_handler(
    sessions: SafeMap[UploadSession], allowed_origin: str = DEFAULT_ALLOWED_ORIGIN
) -> type[BaseHTTPRequestHandler]:
    """Build a request handler class serving the upload API with CORS."""

    class UploadAPIHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:
            log.info("%s - %s", self.address_string(), format % args)

        def _origin_allowed(self) -> bool:
            return self.headers.get("Origin", "") == allowed_origin

        def _send(
            self,
            status: HTTPStatus,
            body: bytes = b"",
            content_type: str | None = None,
            extra: dict[str, str] | None = None,
        ) -> None:
            self.send_response(status)
            if self._origin_allowed():
                self.send_header("Access-Control-Allow-Origin", allowed_origin)
                self.send_header("Access-Control-Allow-Credentials", "true")
            for name, value in (extra or {}).items():
                self.send_header(name, value)
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if body:
                self.wfile.write(body)

        def _send_text(self, status: HTTPStatus, text: str) -> None:
            self._send(status, (text + "\n").encode("utf-8"), "text/plain; charset=utf-8")

        def _reject(self) -> None:
            if self.path == INIT_ROUTE:
                self._send_text(HTTPStatus.METHOD_NOT_ALLOWED, "")
            else:
                self._send_text(HTTPStatus.NOT_FOUND, "404 page not found")

        def do_POST(self) -> None:
            if self.path != INIT_ROUTE:
                self._reject()
                return
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            try:
                reply = handle_init_upload(sessions, body)
            except ValueError:
                self._send_text(HTTPStatus.BAD_REQUEST, _INVALID_BODY)
                return
            payload = (json.dumps(reply) + "\n").encode("utf-8")
            self._send(HTTPStatus.CREATED, payload, "application/json")

        def do_GET(self) -> None:
            self._reject()

        def do_DELETE(self) -> None:
            self._reject()

        def do_OPTIONS(self) -> None:
            if not self._origin_allowed():
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            method = self.headers.get("Access-Control-Request-Method")
            if method is None:
                self._send(HTTPStatus.BAD_REQUEST)
                return
            if method.upper() not in ALLOWED_METHODS:
                self._send(HTTPStatus.METHOD_NOT_ALLOWED)
                return
            requested = [
                h.strip()
                for h in self.headers.get("Access-Control-Request-Headers", "").split(",")
                if h.strip()
            ]
            if any(h.lower() not in _ALLOWED_HEADERS for h in requested):
                self._send(HTTPStatus.FORBIDDEN)
                return
            extra = {"Access-Control-Allow-Methods": method.upper()}
            if requested:
                extra["Access-Control-Allow-Headers"] = ", ".join(requested)
            self._send(HTTPStatus.OK, extra=extra)

    return UploadAPIHandler


def main(argv: list[str] | None = None) -> int:
    """Start the chunk pipeline, the TCP upload service and the HTTP API."""
    parser = argparse.ArgumentParser(description="Chunked file upload service.")
    parser.add_argument("--http-host", default="")
    parser.add_argument("--http-port", type=int, default=8000)
    parser.add_argument("--tcp-address", default=":9000")
    parser.add_argument("--allowed-origin", default=DEFAULT_ALLOWED_ORIGIN)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    pipeline = instantiate_pipeline(config.CHUNK_JOB_CHANNEL_BUFFER_SIZE)
    stop_event = threading.Event()
    pipeline.start_worker_pool(stop_event, config.CHUNK_JOB_WORKER_POOL)
    pipeline.start_error_handler_pool(stop_event, config.CHUNK_JOB_ERR_POOL)
    pipeline.start_confirmation_handler_pool(
        stop_event, config.CHUNK_JOB_CONFIRMATION_WORKER_POOL
    )

    sessions: SafeMap[UploadSession] = SafeMap()
    threading.Thread(
        target=start_tcp_listener,
        args=(args.tcp_address, sessions, pipeline),
        name="tcp-listener",
        daemon=True,
    ).start()

    server = ThreadingHTTPServer(
        (args.http_host, args.http_port), make_handler(sessions, args.allowed_origin)
    )
    log.info("Main Server running on :%d", args.http_port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        stop_event.set()
        server.server_close()
    return 0