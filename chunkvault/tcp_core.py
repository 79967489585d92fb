"""Framed TCP protocol that streams upload chunks into the write pipeline.

Every frame starts with a big-endian length prefix followed by a JSON
header.  A chunk frame is followed by exactly ``chunk_size`` raw bytes.
Acknowledgements and errors are written back to the client as JSON.
"""

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
import time
from typing import Any, BinaryIO

from .chunk_job import ChunkJobError, ChunkJobPipeline, create_chunk_job
from .config import CHUNK_JOB_WORKER_POOL, HEADER_LENGTH, OpCode
from .safemap import SafeMap
from .upload_session import UploadSession

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.01
_SESSION_ERROR_POOL = 16
_SESSION_ACK_POOL = 16


class ProtocolError(Exception):
    """Raised when a frame cannot be read or decoded."""


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        part = reader.read(remaining)
        if not part:
            break
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


def read_header(reader: BinaryIO, length_size: int = HEADER_LENGTH) -> bytes:
    """Read one length-prefixed header and return its raw bytes."""
    prefix = _read_exact(reader, length_size)
    if len(prefix) < length_size:
        raise ProtocolError("not all header len bytes were read")
    header_len = int.from_bytes(prefix, "big")
    header = _read_exact(reader, header_len)
    if len(header) < header_len:
        raise ProtocolError("not all header bytes were read")
    return header


def read_chunk(reader: BinaryIO, chunk_size: int) -> bytes:
    """Read exactly ``chunk_size`` bytes of chunk payload."""
    data = _read_exact(reader, chunk_size)
    if len(data) < chunk_size:
        raise ProtocolError("not all of the chunk is sent")
    return data


def _encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _take(source: queue.Queue) -> Any:
    try:
        return source.get_nowait()
    except queue.Empty:
        return None


def init_upload_session(
    stop_event: threading.Event,
    session: UploadSession,
    conn: socket.socket,
    pipeline: ChunkJobPipeline,
    pool_size: int,
    error_pool_size: int,
    ack_pool_size: int,
) -> threading.Thread:
    """Attach ``conn`` to ``session`` and start its dispatcher thread.

    The dispatcher forwards incoming jobs to the pipeline and writes
    acknowledgements and errors back to the client until the session is
    done or ``stop_event`` is set.
    """
    session.conn = conn
    session.in_queue = queue.Queue(maxsize=pool_size)
    session.err_queue = queue.Queue(maxsize=error_pool_size)
    session.ack_queue = queue.Queue(maxsize=ack_pool_size)
    session.done = threading.Event()

    in_queue, err_queue, ack_queue, done = (
        session.in_queue,
        session.err_queue,
        session.ack_queue,
        session.done,
    )

    def dispatch() -> None:
        while not (done.is_set() or stop_event.is_set()):
            job = _take(in_queue)
            if job is not None:
                log.debug("forwarding %s to the pipeline", job)
                pipeline.add_chunk_job(job)
                continue
            try:
                error = _take(err_queue)
                if error is not None:
                    conn.sendall(error.to_json())
                    continue
                ack = _take(ack_queue)
                if ack is not None:
                    session.notify_confirmation()
                    conn.sendall(ack.to_json())
                    continue
            except OSError as exc:
                log.error("upload %s: cannot write to client: %s", session.upload_id, exc)
                return
            time.sleep(_POLL_INTERVAL)

    thread = threading.Thread(
        target=dispatch, name=f"session-{session.upload_id}", daemon=True
    )
    thread.start()
    return thread


def _decode_header(raw: bytes, previous: dict[str, Any]) -> dict[str, Any]:
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError(f"invalid header: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ProtocolError("header is not a JSON object")
    header = dict(previous)
    try:
        if "upload_id" in decoded:
            header["upload_id"] = str(decoded["upload_id"])
        for key in ("operation_code", "chunk_no", "chunk_size"):
            if key in decoded:
                header[key] = int(decoded[key])
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid header field: {exc}") from exc
    return header


def handle_connection(
    conn: socket.socket,
    sessions: SafeMap[UploadSession],
    pipeline: ChunkJobPipeline,
) -> None:
    """Serve one client connection until it finishes, cancels or drops."""
    stop_event = threading.Event()
    reader = conn.makefile("rb")
    header: dict[str, Any] = {
        "upload_id": "",
        "operation_code": 0,
        "chunk_no": 0,
        "chunk_size": 0,
    }
    try:
        while True:
            try:
                raw = read_header(reader)
            except (ProtocolError, OSError) as exc:
                log.info("connection closed while reading header: %s", exc)
                return
            try:
                header = _decode_header(raw, header)
            except ProtocolError as exc:
                log.error("error decoding header: %s", exc)
                continue

            upload_id = header["upload_id"]
            session = sessions.get(upload_id)
            if session is None:
                log.error("could not find upload session %r", upload_id)
                return

            try:
                opcode = OpCode(header["operation_code"])
            except ValueError:
                opcode = None

            if opcode is OpCode.INIT:
                init_upload_session(
                    stop_event,
                    session,
                    conn,
                    pipeline,
                    CHUNK_JOB_WORKER_POOL * 2,
                    _SESSION_ERROR_POOL,
                    _SESSION_ACK_POOL,
                )
            elif opcode is OpCode.CHUNK:
                chunk_no = header["chunk_no"]
                try:
                    data = read_chunk(reader, header["chunk_size"])
                except (ProtocolError, OSError) as exc:
                    log.error("error reading chunk: %s", exc)
                    session.err_queue.put(
                        ChunkJobError(upload_id=upload_id, chunk_no=chunk_no, error=exc)
                    )
                    continue
                job = create_chunk_job(
                    upload_id,
                    chunk_no,
                    session.parent_path,
                    data,
                    session.ack_queue,
                    session.err_queue,
                )
                session.in_queue.put(job)
            elif opcode is OpCode.FINISH:
                if not session.is_complete:
                    conn.sendall(_encode({"error": "upload not complete"}))
                    continue
                session.done.set()
                conn.sendall(_encode({"upload_id": upload_id, "status": "complete"}))
                return
            elif opcode is OpCode.CANCEL:
                session.done.set()
                conn.sendall(_encode({"upload_id": upload_id, "status": "cancelled"}))
                return
            else:
                log.warning("unknown operation code: %s", header["operation_code"])
    finally:
        stop_event.set()
        reader.close()
        conn.close()


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None


def _serve(
    listener: socket.socket,
    sessions: SafeMap[UploadSession],
    pipeline: ChunkJobPipeline,
) -> None:
    while True:
        try:
            conn, _ = listener.accept()
        except OSError as exc:
            if listener.fileno() == -1:
                return
            log.error("failed to accept connection: %s", exc)
            continue
        threading.Thread(
            target=handle_connection,
            args=(conn, sessions, pipeline),
            daemon=True,
        ).start()


def start_tcp_listener(
    address: str,
    sessions: SafeMap[UploadSession],
    pipeline: ChunkJobPipeline,
) -> None:
    """Listen on ``address`` (``host:port``) and serve each client in a thread."""
    host, port = _parse_address(address)
    with socket.create_server((host, port)) as listener:
        log.info("uploading service running on %s", address)
        _serve(listener, sessions, pipeline)